from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import logging

from islandsched.core.exceptions import ConsensusDisagreement
from islandsched.schemas.settings import GASettings
from islandsched.services.communicator import Communicator

logger = logging.getLogger(__name__)

STATUS_KIND = "status"
VERDICT_KIND = "verdict"
# A peer may reach consensus one full retry budget late after waiting out a failed neighbour.
CONSENSUS_PATIENCE = 2


@dataclass(frozen=True)
class WorkerStatus:
    rank: int
    generation: int
    best_hard: int
    best_soft: float
    stall: int
    cancelled: bool = False


@dataclass(frozen=True)
class StopDecision:
    stop: bool
    reason: str | None = None


@dataclass(frozen=True)
class Verdict:
    view: dict[int, WorkerStatus]
    decision: StopDecision


CONTINUE = StopDecision(stop=False)


def decide(statuses: Mapping[int, WorkerStatus], settings: GASettings) -> StopDecision:
    """Pure stop rule over the collectively gathered statuses."""
    if not statuses:
        return CONTINUE
    values = [statuses[rank] for rank in sorted(statuses)]
    if any(item.cancelled for item in values):
        return StopDecision(stop=True, reason="cancelled")
    if all(item.generation >= settings.max_generations for item in values):
        return StopDecision(stop=True, reason="max_generations")
    if settings.stop_on_first_feasible and any(item.best_hard == 0 for item in values):
        return StopDecision(stop=True, reason="feasible")
    if all(item.stall > settings.stall_threshold for item in values):
        return StopDecision(stop=True, reason="stalled")
    return CONTINUE


class TerminationConsensus:
    """Two collective phases per round: share statuses, then share what each worker saw.

    The second phase lets every worker decide on the union of all views, so a
    peer that dropped out halfway through the first phase cannot split the
    decision. It also acts as the barrier that closes the round.
    """

    def __init__(self, communicator: Communicator, settings: GASettings) -> None:
        self.communicator = communicator
        self.settings = settings

    def agree(self, round_id: int, status: WorkerStatus) -> StopDecision:
        rank = self.communicator.rank
        view = self.communicator.allgather(STATUS_KIND, round_id, status, patience=CONSENSUS_PATIENCE)
        own_decision = decide(view, self.settings)

        verdicts = self.communicator.allgather(
            VERDICT_KIND, round_id, Verdict(view=view, decision=own_decision), patience=CONSENSUS_PATIENCE
        )
        merged = dict(view)
        for peer in sorted(verdicts):
            if peer == rank:
                continue
            verdict = verdicts[peer]
            for other_rank, other_status in verdict.view.items():
                known = merged.get(other_rank)
                if known is not None and known != other_status:
                    raise ConsensusDisagreement(
                        f"Ranks {rank} and {peer} hold different statuses for rank {other_rank}",
                        details={"round": round_id, "rank": other_rank},
                    )
                merged.setdefault(other_rank, other_status)
            if set(verdict.view) == set(view) and verdict.decision != own_decision:
                raise ConsensusDisagreement(
                    f"Ranks {rank} and {peer} reached different decisions from the same statuses",
                    details={
                        "round": round_id,
                        "local": own_decision.reason,
                        "peer": verdict.decision.reason,
                    },
                )
        decision = decide(merged, self.settings)
        self.communicator.close_round(round_id)
        if decision.stop:
            logger.debug("Rank %d round %d agreed to stop (%s) over ranks %s", rank, round_id, decision.reason, sorted(merged))
        return decision
