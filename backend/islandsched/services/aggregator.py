from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import logging

from islandsched.core.exceptions import CommunicationError, EvaluationError
from islandsched.services.chromosome import Chromosome, Gene
from islandsched.services.communicator import Communicator
from islandsched.services.constraints import Fitness
from islandsched.services.instance import ProblemInstance
from islandsched.services.transport import Message

logger = logging.getLogger(__name__)

RESULT_KIND = "result"
RESULT_ROUND = -1


@dataclass(frozen=True)
class WorkerReport:
    rank: int
    genes: tuple[Gene, ...]
    generation: int
    failed: bool = False
    stop_reason: str | None = None


@dataclass
class AggregateResult:
    best_rank: int
    best: Chromosome
    fitness: Fitness
    contributions: dict[int, Fitness]
    failed_ranks: tuple[int, ...] = ()
    failed_reports: dict[int, Fitness] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


def aggregate(best_per_worker: Mapping[int, Chromosome]) -> tuple[int, Chromosome]:
    """Pick the global best; equal fitness goes to the lowest rank."""
    if not best_per_worker:
        raise ValueError("No worker results to aggregate")
    for rank, chromosome in best_per_worker.items():
        if chromosome.fitness is None:
            raise EvaluationError(f"Result from rank {rank} has not been evaluated", details={"rank": rank})
    return min(best_per_worker.items(), key=lambda item: (item[1].fitness.sort_key(), item[0]))


class ResultAggregator:
    def __init__(self, communicator: Communicator, instance: ProblemInstance, collector_rank: int = 0) -> None:
        self.communicator = communicator
        self.instance = instance
        self.collector_rank = collector_rank

    @property
    def collector(self) -> int:
        """The configured collector while it is live, otherwise the lowest live rank."""
        communicator = self.communicator
        if self.collector_rank not in communicator.failed:
            return self.collector_rank
        return min(communicator.live_ranks)

    @property
    def is_collector(self) -> bool:
        return self.communicator.rank == self.collector

    def _validate(self, message: Message) -> None:
        report = message.payload
        if not isinstance(report, WorkerReport) or report.rank != message.source:
            raise CommunicationError(
                f"Malformed result report from rank {message.source}",
                details={"source": message.source},
            )

    def _handoff_rank(self, report: WorkerReport) -> int | None:
        if not report.failed or not self.is_collector:
            return self.collector
        # A failed collector passes its result to the lowest peer it still considers live.
        peers = self.communicator.live_peers
        return peers[0] if peers else None

    def submit(self, report: WorkerReport) -> AggregateResult | None:
        """Hand this worker's best to the collector; the collector returns the aggregate.

        A failed worker only reports. It aggregates on its own when it has
        no live peer left to report to.
        """
        dest = self._handoff_rank(report)
        if dest is None or dest == self.communicator.rank:
            return self.collect(report)
        try:
            self.communicator.send(dest, RESULT_KIND, RESULT_ROUND, report)
        except CommunicationError as exc:
            logger.warning("Rank %d could not report its result: %s", report.rank, exc.message)
        return None

    def collect(self, own: WorkerReport) -> AggregateResult:
        communicator = self.communicator
        reports: dict[int, WorkerReport] = {own.rank: own}
        messages = communicator.gather(communicator.live_peers, RESULT_KIND, RESULT_ROUND, validate=self._validate)
        for peer, message in sorted(messages.items()):
            reports[peer] = message.payload

        late: dict[int, WorkerReport] = {}
        for peer in sorted(communicator.failed):
            message = communicator.poll(peer, RESULT_KIND, RESULT_ROUND)
            if message is not None and isinstance(message.payload, WorkerReport):
                late[peer] = message.payload

        warnings = [f"Rank {peer} failed: {reason}" for peer, reason in sorted(communicator.failed.items())]
        eligible: dict[int, Chromosome] = {}
        for rank, report in sorted(reports.items()):
            if report.failed:
                late[rank] = report
                continue
            eligible[rank] = self._score(report)
        if not eligible:
            # Only this worker's own (failed) result is left.
            late.pop(own.rank, None)
            eligible[own.rank] = self._score(own)

        failed_reports: dict[int, Fitness] = {}
        for rank, report in sorted(late.items()):
            failed_reports[rank] = self._score(report).fitness
            warnings.append(f"Rank {rank} reported after failing; its result is excluded")

        best_rank, best = aggregate(eligible)
        failed_ranks = tuple(sorted(set(communicator.failed) | {rank for rank, report in reports.items() if report.failed}))
        for message in warnings:
            logger.warning(message)
        logger.info(
            "Collector rank %d selected rank %d: hard=%d soft=%.2f from %d worker(s)",
            communicator.rank,
            best_rank,
            best.fitness.hard_violations,
            best.fitness.soft_penalty,
            len(eligible),
        )
        return AggregateResult(
            best_rank=best_rank,
            best=best,
            fitness=best.fitness,
            contributions={rank: item.fitness for rank, item in eligible.items()},
            failed_ranks=failed_ranks,
            failed_reports=failed_reports,
            warnings=warnings,
        )

    def _score(self, report: WorkerReport) -> Chromosome:
        chromosome = Chromosome(report.genes)
        chromosome.evaluate(self.instance)
        return chromosome
