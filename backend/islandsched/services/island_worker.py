from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
import logging
import random
from typing import Protocol

from islandsched.core.exceptions import CommunicationError
from islandsched.schemas.settings import GASettings
from islandsched.services.aggregator import AggregateResult, ResultAggregator, WorkerReport
from islandsched.services.chromosome import Chromosome
from islandsched.services.communicator import Communicator
from islandsched.services.consensus import StopDecision, TerminationConsensus, WorkerStatus
from islandsched.services.constraints import Fitness
from islandsched.services.instance import ProblemInstance
from islandsched.services.migration import MigrationCoordinator, MigrationEnvelope
from islandsched.services.operators import GeneticOperators
from islandsched.services.population import Population

logger = logging.getLogger(__name__)

RANK_SEED_STRIDE = 1000


class WorkerPhase(str, Enum):
    INITIALIZING = "initializing"
    EVOLVING = "evolving"
    SYNCHRONIZING = "synchronizing"
    TERMINATING = "terminating"
    DONE = "done"


class CancelSignal(Protocol):
    def is_set(self) -> bool: ...


@dataclass
class WorkerState:
    rank: int
    phase: WorkerPhase = WorkerPhase.INITIALIZING
    generation: int = 0
    round_id: int = 0
    best: Chromosome | None = None
    stall: int = 0
    failed: bool = False
    stop_reason: str | None = None
    transitions: list[tuple[WorkerPhase, WorkerPhase]] = field(default_factory=list)


@dataclass
class WorkerOutcome:
    rank: int
    best: Chromosome
    fitness: Fitness
    generation: int
    rounds: int
    stop_reason: str | None
    failed: bool
    failed_peers: dict[int, str]
    aggregate: AggregateResult | None = None


def worker_random(seed: int | None, rank: int) -> random.Random:
    if seed is None:
        return random.Random()
    return random.Random(seed + rank * RANK_SEED_STRIDE)


class IslandWorker:
    """One island: owns its population and evolves it between synchronization points.

    `step()` runs the handler for the current phase and returns the next one,
    so tests can drive the machine one transition at a time. Only the
    SYNCHRONIZING and TERMINATING handlers talk to other workers.
    """

    def __init__(
        self,
        *,
        instance: ProblemInstance,
        settings: GASettings,
        communicator: Communicator,
        collector_rank: int = 0,
        cancel_event: CancelSignal | None = None,
        seeds: Iterable[Chromosome] = (),
    ) -> None:
        self.instance = instance
        self.settings = settings
        self.communicator = communicator
        self.cancel_event = cancel_event
        self.rng = worker_random(settings.random_seed, communicator.rank)
        self.operators = GeneticOperators(settings, instance)
        self.migration = MigrationCoordinator(communicator, instance, settings.topology)
        self.consensus = TerminationConsensus(communicator, settings)
        self.aggregator = ResultAggregator(communicator, instance, collector_rank)
        self.state = WorkerState(rank=communicator.rank)
        self.population: Population | None = None
        self.aggregate: AggregateResult | None = None
        self._seeds = list(seeds)
        self._handlers: dict[WorkerPhase, Callable[[], WorkerPhase]] = {
            WorkerPhase.INITIALIZING: self._initialize,
            WorkerPhase.EVOLVING: self._evolve,
            WorkerPhase.SYNCHRONIZING: self._synchronize,
            WorkerPhase.TERMINATING: self._terminate,
        }

    @property
    def rank(self) -> int:
        return self.state.rank

    @property
    def done(self) -> bool:
        return self.state.phase == WorkerPhase.DONE

    def step(self) -> WorkerPhase:
        current = self.state.phase
        if current == WorkerPhase.DONE:
            return current
        following = self._handlers[current]()
        self.state.transitions.append((current, following))
        self.state.phase = following
        return following

    def run(self) -> WorkerOutcome:
        while not self.done:
            self.step()
        return self.outcome()

    def outcome(self) -> WorkerOutcome:
        best = self.state.best
        if best is None:
            raise RuntimeError(f"Worker {self.rank} has no result before initialization")
        return WorkerOutcome(
            rank=self.rank,
            best=best,
            fitness=best.fitness,
            generation=self.state.generation,
            rounds=self.state.round_id,
            stop_reason=self.state.stop_reason,
            failed=self.state.failed,
            failed_peers=dict(self.communicator.failed),
            aggregate=self.aggregate,
        )

    def _initialize(self) -> WorkerPhase:
        population = Population.seeded(self.instance, self.settings.population_size, self.rng, self._seeds)
        self.population = population.evaluate_all(self.instance)
        self.state.best = self.population.best().copy()
        self.state.stall = 0
        logger.debug("Worker %d initialized: %r", self.rank, self.state.best)
        return WorkerPhase.EVOLVING

    def _evolve(self) -> WorkerPhase:
        remaining = self.settings.max_generations - self.state.generation
        epoch = min(self.settings.generations_per_epoch, remaining)
        for _ in range(epoch):
            self.population = self.population.next_generation(self.operators, self.rng).evaluate_all(self.instance)
            self.state.generation += 1
            self._observe(self.population.best(), counts_generation=True)
        return WorkerPhase.SYNCHRONIZING

    def _synchronize(self) -> WorkerPhase:
        self.state.round_id += 1
        round_id = self.state.round_id
        try:
            envelope = MigrationEnvelope.seal(self.rank, round_id, self.population.top(self.settings.migration_count))
            received = self.migration.exchange(envelope)
            self.population, immigrants = self.population.merge_immigrants(
                received, self.instance, self.settings.migration_count
            )
            if immigrants:
                self.population = self.population.evaluate_all(self.instance)
                self._observe(self.population.best(), counts_generation=False)
            decision = self.consensus.agree(round_id, self._status())
        except CommunicationError as exc:
            logger.error("Worker %d failed during round %d: %s", self.rank, round_id, exc.message)
            self.state.failed = True
            self.state.stop_reason = "communication_failure"
            return WorkerPhase.TERMINATING

        self._log_round(round_id, received, decision)
        if decision.stop:
            self.state.stop_reason = decision.reason
            return WorkerPhase.TERMINATING
        return WorkerPhase.EVOLVING

    def _terminate(self) -> WorkerPhase:
        report = WorkerReport(
            rank=self.rank,
            genes=self.state.best.genes,
            generation=self.state.generation,
            failed=self.state.failed,
            stop_reason=self.state.stop_reason,
        )
        self.aggregate = self.aggregator.submit(report)
        return WorkerPhase.DONE

    def _observe(self, candidate: Chromosome, *, counts_generation: bool) -> None:
        """Track the best-known chromosome; the stall counter only moves with generations."""
        best = self.state.best
        if best is None or candidate.fitness.is_better_than(best.fitness):
            self.state.best = candidate.copy()
            self.state.stall = 0
        elif counts_generation:
            self.state.stall += 1

    def _status(self) -> WorkerStatus:
        best = self.state.best.fitness
        return WorkerStatus(
            rank=self.rank,
            generation=self.state.generation,
            best_hard=best.hard_violations,
            best_soft=best.soft_penalty,
            stall=self.state.stall,
            cancelled=bool(self.cancel_event is not None and self.cancel_event.is_set()),
        )

    def _log_round(self, round_id: int, received: dict[int, MigrationEnvelope], decision: StopDecision) -> None:
        best = self.state.best.fitness
        summary = self.population.summary()
        logger.info(
            "Worker %d round %d gen %d: hard=%d soft=%.2f mean_hard=%.2f mean_soft=%.2f stall=%d immigrants_from=%s%s",
            self.rank,
            round_id,
            self.state.generation,
            best.hard_violations,
            best.soft_penalty,
            summary["mean_hard"],
            summary["mean_soft"],
            self.state.stall,
            sorted(received),
            f" stop={decision.reason}" if decision.stop else "",
        )
