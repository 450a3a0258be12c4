from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
import logging
import multiprocessing
import queue
import threading
import time
from typing import Any, Literal

from islandsched.core.config import Settings, get_settings
from islandsched.core.exceptions import AppError, ConfigurationError
from islandsched.core.log import configure_logging
from islandsched.schemas.instance import ProblemInstancePayload
from islandsched.schemas.settings import GASettings, load_ga_settings
from islandsched.services.chromosome import Chromosome
from islandsched.services.communicator import Communicator
from islandsched.services.constraints import Fitness
from islandsched.services.instance import ProblemInstance, build_instance
from islandsched.services.island_worker import CancelSignal, IslandWorker, WorkerOutcome
from islandsched.services.transport import QueueTransport, Transport, local_transports

logger = logging.getLogger(__name__)

Backend = Literal["thread", "process"]
TransportFactory = Callable[[int], Sequence[Transport]]

RESULT_POLL_SECONDS = 0.2
JOIN_POLL_SECONDS = 0.1


@dataclass
class RunResult:
    best: Chromosome
    fitness: Fitness
    best_rank: int
    stop_reason: str | None
    generations: int
    failed_ranks: list[int]
    contributions: dict[int, Fitness]
    warnings: list[str] = field(default_factory=list)
    runtime_ms: int = 0
    outcomes: dict[int, WorkerOutcome] = field(default_factory=dict)


class _AnySignal:
    """Set as soon as any of the wrapped events is set."""

    def __init__(self, *events: CancelSignal | None) -> None:
        self._events = [event for event in events if event is not None]

    def is_set(self) -> bool:
        return any(event.is_set() for event in self._events)


def _run_worker(
    rank: int,
    instance: ProblemInstance,
    settings: GASettings,
    runtime: Settings,
    transport: Transport,
    cancel: CancelSignal,
    seeds: Sequence[Chromosome],
) -> WorkerOutcome:
    communicator = Communicator.from_settings(transport, runtime)
    worker = IslandWorker(
        instance=instance,
        settings=settings,
        communicator=communicator,
        collector_rank=runtime.collector_rank,
        cancel_event=cancel,
        seeds=seeds,
    )
    try:
        return worker.run()
    except Exception:
        logger.exception("Worker %d aborted in phase %s", rank, worker.state.phase.value)
        raise
    finally:
        transport.close()


def _process_main(
    rank: int,
    instance: ProblemInstance,
    settings: GASettings,
    runtime: Settings,
    inboxes: Sequence[Any],
    results: Any,
    abort: Any,
    seeds: Sequence[Chromosome],
) -> None:
    configure_logging(runtime.log_level)
    transport = QueueTransport(rank, inboxes)
    try:
        outcome = _run_worker(rank, instance, settings, runtime, transport, abort, seeds)
    except Exception as exc:
        abort.set()
        error = exc if isinstance(exc, AppError) else RuntimeError(f"{type(exc).__name__}: {exc}")
        results.put(("error", rank, error))
        return
    results.put(("ok", rank, outcome))


def _resolve_instance(instance: ProblemInstance | ProblemInstancePayload | Mapping[str, Any]) -> ProblemInstance:
    if isinstance(instance, ProblemInstance):
        return instance
    return build_instance(instance)


def _validate_run(worker_count: int, backend: str, runtime: Settings, instance: ProblemInstance) -> None:
    if worker_count < 1:
        raise ConfigurationError("workerCount must be at least 1", details={"workerCount": worker_count})
    if worker_count > runtime.max_workers:
        raise ConfigurationError(
            f"workerCount cannot exceed {runtime.max_workers}",
            details={"workerCount": worker_count, "maxWorkers": runtime.max_workers},
        )
    if runtime.collector_rank >= worker_count:
        raise ConfigurationError(
            "Collector rank must be one of the worker ranks",
            details={"collectorRank": runtime.collector_rank, "workerCount": worker_count},
        )
    if backend not in ("thread", "process"):
        raise ConfigurationError(f"Unknown execution backend '{backend}'", details={"backend": backend})
    if instance.section_count == 0:
        raise ConfigurationError("Problem instance has no sections to schedule")


def run_islands(
    instance: ProblemInstance | ProblemInstancePayload | Mapping[str, Any],
    settings: GASettings | Mapping[str, Any] | None = None,
    *,
    worker_count: int = 1,
    backend: Backend = "thread",
    runtime: Settings | None = None,
    cancel_event: CancelSignal | None = None,
    transport_factory: TransportFactory | None = None,
    seeds: Iterable[Chromosome] = (),
) -> RunResult:
    """Run one island search to completion and return the collector's aggregate.

    Configuration problems raise ConfigurationError before any worker starts.
    A fatal worker error stops the other workers at their next
    synchronization point and is re-raised here once every worker has ended.
    """
    ga_settings = load_ga_settings(settings)
    runtime = runtime or get_settings()
    problem = _resolve_instance(instance)
    _validate_run(worker_count, backend, runtime, problem)
    seed_list = list(seeds)

    logger.info(
        "Starting island run: %d %s worker(s), %s, topology=%s, maxGenerations=%d",
        worker_count,
        backend,
        problem.describe(),
        ga_settings.topology,
        ga_settings.max_generations,
    )
    started = time.perf_counter()
    if backend == "process":
        if transport_factory is not None:
            raise ConfigurationError("Custom transports are only supported by the thread backend")
        outcomes, errors = _run_processes(problem, ga_settings, runtime, worker_count, cancel_event, seed_list)
    else:
        outcomes, errors = _run_threads(
            problem, ga_settings, runtime, worker_count, cancel_event, transport_factory, seed_list
        )
    runtime_ms = int((time.perf_counter() - started) * 1000)

    if errors:
        rank = min(errors)
        logger.error("Island run aborted by worker %d after %d ms", rank, runtime_ms)
        raise errors[rank]
    return _build_result(outcomes, runtime.collector_rank, runtime_ms)


def _run_threads(
    instance: ProblemInstance,
    settings: GASettings,
    runtime: Settings,
    worker_count: int,
    cancel_event: CancelSignal | None,
    transport_factory: TransportFactory | None,
    seeds: Sequence[Chromosome],
) -> tuple[dict[int, WorkerOutcome], dict[int, BaseException]]:
    transports = list(transport_factory(worker_count) if transport_factory else local_transports(worker_count))
    if len(transports) != worker_count:
        raise ConfigurationError(
            "Transport factory returned the wrong number of transports",
            details={"expected": worker_count, "received": len(transports)},
        )
    abort = threading.Event()
    cancel = _AnySignal(cancel_event, abort)
    outcomes: dict[int, WorkerOutcome] = {}
    errors: dict[int, BaseException] = {}
    with ThreadPoolExecutor(max_workers=worker_count, thread_name_prefix="island") as executor:
        futures = {
            executor.submit(_run_worker, rank, instance, settings, runtime, transports[rank], cancel, seeds): rank
            for rank in range(worker_count)
        }
        for future in as_completed(futures):
            rank = futures[future]
            try:
                outcomes[rank] = future.result()
            except Exception as exc:
                errors[rank] = exc
                abort.set()
    return outcomes, errors


def _run_processes(
    instance: ProblemInstance,
    settings: GASettings,
    runtime: Settings,
    worker_count: int,
    cancel_event: CancelSignal | None,
    seeds: Sequence[Chromosome],
) -> tuple[dict[int, WorkerOutcome], dict[int, BaseException]]:
    context = multiprocessing.get_context(runtime.process_start_method)
    inboxes = [context.Queue() for _ in range(worker_count)]
    results = context.Queue()
    abort = context.Event()
    processes = [
        context.Process(
            target=_process_main,
            args=(rank, instance, settings, runtime, inboxes, results, abort, seeds),
            name=f"island-{rank}",
        )
        for rank in range(worker_count)
    ]
    for process in processes:
        process.start()

    outcomes: dict[int, WorkerOutcome] = {}
    errors: dict[int, BaseException] = {}
    try:
        while len(outcomes) + len(errors) < worker_count:
            if cancel_event is not None and cancel_event.is_set():
                abort.set()
            try:
                status, rank, value = results.get(timeout=RESULT_POLL_SECONDS)
            except queue.Empty:
                for rank, process in enumerate(processes):
                    finished = rank in outcomes or rank in errors
                    if not finished and process.exitcode not in (None, 0):
                        errors[rank] = RuntimeError(f"Worker process {rank} exited with code {process.exitcode}")
                        abort.set()
                continue
            if status == "ok":
                outcomes[rank] = value
            else:
                errors[rank] = value
                abort.set()
    finally:
        # Messages nobody read keep a child's queue feeder alive; drain them so every child can exit.
        while any(process.is_alive() for process in processes):
            for inbox in inboxes:
                _drain(inbox)
            for process in processes:
                process.join(timeout=JOIN_POLL_SECONDS)
        for inbox in [*inboxes, results]:
            inbox.close()
    return outcomes, errors


def _drain(inbox: Any) -> None:
    while True:
        try:
            inbox.get_nowait()
        except queue.Empty:
            return


def _pick_collector(outcomes: Mapping[int, WorkerOutcome], collector_rank: int) -> WorkerOutcome:
    """The outcome that carries the aggregate; healthy workers win over failed ones."""
    candidates = [outcome for outcome in outcomes.values() if outcome.aggregate is not None]
    if not candidates:
        raise RuntimeError(f"No worker aggregated results (configured collector rank {collector_rank})")
    return min(candidates, key=lambda outcome: (outcome.failed, outcome.rank != collector_rank, outcome.rank))


def _build_result(outcomes: Mapping[int, WorkerOutcome], collector_rank: int, runtime_ms: int) -> RunResult:
    collector = _pick_collector(outcomes, collector_rank)
    aggregate = collector.aggregate
    if collector.rank != collector_rank:
        logger.warning("Rank %d collected results in place of rank %d", collector.rank, collector_rank)
    failed = set(aggregate.failed_ranks) | {outcome.rank for outcome in outcomes.values() if outcome.failed}
    result = RunResult(
        best=aggregate.best,
        fitness=aggregate.fitness,
        best_rank=aggregate.best_rank,
        stop_reason=collector.stop_reason,
        generations=max(outcome.generation for outcome in outcomes.values()),
        failed_ranks=sorted(failed),
        contributions=dict(aggregate.contributions),
        warnings=list(aggregate.warnings),
        runtime_ms=runtime_ms,
        outcomes=dict(sorted(outcomes.items())),
    )
    logger.info(
        "Island run finished in %d ms: best rank %d hard=%d soft=%.2f stop=%s failed=%s",
        runtime_ms,
        result.best_rank,
        result.fitness.hard_violations,
        result.fitness.soft_penalty,
        result.stop_reason,
        result.failed_ranks,
    )
    return result
