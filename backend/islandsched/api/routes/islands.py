import logging

from fastapi import APIRouter

from islandsched.schemas.instance import ProblemInstancePayload, RandomInstanceRequest
from islandsched.schemas.results import RunIslandsRequest, RunIslandsResponse
from islandsched.services.instance import build_instance, generate_random_payload
from islandsched.services.report import decode_assignments, fitness_out
from islandsched.services.runner import run_islands

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/run", response_model=RunIslandsResponse)
def run_island_search(payload: RunIslandsRequest) -> RunIslandsResponse:
    instance = build_instance(payload.instance)
    result = run_islands(instance, payload.settings, worker_count=payload.worker_count, backend="thread")
    if not result.fitness.feasible:
        logger.warning(
            "Island run ended with %d hard violation(s) after %d generations",
            result.fitness.hard_violations,
            result.generations,
        )
    return RunIslandsResponse(
        fitness=fitness_out(result.fitness),
        best_rank=result.best_rank,
        stop_reason=result.stop_reason,
        generations=result.generations,
        failed_ranks=result.failed_ranks,
        warnings=result.warnings,
        runtime_ms=result.runtime_ms,
        assignments=decode_assignments(result.best, instance),
        settings_used=payload.settings,
    )


@router.post("/instances/random", response_model=ProblemInstancePayload)
def random_instance(payload: RandomInstanceRequest) -> ProblemInstancePayload:
    return generate_random_payload(
        sections=payload.sections,
        rooms=payload.rooms,
        instructors=payload.instructors,
        student_groups=payload.student_groups,
        days=payload.days,
        periods_per_day=payload.periods_per_day,
        seed=payload.seed,
    )
