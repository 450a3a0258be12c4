from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from islandsched.schemas.instance import ProblemInstancePayload
from islandsched.schemas.settings import GASettings


class FitnessOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    hard_violations: int = Field(alias="hardViolations")
    soft_penalty: float = Field(alias="softPenalty")
    feasible: bool
    breakdown: dict[str, float] = Field(default_factory=dict)


class AssignmentOut(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    section_id: str = Field(alias="sectionId")
    course_code: str = Field(alias="courseCode")
    slot_id: str = Field(alias="slotId")
    day: int
    period: int
    room_id: str = Field(alias="roomId")
    instructor_id: str = Field(alias="instructorId")


class RunIslandsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    instance: ProblemInstancePayload
    settings: GASettings = Field(default_factory=GASettings)
    worker_count: int = Field(default=2, ge=1, le=64, alias="workerCount")


class RunIslandsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    fitness: FitnessOut
    best_rank: int = Field(alias="bestRank")
    stop_reason: str | None = Field(default=None, alias="stopReason")
    generations: int
    failed_ranks: list[int] = Field(default_factory=list, alias="failedRanks")
    warnings: list[str] = Field(default_factory=list)
    runtime_ms: int = Field(alias="runtimeMs")
    assignments: list[AssignmentOut]
    settings_used: GASettings = Field(alias="settingsUsed")
