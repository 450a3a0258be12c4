from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ConstraintWeights(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    preferred_slot: float = Field(default=1.0, ge=0.0, le=1000.0, alias="preferredSlot")
    instructor_load: float = Field(default=2.0, ge=0.0, le=1000.0, alias="instructorLoad")
    student_gap: float = Field(default=1.0, ge=0.0, le=1000.0, alias="studentGap")


class RoomPayload(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    name: str | None = Field(default=None, max_length=200)
    capacity: int = Field(ge=1, le=10_000)


class TimeSlotPayload(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    day: int = Field(ge=0, le=6)
    period: int = Field(ge=0, le=48)
    label: str | None = Field(default=None, max_length=100)


class InstructorPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1, max_length=64)
    name: str | None = Field(default=None, max_length=200)
    max_load: int | None = Field(default=None, ge=0, le=1000, alias="maxLoad")


class SectionPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(min_length=1, max_length=64)
    course_code: str = Field(min_length=1, max_length=50, alias="courseCode")
    enrollment: int = Field(default=0, ge=0, le=10_000)
    student_groups: list[str] = Field(default_factory=list, alias="studentGroups")
    instructor_ids: list[str] = Field(default_factory=list, alias="instructorIds")
    preferred_slot_ids: list[str] = Field(default_factory=list, alias="preferredSlotIds")


class ProblemInstancePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sections: list[SectionPayload] = Field(min_length=1)
    rooms: list[RoomPayload] = Field(min_length=1)
    time_slots: list[TimeSlotPayload] = Field(min_length=1, alias="timeSlots")
    instructors: list[InstructorPayload] = Field(min_length=1)
    weights: ConstraintWeights = Field(default_factory=ConstraintWeights)

    @model_validator(mode="after")
    def validate_references(self) -> "ProblemInstancePayload":
        for label, items in (
            ("section", self.sections),
            ("room", self.rooms),
            ("time slot", self.time_slots),
            ("instructor", self.instructors),
        ):
            seen: set[str] = set()
            for item in items:
                if item.id in seen:
                    raise ValueError(f"Duplicate {label} id '{item.id}'")
                seen.add(item.id)

        slot_positions = {(item.day, item.period) for item in self.time_slots}
        if len(slot_positions) != len(self.time_slots):
            raise ValueError("Time slots must have unique (day, period) pairs")

        instructor_ids = {item.id for item in self.instructors}
        slot_ids = {item.id for item in self.time_slots}
        for section in self.sections:
            unknown_instructors = sorted(set(section.instructor_ids) - instructor_ids)
            if unknown_instructors:
                raise ValueError(f"Section '{section.id}' references unknown instructors {unknown_instructors}")
            unknown_slots = sorted(set(section.preferred_slot_ids) - slot_ids)
            if unknown_slots:
                raise ValueError(f"Section '{section.id}' references unknown time slots {unknown_slots}")
        return self


class RandomInstanceRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sections: int = Field(default=40, ge=1, le=2000)
    rooms: int = Field(default=8, ge=1, le=500)
    instructors: int = Field(default=10, ge=1, le=500)
    student_groups: int = Field(default=6, ge=1, le=500, alias="studentGroups")
    days: int = Field(default=5, ge=1, le=7)
    periods_per_day: int = Field(default=8, ge=1, le=24, alias="periodsPerDay")
    seed: int = Field(default=42, ge=0, le=2_000_000_000)
