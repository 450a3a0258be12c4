from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import math
import random
from typing import Any

from pydantic import ValidationError

from islandsched.core.exceptions import ConfigurationError
from islandsched.schemas.instance import (
    ConstraintWeights,
    InstructorPayload,
    ProblemInstancePayload,
    RoomPayload,
    SectionPayload,
    TimeSlotPayload,
)

SUBJECTS = ("Math", "Physics", "Chemistry", "Biology", "History", "English", "CS", "Art")


@dataclass(frozen=True)
class Room:
    id: str
    name: str
    capacity: int


@dataclass(frozen=True)
class TimeSlot:
    id: str
    day: int
    period: int
    label: str


@dataclass(frozen=True)
class Instructor:
    id: str
    name: str
    max_load: int | None = None


@dataclass(frozen=True)
class Section:
    id: str
    course_code: str
    enrollment: int
    student_groups: tuple[str, ...]
    instructors: tuple[int, ...]
    preferred_slots: frozenset[int]


@dataclass(frozen=True)
class ProblemInstance:
    """Read-only problem definition shared by every island."""

    sections: tuple[Section, ...]
    rooms: tuple[Room, ...]
    time_slots: tuple[TimeSlot, ...]
    instructors: tuple[Instructor, ...]
    weights: ConstraintWeights
    instructor_domains: tuple[tuple[int, ...], ...]
    load_targets: tuple[int, ...]

    @property
    def section_count(self) -> int:
        return len(self.sections)

    def describe(self) -> str:
        return (
            f"ProblemInstance(sections={len(self.sections)}, rooms={len(self.rooms)}, "
            f"slots={len(self.time_slots)}, instructors={len(self.instructors)})"
        )


def _default_slot_label(day: int, period: int) -> str:
    days = ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun")
    return f"{days[day]} P{period + 1}"


def build_instance(payload: ProblemInstancePayload | Mapping[str, Any]) -> ProblemInstance:
    if not isinstance(payload, ProblemInstancePayload):
        try:
            payload = ProblemInstancePayload.model_validate(dict(payload))
        except ValidationError as exc:
            raise ConfigurationError(
                "Invalid problem instance",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

    instructor_index = {item.id: index for index, item in enumerate(payload.instructors)}
    slot_index = {item.id: index for index, item in enumerate(payload.time_slots)}

    rooms = tuple(Room(id=item.id, name=item.name or item.id, capacity=item.capacity) for item in payload.rooms)
    time_slots = tuple(
        TimeSlot(
            id=item.id,
            day=item.day,
            period=item.period,
            label=item.label or _default_slot_label(item.day, item.period),
        )
        for item in payload.time_slots
    )
    instructors = tuple(
        Instructor(id=item.id, name=item.name or item.id, max_load=item.max_load) for item in payload.instructors
    )

    sections: list[Section] = []
    for item in payload.sections:
        eligible = tuple(dict.fromkeys(instructor_index[value] for value in item.instructor_ids))
        sections.append(
            Section(
                id=item.id,
                course_code=item.course_code,
                enrollment=item.enrollment,
                student_groups=tuple(dict.fromkeys(group.strip() for group in item.student_groups if group.strip())),
                instructors=eligible,
                preferred_slots=frozenset(slot_index[value] for value in item.preferred_slot_ids),
            )
        )

    all_instructors = tuple(range(len(instructors)))
    instructor_domains = tuple(section.instructors or all_instructors for section in sections)
    balanced_load = math.ceil(len(sections) / len(instructors))
    load_targets = tuple(
        item.max_load if item.max_load is not None else balanced_load for item in instructors
    )

    return ProblemInstance(
        sections=tuple(sections),
        rooms=rooms,
        time_slots=time_slots,
        instructors=instructors,
        weights=payload.weights,
        instructor_domains=instructor_domains,
        load_targets=load_targets,
    )


def generate_random_payload(
    *,
    sections: int = 40,
    rooms: int = 8,
    instructors: int = 10,
    student_groups: int = 6,
    days: int = 5,
    periods_per_day: int = 8,
    seed: int = 42,
    weights: ConstraintWeights | None = None,
) -> ProblemInstancePayload:
    """Build a seeded benchmark instance: one instructor and one student group per section."""
    rng = random.Random(seed)
    room_items = [
        RoomPayload(id=f"R{index}", name=f"Room {index}", capacity=20 + rng.randrange(31))
        for index in range(rooms)
    ]
    slot_items = [
        TimeSlotPayload(id=f"D{day}P{period}", day=day, period=period, label=_default_slot_label(day, period))
        for day in range(days)
        for period in range(periods_per_day)
    ]
    instructor_items = [InstructorPayload(id=f"T{index}", name=f"Instructor {index}") for index in range(instructors)]
    section_items = []
    for index in range(sections):
        subject = SUBJECTS[rng.randrange(len(SUBJECTS))]
        instructor = rng.randrange(instructors)
        group = rng.randrange(student_groups)
        section_items.append(
            SectionPayload(
                id=f"C{index}",
                course_code=subject,
                enrollment=15 + rng.randrange(26),
                student_groups=[f"G{group}"],
                instructor_ids=[f"T{instructor}"],
            )
        )
    return ProblemInstancePayload(
        sections=section_items,
        rooms=room_items,
        time_slots=slot_items,
        instructors=instructor_items,
        weights=weights or ConstraintWeights(),
    )
