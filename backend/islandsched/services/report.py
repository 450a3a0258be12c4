from __future__ import annotations

from islandsched.schemas.results import AssignmentOut, FitnessOut
from islandsched.services.chromosome import Chromosome
from islandsched.services.constraints import Fitness
from islandsched.services.instance import ProblemInstance


def fitness_out(fitness: Fitness) -> FitnessOut:
    return FitnessOut(
        hard_violations=fitness.hard_violations,
        soft_penalty=round(fitness.soft_penalty, 4),
        feasible=fitness.feasible,
        breakdown={name: round(float(value), 4) for name, value in sorted(fitness.breakdown.items())},
    )


def decode_assignments(chromosome: Chromosome, instance: ProblemInstance) -> list[AssignmentOut]:
    """Turn genes into one readable row per section, ordered by day, period and room."""
    rows: list[AssignmentOut] = []
    for gene in chromosome.genes:
        section = instance.sections[gene.section]
        slot = instance.time_slots[gene.slot]
        rows.append(
            AssignmentOut(
                section_id=section.id,
                course_code=section.course_code,
                slot_id=slot.id,
                day=slot.day,
                period=slot.period,
                room_id=instance.rooms[gene.room].id,
                instructor_id=instance.instructors[gene.instructor].id,
            )
        )
    rows.sort(key=lambda row: (row.day, row.period, row.room_id, row.section_id))
    return rows
