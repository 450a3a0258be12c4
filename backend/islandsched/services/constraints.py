from __future__ import annotations

from collections import Counter, defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from islandsched.core.exceptions import EvaluationError
from islandsched.services.chromosome import Chromosome, Gene, gene_defects
from islandsched.services.instance import ProblemInstance

HARD_CONSTRAINTS = ("room_conflict", "instructor_conflict", "student_group_conflict", "room_capacity")
SOFT_CONSTRAINTS = ("preferred_slot", "instructor_load", "student_gap")


@dataclass(frozen=True)
class Fitness:
    hard_violations: int
    soft_penalty: float
    breakdown: dict[str, float] = field(default_factory=dict, compare=False, hash=False)

    @property
    def feasible(self) -> bool:
        return self.hard_violations == 0

    def sort_key(self) -> tuple[int, float]:
        return (self.hard_violations, self.soft_penalty)

    def is_better_than(self, other: Fitness) -> bool:
        return self.sort_key() < other.sort_key()


def _require_well_formed(genes: Sequence[Gene], instance: ProblemInstance) -> None:
    if len(genes) != instance.section_count:
        raise EvaluationError(
            "Chromosome length does not match the number of sections",
            details={"genes": len(genes), "sections": instance.section_count},
        )
    for index, gene in enumerate(genes):
        defects = gene_defects(gene, index, instance)
        if defects:
            raise EvaluationError(
                f"Gene {index} is malformed for this instance",
                details={"index": index, "fields": defects},
            )


def _gap_count(periods: Iterable[int]) -> int:
    occupied = set(periods)
    if not occupied:
        return 0
    return max(occupied) - min(occupied) + 1 - len(occupied)


def _load_excess(instance: ProblemInstance, instructor: int, load: int) -> int:
    return max(0, load - instance.load_targets[instructor])


def _compose(instance: ProblemInstance, counts: dict[str, int]) -> Fitness:
    weights = instance.weights
    penalties = {
        "preferred_slot": weights.preferred_slot * counts["preferred_slot"],
        "instructor_load": weights.instructor_load * counts["instructor_load"],
        "student_gap": weights.student_gap * counts["student_gap"],
    }
    breakdown: dict[str, float] = {name: float(counts[name]) for name in HARD_CONSTRAINTS}
    breakdown.update(penalties)
    return Fitness(
        hard_violations=sum(counts[name] for name in HARD_CONSTRAINTS),
        soft_penalty=sum(penalties[name] for name in SOFT_CONSTRAINTS),
        breakdown=breakdown,
    )


def _clashes(counter: Counter) -> int:
    return sum(count - 1 for count in counter.values() if count > 1)


def evaluate(chromosome: Chromosome | Sequence[Gene], instance: ProblemInstance) -> Fitness:
    """Full recompute of hard violations and weighted soft penalty."""
    genes = chromosome.genes if isinstance(chromosome, Chromosome) else tuple(chromosome)
    _require_well_formed(genes, instance)

    room_occ: Counter = Counter()
    instructor_occ: Counter = Counter()
    group_occ: Counter = Counter()
    loads: Counter = Counter()
    group_day_periods: dict[tuple[str, int], set[int]] = defaultdict(set)
    capacity = 0
    preferred = 0

    for gene in genes:
        section = instance.sections[gene.section]
        slot = instance.time_slots[gene.slot]
        room_occ[(gene.slot, gene.room)] += 1
        instructor_occ[(gene.slot, gene.instructor)] += 1
        loads[gene.instructor] += 1
        for group in section.student_groups:
            group_occ[(gene.slot, group)] += 1
            group_day_periods[(group, slot.day)].add(slot.period)
        if section.enrollment > instance.rooms[gene.room].capacity:
            capacity += 1
        if section.preferred_slots and gene.slot not in section.preferred_slots:
            preferred += 1

    counts = {
        "room_conflict": _clashes(room_occ),
        "instructor_conflict": _clashes(instructor_occ),
        "student_group_conflict": _clashes(group_occ),
        "room_capacity": capacity,
        "preferred_slot": preferred,
        "instructor_load": sum(_load_excess(instance, index, load) for index, load in loads.items()),
        "student_gap": sum(_gap_count(periods) for periods in group_day_periods.values()),
    }
    return _compose(instance, counts)


class ViolationLedger:
    """Running violation counts that can be updated one gene at a time.

    `move` touches only the occupancy keys of the old and new gene, so a
    localized mutation is re-scored without a full scan. The result always
    equals `evaluate` on the current genes.
    """

    def __init__(self, instance: ProblemInstance, genes: Sequence[Gene]) -> None:
        _require_well_formed(genes, instance)
        self.instance = instance
        self.genes: list[Gene] = list(genes)
        self._room: Counter = Counter()
        self._instructor: Counter = Counter()
        self._group: Counter = Counter()
        self._load: Counter = Counter()
        self._periods: dict[tuple[str, int], Counter] = defaultdict(Counter)
        self._counts: dict[str, int] = dict.fromkeys(HARD_CONSTRAINTS + SOFT_CONSTRAINTS, 0)
        for gene in self.genes:
            self._apply(gene, 1)

    @classmethod
    def from_chromosome(cls, chromosome: Chromosome, instance: ProblemInstance) -> ViolationLedger:
        return cls(instance, chromosome.genes)

    @staticmethod
    def _occupy(counter: Counter, key, sign: int) -> int:
        before = counter[key]
        after = before + sign
        if after:
            counter[key] = after
        else:
            del counter[key]
        return max(after - 1, 0) - max(before - 1, 0)

    def _apply(self, gene: Gene, sign: int) -> None:
        instance = self.instance
        counts = self._counts
        section = instance.sections[gene.section]
        slot = instance.time_slots[gene.slot]

        counts["room_conflict"] += self._occupy(self._room, (gene.slot, gene.room), sign)
        counts["instructor_conflict"] += self._occupy(self._instructor, (gene.slot, gene.instructor), sign)
        for group in section.student_groups:
            counts["student_group_conflict"] += self._occupy(self._group, (gene.slot, group), sign)
            periods = self._periods[(group, slot.day)]
            gaps_before = _gap_count(periods)
            self._occupy(periods, slot.period, sign)
            counts["student_gap"] += _gap_count(periods) - gaps_before

        if section.enrollment > instance.rooms[gene.room].capacity:
            counts["room_capacity"] += sign
        if section.preferred_slots and gene.slot not in section.preferred_slots:
            counts["preferred_slot"] += sign

        excess_before = _load_excess(instance, gene.instructor, self._load[gene.instructor])
        self._occupy(self._load, gene.instructor, sign)
        counts["instructor_load"] += _load_excess(instance, gene.instructor, self._load[gene.instructor]) - excess_before

    def move(self, index: int, gene: Gene) -> Fitness:
        defects = gene_defects(gene, index, self.instance)
        if defects:
            raise EvaluationError(
                f"Gene {index} is malformed for this instance",
                details={"index": index, "fields": defects},
            )
        self._apply(self.genes[index], -1)
        self.genes[index] = gene
        self._apply(gene, 1)
        return self.fitness()

    def fitness(self) -> Fitness:
        return _compose(self.instance, self._counts)

    def chromosome(self) -> Chromosome:
        return Chromosome(self.genes, self.fitness())
