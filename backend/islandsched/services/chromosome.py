from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
import random
from typing import TYPE_CHECKING

from islandsched.services.instance import ProblemInstance

if TYPE_CHECKING:
    from islandsched.services.constraints import Fitness


@dataclass(frozen=True)
class Gene:
    section: int
    slot: int
    room: int
    instructor: int


class Chromosome:
    """A candidate timetable: one gene per section, in section order.

    Genes are an immutable tuple, so copies never alias mutable state. The
    cached fitness is cleared by construction whenever genes change, because
    every change builds a new chromosome.
    """

    __slots__ = ("genes", "_fitness")

    def __init__(self, genes: Iterable[Gene], fitness: Fitness | None = None) -> None:
        self.genes: tuple[Gene, ...] = tuple(genes)
        self._fitness = fitness

    @property
    def fitness(self) -> Fitness | None:
        return self._fitness

    @property
    def is_evaluated(self) -> bool:
        return self._fitness is not None

    def evaluate(self, instance: ProblemInstance) -> Fitness:
        if self._fitness is None:
            from islandsched.services.constraints import evaluate

            self._fitness = evaluate(self, instance)
        return self._fitness

    def copy(self) -> Chromosome:
        return Chromosome(self.genes, self._fitness)

    def with_genes(self, genes: Iterable[Gene]) -> Chromosome:
        return Chromosome(genes)

    def __len__(self) -> int:
        return len(self.genes)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Chromosome):
            return NotImplemented
        return self.genes == other.genes

    def __hash__(self) -> int:
        return hash(self.genes)

    def __repr__(self) -> str:
        if self._fitness is None:
            return f"Chromosome(genes={len(self.genes)}, fitness=?)"
        return (
            f"Chromosome(genes={len(self.genes)}, hard={self._fitness.hard_violations}, "
            f"soft={self._fitness.soft_penalty:.2f})"
        )


def random_gene(instance: ProblemInstance, index: int, rng: random.Random) -> Gene:
    domain = instance.instructor_domains[index]
    return Gene(
        section=index,
        slot=rng.randrange(len(instance.time_slots)),
        room=rng.randrange(len(instance.rooms)),
        instructor=domain[rng.randrange(len(domain))],
    )


def random_init(instance: ProblemInstance, rng: random.Random) -> Chromosome:
    return Chromosome(random_gene(instance, index, rng) for index in range(instance.section_count))


def default_gene(instance: ProblemInstance, index: int) -> Gene:
    return Gene(section=index, slot=0, room=0, instructor=instance.instructor_domains[index][0])


def gene_defects(gene: Gene, index: int, instance: ProblemInstance) -> list[str]:
    defects: list[str] = []
    if gene.section != index:
        defects.append("section")
    if not 0 <= gene.slot < len(instance.time_slots):
        defects.append("slot")
    if not 0 <= gene.room < len(instance.rooms):
        defects.append("room")
    if gene.instructor not in instance.instructor_domains[index]:
        defects.append("instructor")
    return defects


def structural_defects(chromosome: Chromosome, instance: ProblemInstance) -> int:
    genes = chromosome.genes
    count = abs(len(genes) - instance.section_count)
    for index, gene in enumerate(genes[: instance.section_count]):
        count += len(gene_defects(gene, index, instance))
    return count


def _repair_gene(gene: Gene, index: int, instance: ProblemInstance) -> Gene:
    if not gene_defects(gene, index, instance):
        return gene
    domain = instance.instructor_domains[index]
    instructor = gene.instructor if gene.instructor in domain else domain[gene.instructor % len(domain)]
    return Gene(
        section=index,
        slot=gene.slot % len(instance.time_slots),
        room=gene.room % len(instance.rooms),
        instructor=instructor,
    )


def repair(chromosome: Chromosome, instance: ProblemInstance) -> Chromosome:
    """Resolve structurally invalid genes without attempting feasibility.

    A chromosome that is already well formed is returned unchanged, keeping
    its cached fitness.
    """
    genes = chromosome.genes
    changed = len(genes) != instance.section_count
    repaired: list[Gene] = []
    for index in range(instance.section_count):
        if index >= len(genes):
            repaired.append(default_gene(instance, index))
            continue
        fixed = _repair_gene(genes[index], index, instance)
        changed = changed or fixed is not genes[index]
        repaired.append(fixed)
    if not changed:
        return chromosome
    return Chromosome(repaired)
