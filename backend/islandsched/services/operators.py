from __future__ import annotations

from collections.abc import Sequence
import random

from islandsched.core.exceptions import EvaluationError
from islandsched.schemas.settings import GASettings
from islandsched.services.chromosome import Chromosome, random_gene, repair, structural_defects
from islandsched.services.constraints import ViolationLedger
from islandsched.services.instance import ProblemInstance


class GeneticOperators:
    """Selection, crossover, mutation and elitism for one island.

    Every operator draws from the `rng` it is handed; none keeps random state
    of its own, so a fixed seed replays the same search.
    """

    def __init__(self, settings: GASettings, instance: ProblemInstance) -> None:
        self.settings = settings
        self.instance = instance

    def select(self, ranked: Sequence[Chromosome], rng: random.Random) -> Chromosome:
        size = len(ranked)
        if size == 0:
            raise EvaluationError("Cannot select from an empty population")
        tournament = min(self.settings.tournament_size, size)
        contenders = rng.sample(range(size), tournament)
        for index in contenders:
            if ranked[index].fitness is None:
                raise EvaluationError("Tournament contender has not been evaluated", details={"index": index})
        winner = min(contenders, key=lambda index: (ranked[index].fitness.sort_key(), index))
        return ranked[winner]

    def crossover(
        self,
        parent_a: Chromosome,
        parent_b: Chromosome,
        rng: random.Random,
    ) -> tuple[Chromosome, Chromosome]:
        length = len(parent_a.genes)
        if rng.random() >= self.settings.p_crossover or length < 2:
            return parent_a.copy(), parent_b.copy()

        if self.settings.crossover_method == "two_point" and length >= 3:
            start, end = sorted(rng.sample(range(1, length), 2))
        else:
            start, end = rng.randrange(1, length), length

        genes_a = parent_a.genes
        genes_b = parent_b.genes
        child_a = genes_a[:start] + genes_b[start:end] + genes_a[end:]
        child_b = genes_b[:start] + genes_a[start:end] + genes_b[end:]
        return parent_a.with_genes(child_a), parent_b.with_genes(child_b)

    def mutate(self, chromosome: Chromosome, rng: random.Random) -> Chromosome:
        """Redraw each gene with probability pMutation.

        An evaluated, well-formed parent is re-scored gene by gene through a
        ViolationLedger, so the child comes back evaluated.
        """
        genes = list(chromosome.genes)
        moves: list[int] = []
        for index in range(len(genes)):
            if rng.random() < self.settings.p_mutation:
                genes[index] = random_gene(self.instance, index, rng)
                moves.append(index)
        if not moves:
            return repair(chromosome.copy(), self.instance)
        if chromosome.is_evaluated and not structural_defects(chromosome, self.instance):
            ledger = ViolationLedger.from_chromosome(chromosome, self.instance)
            for index in moves:
                ledger.move(index, genes[index])
            return ledger.chromosome()
        return repair(Chromosome(genes), self.instance)

    def elites(self, ranked: Sequence[Chromosome]) -> list[Chromosome]:
        count = min(self.settings.elite_count, len(ranked))
        return [item.copy() for item in ranked[:count]]
