from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
import random
from typing import TYPE_CHECKING

from islandsched.core.exceptions import EvaluationError
from islandsched.services.chromosome import Chromosome, random_init, repair
from islandsched.services.instance import ProblemInstance
from islandsched.services.operators import GeneticOperators

if TYPE_CHECKING:
    from islandsched.services.migration import MigrationEnvelope


class Population:
    def __init__(self, chromosomes: Iterable[Chromosome]) -> None:
        self._members: list[Chromosome] = list(chromosomes)
        self._ranked = False

    @classmethod
    def seeded(
        cls,
        instance: ProblemInstance,
        size: int,
        rng: random.Random,
        seeds: Iterable[Chromosome] = (),
    ) -> Population:
        members = [repair(item.copy(), instance) for item in seeds][:size]
        while len(members) < size:
            members.append(random_init(instance, rng))
        return cls(members)

    def __len__(self) -> int:
        return len(self._members)

    def __iter__(self) -> Iterator[Chromosome]:
        return iter(self._members)

    def __getitem__(self, index: int) -> Chromosome:
        return self._members[index]

    @property
    def members(self) -> tuple[Chromosome, ...]:
        return tuple(self._members)

    @property
    def is_evaluated(self) -> bool:
        return self._ranked

    def evaluate_all(self, instance: ProblemInstance) -> Population:
        for item in self._members:
            item.evaluate(instance)
        # Stable sort: equal fitness keeps insertion order, so elites stay in front.
        self._members.sort(key=lambda item: item.fitness.sort_key())
        self._ranked = True
        return self

    def _require_evaluated(self) -> None:
        if not self._ranked:
            raise EvaluationError("Population must be evaluated before it is ranked or selected from")

    def best(self) -> Chromosome:
        self._require_evaluated()
        return self._members[0]

    def top(self, count: int) -> list[Chromosome]:
        self._require_evaluated()
        return [item.copy() for item in self._members[: max(0, count)]]

    def next_generation(self, operators: GeneticOperators, rng: random.Random) -> Population:
        self._require_evaluated()
        size = len(self._members)
        offspring = operators.elites(self._members)
        while len(offspring) < size:
            parent_a = operators.select(self._members, rng)
            parent_b = operators.select(self._members, rng)
            child_a, child_b = operators.crossover(parent_a, parent_b, rng)
            offspring.append(operators.mutate(child_a, rng))
            if len(offspring) < size:
                offspring.append(operators.mutate(child_b, rng))
        return Population(offspring)

    def replace_worst(self, immigrants: Iterable[Chromosome]) -> Population:
        self._require_evaluated()
        incoming = [item.copy() for item in immigrants]
        if len(incoming) > len(self._members):
            raise EvaluationError(
                "More immigrants than population members",
                details={"immigrants": len(incoming), "size": len(self._members)},
            )
        survivors = [item.copy() for item in self._members[: len(self._members) - len(incoming)]]
        return Population(survivors + incoming)

    def merge_immigrants(
        self,
        envelopes: Mapping[int, MigrationEnvelope],
        instance: ProblemInstance,
        count: int,
    ) -> tuple[Population, list[Chromosome]]:
        """Replace the `count` worst members with the best received immigrants.

        Candidates from all envelopes are ranked by fitness, then source rank,
        then position inside the envelope.
        """
        self._require_evaluated()
        candidates: list[tuple[tuple[int, float], int, int, Chromosome]] = []
        for source in sorted(envelopes):
            for position, item in enumerate(envelopes[source].chromosomes()):
                fitness = item.evaluate(instance)
                candidates.append((fitness.sort_key(), source, position, item))
        candidates.sort(key=lambda entry: entry[:3])
        chosen = [entry[3] for entry in candidates[: max(0, count)]]
        if not chosen:
            return self, []
        return self.replace_worst(chosen), chosen

    def summary(self) -> dict[str, float]:
        self._require_evaluated()
        size = len(self._members)
        return {
            "best_hard": self._members[0].fitness.hard_violations,
            "best_soft": self._members[0].fitness.soft_penalty,
            "mean_hard": sum(item.fitness.hard_violations for item in self._members) / size,
            "mean_soft": sum(item.fitness.soft_penalty for item in self._members) / size,
        }
