from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from islandsched.core.exceptions import ConfigurationError

Topology = Literal["ring", "all-to-all"]
CrossoverMethod = Literal["single_point", "two_point"]


class GASettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    population_size: int = Field(default=100, ge=2, le=5000, alias="populationSize")
    tournament_size: int = Field(default=3, ge=2, le=100, alias="tournamentSize")
    p_crossover: float = Field(default=0.8, ge=0.0, le=1.0, alias="pCrossover")
    p_mutation: float = Field(default=0.05, ge=0.0, le=1.0, alias="pMutation")
    elite_count: int = Field(default=2, ge=0, le=5000, alias="eliteCount")
    generations_per_epoch: int = Field(default=25, ge=1, le=10_000, alias="generationsPerEpoch")
    max_generations: int = Field(default=1000, ge=1, le=1_000_000, alias="maxGenerations")
    stall_threshold: int = Field(default=200, ge=1, le=1_000_000, alias="stallThreshold")
    stop_on_first_feasible: bool = Field(default=False, alias="stopOnFirstFeasible")
    migration_count: int = Field(default=2, ge=0, le=5000, alias="migrationCount")
    topology: Topology = "ring"
    random_seed: int | None = Field(default=None, ge=0, le=2_000_000_000, alias="randomSeed")
    crossover_method: CrossoverMethod = Field(default="single_point", alias="crossoverMethod")

    @model_validator(mode="after")
    def validate_relationships(self) -> "GASettings":
        if self.elite_count > self.population_size:
            raise ValueError("eliteCount cannot exceed populationSize")
        if self.tournament_size > self.population_size:
            raise ValueError("tournamentSize cannot exceed populationSize")
        if self.migration_count > self.population_size:
            raise ValueError("migrationCount cannot exceed populationSize")
        return self


def load_ga_settings(data: GASettings | Mapping[str, Any] | None = None) -> GASettings:
    if data is None:
        return GASettings()
    if isinstance(data, GASettings):
        return data
    try:
        return GASettings.model_validate(dict(data))
    except ValidationError as exc:
        raise ConfigurationError(
            "Invalid genetic algorithm settings",
            details={"errors": exc.errors(include_url=False, include_context=False)},
        ) from exc
