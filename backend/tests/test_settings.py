import pytest
from pydantic import ValidationError

from islandsched.core.config import Settings
from islandsched.core.exceptions import ConfigurationError
from islandsched.schemas.settings import GASettings, load_ga_settings


def test_defaults_and_camel_case_aliases():
    defaults = load_ga_settings()
    assert defaults == GASettings()
    assert defaults.topology == "ring"
    assert defaults.random_seed is None

    settings = load_ga_settings(
        {
            "populationSize": 40,
            "tournamentSize": 4,
            "pCrossover": 0.9,
            "pMutation": 0.1,
            "eliteCount": 3,
            "generationsPerEpoch": 10,
            "maxGenerations": 200,
            "stallThreshold": 50,
            "stopOnFirstFeasible": True,
            "migrationCount": 5,
            "topology": "all-to-all",
            "randomSeed": 12345,
            "crossoverMethod": "two_point",
        }
    )
    assert settings.population_size == 40
    assert settings.topology == "all-to-all"
    assert settings.crossover_method == "two_point"
    assert settings.model_dump(by_alias=True)["randomSeed"] == 12345
    assert load_ga_settings(settings) is settings


@pytest.mark.parametrize(
    "data",
    [
        {"pCrossover": 1.2},
        {"pMutation": -0.1},
        {"tournamentSize": 1},
        {"populationSize": 1},
        {"topology": "star"},
        {"populationSize": 5, "eliteCount": 6},
        {"populationSize": 5, "tournamentSize": 6},
        {"populationSize": 5, "migrationCount": 6},
    ],
)
def test_invalid_settings_raise_configuration_error(data):
    with pytest.raises(ConfigurationError) as exc_info:
        load_ga_settings(data)
    assert exc_info.value.status_code == 422
    assert exc_info.value.details["errors"]


def test_search_settings_are_immutable():
    settings = GASettings()
    with pytest.raises(ValidationError):
        settings.population_size = 5


def test_runtime_settings_read_prefixed_environment(monkeypatch):
    monkeypatch.setenv("ISLANDSCHED_EXCHANGE_RETRY_ATTEMPTS", "5")
    monkeypatch.setenv("ISLANDSCHED_LOG_LEVEL", "debug")
    monkeypatch.setenv("ISLANDSCHED_CORS_ORIGINS", "http://a.test, http://b.test")
    settings = Settings()
    assert settings.exchange_retry_attempts == 5
    assert settings.log_level == "DEBUG"
    assert settings.cors_origins == ["http://a.test", "http://b.test"]


def test_runtime_settings_accept_json_origins(monkeypatch):
    monkeypatch.setenv("ISLANDSCHED_CORS_ORIGINS", '["http://c.test"]')
    assert Settings().cors_origins == ["http://c.test"]
