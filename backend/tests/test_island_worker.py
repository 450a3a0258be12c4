import logging
import threading

import pytest

from islandsched.core.exceptions import EvaluationError
from islandsched.schemas.settings import GASettings
from islandsched.services.chromosome import Chromosome
from islandsched.services.communicator import Communicator
from islandsched.services.island_worker import IslandWorker, WorkerPhase, worker_random
from islandsched.services.transport import local_transports


def _solo_worker(instance, settings, **kwargs):
    communicator = Communicator(local_transports(1)[0], timeout=0.5, retry_attempts=1, retry_backoff=0)
    return IslandWorker(instance=instance, settings=settings, communicator=communicator, **kwargs)


def test_worker_random_is_offset_per_rank():
    assert worker_random(7, 2).random() == worker_random(7, 2).random()
    assert worker_random(7, 0).random() != worker_random(7, 1).random()
    assert worker_random(7, 1).random() == worker_random(1007, 0).random()


def test_state_machine_transitions(small_instance):
    settings = GASettings(population_size=6, generations_per_epoch=4, max_generations=8, random_seed=1)
    worker = _solo_worker(small_instance, settings)
    assert worker.state.phase == WorkerPhase.INITIALIZING

    assert worker.step() == WorkerPhase.EVOLVING
    assert worker.population.is_evaluated
    assert worker.step() == WorkerPhase.SYNCHRONIZING
    assert worker.state.generation == 4
    assert worker.step() == WorkerPhase.EVOLVING
    assert worker.state.round_id == 1

    outcome = worker.run()
    assert worker.state.transitions == [
        (WorkerPhase.INITIALIZING, WorkerPhase.EVOLVING),
        (WorkerPhase.EVOLVING, WorkerPhase.SYNCHRONIZING),
        (WorkerPhase.SYNCHRONIZING, WorkerPhase.EVOLVING),
        (WorkerPhase.EVOLVING, WorkerPhase.SYNCHRONIZING),
        (WorkerPhase.SYNCHRONIZING, WorkerPhase.TERMINATING),
        (WorkerPhase.TERMINATING, WorkerPhase.DONE),
    ]
    assert outcome.generation == 8
    assert outcome.rounds == 2
    assert outcome.stop_reason == "max_generations"
    assert outcome.aggregate is not None
    assert outcome.aggregate.best_rank == 0
    assert worker.step() == WorkerPhase.DONE


def test_last_epoch_is_shortened_to_the_generation_cap(small_instance):
    settings = GASettings(population_size=6, generations_per_epoch=3, max_generations=7, stall_threshold=1000)
    outcome = _solo_worker(small_instance, settings).run()
    assert outcome.generation == 7
    assert outcome.rounds == 3


def test_pure_elitism_keeps_population_identical(small_instance):
    settings = GASettings(
        population_size=8,
        elite_count=8,
        p_crossover=0.0,
        p_mutation=0.0,
        generations_per_epoch=5,
        max_generations=30,
        stall_threshold=1000,
        random_seed=4,
    )
    worker = _solo_worker(small_instance, settings)
    worker.step()
    initial = worker.population.members
    while not worker.done:
        worker.step()
        assert worker.population.members == initial
    assert worker.state.stall == 30


def test_stall_threshold_stops_the_worker(small_instance):
    settings = GASettings(
        population_size=6,
        elite_count=6,
        p_crossover=0.0,
        p_mutation=0.0,
        generations_per_epoch=5,
        max_generations=500,
        stall_threshold=5,
    )
    outcome = _solo_worker(small_instance, settings).run()
    assert outcome.stop_reason == "stalled"
    assert outcome.generation == 10


def test_cancellation_is_seen_at_the_next_synchronization(small_instance):
    cancel = threading.Event()
    cancel.set()
    settings = GASettings(population_size=6, generations_per_epoch=2, max_generations=100)
    outcome = _solo_worker(small_instance, settings, cancel_event=cancel).run()
    assert outcome.stop_reason == "cancelled"
    assert outcome.generation == 2


def test_best_known_never_gets_worse(small_instance):
    settings = GASettings(population_size=10, generations_per_epoch=1, max_generations=12, random_seed=9)
    worker = _solo_worker(small_instance, settings)
    history = []
    while not worker.done:
        worker.step()
        history.append(worker.state.best.fitness.sort_key())
    assert history == sorted(history, reverse=True)


def test_evaluation_errors_are_fatal(small_instance, monkeypatch):
    settings = GASettings(population_size=6, generations_per_epoch=2, max_generations=10)
    worker = _solo_worker(small_instance, settings)
    monkeypatch.setattr(worker.operators, "mutate", lambda chromosome, rng: Chromosome(chromosome.genes[:-1]))
    with pytest.raises(EvaluationError):
        worker.run()
    assert worker.state.phase == WorkerPhase.EVOLVING


def test_each_round_logs_best_and_population_mean(small_instance, caplog):
    settings = GASettings(population_size=6, generations_per_epoch=3, max_generations=6, random_seed=2)
    worker = _solo_worker(small_instance, settings)
    with caplog.at_level(logging.INFO, logger="islandsched.services.island_worker"):
        worker.run()
    rounds = [record.getMessage() for record in caplog.records if " round " in record.getMessage()]
    assert len(rounds) == 2
    assert all("mean_hard=" in message and "mean_soft=" in message for message in rounds)
    assert rounds[-1].endswith("stop=max_generations")
