from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
import random

import pytest

from islandsched.core.exceptions import CommunicationError
from islandsched.services.communicator import Communicator
from islandsched.services.migration import MIGRATION_KIND, MigrationCoordinator, MigrationEnvelope, ring_neighbours
from islandsched.services.population import Population
from islandsched.services.transport import local_transports


def _communicators(count, timeout=2.0):
    return [
        Communicator(transport, timeout=timeout, retry_attempts=2, retry_backoff=0, sleep=lambda _: None)
        for transport in local_transports(count)
    ]


def test_ring_neighbours_skip_missing_ranks():
    assert ring_neighbours(0, [0, 1, 2]) == (1, 2)
    assert ring_neighbours(2, [0, 1, 2]) == (0, 1)
    assert ring_neighbours(3, [0, 3, 5]) == (5, 0)
    assert ring_neighbours(0, [0]) == (None, None)


def test_envelope_verification(small_instance, rng):
    population = Population.seeded(small_instance, 4, rng).evaluate_all(small_instance)
    envelope = MigrationEnvelope.seal(1, 2, population.top(2))
    envelope.verify(small_instance)
    assert len(envelope) == 2

    tampered = replace(envelope, genes=envelope.genes[:1])
    with pytest.raises(CommunicationError):
        tampered.verify(small_instance)

    truncated = MigrationEnvelope.seal(1, 2, [population.best().with_genes(population.best().genes[:-1])])
    with pytest.raises(CommunicationError):
        truncated.verify(small_instance)


def test_all_to_all_exchange_moves_exactly_m_immigrants(small_instance):
    count, migrants, size = 3, 2, 8
    communicators = _communicators(count)
    populations = [
        Population.seeded(small_instance, size, random.Random(100 + rank)).evaluate_all(small_instance)
        for rank in range(count)
    ]
    envelopes = [MigrationEnvelope.seal(rank, 1, populations[rank].top(migrants)) for rank in range(count)]

    def exchange(rank):
        coordinator = MigrationCoordinator(communicators[rank], small_instance, "all-to-all")
        received = coordinator.exchange(envelopes[rank])
        return received, populations[rank].merge_immigrants(received, small_instance, migrants)

    with ThreadPoolExecutor(max_workers=count) as executor:
        results = list(executor.map(exchange, range(count)))

    for rank, (received, (merged, chosen)) in enumerate(results):
        assert sorted(received) == [peer for peer in range(count) if peer != rank]
        for peer, envelope in received.items():
            assert envelope.genes == envelopes[peer].genes
        assert len(merged) == size
        assert len(chosen) == migrants
        assert list(merged.members[: size - migrants]) == list(populations[rank].members[: size - migrants])
        sent = [genes for peer in received for genes in envelopes[peer].genes]
        for immigrant in chosen:
            assert immigrant.genes in sent


def test_ring_exchange_receives_from_previous_rank(small_instance, rng):
    count = 3
    communicators = _communicators(count)
    population = Population.seeded(small_instance, 4, rng).evaluate_all(small_instance)

    def exchange(rank):
        coordinator = MigrationCoordinator(communicators[rank], small_instance)
        return coordinator.exchange(MigrationEnvelope.seal(rank, 1, population.top(1)))

    with ThreadPoolExecutor(max_workers=count) as executor:
        results = list(executor.map(exchange, range(count)))
    assert [sorted(received) for received in results] == [[2], [0], [1]]


def test_single_worker_exchange_is_a_no_op(small_instance, rng):
    communicator = _communicators(1)[0]
    coordinator = MigrationCoordinator(communicator, small_instance)
    population = Population.seeded(small_instance, 4, rng).evaluate_all(small_instance)
    assert coordinator.peers() == ([], [])
    assert coordinator.exchange(MigrationEnvelope.seal(0, 1, population.top(2))) == {}


def test_malformed_envelope_marks_sender_failed(small_instance):
    sender, receiver = _communicators(2, timeout=0.05)
    sender.send(1, MIGRATION_KIND, 1, payload={"not": "an envelope"})
    coordinator = MigrationCoordinator(receiver, small_instance)
    received = coordinator.exchange(MigrationEnvelope.seal(1, 1, []))
    assert received == {}
    assert 0 in receiver.failed
    assert coordinator.peers() == ([], [])
