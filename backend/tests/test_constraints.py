import random

import pytest

from islandsched.core.exceptions import EvaluationError
from islandsched.services.chromosome import Chromosome, Gene, random_gene, random_init
from islandsched.services.constraints import Fitness, ViolationLedger, evaluate
from islandsched.services.instance import build_instance


def _soft_payload():
    return {
        "sections": [
            {"id": "A", "courseCode": "ALG", "studentGroups": ["G"], "instructorIds": ["T1"], "preferredSlotIds": ["P0"]},
            {"id": "B", "courseCode": "GEO", "studentGroups": ["G"], "instructorIds": ["T1"]},
        ],
        "rooms": [{"id": "R1", "capacity": 30}],
        "timeSlots": [
            {"id": "P0", "day": 0, "period": 0},
            {"id": "P1", "day": 0, "period": 1},
            {"id": "P2", "day": 0, "period": 2},
        ],
        "instructors": [{"id": "T1", "maxLoad": 1}],
    }


def test_evaluate_is_deterministic(small_instance):
    chromosome = random_init(small_instance, random.Random(5))
    first = evaluate(chromosome, small_instance)
    for _ in range(3):
        again = evaluate(Chromosome(chromosome.genes), small_instance)
        assert again == first
        assert again.breakdown == first.breakdown


def test_hard_constraints_count_extra_occupants(tiny_instance):
    genes = [
        Gene(section=0, slot=0, room=0, instructor=0),
        Gene(section=1, slot=0, room=0, instructor=1),
        Gene(section=2, slot=0, room=1, instructor=2),
    ]
    fitness = evaluate(genes, tiny_instance)
    assert fitness.breakdown["room_conflict"] == 1
    assert fitness.breakdown["instructor_conflict"] == 0
    # S1 and S3 share student group G1 in slot 0.
    assert fitness.breakdown["student_group_conflict"] == 1
    assert fitness.breakdown["room_capacity"] == 0
    assert fitness.hard_violations == 2
    assert fitness.soft_penalty == 0
    assert not fitness.feasible


def test_feasible_timetable_has_no_hard_violations(tiny_instance):
    genes = [
        Gene(section=0, slot=0, room=0, instructor=0),
        Gene(section=1, slot=0, room=1, instructor=1),
        Gene(section=2, slot=1, room=0, instructor=2),
    ]
    fitness = evaluate(genes, tiny_instance)
    assert fitness.hard_violations == 0
    assert fitness.feasible


def test_room_capacity_violation():
    payload = {
        "sections": [{"id": "BIG", "courseCode": "LAW", "enrollment": 80}],
        "rooms": [{"id": "SMALL", "capacity": 20}],
        "timeSlots": [{"id": "S", "day": 1, "period": 3}],
        "instructors": [{"id": "T"}],
    }
    instance = build_instance(payload)
    fitness = evaluate([Gene(section=0, slot=0, room=0, instructor=0)], instance)
    assert fitness.breakdown["room_capacity"] == 1
    assert fitness.hard_violations == 1


def test_soft_penalty_is_weighted_sum():
    instance = build_instance(_soft_payload())
    genes = [
        Gene(section=0, slot=2, room=0, instructor=0),
        Gene(section=1, slot=0, room=0, instructor=0),
    ]
    fitness = evaluate(genes, instance)
    assert fitness.hard_violations == 0
    assert fitness.breakdown["preferred_slot"] == 1.0
    assert fitness.breakdown["instructor_load"] == 2.0
    assert fitness.breakdown["student_gap"] == 1.0
    assert fitness.soft_penalty == pytest.approx(4.0)


def test_fitness_orders_hard_before_soft():
    assert Fitness(0, 50.0).is_better_than(Fitness(1, 0.0))
    assert Fitness(2, 1.0).is_better_than(Fitness(2, 3.0))
    assert not Fitness(1, 1.0).is_better_than(Fitness(1, 1.0))
    assert Fitness(1, 1.0, {"room_conflict": 1.0}) == Fitness(1, 1.0)


def test_evaluate_rejects_malformed_chromosomes(tiny_instance):
    with pytest.raises(EvaluationError):
        evaluate([Gene(section=0, slot=0, room=0, instructor=0)], tiny_instance)

    wrong_instructor = [
        Gene(section=0, slot=0, room=0, instructor=1),
        Gene(section=1, slot=0, room=1, instructor=1),
        Gene(section=2, slot=1, room=0, instructor=2),
    ]
    with pytest.raises(EvaluationError) as exc_info:
        evaluate(wrong_instructor, tiny_instance)
    assert exc_info.value.details["index"] == 0
    assert exc_info.value.details["fields"] == ["instructor"]


def test_ledger_matches_full_recompute_after_moves(small_instance):
    rng = random.Random(11)
    chromosome = random_init(small_instance, rng)
    ledger = ViolationLedger.from_chromosome(chromosome, small_instance)
    assert ledger.fitness() == evaluate(chromosome, small_instance)

    for _ in range(200):
        index = rng.randrange(small_instance.section_count)
        moved = ledger.move(index, random_gene(small_instance, index, rng))
        reference = evaluate(ledger.genes, small_instance)
        assert moved == reference
        assert moved.breakdown == reference.breakdown

    assert ledger.chromosome().fitness == evaluate(ledger.chromosome(), small_instance)


def test_ledger_rejects_malformed_move(tiny_instance):
    genes = [
        Gene(section=0, slot=0, room=0, instructor=0),
        Gene(section=1, slot=0, room=1, instructor=1),
        Gene(section=2, slot=1, room=0, instructor=2),
    ]
    ledger = ViolationLedger(tiny_instance, genes)
    with pytest.raises(EvaluationError):
        ledger.move(1, Gene(section=1, slot=5, room=0, instructor=1))
    assert ledger.fitness() == evaluate(genes, tiny_instance)
