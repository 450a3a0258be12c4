import random

import pytest
from fastapi.testclient import TestClient #in-process HTTP client for the FastAPI routes, no server needed.

from islandsched.core.config import Settings
from islandsched.main import app
from islandsched.schemas.instance import ConstraintWeights
from islandsched.services.instance import build_instance, generate_random_payload

NO_SOFT_WEIGHTS = {"preferredSlot": 0, "instructorLoad": 0, "studentGap": 0}


def tiny_payload(weights=None):
    """3 sections, 2 rooms, 2 slots; one instructor per section so a clash-free timetable exists."""
    return {
        "sections": [
            {"id": "S1", "courseCode": "MATH101", "enrollment": 20, "studentGroups": ["G1"], "instructorIds": ["T1"]},
            {"id": "S2", "courseCode": "PHYS101", "enrollment": 25, "studentGroups": ["G2"], "instructorIds": ["T2"]},
            {"id": "S3", "courseCode": "CHEM101", "enrollment": 15, "studentGroups": ["G1"], "instructorIds": ["T3"]},
        ],
        "rooms": [{"id": "R1", "capacity": 30}, {"id": "R2", "capacity": 40}],
        "timeSlots": [{"id": "MON1", "day": 0, "period": 0}, {"id": "MON2", "day": 0, "period": 1}],
        "instructors": [{"id": "T1"}, {"id": "T2"}, {"id": "T3"}],
        "weights": weights if weights is not None else NO_SOFT_WEIGHTS,
    }


@pytest.fixture() #test client
def client():
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture()
def fast_runtime():
    # Short timeouts keep failure-detection tests quick.
    return Settings(
        exchange_timeout_seconds=0.3,
        exchange_retry_attempts=2,
        exchange_retry_backoff_seconds=0.01,
        collector_rank=0,
        max_workers=8,
    )


@pytest.fixture()
def tiny_instance():
    return build_instance(tiny_payload())


@pytest.fixture()
def small_instance():
    payload = generate_random_payload(
        sections=12,
        rooms=3,
        instructors=5,
        student_groups=4,
        days=2,
        periods_per_day=4,
        seed=7,
        weights=ConstraintWeights(preferred_slot=1.0, instructor_load=2.0, student_gap=1.0),
    )
    return build_instance(payload)


@pytest.fixture()
def rng():
    return random.Random(1234)
