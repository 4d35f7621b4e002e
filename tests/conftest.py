import os
import sys
from pathlib import Path

# Environment defaults must be in place before any runtime import
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("RATE_LIMIT_ENABLED", "true")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from innosistemas.service.runtime import reset_runtime_for_tests  # noqa: E402
from innosistemas.storage.models import Identity, Role  # noqa: E402


class FakeClock:
    """Manually advanced clock usable as wall or monotonic time."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def student():
    return Identity(
        id=1,
        email="estudiante@udea.edu.co",
        role=Role.STUDENT,
        first_name="Juan",
        last_name="Pérez",
        team_id=1,
        course_id=1,
    )


@pytest.fixture
def professor():
    return Identity(
        id=2,
        email="profesor@udea.edu.co",
        role=Role.PROFESSOR,
        first_name="María",
        last_name="González",
        course_id=1,
    )
