import random
from datetime import datetime, timedelta

import pytest

from fairplay.config import EngineConfig
from fairplay.engine import FairPlayEngine
from fairplay.models import GameSessionRecord


class FakeClock:
    """Manually advanced clock injected wherever datetime.now would be used."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta):
        self.now += timedelta(**delta)
        return self.now


@pytest.fixture
def clock():
    # Monday noon
    return FakeClock(datetime(2026, 3, 2, 12, 0, 0))


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def engine(clock, rng):
    return FairPlayEngine(config=EngineConfig(), clock=clock, rng=rng)


@pytest.fixture
def add_session(engine):
    """Insert a finished game row the way the game engine would."""
    counter = {"n": 0}

    def _add(user_id, started_at, status="completed", score=0.0, highest_question=5,
             avg_ms=4000, fastest_ms=2500, mode="classic"):
        counter["n"] += 1
        record = GameSessionRecord(
            session_id=f"{user_id}-s{counter['n']}",
            user_id=user_id,
            mode=mode,
            started_at=started_at,
            completed_at=started_at + timedelta(minutes=5),
            status=status,
            score=score,
            highest_question=highest_question,
            avg_response_time_ms=avg_ms,
            fastest_response_ms=fastest_ms,
        )
        engine.store.save_session(record)
        return record

    return _add
