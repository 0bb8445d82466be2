"""Shared fixtures."""

import pytest

from ingestcue import IngestCue, VirtualClock


@pytest.fixture
def clock():
    return VirtualClock()


@pytest.fixture
async def make_cue(clock):
    """Factory for in-memory cues on the virtual clock. Closed after the test."""
    cues = []

    def factory(**overrides):
        overrides.setdefault("cooldown", 5.0)
        overrides.setdefault("work_duration", 1.0)
        overrides.setdefault("work_timeout", None)
        cue = IngestCue(clock=clock, **overrides)
        cues.append(cue)
        return cue

    yield factory

    for cue in cues:
        await cue.close()
