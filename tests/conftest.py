"""Pytest configuration and fixtures for ping pong tests."""

import random

import pytest

from pong_core import Simulation


@pytest.fixture
def seeded_rng():
    """Provide a deterministic RNG for tests."""
    return random.Random(42)


@pytest.fixture
def sim(seeded_rng):
    """A fresh simulation with reproducible serves."""
    return Simulation(rng=seeded_rng)
