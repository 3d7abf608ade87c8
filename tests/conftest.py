"""Pytest configuration for repository test runs."""

from __future__ import annotations

import datetime

import pytest

from fakes import FakeDatabase, FakeSpotify


@pytest.fixture
def spotify() -> FakeSpotify:
    """Fake Spotify Web API session."""
    return FakeSpotify()


@pytest.fixture
def database() -> FakeDatabase:
    """Fake database pool with no stored accounts."""
    return FakeDatabase()


@pytest.fixture
def snapshot_time() -> datetime.datetime:
    """Fixed snapshot timestamp."""
    return datetime.datetime(2024, 5, 1, 6, 0, tzinfo=datetime.UTC)
