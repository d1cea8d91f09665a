"""Pytest configuration and fixtures for entity_query tests."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generator

import pytest
from prometheus_client import CollectorRegistry

from entity_query.application import Session
from entity_query.domain.entities import Member, Team
from entity_query.infrastructure.config import Config
from entity_query.infrastructure.logging import setup_logging
from entity_query.infrastructure.metrics import MetricsRegistry


@dataclass
class SampleData:
    """Two teams with two members each, as persisted by ``sample_data``."""

    team_a: Team
    team_b: Team
    member1: Member
    member2: Member
    member3: Member
    member4: Member

    @property
    def members(self) -> list[Member]:
        return [self.member1, self.member2, self.member3, self.member4]


@pytest.fixture
def metrics_registry() -> MetricsRegistry:
    """Provide a fresh metrics registry for each test."""
    # Use a separate registry to avoid conflicts between tests
    registry = CollectorRegistry(auto_describe=True)
    return MetricsRegistry(registry=registry)


@pytest.fixture
def test_config() -> Config:
    """Provide a default configuration that ignores the environment cache."""
    return Config()


@pytest.fixture
def session(test_config: Config, metrics_registry: MetricsRegistry) -> Generator[Session, None, None]:
    """Provide an empty session."""
    with Session(config=test_config, metrics=metrics_registry) as s:
        yield s


@pytest.fixture
def sample_data(session: Session) -> SampleData:
    """Persist teamA (member1, member2) and teamB (member3, member4)."""
    team_a = Team("teamA")
    team_b = Team("teamB")
    session.persist(team_a)
    session.persist(team_b)

    data = SampleData(
        team_a=team_a,
        team_b=team_b,
        member1=Member("member1", 10, team_a),
        member2=Member("member2", 20, team_a),
        member3=Member("member3", 30, team_b),
        member4=Member("member4", 40, team_b),
    )
    for m in data.members:
        session.persist(m)
    return data


# Markers for test categories
def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers and quiet logging."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "slow: Slow tests")
    setup_logging(level="WARNING", log_format="console")
