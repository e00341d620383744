"""Pytest configuration and shared fixtures."""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Set test environment
os.environ.setdefault(
    "CONCORD_LOG_DIR",
    str(Path(tempfile.gettempdir()) / "concord-test-logs"),
)
os.environ.pop("DATABASE_URL", None)
os.environ.pop("CONCORD_POLICY_FILE", None)

T0 = datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)


def at(seconds: float) -> datetime:
    """Timestamp ``seconds`` after the test epoch."""
    return T0 + timedelta(seconds=seconds)


@pytest.fixture
def settings():
    """Settings isolated from any local .env file."""
    from concord.core.config import Settings, clear_settings_cache

    clear_settings_cache()
    yield Settings(_env_file=None, concord_max_commit_attempts=3)
    clear_settings_cache()


@pytest.fixture
def clock():
    """Deterministic clock starting at the test epoch."""
    from concord.simulation import SimulationClock

    return SimulationClock(T0)


@pytest.fixture
def make_edit():
    """Factory for edit records used by the pure components."""
    from concord.core.state import Edit, EditPayload, EditStatus

    def _make(
        edit_id: str,
        base_version: int = 0,
        regions: dict | None = None,
        content=None,
        delete: bool = False,
        submitted: float = 0,
        author: str = "alice",
        element_id: str = "el-1",
        status: EditStatus = EditStatus.PENDING,
        committed_version: int | None = None,
        withdrawn: bool = False,
    ) -> Edit:
        if regions is None and content is None and not delete:
            content = {"text": edit_id}
        return Edit(
            edit_id=edit_id,
            element_id=element_id,
            author_id=author,
            base_version=base_version,
            payload=EditPayload(content=content, regions=regions, delete=delete),
            submitted_at=at(submitted),
            status=status,
            committed_version=committed_version,
            withdrawn=withdrawn,
        )

    return _make


@pytest.fixture
def make_coordinator(settings, clock):
    """Factory for coordinators sharing the test clock and settings."""
    from concord.coordinator import ResolutionCoordinator
    from concord.core.policy import PolicyBook
    from concord.core.state import Policy

    def _make(policy: Policy | None = None, policy_book: PolicyBook | None = None, **kwargs):
        book = policy_book or PolicyBook(default=policy or Policy())
        return ResolutionCoordinator(
            policy_book=book,
            settings=kwargs.pop("settings", settings),
            clock=clock.now,
            **kwargs,
        )

    return _make


# Markers
def pytest_configure(config: pytest.Config) -> None:
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: mark test as unit test")
    config.addinivalue_line("markers", "integration: mark test as integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")
