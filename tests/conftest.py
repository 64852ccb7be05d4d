"""
Shared pytest fixtures for exitcheck tests.

This module provides:
- Registry cleanup between tests
- An event collector that doubles as the configuration's event handler
- Logging reset for tests that reconfigure structlog

Usage:
    async def test_something(collector):
        with collector.use(StaticResultHandler()):
            await expect_exit(ExitCondition.success(), body)
        assert collector.issues == []
"""

from __future__ import annotations

import sys
from collections.abc import Iterator
from contextlib import AbstractContextManager

import pytest

from exitcheck.configuration import Configuration, use_configuration
from exitcheck.handlers import ExitTestHandler
from exitcheck.issues import Event, Issue, IssueKind
from exitcheck.logging import configure_logging
from exitcheck.registry import clear_registry
from exitcheck.settings import get_settings


# =============================================================================
# Event Collection
# =============================================================================


class EventCollector:
    """Event handler that keeps every event it receives."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    @property
    def issues(self) -> list[Issue]:
        return [event.issue for event in self.events if event.issue is not None]

    def kinds(self) -> list[IssueKind]:
        return [issue.kind for issue in self.issues]

    def use(self, handler: ExitTestHandler | None = None) -> AbstractContextManager[Configuration]:
        """Install a configuration routing events here and running ``handler``."""
        return use_configuration(Configuration(event_handler=self, exit_test_handler=handler))


@pytest.fixture
def collector() -> EventCollector:
    return EventCollector()


# =============================================================================
# Cleanup Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def clean_registry() -> Iterator[None]:
    """Rebuild module registries for every test."""
    clear_registry()
    yield
    clear_registry()


@pytest.fixture
def reset_logging() -> Iterator[None]:
    """Restore the default logging setup after a test reconfigures it."""
    yield
    configure_logging(stream=sys.stderr, force=True)


@pytest.fixture
def fresh_settings() -> Iterator[None]:
    """Drop cached settings before and after a test that changes the environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def pytest_configure(config: pytest.Config) -> None:
    configure_logging(stream=sys.stderr, force=True)
