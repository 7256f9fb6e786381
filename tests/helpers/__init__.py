"""Shared test helpers for the trackswarm test suite."""

from __future__ import annotations

from tests.helpers.fakes import (
    FakeExecutorProvider,
    FakeToolChannelFactory,
    FakeWorkspaceProvider,
    make_pipeline,
    make_scheduler,
    no_sleep,
)

__all__ = [
    "FakeExecutorProvider",
    "FakeToolChannelFactory",
    "FakeWorkspaceProvider",
    "make_pipeline",
    "make_scheduler",
    "no_sleep",
]
