"""Global test fixtures for trackswarm."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from trackswarm.protocol.models import WorkUnit


@pytest.fixture
def event_loop_policy():
    """Use default asyncio event loop policy."""
    return asyncio.DefaultEventLoopPolicy()


@pytest.fixture
def make_unit():
    """Factory for WorkUnit records with sensible defaults."""

    def _make(uid: str, deps: list[str] | None = None, files: list[str] | None = None, **kw: Any) -> WorkUnit:
        return WorkUnit(
            id=uid,
            name=kw.pop("name", f"Unit {uid}"),
            dependencies=list(deps or []),
            files=list(files or []),
            **kw,
        )

    return _make
