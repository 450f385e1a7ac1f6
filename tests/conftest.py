"""
Shared pytest fixtures: a quiet console, a fresh engine per test, and an
event factory.
"""
from __future__ import annotations

import pytest

from ciflow.engine import Engine
from ciflow.model import Event
from ciflow.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def console():
    c = Console(quiet=True)
    set_console(c)
    return c


@pytest.fixture
def engine(tmp_path, console):
    eng = Engine(workspace=tmp_path, max_parallel=4, kill_grace=1.0, console=console)
    yield eng
    eng.shutdown()


@pytest.fixture
def make_event():
    def _make(kind: str = "push", ref: str = "refs/heads/main", **kw) -> Event:
        return Event(kind=kind, ref=ref, **kw)
    return _make
