"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import List, Optional

import pytest

# Ensure src/ is on the import path (for local imports without installing as package)
SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from transcript.engine import ReconciliationEngine  # noqa: E402


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


class ScriptedProvider:
    """Completion provider that yields a fixed token list, optionally failing midway."""

    def __init__(self, tokens: List[str], *, fail_after: Optional[int] = None) -> None:
        self.tokens = list(tokens)
        self.fail_after = fail_after
        self.calls: List[dict] = []

    async def stream(self, system_instruction, history, max_tokens=None):
        self.calls.append(
            {"system": system_instruction, "history": list(history), "max_tokens": max_tokens}
        )
        for i, tok in enumerate(self.tokens):
            if self.fail_after is not None and i == self.fail_after:
                raise RuntimeError("provider went away")
            await asyncio.sleep(0)
            yield tok


class GatedProvider:
    """Yields one token per ``release()`` so tests can act mid-stream."""

    def __init__(self, tokens: List[str]) -> None:
        self.tokens = list(tokens)
        self.sent = 0
        self._gate = asyncio.Semaphore(0)

    def release(self, n: int = 1) -> None:
        for _ in range(n):
            self._gate.release()

    async def stream(self, system_instruction, history, max_tokens=None):
        for tok in self.tokens:
            await self._gate.acquire()
            self.sent += 1
            yield tok


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine(clock: FakeClock) -> ReconciliationEngine:
    return ReconciliationEngine(clock=clock)


@pytest.fixture(scope="function")
def content_dir(tmp_path: Path) -> Path:
    """A small learners/modules tree."""
    root = tmp_path / "content"
    (root / "learners").mkdir(parents=True)
    (root / "modules").mkdir(parents=True)
    (root / "learners" / "alex.txt").write_text("Alex, first-year student.\n", encoding="utf-8")
    (root / "modules" / "gravity.txt").write_text("Newtonian gravity.\n", encoding="utf-8")
    return root


@pytest.fixture(scope="function")
def clean_env(monkeypatch: pytest.MonkeyPatch):
    """Ensure tests run with a clean environment (no leftover vars)."""
    import os

    for var in list(os.environ):
        if var == "TUTOR_SERVER_CONFIG" or var.startswith("TUTOR_SERVER__"):
            monkeypatch.delenv(var, raising=False)
    yield
