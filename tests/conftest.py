"""
Shared pytest fixtures for clusterdeck tests.

This module provides:
- A controllable monotonic clock for deterministic liveness/deadline tests
- A prepared shared volume under ``tmp_path``
- A small lesson job (package + input dataset) to build and run
- An in-process cluster: coordinator app served through FastAPI's
  ``TestClient`` and a ``CoordinatorClient`` talking to it
"""

from __future__ import annotations

import textwrap
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from clusterdeck.api.app import create_app
from clusterdeck.core.settings import ClusterSettings
from clusterdeck.deploy.volume import SharedVolume
from clusterdeck.execution.coordinator import ClusterCoordinator
from clusterdeck.execution.retry import NoRetry
from clusterdeck.execution.transport import CoordinatorClient


# =============================================================================
# Time
# =============================================================================


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Shared volume and lesson job
# =============================================================================


LESSON_JOB = textwrap.dedent('''\
    """Word count lesson: reads every file under argv[0], writes counts to argv[1]."""

    import json
    import sys
    from pathlib import Path

    from wordcount.text import count_words


    def main(argv):
        source, target = Path(argv[0]), Path(argv[1])
        counts = {}
        for path in sorted(source.rglob("*.txt")):
            for word, n in count_words(path.read_text()).items():
                counts[word] = counts.get(word, 0) + n
        target.mkdir(parents=True, exist_ok=True)
        (target / "counts.json").write_text(json.dumps(counts, sort_keys=True))
        print(f"counted {sum(counts.values())} words")
        return str(target)


    def crash(argv):
        print("about to fail")
        raise RuntimeError("lesson blew up")


    def oom():
        raise MemoryError()
''')

LESSON_TEXT = textwrap.dedent('''\
    from collections import Counter


    def count_words(text):
        return dict(Counter(text.split()))
''')


@pytest.fixture
def lesson_dir(tmp_path: Path) -> Path:
    """A ``wordcount`` package and an ``in/`` dataset under ``tmp_path/src``."""
    src = tmp_path / "src"
    package = src / "wordcount"
    package.mkdir(parents=True)
    (package / "__init__.py").write_text("")
    (package / "job.py").write_text(LESSON_JOB)
    (package / "text.py").write_text(LESSON_TEXT)

    data = src / "in"
    data.mkdir()
    (data / "a.txt").write_text("the quick brown fox\n")
    (data / "b.txt").write_text("the lazy dog\n")
    return src


@pytest.fixture
def shared_root(tmp_path: Path) -> Path:
    root = tmp_path / "shared"
    SharedVolume(root).ensure()
    return root


# =============================================================================
# In-process cluster
# =============================================================================


@pytest.fixture
def coordinator(clock: FakeClock, shared_root: Path) -> ClusterCoordinator:
    return ClusterCoordinator(
        liveness_timeout=30.0,
        scheduling_timeout=300.0,
        cancel_timeout=30.0,
        volume_id=SharedVolume(shared_root).read_volume_id(),
        clock=clock,
    )


@pytest.fixture
def settings(shared_root: Path) -> ClusterSettings:
    return ClusterSettings(shared_root=shared_root, log_format="console")


@pytest.fixture
def app(settings: ClusterSettings, coordinator: ClusterCoordinator):
    return create_app(settings=settings, coordinator=coordinator, run_scheduler=False)


@pytest.fixture
def http(app) -> TestClient:
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def api(http: TestClient) -> CoordinatorClient:
    """CoordinatorClient routed through the in-process app, no retries."""
    return CoordinatorClient("http://testserver", client=http, strategy=NoRetry())
