from __future__ import annotations

from pathlib import Path

import pytest

from transloom.config import PipelineSettings
from transloom.core.store import JobStore
from transloom.document.converters import TreeJsonConverter
from transloom.document.tree import ContentNode


@pytest.fixture
def store(tmp_path: Path) -> JobStore:
    return JobStore(tmp_path / "jobs.db")


@pytest.fixture
def settings() -> PipelineSettings:
    return PipelineSettings(
        concurrency=3,
        max_attempts=3,
        backoff_base_seconds=0.0,
        backoff_max_seconds=0.0,
        stale_after_seconds=60,
        max_segment_chars=None,
        use_translation_memory=False,
        max_consecutive_failures=None,
    )


@pytest.fixture
def converters() -> dict:
    return {"tree": TreeJsonConverter()}


@pytest.fixture
def write_tree(tmp_path: Path):
    def _write(tree: ContentNode, name: str = "doc.tree.json") -> Path:
        path = tmp_path / name
        path.write_bytes(TreeJsonConverter().serialize(tree))
        return path

    return _write
