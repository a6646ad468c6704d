from __future__ import annotations

import sqlite3
import threading
from datetime import timedelta

import pytest

from transloom.config import DEFAULT_CONFIG, PipelineSettings, load_config, save_config
from transloom.core import schema
from transloom.core.models import JobState, SegmentOutcome, SegmentStatus
from transloom.core.store import JobStore
from transloom.document.tree import leaf, node
from transloom.errors import InvalidTransitionError, JobNotFoundError, PersistenceError, SegmentationError
from transloom.translation.segmenter import segment_tree
from transloom.utils import utc_iso, utcnow

from helpers import hello_world_tree, rich_tree


def _segmented_job(store: JobStore, tree=None):
    job = store.create_job("en", "fr")
    result = segment_tree(tree or hello_world_tree(), job.id)
    store.upsert_segments(result.segments)
    return job, result.segments


def _age_segment(store: JobStore, segment_id: str, seconds: float) -> None:
    conn = store.get_connection()
    try:
        conn.execute(
            "UPDATE segments SET updated_at = ? WHERE id = ?",
            (utc_iso(utcnow() - timedelta(seconds=seconds)), segment_id),
        )
    finally:
        conn.close()


def test_create_and_load_job(store: JobStore) -> None:
    job = store.create_job("en", "fr", source_path="a.md", source_format="markdown")

    loaded = store.load_job(job.id)
    assert loaded.state == JobState.CREATED
    assert (loaded.source_lang, loaded.target_lang) == ("en", "fr")
    assert (loaded.total, loaded.completed, loaded.failed) == (0, 0, 0)
    assert store.load_job("missing") is None
    with pytest.raises(JobNotFoundError):
        store.require_job("missing")


def test_counts_come_from_segment_rows(store: JobStore) -> None:
    job, segments = _segmented_job(store)
    claimed = store.claim_next_pending(job.id, 2, claimed_by="run")
    store.record_result(claimed[0].id, SegmentOutcome.done("Bonjour"), claimed_by="run")
    store.record_result(claimed[1].id, SegmentOutcome.failed("boom"), claimed_by="run")

    loaded = store.load_job(job.id)
    assert (loaded.total, loaded.completed, loaded.failed, loaded.pending) == (3, 1, 1, 1)


def test_state_transitions_are_validated(store: JobStore) -> None:
    job = store.create_job("en", "fr")

    with pytest.raises(InvalidTransitionError):
        store.update_job_state(job.id, JobState.TRANSLATING)

    store.update_job_state(job.id, JobState.SEGMENTING, expected=JobState.CREATED)
    with pytest.raises(InvalidTransitionError):
        store.update_job_state(job.id, JobState.TRANSLATING, expected=JobState.CREATED)

    store.update_job_state(job.id, JobState.CANCELLED)
    with pytest.raises(InvalidTransitionError):
        store.update_job_state(job.id, JobState.SEGMENTING)
    with pytest.raises(JobNotFoundError):
        store.update_job_state("missing", JobState.SEGMENTING)


def test_failed_state_records_last_error(store: JobStore) -> None:
    job = store.create_job("en", "fr")
    failed = store.update_job_state(job.id, JobState.FAILED, last_error="bad tree")

    assert failed.state == JobState.FAILED
    assert failed.last_error == "bad tree"


def test_upsert_is_idempotent_and_keeps_progress(store: JobStore) -> None:
    job, segments = _segmented_job(store)
    claimed = store.claim_next_pending(job.id, 1, claimed_by="run")
    store.record_result(claimed[0].id, SegmentOutcome.done("Bonjour"), claimed_by="run")

    again = segment_tree(hello_world_tree(), job.id).segments
    assert store.upsert_segments(again) == 0

    rows = store.list_segments(job.id)
    assert rows[0].status == SegmentStatus.DONE
    assert rows[0].translated_text == "Bonjour"
    assert rows[0].attempts == 1
    assert [r.status for r in rows[1:]] == [SegmentStatus.PENDING, SegmentStatus.PENDING]


def test_upsert_rejects_changed_document(store: JobStore) -> None:
    job, _ = _segmented_job(store)
    changed = segment_tree(rich_tree(), job.id).segments

    with pytest.raises(SegmentationError):
        store.upsert_segments(changed)
    # Nothing from the rejected batch was stored
    assert store.count_segments(job.id) == 3


def test_claim_in_ordinal_order_and_no_double_claim(store: JobStore) -> None:
    job, segments = _segmented_job(store)

    first = store.claim_next_pending(job.id, 2, claimed_by="a")
    second = store.claim_next_pending(job.id, 2, claimed_by="b")
    third = store.claim_next_pending(job.id, 2, claimed_by="c")

    assert [s.ordinal for s in first] == [0, 1]
    assert [s.ordinal for s in second] == [2]
    assert third == []
    assert all(s.status == SegmentStatus.IN_FLIGHT for s in first + second)
    assert {s.claimed_by for s in first} == {"a"}


def test_concurrent_claims_never_overlap(store: JobStore) -> None:
    job = store.create_job("en", "fr")
    tree = node("doc", *[leaf(f"Sentence number {i}") for i in range(60)])
    store.upsert_segments(segment_tree(tree, job.id).segments)

    claimed_ids = []
    lock = threading.Lock()

    def worker(name: str) -> None:
        while True:
            batch = store.claim_next_pending(job.id, 3, claimed_by=name)
            if not batch:
                return
            with lock:
                claimed_ids.extend(s.id for s in batch)

    threads = [threading.Thread(target=worker, args=(f"w{i}",)) for i in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(claimed_ids) == 60
    assert len(set(claimed_ids)) == 60


def test_stale_in_flight_segments_are_claimable(store: JobStore) -> None:
    job, segments = _segmented_job(store)
    store.claim_next_pending(job.id, 3, claimed_by="crashed")
    _age_segment(store, segments[1].id, 120)

    assert store.claim_next_pending(job.id, 3, claimed_by="new", stale_after=60) == [
        store.get_segment(segments[1].id)
    ]
    assert store.get_segment(segments[1].id).claimed_by == "new"


def test_record_result_requires_claim(store: JobStore) -> None:
    job, segments = _segmented_job(store)

    # Pending, not in flight
    assert store.record_result(segments[0].id, SegmentOutcome.done("x")) is False

    store.claim_next_pending(job.id, 1, claimed_by="owner")
    assert store.record_result(segments[0].id, SegmentOutcome.done("x"), claimed_by="thief") is False
    assert store.record_result(segments[0].id, SegmentOutcome.done("Bonjour"), claimed_by="owner") is True
    # Already done
    assert store.record_result(segments[0].id, SegmentOutcome.failed("late"), claimed_by="owner") is False
    assert store.get_segment(segments[0].id).translated_text == "Bonjour"


def test_attempts_and_errors_are_recorded(store: JobStore) -> None:
    job, segments = _segmented_job(store)
    store.claim_next_pending(job.id, 1, claimed_by="run")

    assert store.record_attempt(segments[0].id, "attempt 1 [timeout] slow", claimed_by="run")
    assert store.record_attempt(segments[0].id, "attempt 2 [timeout] slow", claimed_by="run")
    store.record_result(segments[0].id, SegmentOutcome.failed("attempt 3 [timeout] slow"), claimed_by="run")

    row = store.get_segment(segments[0].id)
    assert row.status == SegmentStatus.FAILED
    assert row.attempts == 3
    assert row.last_error == "attempt 3 [timeout] slow"
    assert row.claimed_by is None


def test_memory_hit_does_not_count_an_attempt(store: JobStore) -> None:
    job, segments = _segmented_job(store)
    store.claim_next_pending(job.id, 1, claimed_by="run")
    store.record_result(segments[0].id, SegmentOutcome.done("Bonjour", provider_called=False), claimed_by="run")

    assert store.get_segment(segments[0].id).attempts == 0


def test_release_and_recover(store: JobStore) -> None:
    job, segments = _segmented_job(store)
    store.claim_next_pending(job.id, 3, claimed_by="run")

    assert store.release_segment(segments[0].id, claimed_by="run")
    assert store.get_segment(segments[0].id).status == SegmentStatus.PENDING

    _age_segment(store, segments[1].id, 300)
    assert store.recover_stale_segments(60, job_id=job.id) == 1
    assert store.get_segment(segments[1].id).status == SegmentStatus.PENDING
    assert store.get_segment(segments[2].id).status == SegmentStatus.IN_FLIGHT

    assert store.recover_stale_segments(0) == 1
    assert store.count_segments(job.id, [SegmentStatus.IN_FLIGHT]) == 0


def test_requeue_failed_resets_attempts(store: JobStore) -> None:
    job, segments = _segmented_job(store)
    store.claim_next_pending(job.id, 1, claimed_by="run")
    store.record_result(segments[0].id, SegmentOutcome.failed("auth"), claimed_by="run")

    assert store.requeue_failed(job.id) == 1
    row = store.get_segment(segments[0].id)
    assert (row.status, row.attempts) == (SegmentStatus.PENDING, 0)
    assert row.last_error == "auth"


def test_list_segments_filters_by_status(store: JobStore) -> None:
    job, segments = _segmented_job(store)
    store.claim_next_pending(job.id, 1, claimed_by="run")

    assert [s.ordinal for s in store.list_segments(job.id, [SegmentStatus.PENDING])] == [1, 2]
    assert store.count_segments(job.id, [SegmentStatus.IN_FLIGHT, SegmentStatus.PENDING]) == 3


def test_delete_job_purges_segments(store: JobStore) -> None:
    job, segments = _segmented_job(store)

    assert store.delete_job(job.id) is True
    assert store.load_job(job.id) is None
    assert store.count_segments(job.id) == 0
    assert store.delete_job(job.id) is False


def test_list_jobs_by_state(store: JobStore) -> None:
    created = store.create_job("en", "fr", job_id="job-a")
    cancelled = store.create_job("en", "de", job_id="job-b")
    store.update_job_state(cancelled.id, JobState.CANCELLED)

    assert [j.id for j in store.list_jobs()] == [created.id, cancelled.id]
    assert [j.id for j in store.list_jobs(states=[JobState.CREATED])] == [created.id]


def test_translation_memory(store: JobStore) -> None:
    store.remember("Hello", "Bonjour", "EN ", "fr")
    store.remember("Hello", "Salut", "en", "fr")

    assert store.lookup_memory("Hello", "en", " FR") == "Bonjour"
    assert store.lookup_memory("Hello", "en", "de") is None
    assert store.lookup_memory("Hello!", "en", "fr") is None


def test_config_round_trip(store: JobStore) -> None:
    assert load_config(store) == DEFAULT_CONFIG

    config = load_config(store)
    config["pipeline"]["concurrency"] = 8
    config["ai_provider"] = "echo"
    save_config(store, config)

    loaded = load_config(store)
    assert loaded["pipeline"]["concurrency"] == 8
    assert PipelineSettings.from_config(loaded).concurrency == 8


def test_partial_stored_config_is_merged_with_defaults(store: JobStore) -> None:
    store.set_app_config("config", '{"pipeline": {"concurrency": 2}}')

    loaded = load_config(store)
    assert loaded["pipeline"]["concurrency"] == 2
    assert loaded["pipeline"]["max_attempts"] == DEFAULT_CONFIG["pipeline"]["max_attempts"]
    assert loaded["prompt"] == DEFAULT_CONFIG["prompt"]


def test_corrupt_config_falls_back_to_defaults(store: JobStore) -> None:
    store.set_app_config("config", "{not json")

    assert load_config(store) == DEFAULT_CONFIG


def test_schema_version_and_reopen(tmp_path) -> None:
    db_path = tmp_path / "jobs.db"
    store = JobStore(db_path)
    job = store.create_job("en", "fr")

    reopened = JobStore(db_path)
    assert reopened.load_job(job.id).id == job.id

    conn = sqlite3.connect(str(db_path))
    try:
        assert schema.get_db_version(conn) == schema.DB_VERSION
    finally:
        conn.close()


def test_unversioned_database_gets_indexes_and_version(tmp_path) -> None:
    db_path = tmp_path / "bare.db"
    conn = sqlite3.connect(str(db_path))
    schema.create_tables(conn)
    conn.commit()
    conn.close()

    store = JobStore(db_path)
    job, _ = _segmented_job(store)
    assert store.claim_next_pending(job.id, 1, claimed_by="run")[0].claimed_by == "run"

    conn = sqlite3.connect(str(db_path))
    try:
        indexes = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'index'")}
        assert {"idx_segments_job_status", "idx_segments_status_updated", "idx_jobs_state"} <= indexes
        assert schema.get_db_version(conn) == 1
    finally:
        conn.close()


def test_unusable_database_raises_persistence_error(tmp_path) -> None:
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("file")

    with pytest.raises(PersistenceError):
        JobStore(blocker / "jobs.db")


def test_sqlite_errors_are_wrapped(store: JobStore, monkeypatch) -> None:
    def broken_connection():
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(store, "get_connection", broken_connection)

    with pytest.raises(PersistenceError) as excinfo:
        store.load_job("anything")
    assert excinfo.value.details["operation"] == "load_job"
