from __future__ import annotations

import dataclasses
import threading

import pytest

from transloom.ai.exceptions import ProviderError, ProviderErrorKind
from transloom.core.models import JobState, SegmentStatus
from transloom.document.tree import leaf, node
from transloom.errors import PersistenceError
from transloom.translation.dispatcher import Dispatcher, describe_error
from transloom.translation.retry import RetryPolicy
from transloom.translation.segmenter import segment_tree

from helpers import FRENCH, ScriptedProvider, hello_world_tree


def _job(store, tree=None, model=None):
    job = store.create_job("en", "fr", model=model)
    store.upsert_segments(segment_tree(tree or hello_world_tree(), job.id).segments)
    return store.load_job(job.id)


def _segment(store, job, text):
    return next(s for s in store.list_segments(job.id) if s.source_text == text)


def _french(text: str) -> str:
    return FRENCH.get(text, text)


def test_translates_every_segment(store, settings) -> None:
    job = _job(store)
    provider = ScriptedProvider(default=_french)

    report = Dispatcher(store, provider, settings).run(job)

    assert report.succeeded == 3
    assert (report.failed, report.cancelled, report.aborted) == (0, False, False)
    assert [s.translated_text for s in store.list_segments(job.id)] == ["Bonjour", "monde", "!"]
    assert sorted(provider.calls) == sorted(["Hello", "world", "!"])


def test_concurrency_is_bounded(store, settings) -> None:
    tree = node("doc", *[leaf(f"Line {i}") for i in range(20)])
    job = _job(store, tree)
    provider = ScriptedProvider(delay=0.02)

    report = Dispatcher(store, provider, settings).run(job)

    assert report.succeeded == 20
    assert report.max_in_flight <= settings.concurrency
    assert provider.max_active <= settings.concurrency
    assert store.count_segments(job.id, [SegmentStatus.DONE]) == 20


def test_transient_errors_are_retried(store, settings) -> None:
    job = _job(store)
    provider = ScriptedProvider(
        script={"world": [
            ProviderError("slow", kind=ProviderErrorKind.TIMEOUT),
            ProviderError("busy", kind=ProviderErrorKind.RATE_LIMITED),
            "monde",
        ]},
        default=_french,
    )

    report = Dispatcher(store, provider, settings).run(job)

    world = _segment(store, job, "world")
    assert report.succeeded == 3
    assert world.status == SegmentStatus.DONE
    assert world.translated_text == "monde"
    assert world.attempts == 3
    assert provider.calls_for("world") == 3


def test_retries_stop_at_max_attempts(store, settings) -> None:
    job = _job(store)
    provider = ScriptedProvider(
        script={"world": [ProviderError("down", kind=ProviderErrorKind.SERVER_ERROR)]},
        default=_french,
    )

    report = Dispatcher(store, provider, settings).run(job)

    world = _segment(store, job, "world")
    assert report.failed == 1
    assert world.status == SegmentStatus.FAILED
    assert world.attempts == settings.max_attempts
    assert provider.calls_for("world") == settings.max_attempts
    assert world.last_error.startswith(f"attempt {settings.max_attempts} [server_error]")


def test_permanent_error_fails_without_retry(store, settings) -> None:
    job = _job(store)
    provider = ScriptedProvider(
        script={"world": [ProviderError("bad key", kind=ProviderErrorKind.AUTH)]},
        default=_french,
    )

    report = Dispatcher(store, provider, settings).run(job)

    world = _segment(store, job, "world")
    assert (report.succeeded, report.failed) == (2, 1)
    assert provider.calls_for("world") == 1
    assert world.attempts == 1
    assert world.last_error == "attempt 1 [auth] bad key"


def test_unexpected_exception_is_treated_as_unknown(store, settings) -> None:
    job = _job(store)
    provider = ScriptedProvider(script={"world": [RuntimeError("boom")]}, default=_french)

    Dispatcher(store, provider, settings).run(job)

    world = _segment(store, job, "world")
    assert world.status == SegmentStatus.FAILED
    assert provider.calls_for("world") == settings.max_attempts
    assert "[unknown] RuntimeError: boom" in world.last_error


def test_requeued_failures_are_translated_on_the_next_run(store, settings) -> None:
    job = _job(store)
    failing = ScriptedProvider(
        script={"world": [ProviderError("down", kind=ProviderErrorKind.SERVER_ERROR)]},
        default=_french,
    )
    Dispatcher(store, failing, dataclasses.replace(settings, max_attempts=2)).run(job)
    assert _segment(store, job, "world").attempts == 2

    store.requeue_failed(job.id)
    provider = ScriptedProvider(default=_french)
    report = Dispatcher(store, provider, settings).run(job)

    assert report.succeeded == 1
    assert provider.calls == ["world"]


def test_translation_memory_skips_the_provider(store, settings) -> None:
    settings = dataclasses.replace(settings, use_translation_memory=True)
    store.remember("Hello", "Salut", "en", "fr")
    job = _job(store)
    provider = ScriptedProvider(default=_french)

    report = Dispatcher(store, provider, settings).run(job)

    hello = _segment(store, job, "Hello")
    assert report.memory_hits == 1
    assert "Hello" not in provider.calls
    assert (hello.translated_text, hello.attempts) == ("Salut", 0)
    assert store.lookup_memory("world", "en", "fr") == "monde"


def test_consecutive_failures_abort_the_run(store, settings) -> None:
    settings = dataclasses.replace(settings, concurrency=1, max_consecutive_failures=2)
    job = _job(store)
    revoked = ProviderError("revoked", kind=ProviderErrorKind.AUTH)
    provider = ScriptedProvider(script={text: [revoked] for text in ("Hello", "world", "!")})

    report = Dispatcher(store, provider, settings).run(job)

    assert report.aborted is True
    assert report.failed == 2
    assert store.count_segments(job.id, [SegmentStatus.PENDING]) == 1
    assert len(provider.calls) == 2


def test_cancel_finishes_running_calls_and_claims_nothing_new(store, settings) -> None:
    settings = dataclasses.replace(settings, concurrency=2)
    tree = node("doc", *[leaf(f"Line {i}") for i in range(6)])
    job = _job(store, tree)
    provider = ScriptedProvider()
    provider.release.clear()
    cancel = threading.Event()
    reports = []

    runner = threading.Thread(target=lambda: reports.append(Dispatcher(store, provider, settings).run(job, cancel)))
    runner.start()
    assert provider.started.wait(5)
    cancel.set()
    provider.release.set()
    runner.join(10)

    assert not runner.is_alive()
    report = reports[0]
    done = store.count_segments(job.id, [SegmentStatus.DONE])
    assert report.cancelled is True
    assert store.count_segments(job.id, [SegmentStatus.IN_FLIGHT]) == 0
    assert 1 <= done <= 2
    assert done == len(provider.calls)
    assert store.count_segments(job.id, [SegmentStatus.PENDING]) == 6 - done


def test_cancel_recorded_in_the_store_stops_new_claims(store, settings) -> None:
    settings = dataclasses.replace(settings, concurrency=1)
    job = _job(store)
    provider = ScriptedProvider(default=_french)
    provider.release.clear()
    reports = []

    runner = threading.Thread(target=lambda: reports.append(Dispatcher(store, provider, settings).run(job)))
    runner.start()
    assert provider.started.wait(5)
    store.update_job_state(job.id, JobState.CANCELLED)
    provider.release.set()
    runner.join(10)

    assert not runner.is_alive()
    assert reports[0].cancelled is True
    assert provider.calls == ["Hello"]
    assert _segment(store, job, "Hello").status == SegmentStatus.DONE
    assert store.count_segments(job.id, [SegmentStatus.PENDING]) == 2


def test_retry_decision_comes_from_the_policy(store, settings) -> None:
    job = _job(store, node("doc", leaf("Hello")))
    timeout = ProviderError("slow", kind=ProviderErrorKind.TIMEOUT)
    provider = ScriptedProvider(script={"Hello": [timeout]})
    policy = RetryPolicy(max_attempts=5, base_seconds=0.0, max_seconds=0.0)
    decisions = []
    original = policy.should_retry

    def recording_should_retry(error, attempts_made):
        decisions.append(attempts_made)
        return original(error, attempts_made) and attempts_made < 2

    policy.should_retry = recording_should_retry

    report = Dispatcher(store, provider, settings, retry_policy=policy).run(job)

    assert report.failed == 1
    assert decisions == [1, 2]
    assert provider.calls == ["Hello", "Hello"]


def test_progress_callback_reports_each_segment(store, settings) -> None:
    job = _job(store)
    seen = []

    Dispatcher(store, ScriptedProvider(default=_french), settings).run(job, progress_callback=seen.append)

    assert len(seen) == 3
    assert [p.completed for p in seen] == [1, 2, 3]
    assert seen[-1].fraction_done == 1.0
    assert all(p.total == 3 for p in seen)


def test_progress_callback_errors_do_not_stop_the_run(store, settings) -> None:
    job = _job(store)

    def broken(progress):
        raise ValueError("ui went away")

    report = Dispatcher(store, ScriptedProvider(default=_french), settings).run(job, progress_callback=broken)

    assert report.succeeded == 3


def test_job_model_is_passed_to_the_provider(store, settings) -> None:
    job = _job(store, model="gpt-test")
    provider = ScriptedProvider(default=_french)

    Dispatcher(store, provider, settings).run(job)

    assert {c["model"] for c in provider.model_configs} == {"gpt-test"}


def test_store_failure_propagates(store, settings, monkeypatch) -> None:
    job = _job(store)

    def broken_record_result(*args, **kwargs):
        raise PersistenceError("disk full", code="store_io_error")

    monkeypatch.setattr(store, "record_result", broken_record_result)

    with pytest.raises(PersistenceError):
        Dispatcher(store, ScriptedProvider(default=_french), settings).run(job)


def test_segments_claimed_by_a_live_run_are_left_alone(store, settings) -> None:
    job = _job(store)
    store.claim_next_pending(job.id, 1, claimed_by="other-process")
    provider = ScriptedProvider(default=_french)

    report = Dispatcher(store, provider, settings).run(job)

    assert report.succeeded == 2
    assert "Hello" not in provider.calls
    assert _segment(store, job, "Hello").status == SegmentStatus.IN_FLIGHT


def test_describe_error() -> None:
    assert describe_error(ProviderError("slow", kind=ProviderErrorKind.TIMEOUT), 2) == "attempt 2 [timeout] slow"
    assert describe_error(KeyError("x"), 1) == "attempt 1 [unknown] KeyError: 'x'"
