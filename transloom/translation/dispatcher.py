"""
Dispatcher

Sends a job's pending segments to the translation provider with bounded
concurrency:

- A thread pool of ``settings.concurrency`` workers; the main loop only
  claims as many segments as there are free workers, so a run never has
  more than that many segments in flight
- The job store claim is the only synchronization point between workers
- Transient provider errors are retried with exponential backoff and
  jitter, permanent ones fail the segment at once
- Cancellation stops new claims and retries; calls already running finish
  and their results are recorded. The stored job state is read before
  every claim, so a cancel recorded by another instance is seen too
- Too many provider failures in a row abort the run, leaving the job
  paused for a later resume
"""

import threading
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Optional, Set

from transloom.ai.exceptions import ProviderError
from transloom.config import PipelineSettings
from transloom.core.models import Job, Segment, SegmentOutcome, SegmentStatus
from transloom.errors import PersistenceError
from transloom.logger import get_logger
from transloom.translation.progress import JobProgress
from transloom.translation.retry import RetryPolicy, classify
from transloom.utils import preview

logger = get_logger(__name__)

# How often the main loop looks at the cancel flag while workers are busy
POLL_INTERVAL_SECONDS = 0.1

DONE = "done"
FAILED = "failed"
MEMORY_HIT = "memory"
RELEASED = "released"
DROPPED = "dropped"


@dataclass
class DispatchReport:
    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    memory_hits: int = 0
    released: int = 0
    cancelled: bool = False
    aborted: bool = False
    max_in_flight: int = 0

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def describe_error(error: BaseException, attempt: int) -> str:
    """Error record stored on the segment: attempt number, kind and message."""
    kind, _ = classify(error)
    message = error.args[0] if isinstance(error, ProviderError) and error.args else str(error)
    if not isinstance(error, ProviderError):
        message = f"{type(error).__name__}: {message}"
    return f"attempt {attempt} [{kind.value}] {message}"


class Dispatcher:
    """Runs the translate/retry loop for one job at a time."""

    def __init__(self, store, provider, settings: Optional[PipelineSettings] = None,
                 retry_policy: Optional[RetryPolicy] = None):
        self.store = store
        self.provider = provider
        self.settings = settings or PipelineSettings()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._stop = threading.Event()
        self._aborted = False
        self._cancelled_in_store = False

    # ============================================================
    # Main loop
    # ============================================================

    def run(self, job: Job, cancel_event: Optional[threading.Event] = None,
            progress_callback: Optional[Callable[[JobProgress], None]] = None) -> DispatchReport:
        """
        Translate every claimable segment of the job.

        Returns when no segment is pending and no worker is busy, or after
        cancellation/abort once the running calls have finished.

        Raises:
            PersistenceError: the job store failed; the job should be paused
        """
        cancel_event = cancel_event or threading.Event()
        concurrency = self.settings.concurrency
        run_token = uuid.uuid4().hex
        report = DispatchReport()
        self._stop = threading.Event()
        self._aborted = False
        self._cancelled_in_store = False
        self._consecutive_failures = 0

        counts = {
            "total": self.store.count_segments(job.id),
            "completed": self.store.count_segments(job.id, [SegmentStatus.DONE]),
            "failed": self.store.count_segments(job.id, [SegmentStatus.FAILED]),
        }
        errors = []

        logger.info(f"Dispatching job {job.id}: {counts['total']} segments, concurrency {concurrency}")

        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix=f"dispatch-{job.id[:8]}") as executor:
            futures: Set[Future] = set()
            try:
                while True:
                    self._reap(futures, report, counts, job, progress_callback, errors)
                    if errors:
                        self._stop.set()
                        break
                    if cancel_event.is_set():
                        logger.info(f"Job {job.id}: cancellation requested, no new segments will be claimed")
                        self._stop.set()
                        break
                    if self._aborted:
                        break
                    if self._job_stopped_elsewhere(job.id):
                        logger.info(f"Job {job.id} was cancelled or finished elsewhere, no new segments will be claimed")
                        self._cancelled_in_store = True
                        self._stop.set()
                        break

                    capacity = concurrency - len(futures)
                    if capacity > 0:
                        claimed = self.store.claim_next_pending(
                            job.id,
                            capacity,
                            claimed_by=run_token,
                            stale_after=self.settings.stale_after_seconds,
                        )
                        for segment in claimed:
                            futures.add(executor.submit(self._process, job, segment, run_token))
                        if claimed:
                            report.claimed += len(claimed)
                            report.max_in_flight = max(report.max_in_flight, len(futures))
                            logger.debug(f"Job {job.id}: claimed {len(claimed)} segments ({len(futures)} in flight)")
                            continue

                    if not futures:
                        break
                    wait(futures, timeout=POLL_INTERVAL_SECONDS, return_when=FIRST_COMPLETED)
            except BaseException:
                self._stop.set()
                raise
            finally:
                # Stop retries on the way out and let running calls finish
                if errors or cancel_event.is_set() or self._aborted or self._cancelled_in_store:
                    self._stop.set()
                wait(futures)
                self._reap(futures, report, counts, job, progress_callback, errors)

        report.cancelled = cancel_event.is_set() or self._cancelled_in_store
        report.aborted = self._aborted
        if errors:
            raise errors[0]

        logger.info(
            f"Job {job.id} dispatch finished: {report.succeeded} done "
            f"({report.memory_hits} from memory), {report.failed} failed, {report.released} released"
            f"{', cancelled' if report.cancelled else ''}{', aborted' if report.aborted else ''}"
        )
        return report

    def _job_stopped_elsewhere(self, job_id: str) -> bool:
        """True when the stored job is gone or no longer active, e.g. cancelled by another instance."""
        job = self.store.load_job(job_id)
        return job is None or job.state.is_terminal

    def _reap(self, futures: Set[Future], report: DispatchReport, counts: Dict[str, int], job: Job,
              progress_callback, errors) -> None:
        done = {f for f in futures if f.done()}
        for f in done:
            futures.remove(f)
            try:
                segment_id, result = f.result()
            except PersistenceError as e:
                logger.error(f"Job {job.id}: job store failed while translating: {e}")
                errors.append(e)
                continue
            except Exception:
                logger.exception(f"Job {job.id}: segment worker crashed")
                continue

            if result in (DONE, MEMORY_HIT):
                report.succeeded += 1
                counts["completed"] += 1
                if result == MEMORY_HIT:
                    report.memory_hits += 1
            elif result == FAILED:
                report.failed += 1
                counts["failed"] += 1
            elif result == RELEASED:
                report.released += 1
                continue
            else:
                continue

            if progress_callback is not None:
                progress = JobProgress(
                    job_id=job.id,
                    total=counts["total"],
                    completed=counts["completed"],
                    failed=counts["failed"],
                    in_flight=len(futures),
                    phase="cancelling" if self._stop.is_set() else "translating",
                    memory_hits=report.memory_hits,
                    last_segment_id=segment_id,
                )
                try:
                    progress_callback(progress)
                except Exception as e:
                    logger.error(f"Progress callback failed: {e}")

    # ============================================================
    # Per-segment work (runs in pool threads)
    # ============================================================

    def _model_config(self, job: Job) -> Dict[str, object]:
        model_config = self.settings.model_config()
        if job.model:
            model_config["model"] = job.model
        return model_config

    def _note_call(self, succeeded: bool, job: Job) -> None:
        limit = self.settings.max_consecutive_failures
        with self._lock:
            if succeeded:
                self._consecutive_failures = 0
                return
            self._consecutive_failures += 1
            if limit and self._consecutive_failures >= limit and not self._aborted:
                self._aborted = True
                self._stop.set()
                logger.error(
                    f"Job {job.id}: {self._consecutive_failures} provider failures in a row, "
                    f"pausing the job"
                )

    def _process(self, job: Job, segment: Segment, run_token: str):
        """Translate one claimed segment. Returns (segment_id, result)."""
        if self.settings.use_translation_memory:
            cached = self.store.lookup_memory(segment.source_text, job.source_lang, job.target_lang)
            if cached is not None:
                recorded = self.store.record_result(
                    segment.id, SegmentOutcome.done(cached, provider_called=False), claimed_by=run_token
                )
                return segment.id, MEMORY_HIT if recorded else DROPPED

        attempts = segment.attempts
        model_config = self._model_config(job)
        while True:
            if self._stop.is_set():
                self.store.release_segment(segment.id, claimed_by=run_token)
                return segment.id, RELEASED

            try:
                translated = self.provider.translate(
                    segment.source_text, job.source_lang, job.target_lang, model_config
                )
            except Exception as e:
                attempts += 1
                self._note_call(False, job)
                error = describe_error(e, attempts)
                kind, transient = classify(e)

                if self.retry_policy.should_retry(e, attempts):
                    delay = self.retry_policy.delay_for(attempts - 1)
                    self.store.record_attempt(segment.id, error, claimed_by=run_token)
                    logger.warning(
                        f"Segment {segment.ordinal} of job {job.id} failed ({kind.value}), "
                        f"retry {attempts}/{self.retry_policy.max_attempts - 1} in {delay:.2f}s: {e}"
                    )
                    if self._stop.wait(delay):
                        self.store.release_segment(segment.id, claimed_by=run_token)
                        return segment.id, RELEASED
                    continue

                if transient:
                    logger.error(f"Segment {segment.ordinal} of job {job.id} failed after {attempts} attempts: {e}")
                else:
                    logger.error(f"Segment {segment.ordinal} of job {job.id} failed permanently ({kind.value}): {e}")
                recorded = self.store.record_result(segment.id, SegmentOutcome.failed(error), claimed_by=run_token)
                return segment.id, FAILED if recorded else DROPPED

            self._note_call(True, job)
            recorded = self.store.record_result(segment.id, SegmentOutcome.done(translated), claimed_by=run_token)
            if not recorded:
                return segment.id, DROPPED
            if self.settings.use_translation_memory:
                self.store.remember(segment.source_text, translated, job.source_lang, job.target_lang)
            logger.debug(f"Segment {segment.ordinal}: '{preview(segment.source_text)}' -> '{preview(translated)}'")
            return segment.id, DONE
