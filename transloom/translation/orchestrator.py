"""
Job Orchestrator

Drives a job through its lifecycle:

    created -> segmenting -> translating -> reassembling -> completed
                                                         -> completed_with_errors
    any active state -> cancelled | failed

Jobs run synchronously (run_job) or on a background thread per job
(submit_job / resume_incomplete_jobs). The placeholder tree lives only in
memory while a job runs; on resume it is derived again from the source
document, which yields the same segment identifiers.
"""

import os
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

from transloom.config import PipelineSettings, load_config
from transloom.core.models import ACTIVE_STATES, Job, JobState, JobStatus, SegmentStatus
from transloom.core.store import JobStore
from transloom.document.converters import FormatConverter, default_converters, detect_format, get_converter
from transloom.document.tree import ContentNode
from transloom.errors import (
    FormatError,
    InvalidTransitionError,
    PersistenceError,
    ReassemblyError,
    SegmentationError,
)
from transloom.logger import LOG_MODE_ENV, LOG_MODES, get_logger, set_log_mode
from transloom.translation.dispatcher import Dispatcher
from transloom.translation.progress import JobProgress
from transloom.translation.reassembler import reassemble
from transloom.translation.segmenter import SegmentationResult, SegmenterOptions, segment_tree

logger = get_logger(__name__)

FATAL_ERRORS = (SegmentationError, ReassemblyError, FormatError)


def default_output_path(source_path: str, target_lang: str) -> str:
    """
    Output file next to the source, with the target language before the suffix.

    Examples:
        >>> default_output_path("docs/guide.md", "de")
        'docs/guide.de.md'
        >>> default_output_path("book.tree.json", "fr")
        'book.fr.tree.json'
    """
    path = Path(source_path)
    name = path.name
    if name.lower().endswith(".tree.json"):
        stem, suffix = name[:-len(".tree.json")], name[-len(".tree.json"):]
    else:
        stem, suffix = path.stem, path.suffix
    return str(path.with_name(f"{stem}.{target_lang}{suffix}"))


class Orchestrator:
    """Runs translation jobs against one job store."""

    def __init__(
        self,
        store: JobStore,
        provider,
        settings: Optional[PipelineSettings] = None,
        converters: Optional[Dict[str, FormatConverter]] = None,
        segmenter_options: Optional[SegmenterOptions] = None,
        progress_callback: Optional[Callable[[JobProgress], None]] = None,
    ):
        self.store = store
        self.provider = provider
        self.settings = settings or PipelineSettings()
        self.converters = converters if converters is not None else default_converters()
        self.segmenter_options = segmenter_options or SegmenterOptions(
            max_segment_chars=self.settings.max_segment_chars
        )
        self.progress_callback = progress_callback
        # job_id -> cancel event / worker thread of jobs running in this process
        self._cancel_events: Dict[str, threading.Event] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._jobs_lock = threading.Lock()

    @classmethod
    def from_store(cls, store: JobStore, transport=None, **kwargs) -> "Orchestrator":
        """Build an orchestrator with provider and settings taken from the stored config."""
        from transloom.ai.service import build_provider

        config = load_config(store)
        # The environment variable wins over the stored log mode
        if not os.environ.get(LOG_MODE_ENV) and config.get("log_mode") in LOG_MODES:
            set_log_mode(config["log_mode"])
        return cls(
            store,
            build_provider(config, transport=transport),
            settings=PipelineSettings.from_config(config),
            **kwargs,
        )

    def apply_config(self, config: Dict, transport=None):
        """Use a new configuration for jobs started from now on."""
        from transloom.ai.service import build_provider

        settings = PipelineSettings.from_config(config)
        self.provider = build_provider(config, transport=transport)
        self.settings = settings
        self.segmenter_options = SegmenterOptions(
            exclude=self.segmenter_options.exclude,
            max_segment_chars=settings.max_segment_chars,
        )
        logger.info("Orchestrator configuration updated")

    # ============================================================
    # Caller-facing operations
    # ============================================================

    def submit_job(
        self,
        source_path: str,
        source_lang: str,
        target_lang: str,
        output_path: Optional[str] = None,
        source_format: Optional[str] = None,
        target_format: Optional[str] = None,
        background: bool = True,
    ) -> str:
        """
        Create a job for a document and start it.

        Raises:
            FormatError: the document format cannot be determined or has no converter
        """
        source_format = source_format or detect_format(Path(source_path))
        target_format = target_format or source_format
        get_converter(source_format, self.converters)
        get_converter(target_format, self.converters)

        job = self.store.create_job(
            source_lang=source_lang,
            target_lang=target_lang,
            source_path=str(source_path),
            output_path=output_path or default_output_path(source_path, target_lang),
            source_format=source_format,
            target_format=target_format,
            model=self.settings.model,
        )
        if background:
            self._start_background(job.id)
        else:
            self.run_job(job.id)
        return job.id

    def cancel_job(self, job_id: str) -> bool:
        """
        Request cancellation.

        A job running in this process stops claiming segments and becomes
        cancelled once running provider calls finish. Any other active job
        is cancelled in the store, which a dispatcher running it elsewhere
        picks up before its next claim. Returns False for finished jobs.
        """
        while True:
            with self._jobs_lock:
                event = self._cancel_events.get(job_id)
                if event is not None:
                    event.set()
                    logger.info(f"Cancellation requested for job {job_id}")
                    return True

            job = self.store.require_job(job_id)
            if job.state.is_terminal:
                return False
            try:
                self.store.update_job_state(job_id, JobState.CANCELLED, expected=job.state)
            except InvalidTransitionError:
                # Moved by another caller in the meantime, look again
                continue
            logger.info(f"Job {job_id} cancelled")
            return True

    def get_job_status(self, job_id: str) -> JobStatus:
        job = self.store.require_job(job_id)
        return JobStatus.from_job(job, running=self.is_running(job_id))

    def list_job_statuses(self) -> List[JobStatus]:
        return [JobStatus.from_job(job, running=self.is_running(job.id)) for job in self.store.list_jobs()]

    def resume_incomplete_jobs(self, background: bool = True, stale_after: Optional[float] = None) -> List[str]:
        """
        Continue every job that is not in a terminal state.

        In-flight segments of those jobs that have not been updated for
        ``stale_after`` seconds (default: ``settings.stale_after_seconds``)
        are first returned to pending. Younger claims may belong to another
        instance sharing the store and are left alone. A caller that knows
        it is the only process on the store can pass 0.
        """
        if stale_after is None:
            stale_after = self.settings.stale_after_seconds
        resumed = []
        for job in self.store.list_jobs(states=ACTIVE_STATES):
            if self.is_running(job.id):
                continue
            recovered = self.store.recover_stale_segments(stale_after, job_id=job.id)
            logger.info(
                f"Resuming job {job.id} from {job.state.value} "
                f"({job.completed}/{job.total} done, {recovered} stale segments recovered)"
            )
            if background:
                self._start_background(job.id)
            else:
                self.run_job(job.id)
            resumed.append(job.id)
        return resumed

    def delete_job(self, job_id: str, timeout: Optional[float] = 30.0) -> bool:
        """Stop the job if it is running here, then purge it and its segments."""
        if self.is_running(job_id):
            self.cancel_job(job_id)
            self.wait(job_id, timeout)
        return self.store.delete_job(job_id)

    def is_running(self, job_id: str) -> bool:
        with self._jobs_lock:
            return job_id in self._cancel_events

    def wait(self, job_id: str, timeout: Optional[float] = None) -> bool:
        """Wait for a background job thread. Returns False on timeout."""
        with self._jobs_lock:
            thread = self._threads.get(job_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    # ============================================================
    # Running jobs
    # ============================================================

    def _register(self, job_id: str) -> Optional[threading.Event]:
        with self._jobs_lock:
            if job_id in self._cancel_events:
                return None
            event = threading.Event()
            self._cancel_events[job_id] = event
            return event

    def _unregister(self, job_id: str):
        with self._jobs_lock:
            self._cancel_events.pop(job_id, None)
            self._threads.pop(job_id, None)

    def _start_background(self, job_id: str) -> bool:
        event = self._register(job_id)
        if event is None:
            logger.warning(f"Job {job_id} is already running")
            return False

        thread = threading.Thread(
            target=self._run_registered,
            args=(job_id, event),
            name=f"translation-job-{job_id}",
            daemon=True,
        )
        with self._jobs_lock:
            self._threads[job_id] = thread
        thread.start()
        logger.info(f"Translation job {job_id} started in background")
        return True

    def _run_registered(self, job_id: str, cancel_event: threading.Event):
        try:
            self._drive(job_id, cancel_event)
        except Exception:
            logger.exception(f"Translation job {job_id} crashed")
        finally:
            self._unregister(job_id)

    def run_job(self, job_id: str) -> Job:
        """
        Drive a job synchronously until it finishes, is cancelled or pauses.

        Raises:
            JobNotFoundError: unknown job
        """
        event = self._register(job_id)
        if event is None:
            raise InvalidTransitionError(f"Job {job_id} is already running", code="job_running",
                                         details={"job_id": job_id})
        try:
            return self._drive(job_id, event)
        finally:
            self._unregister(job_id)

    def _drive(self, job_id: str, cancel_event: threading.Event) -> Job:
        job = self.store.require_job(job_id)
        if job.state.is_terminal:
            logger.info(f"Job {job_id} is already {job.state.value}")
            return job

        try:
            return self._advance(job, cancel_event)
        except FATAL_ERRORS as e:
            logger.error(f"Job {job_id} failed: {e}")
            return self._fail(job_id, e)
        except PersistenceError as e:
            logger.error(f"Job {job_id} paused, job store unavailable: {e}")
            try:
                self.store.set_job_error(job_id, f"Paused: {e}")
            except PersistenceError as store_error:
                logger.error(f"Could not record error of job {job_id}: {store_error}")
            return job
        except InvalidTransitionError as e:
            # Another caller moved the job (e.g. cancelled it) while it ran
            logger.warning(f"Job {job_id} stopped: {e}")
            return self.store.require_job(job_id)

    def _advance(self, job: Job, cancel_event: threading.Event) -> Job:
        if cancel_event.is_set():
            return self._cancel(job)

        if job.state == JobState.CREATED:
            job = self.store.update_job_state(job.id, JobState.SEGMENTING, expected=JobState.CREATED)

        segmentation = self._segment(job)

        if job.state == JobState.SEGMENTING:
            self._persist_segments(job, segmentation)
            job = self.store.update_job_state(job.id, JobState.TRANSLATING, expected=JobState.SEGMENTING)
        elif job.state == JobState.TRANSLATING:
            # Resume: stored rows must match the document, failed segments get another try
            self._persist_segments(job, segmentation)
            requeued = self.store.requeue_failed(job.id)
            if requeued:
                logger.info(f"Job {job.id}: {requeued} failed segments queued again")

        if job.state == JobState.TRANSLATING:
            if cancel_event.is_set():
                return self._cancel(job)
            if job.last_error:
                self.store.set_job_error(job.id, None)

            dispatcher = Dispatcher(self.store, self.provider, self.settings)
            report = dispatcher.run(job, cancel_event, self.progress_callback)

            if report.cancelled or cancel_event.is_set():
                return self._cancel(job)
            if report.aborted:
                message = (f"Paused after {self.settings.max_consecutive_failures} consecutive "
                           f"provider failures")
                self.store.set_job_error(job.id, message)
                logger.warning(f"Job {job.id}: {message}; resume to continue")
                return self.store.require_job(job.id)

            unfinished = self.store.count_segments(job.id, [SegmentStatus.PENDING, SegmentStatus.IN_FLIGHT])
            if unfinished:
                message = f"{unfinished} segments are still claimed elsewhere"
                self.store.set_job_error(job.id, message)
                logger.warning(f"Job {job.id} paused: {message}")
                return self.store.require_job(job.id)

            job = self.store.update_job_state(job.id, JobState.REASSEMBLING, expected=JobState.TRANSLATING)

        if cancel_event.is_set():
            return self._cancel(job)
        return self._reassemble(job, segmentation)

    def _segment(self, job: Job) -> SegmentationResult:
        tree = self._read_document(job)
        return segment_tree(tree, job.id, self.segmenter_options)

    def _persist_segments(self, job: Job, segmentation: SegmentationResult):
        inserted = self.store.upsert_segments(segmentation.segments)
        stored = self.store.count_segments(job.id)
        if stored != len(segmentation.segments):
            raise SegmentationError(
                f"Job {job.id} has {stored} stored segments but the document yields "
                f"{len(segmentation.segments)}; the document changed since the job was created",
                code="segments_mismatch",
                details={"job_id": job.id, "stored": stored, "segmented": len(segmentation.segments)},
            )
        logger.info(f"Job {job.id}: {len(segmentation.segments)} segments ({inserted} new)")

    def _reassemble(self, job: Job, segmentation: SegmentationResult) -> Job:
        segments = self.store.list_segments(job.id)
        translated_tree = reassemble(segmentation.placeholder_tree, segments)
        self._write_document(job, translated_tree)

        failed = sum(1 for segment in segments if segment.status == SegmentStatus.FAILED)
        final_state = JobState.COMPLETED_WITH_ERRORS if failed else JobState.COMPLETED
        last_error = f"{failed} segments kept their source text" if failed else None
        job = self.store.update_job_state(job.id, final_state, expected=JobState.REASSEMBLING,
                                          last_error=last_error)
        logger.info(f"Job {job.id} {final_state.value}: {job.completed}/{job.total} segments translated, "
                    f"output written to {job.output_path}")
        return job

    def _cancel(self, job: Job) -> Job:
        try:
            job = self.store.update_job_state(job.id, JobState.CANCELLED)
        except InvalidTransitionError:
            return self.store.require_job(job.id)
        logger.info(f"Job {job.id} cancelled ({job.completed}/{job.total} segments done)")
        return job

    def _fail(self, job_id: str, error: Exception) -> Job:
        try:
            return self.store.update_job_state(job_id, JobState.FAILED, last_error=str(error))
        except (InvalidTransitionError, PersistenceError) as e:
            logger.error(f"Could not mark job {job_id} as failed: {e}")
            return self.store.require_job(job_id)

    # ============================================================
    # Document I/O
    # ============================================================

    def _read_document(self, job: Job) -> ContentNode:
        if not job.source_path:
            raise FormatError(f"Job {job.id} has no source document", code="source_missing")
        source_format = job.source_format or detect_format(Path(job.source_path))
        converter = get_converter(source_format, self.converters)
        try:
            document = Path(job.source_path).read_bytes()
        except OSError as e:
            raise FormatError(f"Cannot read source document {job.source_path}: {e}",
                              code="source_unreadable", details={"path": job.source_path})
        return converter.parse(document, source_format)

    def _write_document(self, job: Job, tree: ContentNode):
        target_format = job.target_format or job.source_format
        converter = get_converter(target_format, self.converters)
        data = converter.serialize(tree, target_format)
        output_path = Path(job.output_path or default_output_path(job.source_path, job.target_lang))
        tmp_path = output_path.with_name(output_path.name + ".tmp")
        try:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(data)
            os.replace(tmp_path, output_path)
        except OSError as e:
            raise FormatError(f"Cannot write output document {output_path}: {e}",
                              code="output_write_failed", details={"path": str(output_path)})
