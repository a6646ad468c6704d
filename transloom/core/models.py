"""
Job Store Records

Dataclasses for rows of the jobs and segments tables, the job state
machine's transition table and the status snapshot handed to callers.
"""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional


class JobState(str, Enum):
    CREATED = "created"
    SEGMENTING = "segmenting"
    TRANSLATING = "translating"
    REASSEMBLING = "reassembling"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


class SegmentStatus(str, Enum):
    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATES = frozenset({
    JobState.COMPLETED,
    JobState.COMPLETED_WITH_ERRORS,
    JobState.CANCELLED,
    JobState.FAILED,
})

ACTIVE_STATES = frozenset({
    JobState.CREATED,
    JobState.SEGMENTING,
    JobState.TRANSLATING,
    JobState.REASSEMBLING,
})

ALLOWED_TRANSITIONS = {
    JobState.CREATED: {JobState.SEGMENTING},
    JobState.SEGMENTING: {JobState.TRANSLATING},
    JobState.TRANSLATING: {JobState.REASSEMBLING},
    JobState.REASSEMBLING: {JobState.COMPLETED, JobState.COMPLETED_WITH_ERRORS},
}
for _state in ACTIVE_STATES:
    ALLOWED_TRANSITIONS[_state] = ALLOWED_TRANSITIONS[_state] | {JobState.CANCELLED, JobState.FAILED}
for _state in TERMINAL_STATES:
    ALLOWED_TRANSITIONS[_state] = set()


def can_transition(current: JobState, new: JobState) -> bool:
    return JobState(new) in ALLOWED_TRANSITIONS[JobState(current)]


@dataclass
class Job:
    """One translation request for one document."""
    id: str
    source_lang: str
    target_lang: str
    created_at: str
    state: JobState = JobState.CREATED
    source_path: Optional[str] = None
    output_path: Optional[str] = None
    source_format: Optional[str] = None
    target_format: Optional[str] = None
    model: Optional[str] = None
    last_error: Optional[str] = None
    updated_at: Optional[str] = None
    # Counts are derived from segment rows on every load
    total: int = 0
    completed: int = 0
    failed: int = 0

    @property
    def pending(self) -> int:
        return self.total - self.completed - self.failed

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["state"] = JobState(self.state).value
        return payload


@dataclass
class Segment:
    """One translatable unit of text."""
    id: str
    job_id: str
    ordinal: int
    source_text: str
    translated_text: Optional[str] = None
    status: SegmentStatus = SegmentStatus.PENDING
    attempts: int = 0
    last_error: Optional[str] = None
    updated_at: Optional[str] = None
    claimed_by: Optional[str] = None

    @property
    def resolved_text(self) -> str:
        """Translated text when done, source text otherwise."""
        if self.status == SegmentStatus.DONE and self.translated_text is not None:
            return self.translated_text
        return self.source_text

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["status"] = SegmentStatus(self.status).value
        return payload


@dataclass
class SegmentOutcome:
    """Terminal result of translating one segment."""
    status: SegmentStatus
    translated_text: Optional[str] = None
    error: Optional[str] = None
    # False when the text came from translation memory without a provider call
    provider_called: bool = True

    @classmethod
    def done(cls, translated_text: str, provider_called: bool = True) -> "SegmentOutcome":
        return cls(SegmentStatus.DONE, translated_text=translated_text, provider_called=provider_called)

    @classmethod
    def failed(cls, error: str) -> "SegmentOutcome":
        return cls(SegmentStatus.FAILED, error=error)


@dataclass
class JobStatus:
    """Status snapshot returned to callers."""
    job_id: str
    state: str
    completed: int
    failed: int
    total: int
    last_error: Optional[str] = None
    running: bool = False

    @classmethod
    def from_job(cls, job: Job, running: bool = False) -> "JobStatus":
        return cls(
            job_id=job.id,
            state=JobState(job.state).value,
            completed=job.completed,
            failed=job.failed,
            total=job.total,
            last_error=job.last_error,
            running=running,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
