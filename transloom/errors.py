"""
Pipeline Exceptions

Exception classes shared by the segmenter, job store, reassembler and
orchestrator. Provider errors live in ai/exceptions.py.
"""

from typing import Optional


class TransloomError(Exception):
    """Base error with optional code and details."""

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.code = code
        self.details = details or {}


class SegmentationError(TransloomError):
    """The content tree could not be segmented. Fatal to the job."""


class PersistenceError(TransloomError):
    """Job store I/O failed. The job is paused, not failed."""


class ReassemblyError(TransloomError):
    """A placeholder references a segment that does not exist. Fatal to the job."""


class FormatError(TransloomError):
    """Document parsing or serialization failed. Fatal to the job."""


class InvalidTransitionError(TransloomError):
    """A job state change is not allowed from its current state."""


class JobNotFoundError(TransloomError):
    """No job with the given identifier exists."""
