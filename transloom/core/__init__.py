"""
Core module - Job store and its records

This module provides:
- store: JobStore, the durable record of jobs, segments and translation memory
- models: Job / Segment records and the job state machine
- schema: Database initialization and migrations
"""

from transloom.core.models import (
    ACTIVE_STATES,
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    Job,
    JobState,
    JobStatus,
    Segment,
    SegmentOutcome,
    SegmentStatus,
    can_transition,
)
from transloom.core.schema import (
    DB_VERSION,
    get_db_version,
    initialize_database,
    migrate_database,
)
from transloom.core.store import JobStore
