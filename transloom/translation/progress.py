"""
Translation Progress Data Class

Contains the JobProgress dataclass handed to progress callbacks.
"""

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional


@dataclass
class JobProgress:
    """Progress information for a job being translated."""
    job_id: str
    total: int
    completed: int
    failed: int
    in_flight: int = 0
    phase: str = "translating"       # "translating", "retrying", "cancelling"
    memory_hits: int = 0             # Segments answered from translation memory
    last_segment_id: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def pending(self) -> int:
        return max(self.total - self.completed - self.failed - self.in_flight, 0)

    @property
    def fraction_done(self) -> float:
        if not self.total:
            return 1.0
        return (self.completed + self.failed) / self.total

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["pending"] = self.pending
        return payload
