"""
Translation module - The translation pipeline

This module provides:
- segment_tree: content tree -> segments + placeholder tree
- Dispatcher: concurrent provider calls with retry/backoff
- reassemble: placeholder tree + segments -> translated tree
- Orchestrator: drives jobs through their lifecycle
- JobProgress: progress snapshot for callbacks
"""

from transloom.translation.progress import JobProgress
from transloom.translation.retry import RetryPolicy, classify
from transloom.translation.segmenter import (
    SegmentationResult,
    SegmenterOptions,
    make_segment_id,
    segment_tree,
    split_text,
)
from transloom.translation.dispatcher import DispatchReport, Dispatcher
from transloom.translation.reassembler import reassemble
from transloom.translation.orchestrator import Orchestrator, default_output_path
