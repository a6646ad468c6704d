"""
Segmenter

Turns a content tree into translatable segments plus a placeholder tree:

- Pre-order walk, ordinals assigned in visit order
- Only translatable text leaves are extracted; code, math, raw text and
  formatting markers stay in the tree untouched
- Whitespace around a leaf's text stays in the placeholder, the segment
  carries the stripped text
- Leaves longer than ``max_segment_chars`` are split at sentence breaks

The result depends only on (tree, job_id, options), so segmenting an
unchanged document again yields the same segment identifiers.
"""

import re
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from transloom.core.models import Segment, SegmentStatus
from transloom.document.tree import VERBATIM_KINDS, ContentNode, Placeholder, structural_problems
from transloom.errors import SegmentationError
from transloom.logger import get_logger
from transloom.utils import calculate_hash, preview

logger = get_logger(__name__)

SEGMENT_ID_LENGTH = 32

# Sentence end followed by whitespace; the next character must be uppercase
_SENTENCE_BREAK = re.compile(r"[.!?](\s+)")


@dataclass
class SegmenterOptions:
    # Extra "do not translate" rule, called with each candidate leaf
    exclude: Optional[Callable[[ContentNode], bool]] = None
    max_segment_chars: Optional[int] = None


@dataclass
class SegmentationResult:
    segments: List[Segment] = field(default_factory=list)
    placeholder_tree: Optional[ContentNode] = None


def make_segment_id(job_id: str, ordinal: int, source_text: str) -> str:
    """Stable segment identifier derived from job, position and text."""
    return calculate_hash(f"{job_id}:{ordinal}:{calculate_hash(source_text)}")[:SEGMENT_ID_LENGTH]


def _find_break(text: str, start: int) -> Optional[re.Match]:
    for match in _SENTENCE_BREAK.finditer(text, start):
        following = text[match.end():match.end() + 1]
        if following.isupper():
            return match
    return None


def split_text(text: str, max_chars: Optional[int]) -> Tuple[List[str], List[str]]:
    """
    Split text longer than max_chars at sentence breaks.

    The search for a break starts at half the limit, so pieces are neither
    tiny nor much longer than the limit.

    Returns:
        (pieces, separators) where separators[i] is the whitespace that sat
        between pieces[i] and pieces[i + 1]

    Raises:
        SegmentationError: no sentence break to split at
    """
    if not max_chars or len(text) <= max_chars:
        return [text], []

    pieces: List[str] = []
    separators: List[str] = []
    rest = text
    while len(rest) > max_chars:
        match = _find_break(rest, max_chars // 2)
        if match is None:
            raise SegmentationError(
                f"Could not find a sentence break to split a {len(rest)} character text: '{preview(rest)}'",
                code="segment_too_long",
                details={"max_segment_chars": max_chars, "length": len(rest)},
            )
        pieces.append(rest[:match.start(1)])
        separators.append(match.group(1))
        rest = rest[match.end():]
    pieces.append(rest)
    return pieces, separators


def _is_extractable(leaf: ContentNode, options: SegmenterOptions) -> bool:
    if leaf.kind in VERBATIM_KINDS or not leaf.translatable:
        return False
    if leaf.text is None or not leaf.text.strip():
        return False
    if options.exclude is not None and options.exclude(leaf):
        return False
    return True


def segment_tree(tree: ContentNode, job_id: str, options: Optional[SegmenterOptions] = None) -> SegmentationResult:
    """
    Extract segments from a content tree.

    Raises:
        SegmentationError: the tree is malformed or a leaf cannot be split
    """
    options = options or SegmenterOptions()
    problems = structural_problems(tree)
    if problems:
        raise SegmentationError(
            f"Malformed content tree: {problems[0]}",
            code="tree_malformed",
            details={"problems": problems[:20]},
        )

    placeholder_tree = tree.clone()
    segments: List[Segment] = []
    ordinal = 0

    # (node, every ancestor translatable)
    stack = [(placeholder_tree, True)]
    while stack:
        current, ancestors_translatable = stack.pop()
        translatable = ancestors_translatable and current.translatable
        if current.children:
            stack.extend((child, translatable) for child in reversed(current.children))
            continue
        if not translatable or not _is_extractable(current, options):
            continue

        text = current.text
        stripped = text.strip()
        leading = text[:len(text) - len(text.lstrip())]
        trailing = text[len(text.rstrip()):]
        pieces, separators = split_text(stripped, options.max_segment_chars)

        segment_ids = []
        for piece in pieces:
            segment = Segment(
                id=make_segment_id(job_id, ordinal, piece),
                job_id=job_id,
                ordinal=ordinal,
                source_text=piece,
                status=SegmentStatus.PENDING,
            )
            segments.append(segment)
            segment_ids.append(segment.id)
            ordinal += 1

        current.text = None
        current.placeholder = Placeholder(
            segment_ids=segment_ids,
            separators=separators,
            leading=leading,
            trailing=trailing,
        )

    logger.debug(f"Segmented job {job_id}: {len(segments)} segments")
    return SegmentationResult(segments=segments, placeholder_tree=placeholder_tree)
