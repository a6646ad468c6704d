"""
Reassembler

Fills a placeholder tree with segment texts. Done segments contribute their
translation, every other segment its source text, so a partially
translated job still produces a complete document.
"""

from typing import Dict, Iterable, Mapping, Union

from transloom.core.models import Segment, SegmentStatus
from transloom.document.tree import ContentNode
from transloom.errors import ReassemblyError
from transloom.logger import get_logger

logger = get_logger(__name__)


def _index_segments(segments: Union[Mapping[str, Segment], Iterable[Segment]]) -> Dict[str, Segment]:
    if isinstance(segments, Mapping):
        return dict(segments)
    return {segment.id: segment for segment in segments}


def reassemble(placeholder_tree: ContentNode, segments) -> ContentNode:
    """
    Build the output tree from a placeholder tree and segment records.

    The input tree is not modified. The result has the same node count and
    nesting as the placeholder tree.

    Raises:
        ReassemblyError: a placeholder references an unknown segment
    """
    by_id = _index_segments(segments)
    output = placeholder_tree.clone()
    filled = 0
    untranslated = 0

    for current in output.iter_preorder():
        placeholder = current.placeholder
        if placeholder is None:
            continue

        if len(placeholder.separators) not in (0, len(placeholder.segment_ids) - 1):
            raise ReassemblyError(
                f"Placeholder has {len(placeholder.segment_ids)} segments "
                f"but {len(placeholder.separators)} separators",
                code="placeholder_malformed",
                details={"segment_ids": placeholder.segment_ids},
            )

        pieces = []
        for segment_id in placeholder.segment_ids:
            segment = by_id.get(segment_id)
            if segment is None:
                raise ReassemblyError(
                    f"Placeholder references unknown segment {segment_id}",
                    code="segment_missing",
                    details={"segment_id": segment_id},
                )
            if segment.status != SegmentStatus.DONE:
                untranslated += 1
            pieces.append(segment.resolved_text)

        text = pieces[0] if pieces else ""
        for index, piece in enumerate(pieces[1:]):
            separator = placeholder.separators[index] if placeholder.separators else " "
            text += separator + piece

        current.text = placeholder.leading + text + placeholder.trailing
        current.placeholder = None
        filled += 1

    if untranslated:
        logger.info(f"Reassembled {filled} leaves ({untranslated} segments kept their source text)")
    else:
        logger.debug(f"Reassembled {filled} leaves")
    return output
