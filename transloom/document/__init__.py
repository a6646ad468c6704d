"""
Document module - Content tree model and format converters

This module provides:
- ContentNode / Placeholder: the content tree the pipeline works on
- Format converters: native tree JSON and pandoc-backed formats
"""

from transloom.document.tree import (
    VERBATIM_KINDS,
    ContentNode,
    Placeholder,
    leaf,
    node,
    structural_problems,
)
from transloom.document.converters import (
    TREE_FORMAT,
    FormatConverter,
    TreeJsonConverter,
    default_converters,
    detect_format,
    get_converter,
)
