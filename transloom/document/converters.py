"""
Format Converters

Converters turn document bytes into a content tree and back:

- TreeJsonConverter: the native JSON representation of a ContentNode tree
- PandocConverter (document/pandoc.py): every format pandoc can read/write

Use get_converter() to look a converter up by format name and
detect_format() to derive a format name from a file path.
"""

import json
from pathlib import Path
from typing import Dict, Optional

from transloom.document.tree import ContentNode
from transloom.errors import FormatError
from transloom.logger import get_logger

logger = get_logger(__name__)

TREE_FORMAT = "tree"
TREE_FORMAT_VERSION = 1

# File suffix -> pandoc format name
SUFFIX_FORMATS = {
    ".md": "markdown",
    ".markdown": "markdown",
    ".docx": "docx",
    ".odt": "odt",
    ".html": "html",
    ".htm": "html",
    ".rst": "rst",
    ".tex": "latex",
    ".epub": "epub",
    ".org": "org",
}


class FormatConverter:
    """Parses documents into content trees and serializes them back."""

    name = ""

    def parse(self, document: bytes, source_format: str) -> ContentNode:
        raise NotImplementedError

    def serialize(self, tree: ContentNode, target_format: str) -> bytes:
        raise NotImplementedError


class TreeJsonConverter(FormatConverter):
    """Reads and writes the native JSON tree format."""

    name = TREE_FORMAT

    def parse(self, document: bytes, source_format: str = TREE_FORMAT) -> ContentNode:
        try:
            payload = json.loads(document.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise FormatError(f"Invalid tree document: {e}", code="tree_parse_failed")

        if isinstance(payload, dict) and "root" in payload:
            version = payload.get("version", TREE_FORMAT_VERSION)
            if version != TREE_FORMAT_VERSION:
                raise FormatError(
                    f"Unsupported tree document version: {version}",
                    code="tree_version_unsupported",
                    details={"version": version},
                )
            payload = payload["root"]

        try:
            return ContentNode.from_dict(payload)
        except (ValueError, TypeError, AttributeError) as e:
            raise FormatError(f"Invalid tree document: {e}", code="tree_parse_failed")

    def serialize(self, tree: ContentNode, target_format: str = TREE_FORMAT) -> bytes:
        payload = {
            "format": "transloom-tree",
            "version": TREE_FORMAT_VERSION,
            "root": tree.to_dict(),
        }
        return json.dumps(payload, ensure_ascii=False, indent=2).encode("utf-8")


def detect_format(path: Path) -> str:
    """
    Derive a format name from a file path.

    Examples:
        >>> detect_format(Path("report.tree.json"))
        'tree'
        >>> detect_format(Path("notes.md"))
        'markdown'
    """
    path = Path(path)
    name = path.name.lower()
    if name.endswith(".tree.json"):
        return TREE_FORMAT
    suffix = path.suffix.lower()
    if suffix in SUFFIX_FORMATS:
        return SUFFIX_FORMATS[suffix]
    raise FormatError(
        f"Cannot detect document format of {path.name}",
        code="format_unknown",
        details={"path": str(path), "supported_suffixes": sorted(SUFFIX_FORMATS) + [".tree.json"]},
    )


def default_converters() -> Dict[str, FormatConverter]:
    """Converter registry: the tree format plus pandoc for everything else."""
    from transloom.document.pandoc import PandocConverter

    pandoc = PandocConverter()
    converters: Dict[str, FormatConverter] = {TREE_FORMAT: TreeJsonConverter()}
    for format_name in set(SUFFIX_FORMATS.values()):
        converters[format_name] = pandoc
    return converters


def get_converter(format_name: str, converters: Optional[Dict[str, FormatConverter]] = None) -> FormatConverter:
    registry = converters if converters is not None else default_converters()
    converter = registry.get(format_name)
    if converter is None:
        raise FormatError(
            f"No converter registered for format '{format_name}'",
            code="format_unsupported",
            details={"format": format_name, "supported_formats": sorted(registry)},
        )
    return converter
