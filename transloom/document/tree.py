"""
Content Tree Model

Typed representation of a document's structure as produced by a format
converter and consumed by the segmenter:

- Leaves carry text (``text is not None``) and have no children
- Structural nodes carry children and opaque ``attrs`` (heading level,
  link target, table alignment, ...)
- Placeholder leaves replace extracted text with segment references
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

# Leaf kinds that are copied verbatim and never become segments
VERBATIM_KINDS = frozenset({"code", "math", "raw", "marker"})


@dataclass
class Placeholder:
    """Reference from a leaf to the segment(s) holding its text."""
    segment_ids: List[str]
    # Whitespace found between the pieces of a split leaf
    separators: List[str] = field(default_factory=list)
    leading: str = ""
    trailing: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "segment_ids": list(self.segment_ids),
            "separators": list(self.separators),
            "leading": self.leading,
            "trailing": self.trailing,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Placeholder":
        return cls(
            segment_ids=list(data.get("segment_ids", [])),
            separators=list(data.get("separators", [])),
            leading=data.get("leading", ""),
            trailing=data.get("trailing", ""),
        )


@dataclass
class ContentNode:
    """One node of a document's content tree."""
    kind: str
    children: List["ContentNode"] = field(default_factory=list)
    text: Optional[str] = None
    attrs: Dict[str, Any] = field(default_factory=dict)
    translatable: bool = True
    placeholder: Optional[Placeholder] = None

    @property
    def is_leaf(self) -> bool:
        return self.text is not None or self.placeholder is not None

    def iter_preorder(self) -> Iterator["ContentNode"]:
        """Yield this node and every descendant in document order."""
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def leaves(self) -> List["ContentNode"]:
        return [node for node in self.iter_preorder() if node.is_leaf]

    def leaf_texts(self) -> List[str]:
        return [node.text for node in self.iter_preorder() if node.text is not None]

    def count_nodes(self) -> int:
        return sum(1 for _ in self.iter_preorder())

    def shape(self) -> Any:
        """Nesting signature (kinds only), used to compare tree structure."""
        return (self.kind, tuple(child.shape() for child in self.children))

    def clone(self) -> "ContentNode":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind}
        if self.text is not None:
            data["text"] = self.text
        if self.children:
            data["children"] = [child.to_dict() for child in self.children]
        if self.attrs:
            data["attrs"] = copy.deepcopy(self.attrs)
        if not self.translatable:
            data["translatable"] = False
        if self.placeholder is not None:
            data["placeholder"] = self.placeholder.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContentNode":
        if not isinstance(data, dict) or "kind" not in data:
            raise ValueError(f"Not a content node: {data!r}")
        placeholder = data.get("placeholder")
        return cls(
            kind=data["kind"],
            children=[cls.from_dict(child) for child in data.get("children", [])],
            text=data.get("text"),
            attrs=copy.deepcopy(data.get("attrs", {})),
            translatable=data.get("translatable", True),
            placeholder=Placeholder.from_dict(placeholder) if placeholder else None,
        )


def leaf(text: str, kind: str = "text", **attrs: Any) -> ContentNode:
    return ContentNode(kind=kind, text=text, attrs=attrs)


def node(kind: str, *children: ContentNode, **attrs: Any) -> ContentNode:
    return ContentNode(kind=kind, children=list(children), attrs=attrs)


def structural_problems(root: Any) -> List[str]:
    """
    Check a content tree for malformed structure.

    Returns a list of human readable problems, empty when the tree is sound:
    leaves with children, non-node children, empty kinds, non-string text,
    and nodes reachable more than once (shared subtrees or cycles).
    """
    problems: List[str] = []
    if not isinstance(root, ContentNode):
        return [f"root is {type(root).__name__}, not ContentNode"]

    seen = set()
    stack = [(root, "0")]
    while stack:
        current, path = stack.pop()
        if id(current) in seen:
            problems.append(f"node at {path} is reachable more than once")
            continue
        seen.add(id(current))

        if not isinstance(current.kind, str) or not current.kind:
            problems.append(f"node at {path} has no kind")
        if current.text is not None and not isinstance(current.text, str):
            problems.append(f"leaf at {path} has non-string text ({type(current.text).__name__})")
        if current.text is not None and current.children:
            problems.append(f"leaf at {path} also has {len(current.children)} children")
        if not isinstance(current.children, list):
            problems.append(f"node at {path} has children of type {type(current.children).__name__}")
            continue

        for index, child in reversed(list(enumerate(current.children))):
            child_path = f"{path}.{index}"
            if not isinstance(child, ContentNode):
                problems.append(f"child at {child_path} is {type(child).__name__}, not ContentNode")
                continue
            stack.append((child, child_path))

    return problems
