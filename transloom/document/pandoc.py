"""
Pandoc converter.

Runs the ``pandoc`` executable to move between a document format and
pandoc's JSON AST, and maps that AST onto ContentNode trees:

- Runs of ``Str``/``Space`` inlines become one ``text`` leaf
- ``Code``, ``CodeBlock``, ``Math`` and raw elements become verbatim leaves
- ``SoftBreak``/``LineBreak`` become ``marker`` leaves
- Every other element becomes a structural node; its payload is kept in
  ``attrs["c"]`` with nested element lists replaced by slot markers
"""

import json
import re
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Any, Dict, List

from transloom.document.converters import FormatConverter
from transloom.document.tree import ContentNode
from transloom.errors import FormatError
from transloom.logger import get_logger

logger = get_logger(__name__)

PANDOC_TIMEOUT_SECONDS = 120
SLOT_KEY = "__slot__"

TEXT_RUN_TYPES = ("Str", "Space")
MARKER_TEXT = {"SoftBreak": "\n", "LineBreak": "\n"}
_WHITESPACE_RUN = re.compile(r"([ \t\n]+)")


def _is_element(value: Any) -> bool:
    return isinstance(value, dict) and "t" in value


def _is_element_list(value: Any) -> bool:
    return isinstance(value, list) and bool(value) and all(_is_element(item) for item in value)


def element_list_to_nodes(elements: List[Dict[str, Any]]) -> List[ContentNode]:
    """Map a list of pandoc elements to content nodes, merging text runs."""
    nodes: List[ContentNode] = []
    run: List[str] = []

    def flush():
        if run:
            nodes.append(ContentNode(kind="text", text="".join(run)))
            run.clear()

    for element in elements:
        element_type = element["t"]
        if element_type == "Str":
            run.append(element.get("c", ""))
        elif element_type == "Space":
            run.append(" ")
        else:
            flush()
            nodes.append(element_to_node(element))
    flush()
    return nodes


def element_to_node(element: Dict[str, Any]) -> ContentNode:
    element_type = element["t"]
    content = element.get("c")

    if element_type in MARKER_TEXT:
        return ContentNode(kind="marker", text=MARKER_TEXT[element_type], attrs={"t": element_type})
    if element_type in ("Code", "CodeBlock"):
        return ContentNode(kind="code", text=content[1], attrs={"t": element_type, "attr": content[0]})
    if element_type == "Math":
        return ContentNode(kind="math", text=content[1], attrs={"t": element_type, "math_type": content[0]})
    if element_type in ("RawInline", "RawBlock"):
        return ContentNode(kind="raw", text=content[1], attrs={"t": element_type, "raw_format": content[0]})

    children: List[ContentNode] = []

    def template_of(value: Any) -> Any:
        if _is_element_list(value):
            slot_nodes = element_list_to_nodes(value)
            children.extend(slot_nodes)
            return {SLOT_KEY: len(slot_nodes)}
        if isinstance(value, list):
            return [template_of(item) for item in value]
        return value

    attrs: Dict[str, Any] = {"t": element_type}
    if "c" in element:
        attrs["c"] = template_of(content)
    return ContentNode(kind=element_type.lower(), children=children, attrs=attrs)


def text_to_elements(text: str) -> List[Dict[str, Any]]:
    elements: List[Dict[str, Any]] = []
    for piece in _WHITESPACE_RUN.split(text):
        if not piece:
            continue
        if _WHITESPACE_RUN.fullmatch(piece):
            elements.append({"t": "Space"})
        else:
            elements.append({"t": "Str", "c": piece})
    return elements


def nodes_to_element_list(nodes: List[ContentNode]) -> List[Dict[str, Any]]:
    elements: List[Dict[str, Any]] = []
    for child in nodes:
        if child.kind == "text":
            elements.extend(text_to_elements(child.text or ""))
        else:
            elements.append(node_to_element(child))
    return elements


def node_to_element(node: ContentNode) -> Dict[str, Any]:
    element_type = node.attrs.get("t")
    if not element_type:
        raise FormatError(f"Node of kind '{node.kind}' has no pandoc element type", code="pandoc_unmappable")

    if node.kind == "marker":
        return {"t": element_type}
    if node.kind == "code":
        return {"t": element_type, "c": [node.attrs.get("attr"), node.text or ""]}
    if node.kind == "math":
        return {"t": element_type, "c": [node.attrs.get("math_type"), node.text or ""]}
    if node.kind == "raw":
        return {"t": element_type, "c": [node.attrs.get("raw_format"), node.text or ""]}

    remaining = list(node.children)

    def fill(value: Any) -> Any:
        if isinstance(value, dict) and SLOT_KEY in value and len(value) == 1:
            count = value[SLOT_KEY]
            slot_nodes = remaining[:count]
            del remaining[:count]
            return nodes_to_element_list(slot_nodes)
        if isinstance(value, list):
            return [fill(item) for item in value]
        return value

    element: Dict[str, Any] = {"t": element_type}
    if "c" in node.attrs:
        element["c"] = fill(node.attrs["c"])
    if remaining:
        raise FormatError(
            f"Node of kind '{node.kind}' has {len(remaining)} children without a slot",
            code="pandoc_unmappable",
        )
    return element


def ast_to_tree(ast: Dict[str, Any]) -> ContentNode:
    """Map a pandoc JSON AST document onto a content tree."""
    if not isinstance(ast, dict) or "blocks" not in ast:
        raise FormatError("Pandoc output is not a JSON AST document", code="pandoc_parse_failed")
    attrs = {
        "pandoc-api-version": ast.get("pandoc-api-version"),
        "meta": ast.get("meta", {}),
    }
    return ContentNode(kind="document", children=element_list_to_nodes(ast["blocks"]), attrs=attrs)


def tree_to_ast(tree: ContentNode) -> Dict[str, Any]:
    """Inverse of ast_to_tree."""
    return {
        "pandoc-api-version": tree.attrs.get("pandoc-api-version"),
        "meta": tree.attrs.get("meta", {}),
        "blocks": nodes_to_element_list(tree.children),
    }


class PandocConverter(FormatConverter):
    """Converter backed by the pandoc executable."""

    name = "pandoc"

    def __init__(self, pandoc_path: str = "pandoc", timeout: float = PANDOC_TIMEOUT_SECONDS):
        self.pandoc_path = pandoc_path
        self.timeout = timeout

    def _run(self, args: List[str]) -> None:
        executable = shutil.which(self.pandoc_path)
        if not executable:
            raise FormatError(
                "pandoc executable not found. Install pandoc to convert this format.",
                code="pandoc_missing",
            )
        logger.debug(f"Running pandoc: {' '.join(args)}")
        try:
            subprocess.run(
                [executable, *args],
                check=True,
                capture_output=True,
                timeout=self.timeout,
            )
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.decode("utf-8", errors="replace")[:500] if e.stderr else ""
            raise FormatError(f"pandoc failed ({e.returncode}): {stderr}", code="pandoc_failed")
        except subprocess.TimeoutExpired:
            raise FormatError(f"pandoc timed out after {self.timeout}s", code="pandoc_timeout")

    def parse(self, document: bytes, source_format: str) -> ContentNode:
        with tempfile.TemporaryDirectory() as tmp_dir:
            input_path = Path(tmp_dir) / "input"
            output_path = Path(tmp_dir) / "output.json"
            input_path.write_bytes(document)
            self._run(["-f", source_format, "-t", "json", "-o", str(output_path), str(input_path)])
            try:
                ast = json.loads(output_path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as e:
                raise FormatError(f"pandoc produced invalid JSON: {e}", code="pandoc_parse_failed")
        return ast_to_tree(ast)

    def serialize(self, tree: ContentNode, target_format: str) -> bytes:
        ast = tree_to_ast(tree)
        with tempfile.TemporaryDirectory() as tmp_dir:
            input_path = Path(tmp_dir) / "input.json"
            output_path = Path(tmp_dir) / "output"
            input_path.write_text(json.dumps(ast, ensure_ascii=False), encoding="utf-8")
            self._run(["-f", "json", "-t", target_format, "-o", str(output_path), str(input_path)])
            return output_path.read_bytes()
