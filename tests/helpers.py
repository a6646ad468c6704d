"""Shared test doubles and sample documents."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from transloom.document.converters import TreeJsonConverter
from transloom.document.tree import ContentNode, leaf, node

Behavior = Union[str, BaseException, Callable[[str], str]]


class ScriptedProvider:
    """
    Provider double. ``script`` maps source text to a list of behaviors used
    one per call (the last one repeats): a string is returned, an exception
    is raised. Unscripted text goes through ``default``.
    """

    def __init__(self, script: Optional[Dict[str, List[Behavior]]] = None,
                 default: Optional[Callable[[str], str]] = None, delay: float = 0.0):
        self.script = {text: list(behaviors) for text, behaviors in (script or {}).items()}
        self.default = default or (lambda text: text)
        self.delay = delay
        self.calls: List[str] = []
        self.model_configs: List[dict] = []
        self.active = 0
        self.max_active = 0
        self.started = threading.Event()
        self.release = threading.Event()
        self.release.set()
        self._lock = threading.Lock()

    def calls_for(self, text: str) -> int:
        with self._lock:
            return self.calls.count(text)

    def translate(self, text, source_lang, target_lang, model_config=None):
        with self._lock:
            self.calls.append(text)
            self.model_configs.append(dict(model_config or {}))
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            behaviors = self.script.get(text)
            behavior = None
            if behaviors:
                behavior = behaviors.pop(0) if len(behaviors) > 1 else behaviors[0]
        self.started.set()
        try:
            self.release.wait(5)
            if self.delay:
                threading.Event().wait(self.delay)
            if isinstance(behavior, BaseException):
                raise behavior
            if isinstance(behavior, str):
                return behavior
            if callable(behavior):
                return behavior(text)
            return self.default(text)
        finally:
            with self._lock:
                self.active -= 1


def hello_world_tree() -> ContentNode:
    return node(
        "document",
        node("paragraph", leaf("Hello"), leaf("world"), leaf("!")),
    )


def rich_tree() -> ContentNode:
    return node(
        "document",
        node("header", leaf("Getting started"), level=1),
        node(
            "para",
            leaf("Run "),
            leaf("pip install transloom", kind="code"),
            leaf(" to install it. "),
            node("emph", leaf("Really.")),
            leaf("\n", kind="marker"),
            leaf("   "),
        ),
        node("codeblock", leaf("print('hi')", kind="code"), lang="python"),
        ContentNode(kind="note", children=[leaf("Do not translate me")], translatable=False),
        node("link", leaf("the docs"), url="https://example.com"),
    )


FRENCH = {"Hello": "Bonjour", "world": "monde", "!": "!"}


def read_tree(path: Path) -> ContentNode:
    return TreeJsonConverter().parse(Path(path).read_bytes())
