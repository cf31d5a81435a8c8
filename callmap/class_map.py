"""class_map.py - Hierarchical package -> class -> function map of hooked methods.

The class map is a static view of the code that a recording touched (or of
everything that was hooked), independent of the event stream. It is built
from HookedMethod entries:

    package   the configured package path covering the method's source file,
              or the source file itself when no configuration is given;
    class     one node per segment of the qualified class name, so nested
              classes nest; a module-level function's module is one node;
    function  a leaf with ``location`` (``path:lineno``) and ``static``.

Nodes keep first-seen order, except that packages and classes always come
before functions under the same parent. Repeated classes merge by name.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from .config import Config
from .hook import FUNCTION, HookedMethod

logger = logging.getLogger(__name__)

PACKAGE = "package"
CLASS = "class"
FUNCTION_NODE = "function"


class ClassMapNode:
    """One node of the class map."""

    __slots__ = ("name", "type", "children", "location", "static")

    def __init__(
        self,
        name: str,
        type: str,
        location: Optional[str] = None,
        static: Optional[bool] = None,
    ) -> None:
        self.name = name
        self.type = type
        self.children: List["ClassMapNode"] = []
        self.location = location
        self.static = static

    def child(self, name: str, type: str) -> "ClassMapNode":
        """Return the child named ``name`` of the given type, creating it if needed."""
        for node in self.children:
            if node.name == name and node.type == type:
                return node
        node = ClassMapNode(name, type)
        self.children.append(node)
        return node

    def ordered_children(self) -> List["ClassMapNode"]:
        return sorted(self.children, key=lambda node: node.type == FUNCTION_NODE)

    def to_dict(self) -> Dict[str, Any]:
        if self.type == FUNCTION_NODE:
            return {
                "name": self.name,
                "type": self.type,
                "location": self.location,
                "static": self.static,
            }
        return {
            "name": self.name,
            "type": self.type,
            "children": [node.to_dict() for node in self.ordered_children()],
        }

    def __repr__(self) -> str:  # pragma: no cover
        return f"ClassMapNode({self.type} {self.name!r})"


def _package_name(method: HookedMethod, config: Optional[Config]) -> str:
    if config is None:
        return method.path
    package = config.package_for(method.descriptor.source_path)
    if package is None:
        logger.warning("No package found for %r at %s", method, method.location)
        return method.path
    return package.path


def _class_names(method: HookedMethod) -> List[str]:
    if method.descriptor.kind == FUNCTION:
        return [method.defined_class]
    return method.defined_class.split(".")


def build_class_map(
    methods: Iterable[HookedMethod], config: Optional[Config] = None
) -> List[ClassMapNode]:
    """Build the class map tree of ``methods``.

    Args:
        methods: Hooked methods, typically ``session.observed_methods()`` or
            ``hooked_methods()`` for a static map.
        config: The configuration the methods were hooked with. Its package
            paths name the package nodes.

    Returns:
        The root package nodes, in first-seen order.
    """
    root = ClassMapNode("", PACKAGE)
    for method in methods:
        parent = root.child(_package_name(method, config), PACKAGE)
        for class_name in _class_names(method):
            parent = parent.child(class_name, CLASS)
        if any(
            node.type == FUNCTION_NODE and node.name == method.method_id and node.static == method.is_static
            for node in parent.children
        ):
            continue
        parent.children.append(
            ClassMapNode(method.method_id, FUNCTION_NODE, method.location, method.is_static)
        )
    return list(root.children)


def class_map_dicts(methods: Iterable[HookedMethod], config: Optional[Config] = None) -> List[Dict[str, Any]]:
    """Return the class map of ``methods`` in its serialised form."""
    return [node.to_dict() for node in build_class_map(methods, config)]
