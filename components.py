"""
Composition primitives for window content and rendered context.

Every component renders two ways: a flattened, human-legible text form and an
XML element for the structured form. The context renderer builds its document
out of the same primitives, so a window's content and the document that holds
it follow one layout.
"""
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Union


class Component:
    """Base class for anything that can appear as window or document content."""

    def render(self) -> str:
        raise NotImplementedError

    def to_xml(self) -> ET.Element:
        raise NotImplementedError


@dataclass
class Text(Component):
    """A plain run of text."""
    text: str

    def render(self) -> str:
        return self.text

    def to_xml(self) -> ET.Element:
        element = ET.Element("text")
        element.text = self.text
        return element


@dataclass
class VStack(Component):
    """Children stacked vertically; `spacing` blank lines between them."""
    children: list[Component] = field(default_factory=list)
    spacing: int = 0

    def render(self) -> str:
        separator = "\n" * (self.spacing + 1)
        return separator.join(child.render() for child in self.children)

    def to_xml(self) -> ET.Element:
        element = ET.Element("vstack")
        element.extend(child.to_xml() for child in self.children)
        return element


@dataclass
class HStack(Component):
    """Children laid out on one line joined by `separator`."""
    children: list[Component] = field(default_factory=list)
    separator: str = " "

    def render(self) -> str:
        return self.separator.join(child.render() for child in self.children)

    def to_xml(self) -> ET.Element:
        element = ET.Element("hstack")
        element.extend(child.to_xml() for child in self.children)
        return element


@dataclass
class TreeNode:
    label: str
    children: list["TreeNode"] = field(default_factory=list)

    @classmethod
    def leaf(cls, label: str) -> "TreeNode":
        return cls(label=label)

    @classmethod
    def branch(cls, label: str, *children: "TreeNode") -> "TreeNode":
        return cls(label=label, children=list(children))


@dataclass
class Tree(Component):
    """
    An indentation-based tree. Nested nodes are prefixed with a branch marker
    and indented by `indent` per level.
    """
    roots: list[TreeNode] = field(default_factory=list)
    indent: str = "  "

    def render(self) -> str:
        lines: list[str] = []
        for root in self.roots:
            self._render_node(lines, root, 0)
        return "\n".join(lines)

    def _render_node(self, lines: list[str], node: TreeNode, depth: int) -> None:
        prefix = "" if depth == 0 else "├─ "
        lines.append(f"{self.indent * depth}{prefix}{node.label}")
        for child in node.children:
            self._render_node(lines, child, depth + 1)

    def to_xml(self) -> ET.Element:
        element = ET.Element("tree")
        element.extend(self._node_to_xml(root) for root in self.roots)
        return element

    def _node_to_xml(self, node: TreeNode) -> ET.Element:
        element = ET.Element("node", {"label": node.label})
        element.extend(self._node_to_xml(child) for child in node.children)
        return element


Content = Union[str, Component]


def as_component(content: Content | None) -> Component:
    """Wraps plain strings so callers can treat all content uniformly."""
    if content is None:
        return Text("")
    if isinstance(content, Component):
        return content
    return Text(str(content))


def render_xml(element: ET.Element) -> str:
    """Serializes an element without an XML declaration, deterministically."""
    return ET.tostring(element, encoding="unicode", short_empty_elements=True)
