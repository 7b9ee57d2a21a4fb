"""
Conversion between flat path listings and hierarchical trees.

Flattening turns the host's recursive listing into the ordered list of
file paths to fetch. Building reconstructs a sorted hierarchy from flat
indexed-file records for display. Paths are always POSIX-style.
"""

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Protocol, Union


class PathItem(Protocol):
    """Anything with a path and a node kind."""

    path: str
    type: str


@dataclass
class FileNode:
    """Leaf node."""

    path: str
    size: int = 0
    language: str | None = None

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def type(self) -> str:
        return "file"


@dataclass
class FolderNode:
    """Interior node; children are always a list, possibly empty."""

    path: str
    children: list["TreeNode"] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]

    @property
    def type(self) -> str:
        return "folder"


TreeNode = Union[FileNode, FolderNode]


def flatten_for_fetch(entries: Iterable[PathItem]) -> list[str]:
    """File paths from a recursive listing, in listing order.

    Folders are excluded and repeated paths are kept once.
    """
    seen: set[str] = set()
    paths = []
    for entry in entries:
        if entry.type == "folder" or entry.path in seen:
            continue
        seen.add(entry.path)
        paths.append(entry.path)
    return paths


def _parent_path(path: str) -> str:
    return path.rsplit("/", 1)[0] if "/" in path else ""


def _sort_key(node: TreeNode) -> tuple[int, str]:
    return (0 if isinstance(node, FolderNode) else 1, node.path)


def sort_tree(nodes: list[TreeNode]) -> list[TreeNode]:
    """Sort in place, recursively: folders first, then by full path."""
    stack = [nodes]
    while stack:
        level = stack.pop()
        level.sort(key=_sort_key)
        stack.extend(node.children for node in level if isinstance(node, FolderNode))
    return nodes


def build_tree(
    items: Iterable[PathItem], create_missing_folders: bool = True
) -> list[TreeNode]:
    """Rebuild a hierarchy from flat records.

    Args:
        items: Records with ``path`` and ``type`` (and optionally ``size``
            and ``language``)
        create_missing_folders: Create intermediate folders that were not
            listed. When False, a node whose parent is absent is promoted
            to the root instead of being dropped.

    Returns:
        Sorted list of root nodes; empty input yields an empty list
    """
    nodes: dict[str, TreeNode] = {}
    order: list[str] = []

    def add(node: TreeNode) -> None:
        nodes[node.path] = node
        order.append(node.path)

    for item in items:
        path = item.path.strip("/")
        if not path or path in nodes:
            continue

        if create_missing_folders:
            parts = path.split("/")
            for depth in range(1, len(parts)):
                folder_path = "/".join(parts[:depth])
                if folder_path not in nodes:
                    add(FolderNode(path=folder_path))

        if item.type == "folder":
            add(FolderNode(path=path))
        else:
            add(
                FileNode(
                    path=path,
                    size=getattr(item, "size", 0) or 0,
                    language=getattr(item, "language", None),
                )
            )

    roots: list[TreeNode] = []
    for path in order:
        node = nodes[path]
        parent = nodes.get(_parent_path(path))
        if isinstance(parent, FolderNode):
            parent.children.append(node)
        else:
            # Top-level node, or an orphan whose parent was never listed
            roots.append(node)

    return sort_tree(roots)


def flatten_tree(nodes: list[TreeNode]) -> list[str]:
    """File paths of a built tree, in display order."""
    paths = []
    stack = list(reversed(nodes))
    while stack:
        node = stack.pop()
        if isinstance(node, FolderNode):
            stack.extend(reversed(node.children))
        else:
            paths.append(node.path)
    return paths


def count_files(nodes: list[TreeNode]) -> int:
    return len(flatten_tree(nodes))


def to_dict(node: TreeNode) -> dict:
    """JSON-friendly representation of a node and its subtree."""
    if isinstance(node, FolderNode):
        return {
            "name": node.name,
            "path": node.path,
            "type": "folder",
            "children": [to_dict(child) for child in node.children],
        }
    return {
        "name": node.name,
        "path": node.path,
        "type": "file",
        "size": node.size,
        "language": node.language,
    }
