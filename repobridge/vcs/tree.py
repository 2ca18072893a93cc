"""Flat path listing -> sorted hierarchical tree."""

from __future__ import annotations

from collections.abc import Iterable

from repobridge.vcs.models import FileEntry, TreeNode


def _sort_key(node: FileEntry) -> tuple[int, str]:
    return (0 if node.type == "dir" else 1, node.name)


def sort_entries(entries: Iterable[FileEntry]) -> list[FileEntry]:
    """Directories before files, then by name."""
    return sorted(entries, key=_sort_key)


def _sort_recursive(nodes: list[TreeNode]) -> None:
    nodes.sort(key=_sort_key)
    for node in nodes:
        if node.children:
            _sort_recursive(node.children)


def build_tree(entries: Iterable[FileEntry]) -> list[TreeNode]:
    """Build a sorted tree from a flat list of entries.

    Entries may arrive in any order and may omit directory entries; missing
    ancestors are synthesized. A path listed twice is kept once, and an
    explicit directory entry arriving after its synthesized stand-in fills in
    the stand-in's sha. A path listed as a file but used as a prefix becomes
    a directory.
    """
    roots: list[TreeNode] = []
    by_path: dict[str, TreeNode] = {}

    def ensure_dir(path: str) -> TreeNode:
        node = by_path.get(path)
        if node is not None:
            if node.type != "dir":
                # Anything with children is a directory, whatever it was listed as.
                node.type = "dir"
                node.size = None
            return node
        parts = path.split("/")
        node = TreeNode(name=parts[-1], path=path, type="dir", level=len(parts) - 1)
        by_path[path] = node
        attach(node, parts)
        return node

    def attach(node: TreeNode, parts: list[str]) -> None:
        if len(parts) == 1:
            roots.append(node)
        else:
            ensure_dir("/".join(parts[:-1])).children.append(node)

    for entry in entries:
        path = entry.path.strip("/")
        if not path:
            continue
        existing = by_path.get(path)
        if existing is not None:
            if existing.type == "dir" and entry.type == "dir" and not existing.sha:
                existing.sha = entry.sha
            continue
        parts = path.split("/")
        node = TreeNode(
            name=parts[-1],
            path=path,
            type=entry.type,
            sha=entry.sha,
            size=entry.size if entry.type == "file" else None,
            level=len(parts) - 1,
        )
        by_path[path] = node
        attach(node, parts)

    _sort_recursive(roots)
    return roots


def flatten_tree(nodes: Iterable[TreeNode]) -> list[FileEntry]:
    """Pre-order walk back to flat entries (directories included)."""
    flat: list[FileEntry] = []
    for node in nodes:
        flat.append(
            FileEntry(name=node.name, path=node.path, type=node.type, sha=node.sha, size=node.size)
        )
        flat.extend(flatten_tree(node.children))
    return flat


def render_tree(nodes: Iterable[TreeNode], indent: str = "  ") -> str:
    """Indented text rendering, directories suffixed with '/'."""
    lines: list[str] = []

    def walk(items: Iterable[TreeNode]) -> None:
        for node in items:
            suffix = "/" if node.type == "dir" else ""
            lines.append(f"{indent * node.level}{node.name}{suffix}")
            walk(node.children)

    walk(nodes)
    return "\n".join(lines)
