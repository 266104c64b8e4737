"""Nested tree building for the repository file browser."""

from __future__ import annotations

from dataclasses import dataclass

from ReBrowse.file_filter import is_markdown
from ReBrowse.models import TreeItem, TreeNode


@dataclass
class TreeCounts:
    file_count: int = 0
    markdown_file_count: int = 0


def build_tree(items: list[TreeItem]) -> list[TreeNode]:
    """Build a nested tree from a provider's flat recursive listing.

    Directories that only appear implicitly (as a prefix of a file path) are
    created on the fly, so truncated or unordered listings still produce a
    complete tree. Directories sort before files, each group by name.

    Example:
        [TreeItem("docs/a.md", "blob"), TreeItem("README.md", "blob")]
        → docs/ (a.md), README.md
    """
    root: dict[str, TreeNode] = {}
    directories: dict[str, TreeNode] = {}

    def ensure_dir(path: str) -> TreeNode:
        node = directories.get(path)
        if node is not None:
            return node
        parent_path, _, name = path.rpartition("/")
        node = TreeNode(path=path, name=name, type="directory", children=[])
        directories[path] = node
        if parent_path:
            ensure_dir(parent_path).children.append(node)  # type: ignore[union-attr]
        else:
            root[path] = node
        return node

    for item in sorted(items, key=lambda i: i.path):
        path = item.path.strip("/")
        if not path:
            continue
        if item.type == "tree":
            node = ensure_dir(path)
            node.sha = item.sha
            continue

        parent_path, _, name = path.rpartition("/")
        node = TreeNode(
            path=path,
            name=name,
            type="file",
            size=item.size,
            sha=item.sha,
            is_markdown=is_markdown(path),
        )
        if parent_path:
            ensure_dir(parent_path).children.append(node)  # type: ignore[union-attr]
        else:
            root[path] = node

    nodes = list(root.values())
    _sort(nodes)
    return nodes


def _sort(nodes: list[TreeNode]) -> None:
    nodes.sort(key=lambda n: (n.type != "directory", n.name.lower()))
    for node in nodes:
        if node.children:
            _sort(node.children)


def filter_tree(
    nodes: list[TreeNode],
    markdown_only: bool = False,
    max_depth: int | None = None,
) -> list[TreeNode]:
    """Return a filtered copy of *nodes*.

    ``markdown_only`` drops non-markdown files and directories left empty by
    that. ``max_depth`` keeps that many levels (1 = top level only); deeper
    directories are kept with an empty children list.
    """
    return _filter(nodes, markdown_only, max_depth, depth=1)


def _filter(
    nodes: list[TreeNode],
    markdown_only: bool,
    max_depth: int | None,
    depth: int,
) -> list[TreeNode]:
    result: list[TreeNode] = []
    for node in nodes:
        if node.type == "file":
            if markdown_only and not node.is_markdown:
                continue
            result.append(node)
            continue

        if max_depth is not None and depth >= max_depth:
            children: list[TreeNode] = []
        else:
            children = _filter(node.children or [], markdown_only, max_depth, depth + 1)
            if markdown_only and not children:
                continue
        result.append(
            TreeNode(
                path=node.path,
                name=node.name,
                type=node.type,
                size=node.size,
                sha=node.sha,
                is_markdown=False,
                children=children,
            )
        )
    return result


def count_files(nodes: list[TreeNode]) -> TreeCounts:
    """Count files and markdown files in a (possibly filtered) tree."""
    counts = TreeCounts()
    stack = list(nodes)
    while stack:
        node = stack.pop()
        if node.type == "file":
            counts.file_count += 1
            if node.is_markdown:
                counts.markdown_file_count += 1
        elif node.children:
            stack.extend(node.children)
    return counts


def iter_files(nodes: list[TreeNode]):
    """Yield file nodes depth-first, in tree order."""
    for node in nodes:
        if node.type == "file":
            yield node
        elif node.children:
            yield from iter_files(node.children)
