"""Build the folder/page navigation tree from a flat page list."""

from typing import Iterable, Optional

from .types import CONTENT_EXTENSION, PageMeta, PageNode


def build_hierarchy(
    pages: Iterable[PageMeta],
    extension: str = CONTENT_EXTENSION,
) -> list[PageNode]:
    """
    Nest pages under folder nodes derived from their paths.

    Paths are processed in lexicographic order. Folder nodes are created on
    first sight and reused through a map of cumulative path prefixes, so
    ``a/b.md`` and ``a/c.md`` share one ``a`` folder. Children appear in
    processing order. A page and a folder can share a stem (``a.md`` next
    to ``a/``); they are distinct nodes.
    """
    roots: list[PageNode] = []
    folders: dict[str, PageNode] = {}

    for page in sorted(pages, key=lambda p: p.path):
        parts = page.path.split("/")
        siblings = roots
        prefix = ""
        for part in parts[:-1]:
            prefix = f"{prefix}/{part}" if prefix else part
            folder: Optional[PageNode] = folders.get(prefix)
            if folder is None:
                folder = PageNode(path=prefix, title=part, is_folder=True, children=[])
                folders[prefix] = folder
                siblings.append(folder)
            siblings = folder.children
        siblings.append(PageNode(path=page.path, title=page.title, is_folder=False))

    return roots


def flatten(nodes: list[PageNode]) -> list[PageNode]:
    """Depth-first list of every node in the tree."""
    out = []
    for node in nodes:
        out.append(node)
        if node.children:
            out.extend(flatten(node.children))
    return out
