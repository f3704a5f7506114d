"""Tests for the navigation tree builder."""

from blobwiki.hierarchy import build_hierarchy, flatten
from blobwiki.types import PageMeta


def meta(path, title=None):
    return PageMeta(path, title or path, "", "", "ann")


def shape(nodes):
    return [
        (n.path, n.is_folder, shape(n.children) if n.children is not None else None)
        for n in nodes
    ]


def test_empty():
    assert build_hierarchy([]) == []


def test_flat_pages_sorted():
    tree = build_hierarchy([meta("b.md"), meta("a.md")])
    assert shape(tree) == [("a.md", False, None), ("b.md", False, None)]


def test_shared_folders_reused():
    tree = build_hierarchy([
        meta("guide/setup/linux.md"),
        meta("guide/intro.md"),
        meta("guide/setup/mac.md"),
        meta("index.md"),
    ])
    assert shape(tree) == [
        ("guide", True, [
            ("guide/intro.md", False, None),
            ("guide/setup", True, [
                ("guide/setup/linux.md", False, None),
                ("guide/setup/mac.md", False, None),
            ]),
        ]),
        ("index.md", False, None),
    ]


def test_folder_titles_and_page_titles():
    tree = build_hierarchy([meta("docs/a.md", "Alpha")])
    assert tree[0].title == "docs"
    assert tree[0].children[0].title == "Alpha"


def test_page_and_folder_with_same_stem():
    tree = build_hierarchy([meta("a.md"), meta("a/b.md")])
    assert [(n.path, n.is_folder) for n in tree] == [("a.md", False), ("a", True)]


def test_every_page_appears_once():
    paths = ["x/y/z.md", "x/y.md", "x.md", "w/x/y/z.md", "x/a.md"]
    nodes = flatten(build_hierarchy([meta(p) for p in paths]))
    leaves = sorted(n.path for n in nodes if not n.is_folder)
    assert leaves == sorted(paths)
