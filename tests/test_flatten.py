"""Tests for tree parsing and flattening."""

from __future__ import annotations

import pytest

from vercel_mirror import DIRECTORY, FILE, FlatEntry, ResponseFormatError, TreeNode, flatten_tree


def sample_tree() -> TreeNode:
    return TreeNode.from_json(
        {
            "name": "src",
            "type": "directory",
            "children": [
                {"name": "a.txt", "type": "file", "uid": "u-a"},
                {
                    "name": "sub",
                    "type": "directory",
                    "children": [
                        {"name": "b.txt", "type": "file", "uid": "u-b"},
                        {
                            "name": "deep",
                            "type": "directory",
                            "children": [{"name": "c.bin", "type": "file", "uid": "u-c"}],
                        },
                    ],
                },
                {"name": "z.txt", "type": "file", "uid": "u-z"},
            ],
        }
    )


def count_descendants(node: TreeNode) -> int:
    return sum(1 + count_descendants(child) for child in node.children)


def test_flatten_order_lists_children_before_descendants() -> None:
    paths = [entry.path for entry in flatten_tree(sample_tree())]

    assert paths == [
        "src/a.txt",
        "src/sub",
        "src/z.txt",
        "src/sub/b.txt",
        "src/sub/deep",
        "src/sub/deep/c.bin",
    ]


def test_flatten_keeps_type_and_uid() -> None:
    entries = flatten_tree(sample_tree())

    assert entries[0] == FlatEntry(path="src/a.txt", type=FILE, uid="u-a")
    assert entries[1] == FlatEntry(path="src/sub", type=DIRECTORY, uid=None)


def test_flatten_length_matches_descendant_count_and_excludes_root() -> None:
    tree = sample_tree()
    entries = flatten_tree(tree)

    assert len(entries) == count_descendants(tree)
    assert all(entry.path != "src" for entry in entries)


def test_every_entry_follows_its_parent() -> None:
    entries = flatten_tree(sample_tree())
    seen: set[str] = set()

    for entry in entries:
        parent = entry.path.rsplit("/", 1)[0]
        assert parent == "src" or parent in seen
        seen.add(entry.path)


def test_flatten_of_leaf_is_empty() -> None:
    assert flatten_tree(TreeNode(name="src", type=DIRECTORY)) == []


def test_from_json_rejects_nodes_without_name() -> None:
    with pytest.raises(ResponseFormatError):
        TreeNode.from_json({"type": "file", "uid": "x"})


def test_from_json_drops_empty_uid() -> None:
    node = TreeNode.from_json({"name": "src", "type": "directory", "uid": ""})
    assert node.uid is None
    assert node.children == ()
