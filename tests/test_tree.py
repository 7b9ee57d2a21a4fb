"""
Tests for tree flattening and building.
"""

from dataclasses import dataclass

from codementor.github import TreeEntry
from codementor.tree import (
    FileNode,
    FolderNode,
    build_tree,
    count_files,
    flatten_for_fetch,
    flatten_tree,
    to_dict,
)


@dataclass
class Record:
    path: str
    type: str = "file"
    size: int = 0
    language: str | None = None


class TestFlattenForFetch:
    def test_keeps_files_in_listing_order(self):
        entries = [
            TreeEntry("src", "folder"),
            TreeEntry("src/b.py", "file", 10),
            TreeEntry("README.md", "file", 5),
            TreeEntry("src/a.py", "file", 7),
        ]
        assert flatten_for_fetch(entries) == ["src/b.py", "README.md", "src/a.py"]

    def test_drops_duplicates(self):
        entries = [TreeEntry("a.py", "file"), TreeEntry("a.py", "file")]
        assert flatten_for_fetch(entries) == ["a.py"]

    def test_empty_listing(self):
        assert flatten_for_fetch([]) == []


class TestBuildTree:
    """Test hierarchy reconstruction from flat records."""

    def test_empty_input(self):
        assert build_tree([]) == []

    def test_folders_sort_before_files(self):
        tree = build_tree(
            [Record("z.txt"), Record("a.txt"), Record("lib", "folder"), Record("docs", "folder")]
        )
        assert [(node.type, node.path) for node in tree] == [
            ("folder", "docs"),
            ("folder", "lib"),
            ("file", "a.txt"),
            ("file", "z.txt"),
        ]

    def test_creates_intermediate_folders(self):
        tree = build_tree([Record("src/utils/helpers.py")])

        assert len(tree) == 1
        src = tree[0]
        assert isinstance(src, FolderNode)
        assert src.path == "src"
        utils = src.children[0]
        assert isinstance(utils, FolderNode)
        assert utils.path == "src/utils"
        assert isinstance(utils.children[0], FileNode)
        assert utils.children[0].name == "helpers.py"

    def test_orphans_promoted_to_root(self):
        tree = build_tree(
            [Record("src/app.py"), Record("README.md")], create_missing_folders=False
        )
        assert sorted(node.path for node in tree) == ["README.md", "src/app.py"]

    def test_nested_children_sorted(self):
        tree = build_tree(
            [
                Record("src/z.py"),
                Record("src/a.py"),
                Record("src/core", "folder"),
                Record("src/core/x.py"),
            ]
        )
        children = tree[0].children
        assert [node.path for node in children] == ["src/core", "src/a.py", "src/z.py"]

    def test_left_inverse_of_flatten(self):
        """Every file path that went in comes back out exactly once."""
        paths = [
            "README.md",
            "src/app.py",
            "src/utils/strings.py",
            "src/utils/__init__.py",
            "tests/test_app.py",
            "setup.cfg",
        ]
        tree = build_tree(Record(path) for path in paths)

        assert sorted(flatten_tree(tree)) == sorted(paths)
        assert count_files(tree) == len(paths)

    def test_duplicate_records_kept_once(self):
        tree = build_tree([Record("a.py"), Record("a.py")])
        assert flatten_tree(tree) == ["a.py"]

    def test_file_attributes_carried(self):
        tree = build_tree([Record("app.py", size=120, language="Python")])
        node = tree[0]
        assert node.size == 120
        assert node.language == "Python"

    def test_folder_children_never_none(self):
        tree = build_tree([Record("empty", "folder")])
        assert tree[0].children == []


class TestToDict:
    def test_serializes_subtree(self):
        tree = build_tree([Record("src/app.py", size=3, language="Python")])
        assert to_dict(tree[0]) == {
            "name": "src",
            "path": "src",
            "type": "folder",
            "children": [
                {
                    "name": "app.py",
                    "path": "src/app.py",
                    "type": "file",
                    "size": 3,
                    "language": "Python",
                }
            ],
        }
