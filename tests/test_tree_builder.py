"""Tests for tree_builder module."""

from ReBrowse.models import TreeItem
from ReBrowse.tree_builder import build_tree, count_files, filter_tree, iter_files


def _blob(path: str, size: int = 10) -> TreeItem:
    return TreeItem(path=path, type="blob", size=size, sha=f"sha-{path}")


class TestBuildTree:
    def test_empty(self):
        assert build_tree([]) == []

    def test_single_file(self):
        (node,) = build_tree([_blob("README.md")])
        assert node.path == "README.md"
        assert node.name == "README.md"
        assert node.type == "file"
        assert node.is_markdown is True
        assert node.children is None

    def test_directories_before_files(self):
        nodes = build_tree([_blob("README.md"), _blob("src/main.py"), _blob("LICENSE")])
        assert [n.name for n in nodes] == ["src", "LICENSE", "README.md"]

    def test_nested_structure(self):
        nodes = build_tree(
            [
                TreeItem(path="src", type="tree", sha="tree-sha"),
                _blob("src/main.py"),
                _blob("src/utils.py"),
            ]
        )
        (src,) = nodes
        assert src.type == "directory"
        assert src.sha == "tree-sha"
        assert [c.path for c in src.children] == ["src/main.py", "src/utils.py"]

    def test_implicit_directories_created(self):
        (a,) = build_tree([_blob("a/b/c/d.txt")])
        assert a.path == "a"
        b = a.children[0]
        c = b.children[0]
        assert c.path == "a/b/c"
        assert c.children[0].path == "a/b/c/d.txt"

    def test_sorted_case_insensitively(self):
        nodes = build_tree([_blob("b.md"), _blob("A.md"), _blob("c.md")])
        assert [n.name for n in nodes] == ["A.md", "b.md", "c.md"]


class TestFilterTree:
    def _tree(self):
        return build_tree(
            [
                _blob("README.md"),
                _blob("setup.py"),
                _blob("docs/guide.md"),
                _blob("docs/deep/api.md"),
                _blob("assets/logo.png"),
            ]
        )

    def test_no_filter_keeps_everything(self):
        assert count_files(filter_tree(self._tree())).file_count == 5

    def test_markdown_only_drops_other_files_and_empty_dirs(self):
        nodes = filter_tree(self._tree(), markdown_only=True)
        assert [n.name for n in nodes] == ["docs", "README.md"]
        assert [f.path for f in iter_files(nodes)] == [
            "docs/deep/api.md",
            "docs/guide.md",
            "README.md",
        ]

    def test_max_depth_keeps_directories_without_children(self):
        nodes = filter_tree(self._tree(), max_depth=1)
        dirs = [n for n in nodes if n.type == "directory"]
        assert {d.name for d in dirs} == {"assets", "docs"}
        assert all(d.children == [] for d in dirs)

    def test_max_depth_two(self):
        nodes = filter_tree(self._tree(), max_depth=2)
        docs = next(n for n in nodes if n.name == "docs")
        deep = next(c for c in docs.children if c.name == "deep")
        assert deep.children == []
        assert any(c.name == "guide.md" for c in docs.children)

    def test_original_not_mutated(self):
        tree = self._tree()
        filter_tree(tree, markdown_only=True, max_depth=1)
        assert count_files(tree).file_count == 5


class TestCountFiles:
    def test_counts(self):
        counts = count_files(
            build_tree([_blob("README.md"), _blob("docs/a.md"), _blob("main.py")])
        )
        assert counts.file_count == 3
        assert counts.markdown_file_count == 2
