"""Tests for FolderTreeBuilder."""

from __future__ import annotations

from ledgerfs.fs.exceptions import ErrorCode
from ledgerfs.fs.tree import FolderTreeBuilder
from ledgerfs.fs.types import FileItem, FolderItem, OperationResult


def _listing(tree: dict[str, list[str]], broken: set[str] | None = None):
    """Fake list_directory over ``{path: [child paths]}``; dirs end with '/'."""
    broken = broken or set()
    calls: list[str] = []

    async def list_directory(path, options=None):
        calls.append(path)
        if path in broken:
            return OperationResult.fail("boom", ErrorCode.OPERATION_FAILED)
        if path == "/raise":
            raise RuntimeError("listing exploded")
        items = []
        for child in tree.get(path, []):
            if child.endswith("/"):
                p = child.rstrip("/")
                items.append(FolderItem(id=p, name=p.rsplit("/", 1)[-1], path=p))
            else:
                items.append(FileItem(id=child, name=child.rsplit("/", 1)[-1], path=child))
        return OperationResult.ok(items)

    return list_directory, calls


class TestFolderTreeBuilder:
    async def test_folders_only(self):
        list_directory, _ = _listing({"/": ["/a/", "/f.txt"], "/a": ["/a/b/"]})
        nodes = await FolderTreeBuilder(list_directory).build_tree("/", 3)
        assert [n.path for n in nodes] == ["/a"]
        assert [n.path for n in nodes[0].children] == ["/a/b"]

    async def test_depth_limit(self):
        list_directory, calls = _listing({"/": ["/a/"], "/a": ["/a/b/"], "/a/b": ["/a/b/c/"]})
        nodes = await FolderTreeBuilder(list_directory).build_tree("/", 2)
        assert nodes[0].children[0].children == []
        assert "/a/b" not in calls

    async def test_zero_depth(self):
        list_directory, calls = _listing({"/": ["/a/"]})
        assert await FolderTreeBuilder(list_directory).build_tree("/", 0) == []
        assert calls == []

    async def test_failed_branch_degrades(self):
        list_directory, _ = _listing({"/": ["/a/", "/b/"], "/b": ["/b/c/"]}, broken={"/a"})
        nodes = await FolderTreeBuilder(list_directory).build_tree("/", 3)
        assert [n.path for n in nodes] == ["/a", "/b"]
        assert nodes[0].children == []
        assert [n.path for n in nodes[1].children] == ["/b/c"]

    async def test_raising_listing_degrades(self):
        list_directory, _ = _listing({"/": ["/raise/"]})
        nodes = await FolderTreeBuilder(list_directory).build_tree("/", 3)
        assert nodes[0].children == []
