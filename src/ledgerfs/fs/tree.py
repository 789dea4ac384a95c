"""FolderTreeBuilder — bounded-depth folder tree over repeated listings."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .types import ListOptions, TreeNode

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .types import FileSystemItem, OperationResult

    ListDirectory = Callable[
        [str, ListOptions | None], Awaitable[OperationResult[list[FileSystemItem]]]
    ]

logger = logging.getLogger(__name__)


class FolderTreeBuilder:
    """Walks a backend's ``list_directory`` to build a folder-only tree.

    Composed into backends rather than inherited; a backend that can fetch
    a tree more cheaply simply doesn't delegate ``get_folder_tree`` here.

    A listing that fails anywhere in the walk degrades that branch to an
    empty child list instead of aborting the whole tree.
    """

    def __init__(self, list_directory: ListDirectory) -> None:
        self._list_directory = list_directory

    async def build_tree(
        self,
        path: str,
        max_depth: int,
        current_depth: int = 0,
    ) -> list[TreeNode]:
        if current_depth >= max_depth:
            return []

        try:
            result = await self._list_directory(path, ListOptions(recursive=False))
        except Exception:
            logger.warning("Listing %s failed while building tree", path, exc_info=True)
            return []

        if not result.success or result.data is None:
            logger.debug("Listing %s failed while building tree: %s", path, result.error)
            return []

        nodes: list[TreeNode] = []
        for item in result.data:
            if not item.is_directory:
                continue
            children = await self.build_tree(item.path, max_depth, current_depth + 1)
            nodes.append(
                TreeNode(id=item.id, name=item.name, path=item.path, children=children)
            )
        return nodes
