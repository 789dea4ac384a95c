"""DriveBackend — storage backend over the Google Drive v3 REST API.

Drive has no path concept: every item lives under one or more parent ids.
Each call therefore walks the virtual path one segment at a time, asking
for a same-named child of the current parent, which costs one request per
path segment.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterable, Iterable
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx

from .config import DriveConfig
from .drive_auth import RefreshingTokenProvider, StaticTokenProvider, TokenProvider
from .exceptions import (
    AuthenticationError,
    DirectoryAlreadyExistsError,
    DirectoryMissingError,
    DirectoryNotEmptyError,
    FileAlreadyExistsError,
    FileMissingError,
    InvalidPathError,
    OperationError,
)
from .tree import FolderTreeBuilder
from .types import (
    DownloadOptions,
    FileItem,
    FileSystemItem,
    FolderItem,
    ListOptions,
    MoveOptions,
    OperationResult,
    RenameOptions,
    TreeNode,
    UploadOptions,
    capture,
)
from .utils import (
    ensure_valid_path,
    get_path_segments,
    guess_mime_type,
    is_hidden,
    join_path,
    split_path,
)

if TYPE_CHECKING:
    from .protocol import UploadSource

logger = logging.getLogger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
ITEM_FIELDS = "id, name, mimeType, size, createdTime, modifiedTime, webViewLink, thumbnailLink, parents"
PAGE_SIZE = 100


def escape_query_value(value: str) -> str:
    """Escape a literal for use inside a single-quoted Drive query string."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _is_folder(resource: dict[str, Any]) -> bool:
    return resource.get("mimeType") == FOLDER_MIME_TYPE


class DriveBackend:
    """Storage backend for Google Drive.

    Args:
        config: Drive settings. ``client_id`` and ``client_secret`` are
            required unless a *token_provider* is supplied.
        token_provider: Source of bearer tokens. Defaults to a refreshing
            provider when the config holds a refresh token, else a static
            one built from ``access_token``.
        client: Shared ``httpx.AsyncClient``. One is created (and owned)
            when omitted.
    """

    provider = "google_drive"

    def __init__(
        self,
        config: DriveConfig | None = None,
        *,
        token_provider: TokenProvider | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config or DriveConfig()
        self.root_folder_id = self.config.root_folder_id
        self._token_provider = token_provider
        self._client = client
        self._owns_client = client is None
        self._tree = FolderTreeBuilder(self.list_directory)
        self._initialized = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """Build the HTTP client and token provider.

        Raises ``ConfigurationError`` if client credentials are missing and
        no token provider was injected.
        """
        if self._initialized:
            return
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout)
        if self._token_provider is None:
            self.config.validate()
            if self.config.refresh_token:
                self._token_provider = RefreshingTokenProvider(self.config, self._client)
            else:
                self._token_provider = StaticTokenProvider(self.config.access_token or "")
        self._initialized = True
        logger.debug("Drive backend initialized (root folder %s)", self.root_folder_id)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        self._initialized = False

    async def __aenter__(self) -> DriveBackend:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self.close()

    # =========================================================================
    # HTTP
    # =========================================================================

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send an authorized request, refreshing the token once on 401."""
        await self.initialize()
        assert self._client is not None
        assert self._token_provider is not None

        for attempt in range(2):
            token = await self._token_provider.get_access_token()
            request_headers = {"Authorization": f"Bearer {token}", **(headers or {})}
            response = await self._client.request(
                method,
                url,
                params=params,
                json=json_body,
                content=content,
                headers=request_headers,
            )
            if response.status_code == 401 and attempt == 0:
                logger.debug("Drive rejected token, refreshing")
                await self._token_provider.invalidate()
                continue
            break

        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"Google Drive rejected credentials (HTTP {response.status_code})",
                {"status": response.status_code},
            )
        if response.status_code >= 400:
            raise OperationError(
                f"Google Drive API error {response.status_code}: {response.text[:200]}",
                {"status": response.status_code},
            )
        return response

    async def _api(self, method: str, endpoint: str, **kwargs: Any) -> httpx.Response:
        return await self._request(method, f"{self.config.api_base_url}{endpoint}", **kwargs)

    async def _list_files(
        self,
        query: str,
        *,
        fields: str = "files(id, name, mimeType)",
        page_size: int = 1,
        page_token: str | None = None,
        order_by: str | None = None,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"q": query, "fields": fields, "pageSize": page_size}
        if page_token:
            params["pageToken"] = page_token
        if order_by:
            params["orderBy"] = order_by
        response = await self._api("GET", "/files", params=params)
        return response.json()

    # =========================================================================
    # Path Resolution
    # =========================================================================

    async def _find_child(self, parent_id: str, name: str) -> dict[str, Any] | None:
        query = (
            f"name='{escape_query_value(name)}' and "
            f"'{escape_query_value(parent_id)}' in parents and trashed=false"
        )
        files = (await self._list_files(query)).get("files") or []
        return files[0] if files else None

    async def _create_folder(self, name: str, parent_id: str) -> dict[str, Any]:
        response = await self._api(
            "POST",
            "/files",
            params={"fields": ITEM_FIELDS},
            json_body={"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent_id]},
        )
        return response.json()

    async def _walk(self, path: str, create_if_missing: bool = False) -> dict[str, Any] | None:
        """Resolve *path* to its Drive resource, or None if any segment is missing.

        With *create_if_missing*, absent segments are created as folders.
        """
        current: dict[str, Any] = {"id": self.root_folder_id, "mimeType": FOLDER_MIME_TYPE}
        for segment in get_path_segments(path):
            child = await self._find_child(current["id"], segment)
            if child is None:
                if not create_if_missing:
                    return None
                child = await self._create_folder(segment, current["id"])
                logger.debug("Created missing drive folder %s under %s", segment, current["id"])
            current = child
        return current

    async def resolve_id(self, path: str, create_if_missing: bool = False) -> str | None:
        """Return the Drive item id for virtual *path*, or None if absent."""
        path = ensure_valid_path(path)
        resource = await self._walk(path, create_if_missing)
        return resource["id"] if resource else None

    async def _resolve_folder(self, path: str, create_if_missing: bool = False) -> str:
        resource = await self._walk(path, create_if_missing)
        if resource is None or not _is_folder(resource):
            raise DirectoryMissingError(path)
        return resource["id"]

    # =========================================================================
    # Item construction
    # =========================================================================

    def _to_item(self, resource: dict[str, Any], path: str) -> FileSystemItem:
        parents = resource.get("parents") or []
        metadata: dict[str, Any] = {
            "drive_id": resource.get("id"),
            "web_view_link": resource.get("webViewLink"),
        }
        name = resource.get("name") or split_path(path)[1]
        common: dict[str, Any] = {
            "id": resource["id"],
            "name": name,
            "path": path,
            "created_at": _parse_time(resource.get("createdTime")),
            "modified_at": _parse_time(resource.get("modifiedTime")),
            "parent_id": parents[0] if parents else None,
        }
        if _is_folder(resource):
            return FolderItem(**common, metadata=metadata)
        metadata["thumbnail_link"] = resource.get("thumbnailLink")
        return FileItem(
            **common,
            size=int(resource.get("size") or 0),
            mime_type=resource.get("mimeType") or guess_mime_type(name),
            metadata=metadata,
        )

    async def _fetch_item(self, item_id: str, path: str) -> FileSystemItem:
        response = await self._api("GET", f"/files/{item_id}", params={"fields": ITEM_FIELDS})
        return self._to_item(response.json(), path)

    # =========================================================================
    # Directories
    # =========================================================================

    async def create_directory(self, path: str) -> OperationResult[FolderItem]:
        return await capture("create directory", self._create_directory(path))

    async def _create_directory(self, path: str) -> FolderItem:
        path = ensure_valid_path(path)
        if path == "/":
            raise DirectoryAlreadyExistsError(path)
        parent_path, name = split_path(path)
        parent_id = await self._resolve_folder(parent_path, create_if_missing=True)

        existing = await self._find_child(parent_id, name)
        if existing is not None:
            if _is_folder(existing):
                raise DirectoryAlreadyExistsError(path)
            raise FileAlreadyExistsError(path)

        created = await self._create_folder(name, parent_id)
        logger.debug("Created drive directory %s", path)
        return self._to_item(created, path)  # type: ignore[return-value]

    async def remove_directory(self, path: str, recursive: bool = False) -> OperationResult[None]:
        return await capture("remove directory", self._remove_directory(path, recursive))

    async def _remove_directory(self, path: str, recursive: bool) -> None:
        path = ensure_valid_path(path)
        if path == "/":
            raise InvalidPathError(path, "Cannot remove the root directory")
        folder_id = await self._resolve_folder(path)

        if not recursive:
            query = f"'{escape_query_value(folder_id)}' in parents and trashed=false"
            children = (await self._list_files(query, fields="files(id)")).get("files") or []
            if children:
                raise DirectoryNotEmptyError(path)

        # Drive deletes descendants along with the folder
        await self._api("DELETE", f"/files/{folder_id}")
        logger.debug("Removed drive directory %s (recursive=%s)", path, recursive)

    # =========================================================================
    # Transfer
    # =========================================================================

    async def upload_file(
        self,
        source: UploadSource,
        path: str,
        options: UploadOptions | None = None,
    ) -> OperationResult[FileItem]:
        return await capture("upload file", self._upload_file(source, path, options or UploadOptions()))

    async def _upload_file(self, source: UploadSource, path: str, options: UploadOptions) -> FileItem:
        path = ensure_valid_path(path)
        if path == "/":
            raise InvalidPathError(path, "Cannot upload to the root directory")
        data, known_size = await _read_source(source)

        parent_path, name = split_path(path)
        parent_id = await self._resolve_folder(parent_path, create_if_missing=True)

        existing = await self._find_child(parent_id, name)
        if existing is not None:
            if _is_folder(existing):
                raise DirectoryAlreadyExistsError(path)
            if not options.overwrite:
                raise FileAlreadyExistsError(path)

        # the request body is sent in one piece, so progress has only two points
        if options.on_progress is not None and known_size:
            options.on_progress(0.0, 0, len(data))

        mime_type = guess_mime_type(name)
        if existing is not None:
            response = await self._request(
                "PATCH",
                f"{self.config.upload_base_url}/files/{existing['id']}",
                params={"uploadType": "media", "fields": ITEM_FIELDS},
                content=data,
                headers={"Content-Type": mime_type},
            )
        else:
            body, content_type = _multipart_related(
                {"name": name, "parents": [parent_id], "mimeType": mime_type}, data, mime_type
            )
            response = await self._request(
                "POST",
                f"{self.config.upload_base_url}/files",
                params={"uploadType": "multipart", "fields": ITEM_FIELDS},
                content=body,
                headers={"Content-Type": content_type},
            )

        if options.on_progress is not None and known_size:
            options.on_progress(100.0, len(data), len(data))

        item = self._to_item(response.json(), path)
        if options.metadata:
            item.metadata.update(options.metadata)
        logger.debug("Uploaded %s to drive (%d bytes)", path, len(data))
        return item  # type: ignore[return-value]

    async def download_file(
        self,
        path: str,
        local_target: str | Path | None = None,
        options: DownloadOptions | None = None,
    ) -> OperationResult[bytes | str]:
        return await capture(
            "download file",
            self._download_file(path, local_target, options or DownloadOptions()),
        )

    async def _download_file(
        self, path: str, local_target: str | Path | None, options: DownloadOptions
    ) -> bytes | str:
        path = ensure_valid_path(path)
        resource = await self._walk(path)
        if resource is None or _is_folder(resource):
            raise FileMissingError(path)

        response = await self._api("GET", f"/files/{resource['id']}", params={"alt": "media"})
        data = response.content
        if options.on_progress is not None:
            options.on_progress(100.0, len(data), len(data))

        if local_target is None:
            return data

        target = Path(local_target)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)
        return str(target)

    # =========================================================================
    # Mutation
    # =========================================================================

    async def move_item(
        self, src: str, dst: str, options: MoveOptions | None = None
    ) -> OperationResult[FileSystemItem]:
        return await capture("move item", self._move_item(src, dst, options or MoveOptions()))

    async def _move_item(self, src: str, dst: str, options: MoveOptions) -> FileSystemItem:
        src = ensure_valid_path(src)
        dst = ensure_valid_path(dst)
        resource = await self._walk(src) if src != "/" else None
        if resource is None:
            raise FileMissingError(src)
        if dst == src:
            return await self._fetch_item(resource["id"], dst)
        if dst.startswith(src + "/"):
            raise InvalidPathError(dst, "Cannot move a directory into itself")

        dst_parent, new_name = split_path(dst)
        new_parent_id = await self._resolve_folder(dst_parent, create_if_missing=True)
        await self._clear_target(new_parent_id, new_name, dst, options.overwrite)

        current = await self._api("GET", f"/files/{resource['id']}", params={"fields": "parents"})
        previous_parents = ",".join(current.json().get("parents") or [])

        # reparent and rename in one call; Drive has no separate move
        response = await self._api(
            "PATCH",
            f"/files/{resource['id']}",
            params={
                "addParents": new_parent_id,
                "removeParents": previous_parents,
                "fields": ITEM_FIELDS,
            },
            json_body={"name": new_name},
        )
        logger.debug("Moved drive item %s to %s", src, dst)
        return self._to_item(response.json(), dst)

    async def _clear_target(self, parent_id: str, name: str, path: str, overwrite: bool) -> None:
        """Fail if *name* exists under *parent_id*, or delete it when *overwrite*."""
        existing = await self._find_child(parent_id, name)
        if existing is None:
            return
        if not overwrite:
            if _is_folder(existing):
                raise DirectoryAlreadyExistsError(path)
            raise FileAlreadyExistsError(path)
        await self._api("DELETE", f"/files/{existing['id']}")

    async def delete_file(self, path: str) -> OperationResult[None]:
        return await capture("delete file", self._delete_file(path))

    async def _delete_file(self, path: str) -> None:
        path = ensure_valid_path(path)
        resource = await self._walk(path) if path != "/" else None
        if resource is None or _is_folder(resource):
            raise FileMissingError(path)
        await self._api("DELETE", f"/files/{resource['id']}")
        logger.debug("Deleted drive file %s", path)

    async def rename_file(
        self, path: str, new_name: str, options: RenameOptions | None = None
    ) -> OperationResult[FileItem]:
        return await capture(
            "rename file", self._rename(path, new_name, options or RenameOptions(), folder=False)
        )

    async def rename_folder(
        self, path: str, new_name: str, options: RenameOptions | None = None
    ) -> OperationResult[FolderItem]:
        return await capture(
            "rename folder", self._rename(path, new_name, options or RenameOptions(), folder=True)
        )

    async def _rename(self, path: str, new_name: str, options: RenameOptions, *, folder: bool) -> Any:
        path = ensure_valid_path(path)
        if not new_name or "/" in new_name or "\\" in new_name or new_name in (".", ".."):
            raise InvalidPathError(new_name, "Invalid name")

        resource = await self._walk(path) if path != "/" else None
        if resource is None or _is_folder(resource) != folder:
            if folder:
                raise DirectoryMissingError(path)
            raise FileMissingError(path)

        parent_path, _ = split_path(path)
        new_path = join_path(parent_path, new_name)
        if new_path == path:
            return await self._fetch_item(resource["id"], path)

        parent_id = await self._resolve_folder(parent_path)
        await self._clear_target(parent_id, new_name, new_path, options.overwrite)

        response = await self._api(
            "PATCH",
            f"/files/{resource['id']}",
            params={"fields": ITEM_FIELDS},
            json_body={"name": new_name},
        )
        logger.debug("Renamed drive item %s to %s", path, new_path)
        return self._to_item(response.json(), new_path)

    # =========================================================================
    # Query
    # =========================================================================

    async def list_directory(
        self, path: str, options: ListOptions | None = None
    ) -> OperationResult[list[FileSystemItem]]:
        return await capture("list directory", self._list_directory(path, options or ListOptions()))

    async def _list_directory(self, path: str, options: ListOptions) -> list[FileSystemItem]:
        path = ensure_valid_path(path)
        folder_id = await self._resolve_folder(path)

        entries: list[FileSystemItem] = []
        page_token: str | None = None
        while True:
            page = await self._list_files(
                f"'{escape_query_value(folder_id)}' in parents and trashed=false",
                fields=f"nextPageToken, files({ITEM_FIELDS})",
                page_size=PAGE_SIZE,
                page_token=page_token,
                order_by="folder,name",
            )
            for resource in page.get("files") or []:
                name = resource.get("name") or ""
                if not options.include_hidden and is_hidden(name):
                    continue
                entries.append(self._to_item(resource, join_path(path, name)))
            page_token = page.get("nextPageToken")
            if not page_token:
                break

        entries.sort(key=lambda x: (not x.is_directory, x.name.lower(), x.name))

        items: list[FileSystemItem] = []
        for item in entries:
            if options.filter is None or options.filter(item):
                items.append(item)
            if options.recursive and item.is_directory:
                items.extend(await self._list_directory(item.path, options))
        return items

    async def get_item(self, path: str) -> OperationResult[FileSystemItem]:
        return await capture("get item", self._get_item(path))

    async def _get_item(self, path: str) -> FileSystemItem:
        path = ensure_valid_path(path)
        if path == "/":
            return FolderItem(
                id=self.root_folder_id,
                name="",
                path="/",
                metadata={"drive_id": self.root_folder_id},
            )
        resource = await self._walk(path)
        if resource is None:
            raise FileMissingError(path)
        return await self._fetch_item(resource["id"], path)

    async def exists(self, path: str) -> bool:
        try:
            return await self.resolve_id(path) is not None
        except Exception:
            logger.debug("Existence check failed for %s", path, exc_info=True)
            return False

    async def get_folder_tree(
        self, path: str = "/", depth: int = 3
    ) -> OperationResult[list[TreeNode]]:
        async def _build() -> list[TreeNode]:
            await self.initialize()
            assert self._token_provider is not None
            await self._token_provider.get_access_token()
            return await self._tree.build_tree(ensure_valid_path(path), depth)

        return await capture("get folder tree", _build())


# =============================================================================
# Upload helpers
# =============================================================================


async def _read_source(source: UploadSource) -> tuple[bytes, bool]:
    """Buffer *source* fully. Returns the bytes and whether the size was known."""
    if isinstance(source, (bytes, bytearray)):
        return bytes(source), True
    if isinstance(source, (str, Path)):
        src = Path(source)
        if not await asyncio.to_thread(src.is_file):
            raise FileMissingError(str(source))
        return await asyncio.to_thread(src.read_bytes), True
    if isinstance(source, AsyncIterable):
        return b"".join([bytes(chunk) async for chunk in source]), False
    if isinstance(source, Iterable):
        return b"".join(bytes(chunk) for chunk in source), False
    raise TypeError(f"Unsupported upload source: {type(source).__name__}")


def _multipart_related(
    metadata: dict[str, Any], data: bytes, mime_type: str
) -> tuple[bytes, str]:
    """Encode a ``multipart/related`` body of JSON metadata plus media."""
    boundary = f"ledgerfs-{uuid.uuid4().hex}"
    body = b"".join(
        [
            f"--{boundary}\r\n".encode(),
            b"Content-Type: application/json; charset=UTF-8\r\n\r\n",
            json.dumps(metadata).encode(),
            f"\r\n--{boundary}\r\n".encode(),
            f"Content-Type: {mime_type}\r\n\r\n".encode(),
            data,
            f"\r\n--{boundary}--\r\n".encode(),
        ]
    )
    return body, f"multipart/related; boundary={boundary}"
