"""GitHub implementation of the blob and file store protocols, built on httpx."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx

from shelfsync.exceptions import AuthError, ConflictError, NotFoundError, TransientIOError
from shelfsync.github.base import DEFAULT_CONTENT_TYPE, Blob, Grouping, RepoFile
from shelfsync.services.git_service import GitService

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator, Sequence

    from shelfsync.config import Settings

logger = logging.getLogger(__name__)

API_VERSION = "2022-11-28"
PAGE_SIZE = 100


def raise_for_status(response: httpx.Response, context: str) -> None:
    """Translate a non-2xx response into an engine error."""
    status = response.status_code
    if 200 <= status < 300:
        return
    detail = _error_detail(response)
    msg = f"{context}: HTTP {status}{f' ({detail})' if detail else ''}"
    if status == 404:
        raise NotFoundError(msg)
    if status in (401, 403):
        raise AuthError(msg)
    if status == 409 or (status == 422 and "already_exists" in detail):
        raise ConflictError(msg)
    raise TransientIOError(msg)


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return ""
    if not isinstance(data, dict):
        return ""
    codes = [
        str(error.get("code", ""))
        for error in data.get("errors", [])
        if isinstance(error, dict)
    ]
    parts = [str(data.get("message", "")), *codes]
    return "; ".join(part for part in parts if part)


def _blob_from_json(data: dict[str, Any]) -> Blob:
    return Blob(
        id=int(data["id"]),
        name=str(data["name"]),
        size=int(data.get("size", 0)),
        content_type=str(data.get("content_type") or DEFAULT_CONTENT_TYPE),
    )


def _grouping_from_json(data: dict[str, Any]) -> Grouping:
    return Grouping(id=int(data["id"]), tag=str(data["tag_name"]), name=str(data.get("name") or ""))


def _match_extension(path: str, extensions: Sequence[str]) -> bool:
    if not extensions:
        return True
    name = path.rsplit("/", 1)[-1]
    if "." not in name:
        return False
    ext = name.rsplit(".", 1)[-1].lower()
    return any(ext == e.lower().lstrip(".") for e in extensions)


class GitHubClient:
    """Releases, assets and repository contents over the GitHub REST API.

    Catalog commits go through a shallow clone and push (see GitService); all
    other calls are plain HTTP.  Nothing is retried here.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        git: GitService | None = None,
    ) -> None:
        self._settings = settings
        self._api_base = settings.api_base.rstrip("/")
        self._upload_base = self._api_base.replace("api.github.com", "uploads.github.com")
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": API_VERSION,
        }
        if settings.github_token:
            headers["Authorization"] = f"Bearer {settings.github_token}"
        self._http = httpx.AsyncClient(
            headers=headers,
            timeout=settings.http_timeout,
            transport=transport,
        )
        self._git = git or GitService(
            token=settings.github_token,
            author_name=settings.git_author_name,
            author_email=settings.git_author_email,
        )

    async def __aenter__(self) -> GitHubClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    def _url(self, owner: str, repo: str, *parts: str) -> str:
        suffix = "/".join(quote(part, safe="") for part in parts)
        base = f"{self._api_base}/repos/{quote(owner, safe='')}/{quote(repo, safe='')}"
        return f"{base}/{suffix}" if suffix else base

    async def _request(self, method: str, url: str, context: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._http.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            msg = f"{context}: {exc}"
            raise TransientIOError(msg) from exc
        raise_for_status(response, context)
        return response

    # Releases and assets

    async def get_grouping(self, owner: str, repo: str, tag: str) -> Grouping:
        url = self._url(owner, repo, "releases", "tags", tag)
        response = await self._request("GET", url, f"get release {owner}/{repo}@{tag}")
        return _grouping_from_json(response.json())

    async def get_or_create_grouping(self, owner: str, repo: str, tag: str) -> Grouping:
        try:
            return await self.get_grouping(owner, repo, tag)
        except NotFoundError:
            pass
        url = self._url(owner, repo, "releases")
        try:
            response = await self._request(
                "POST",
                url,
                f"create release {owner}/{repo}@{tag}",
                json={"tag_name": tag, "name": tag},
            )
        except ConflictError:
            # Created concurrently between the lookup and the create.
            return await self.get_grouping(owner, repo, tag)
        logger.info("Created release %s in %s/%s", tag, owner, repo)
        return _grouping_from_json(response.json())

    async def list_blobs(self, owner: str, repo: str, grouping_id: int) -> list[Blob]:
        url = self._url(owner, repo, "releases", str(grouping_id), "assets")
        blobs: list[Blob] = []
        page = 1
        while True:
            response = await self._request(
                "GET",
                url,
                f"list assets of release {grouping_id} in {owner}/{repo}",
                params={"per_page": PAGE_SIZE, "page": page},
            )
            batch = response.json()
            blobs.extend(_blob_from_json(item) for item in batch)
            if len(batch) < PAGE_SIZE:
                return blobs
            page += 1

    async def find_blob(self, owner: str, repo: str, grouping_id: int, name: str) -> Blob | None:
        for blob in await self.list_blobs(owner, repo, grouping_id):
            if blob.name == name:
                return blob
        return None

    async def upload_blob(
        self,
        owner: str,
        repo: str,
        grouping_id: int,
        name: str,
        stream: AsyncIterable[bytes],
        size: int,
        content_type: str = DEFAULT_CONTENT_TYPE,
    ) -> Blob:
        url = (
            f"{self._upload_base}/repos/{quote(owner, safe='')}/{quote(repo, safe='')}"
            f"/releases/{grouping_id}/assets"
        )
        response = await self._request(
            "POST",
            url,
            f"upload {name} to {owner}/{repo}",
            params={"name": name},
            content=stream,
            headers={"Content-Type": content_type, "Content-Length": str(size)},
        )
        return _blob_from_json(response.json())

    async def download_blob(self, owner: str, repo: str, blob_id: int) -> AsyncIterator[bytes]:
        url = self._url(owner, repo, "releases", "assets", str(blob_id))
        context = f"download asset {blob_id} from {owner}/{repo}"
        try:
            async with self._http.stream(
                "GET",
                url,
                headers={"Accept": "application/octet-stream"},
                follow_redirects=True,
            ) as response:
                if response.status_code >= 300:
                    await response.aread()
                    raise_for_status(response, context)
                async for chunk in response.aiter_bytes():
                    yield chunk
        except httpx.HTTPError as exc:
            msg = f"{context}: {exc}"
            raise TransientIOError(msg) from exc

    async def delete_blob(self, owner: str, repo: str, blob_id: int) -> None:
        url = self._url(owner, repo, "releases", "assets", str(blob_id))
        await self._request("DELETE", url, f"delete asset {blob_id} from {owner}/{repo}")

    # Repository files

    async def get_file(
        self, owner: str, repo: str, path: str, ref: str | None = None
    ) -> bytes | None:
        url = self._url(owner, repo, "contents", *path.strip("/").split("/"))
        params = {"ref": ref} if ref else None
        try:
            response = await self._request(
                "GET",
                url,
                f"get {path} from {owner}/{repo}",
                params=params,
                headers={"Accept": "application/vnd.github.raw"},
            )
        except NotFoundError:
            return None
        return response.content

    async def commit_file(
        self, owner: str, repo: str, path: str, content: bytes, message: str
    ) -> None:
        clone_url = f"{self._settings.git_base.rstrip('/')}/{owner}/{repo}.git"
        await asyncio.to_thread(self._git.commit_file, clone_url, path, content, message)

    async def list_files(
        self, owner: str, repo: str, ref: str, extensions: Sequence[str] = ()
    ) -> list[RepoFile]:
        url = self._url(owner, repo, "git", "trees", ref)
        response = await self._request(
            "GET", url, f"list files of {owner}/{repo}@{ref}", params={"recursive": "1"}
        )
        data = response.json()
        if data.get("truncated"):
            logger.warning("File listing of %s/%s@%s was truncated by GitHub", owner, repo, ref)
        return [
            RepoFile(path=entry["path"], sha=entry.get("sha", ""), size=int(entry.get("size", 0)))
            for entry in data.get("tree", [])
            if entry.get("type") == "blob" and _match_extension(entry["path"], extensions)
        ]
