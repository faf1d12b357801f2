# This file is part of cloudaccess.
#
# Developed for the LSST Data Management System.
# This product includes software developed by the LSST Project
# (https://www.lsst.org).
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

from __future__ import annotations

__all__ = ("WebDavClient", "WebDavCloudProvider")

import io
import logging
import posixpath
import xml.etree.ElementTree as eTree
from collections.abc import Iterable
from concurrent.futures import Future
from http import HTTPStatus
from typing import Any, BinaryIO, Protocol, cast, override
from urllib.parse import quote, unquote, urlparse

import requests

from ._resourceHandles._progressResourceHandle import ProgressReadHandle, ProgressWriteBody
from .api import NO_PROGRESS_AWARE, CloudItemList, CloudItemMetadata, CloudItemType, CloudProvider, ProgressListener
from .davutils import (
    DavConfig,
    DavConfigPool,
    DavPropfindEntry,
    DavPropfindParser,
    DavTransport,
    HttpRequest,
    WebDavCredential,
    normalize_path,
    normalize_url,
    redact_url,
)
from .exceptions import (
    AlreadyExistsError,
    BackendError,
    ForbiddenError,
    InsufficientStorageError,
    NotFoundError,
    ServerNotWebDavCompatibleError,
    UnauthorizedError,
)

log = logging.getLogger(__name__)

# Body of the PROPFIND requests: only the properties we make use of are
# requested.
PROPFIND_BODY: bytes = (
    b'<d:propfind xmlns:d="DAV:"><d:prop>'
    b"<d:resourcetype /><d:getcontentlength /><d:getlastmodified />"
    b"</d:prop></d:propfind>"
)


class DavGlobals:
    """Helper container to encapsulate all the global objects needed by this
    module.
    """

    def __init__(self) -> None:
        # Configuration of the known webDAV endpoints.
        # Use Any as type annotation to keep mypy happy.
        self._config_pool: Any = None

        # (Re)Initialize the objects above.
        self._reset()

    def _reset(self) -> None:
        """
        Initialize all the globals.

        This method is a helper for reinitializing globals in tests.
        """
        if self._config_pool is not None:
            self._config_pool._destroy()

        # Initialize the singleton instance of the webdav endpoint
        # configuration pool.
        self._config_pool = DavConfigPool("CLOUDACCESS_WEBDAV_CONFIG")

    def config_pool(self) -> DavConfigPool:
        """Return the configuration of all known webDAV endpoints."""
        return self._config_pool


# Convenience object to encapsulate all global objects needed by this module.
dav_globals: DavGlobals = DavGlobals()


class Transport(Protocol):
    """Authenticated, redirect-following executor of HTTP requests."""

    def execute(self, request: HttpRequest, stream: bool = False) -> requests.Response: ...

    def close(self) -> None: ...


def _sort_by_depth(entries: Iterable[DavPropfindEntry]) -> list[DavPropfindEntry]:
    """Return the entries sorted by increasing depth of their path. Entries at
    the same depth keep the order of the server response.
    """
    return sorted(entries, key=lambda entry: entry.depth)


class WebDavClient:
    """Synchronous webDAV client for a single endpoint.

    Parameters
    ----------
    transport : `Transport`
        Executor of the HTTP requests, in charge of authentication and
        redirections.
    credential : `WebDavCredential`
        Location of the endpoint. Paths passed to the methods of this class
        are relative to ``credential.base_url``.
    config : `DavConfig`, optional
        Configuration of the endpoint.
    """

    def __init__(
        self, transport: Transport, credential: WebDavCredential, config: DavConfig | None = None
    ) -> None:
        self._transport: Transport = transport
        self._config: DavConfig = DavConfig() if config is None else config
        self._base_url: str = normalize_url(credential.base_url).rstrip("/")
        self._base_path: str = normalize_path(unquote(urlparse(self._base_url).path))
        self._propfind_parser = DavPropfindParser(chunk_size=self._config.buffer_size)

    @property
    def base_url(self) -> str:
        return self._base_url

    def _absolute_url(self, path: str) -> str:
        return self._base_url + quote(normalize_path(path))

    def _execute(self, request: HttpRequest, stream: bool = False) -> requests.Response:
        """Execute `request` through the transport, translating network
        errors into `BackendError`.
        """
        try:
            return self._transport.execute(request, stream=stream)
        except (requests.RequestException, OSError) as e:
            raise BackendError(f"{request.method} {redact_url(request.url)} failed: {e}") from e

    def _check_status(self, resp: requests.Response) -> None:
        """Raise the exception matching the status of `resp`, if it is not a
        successful one.
        """
        status = resp.status_code
        if HTTPStatus.OK <= status < HTTPStatus.MULTIPLE_CHOICES:
            return

        message = (
            f"{resp.request.method} {redact_url(str(resp.url))} returned status {status} {resp.reason}"
        )
        match status:
            case HTTPStatus.UNAUTHORIZED:
                raise UnauthorizedError(message, status=status)
            case HTTPStatus.FORBIDDEN:
                raise ForbiddenError(message, status=status)
            case HTTPStatus.NOT_FOUND | HTTPStatus.CONFLICT:
                raise NotFoundError(message, status=status)
            case HTTPStatus.INSUFFICIENT_STORAGE:
                raise InsufficientStorageError(message, status=status)
            case _:
                raise BackendError(message, status=status)

    def _to_cloud_item(self, entry: DavPropfindEntry) -> CloudItemMetadata:
        # Express the path of the entry relative to the base URL of the
        # endpoint.
        path = entry.path
        if self._base_path != "/":
            if path == self._base_path:
                path = "/"
            elif path.startswith(self._base_path + "/"):
                path = path[len(self._base_path) :]

        return CloudItemMetadata(
            name=posixpath.basename(path),
            path=path,
            item_type=CloudItemType.FOLDER if entry.is_collection else CloudItemType.FILE,
            last_modified=entry.last_modified,
            size=entry.size,
        )

    def _propfind(self, path: str, depth: str) -> list[DavPropfindEntry]:
        request = HttpRequest(
            method="PROPFIND",
            url=self._absolute_url(path),
            headers={"Depth": depth, "Content-Type": "text/xml"},
            body=PROPFIND_BODY,
        )
        with self._execute(request, stream=True) as resp:
            self._check_status(resp)
            try:
                entries = self._propfind_parser.parse(resp.iter_content(chunk_size=self._config.buffer_size))
            except (requests.RequestException, OSError, eTree.ParseError) as e:
                raise BackendError(
                    f"could not parse response to PROPFIND {redact_url(request.url)}: {e}"
                ) from e

        return _sort_by_depth(entries)

    def item_metadata(self, path: str) -> CloudItemMetadata | None:
        """Return the metadata of the node at `path` or None if the server
        reported no properties for it.

        Parameters
        ----------
        path : `str`
            Path of the node, relative to the base URL.

        Raises
        ------
        NotFoundError
            If there is no node at `path`.
        """
        entries = self._propfind(path, depth="0")
        return self._to_cloud_item(entries[0]) if entries else None

    def list(self, folder: str) -> CloudItemList:
        """Return the metadata of the direct children of `folder`."""
        return self._list(folder, depth="1")

    def list_exhaustively(self, folder: str) -> CloudItemList:
        """Return the metadata of all the descendants of `folder`."""
        return self._list(folder, depth="infinity")

    def _list(self, folder: str, depth: str) -> CloudItemList:
        entries = self._propfind(folder, depth=depth)

        # Once sorted, the first entry is the folder itself.
        return CloudItemList().add(self._to_cloud_item(entry) for entry in entries[1:])

    def read(self, path: str, progress_listener: ProgressListener = NO_PROGRESS_AWARE) -> BinaryIO:
        """Return a stream to read the contents of the file at `path`.

        Parameters
        ----------
        path : `str`
            Path of the file.
        progress_listener : `ProgressListener`, optional
            Receives the number of bytes read so far.
        """
        request = HttpRequest(method="GET", url=self._absolute_url(path), headers={"Accept-Encoding": "identity"})
        return self._open_stream(request, progress_listener)

    def read_range(
        self,
        path: str,
        offset: int,
        count: int,
        progress_listener: ProgressListener = NO_PROGRESS_AWARE,
    ) -> BinaryIO:
        """Return a stream to read `count` bytes of the file at `path`,
        starting at byte `offset`.
        """
        request = HttpRequest(
            method="GET",
            url=self._absolute_url(path),
            headers={"Accept-Encoding": "identity", "Range": f"bytes={offset}-{offset + count - 1}"},
        )
        return self._open_stream(request, progress_listener)

    def _open_stream(self, request: HttpRequest, progress_listener: ProgressListener) -> BinaryIO:
        resp = self._execute(request, stream=True)
        try:
            self._check_status(resp)
        except BackendError:
            resp.close()
            raise

        handle = ProgressReadHandle(resp.raw, progress_listener, on_close=resp.close)
        return cast(BinaryIO, io.BufferedReader(handle, buffer_size=self._config.buffer_size))

    def _exists(self, path: str) -> bool:
        try:
            return self.item_metadata(path) is not None
        except NotFoundError:
            return False

    def write(
        self,
        path: str,
        replace: bool,
        data: BinaryIO | bytes,
        progress_listener: ProgressListener = NO_PROGRESS_AWARE,
    ) -> CloudItemMetadata | None:
        """Upload `data` as the contents of the file at `path` and return the
        metadata of the file after the upload.

        Raises
        ------
        AlreadyExistsError
            If `replace` is False and a node already exists at `path`.
        """
        if not replace and self._exists(path):
            raise AlreadyExistsError(f"a node already exists at {path} and replace is disabled")

        body = ProgressWriteBody(data, progress_listener, chunk_size=self._config.buffer_size)
        request = HttpRequest(method="PUT", url=self._absolute_url(path), body=body)
        with self._execute(request) as resp:
            self._check_status(resp)

        return self.item_metadata(path)

    def create_folder(self, path: str) -> str:
        """Create the folder at `path` and return `path`. The parent folder
        must exist.
        """
        request = HttpRequest(method="MKCOL", url=self._absolute_url(path))
        with self._execute(request) as resp:
            self._check_status(resp)

        return path

    def delete(self, path: str) -> None:
        """Delete the file or the folder tree at `path`."""
        request = HttpRequest(method="DELETE", url=self._absolute_url(path))
        with self._execute(request) as resp:
            self._check_status(resp)

    def move(self, source: str, target: str, replace: bool) -> str:
        """Move the node at `source` to `target` and return `target`.

        Raises
        ------
        AlreadyExistsError
            If `replace` is False and a node already exists at `target`.
        """
        headers = {"Destination": self._absolute_url(target), "Depth": "infinity"}
        if not replace:
            headers["Overwrite"] = "F"

        request = HttpRequest(method="MOVE", url=self._absolute_url(source), headers=headers)
        with self._execute(request) as resp:
            if resp.status_code == HTTPStatus.PRECONDITION_FAILED:
                raise AlreadyExistsError(
                    f"a node already exists at {target} and replace is disabled", status=resp.status_code
                )
            self._check_status(resp)

        return target

    def check_server_compatibility(self) -> None:
        """Ensure the server advertises webDAV support.

        Raises
        ------
        ServerNotWebDavCompatibleError
            If the response to an OPTIONS request has no 'DAV' header.
        """
        request = HttpRequest(method="OPTIONS", url=self._base_url)
        with self._execute(request) as resp:
            self._check_status(resp)
            if "DAV" not in resp.headers:
                raise ServerNotWebDavCompatibleError(
                    f"server at {redact_url(self._base_url)} does not advertise webDAV support"
                )

    def try_authenticated_request(self) -> None:
        """Probe the endpoint with the configured credentials.

        Raises
        ------
        UnauthorizedError
            If the server rejected the credentials. Other failures are
            logged and ignored.
        """
        try:
            self.item_metadata("/")
        except UnauthorizedError:
            raise
        except BackendError as e:
            log.debug("ignoring failure of authentication probe of %s: %s", redact_url(self._base_url), e)

    def close(self) -> None:
        """Close all the network connections of this client."""
        self._transport.close()


class WebDavCloudProvider(CloudProvider):
    """Cloud provider backed by a webDAV server.

    Each operation is executed by a `WebDavClient` on a worker thread.

    Parameters
    ----------
    client : `WebDavClient`
        Client for the endpoint.
    max_workers : `int`, optional
        Maximum number of operations executed concurrently.
    """

    def __init__(self, client: WebDavClient, max_workers: int | None = None) -> None:
        super().__init__(max_workers=max_workers)
        self._client: WebDavClient = client

    @classmethod
    def from_credential(
        cls, credential: WebDavCredential, config: DavConfig | None = None
    ) -> WebDavCloudProvider:
        """Build a provider for the endpoint described by `credential`,
        after checking the server supports webDAV and accepts the
        credentials.

        Parameters
        ----------
        credential : `WebDavCredential`
            Location and credentials of the endpoint.
        config : `DavConfig`, optional
            Configuration to use. If None, the configuration registered for
            the endpoint in the file pointed to by environment variable
            'CLOUDACCESS_WEBDAV_CONFIG' is used.

        Raises
        ------
        ServerNotWebDavCompatibleError
            If the server does not advertise webDAV support.
        UnauthorizedError
            If the server rejects the credentials.
        """
        if config is None:
            config = dav_globals.config_pool().get_config_for_url(credential.base_url)

        client = WebDavClient(DavTransport(credential, config), credential, config)
        try:
            client.check_server_compatibility()
            client.try_authenticated_request()
        except BackendError:
            client.close()
            raise

        log.debug("connected to webDAV endpoint %s", redact_url(client.base_url))
        return cls(client, max_workers=config.max_workers)

    @classmethod
    def from_url(
        cls, url: str, username: str | None = None, password: str | None = None
    ) -> WebDavCloudProvider:
        """Build a provider for the endpoint at `url`. Credentials not given
        as arguments are taken from the configuration of the endpoint.
        """
        config = dav_globals.config_pool().get_config_for_url(url)
        credential = WebDavCredential(
            base_url=url,
            username=config.username if username is None else username,
            password=config.password if password is None else password,
        )
        return cls.from_credential(credential, config)

    @override
    def item_metadata(self, node: str) -> Future[CloudItemMetadata | None]:
        return self._submit(self._client.item_metadata, node)

    @override
    def list(self, folder: str, page_token: str | None = None) -> Future[CloudItemList]:
        # The whole listing is always returned as a single page.
        return self._submit(self._client.list, folder)

    @override
    def list_exhaustively(self, folder: str) -> Future[CloudItemList]:
        return self._submit(self._client.list_exhaustively, folder)

    @override
    def read(self, file: str, progress_listener: ProgressListener = NO_PROGRESS_AWARE) -> Future[BinaryIO]:
        return self._submit(self._client.read, file, progress_listener)

    @override
    def read_range(
        self,
        file: str,
        offset: int,
        count: int,
        progress_listener: ProgressListener = NO_PROGRESS_AWARE,
    ) -> Future[BinaryIO]:
        return self._submit(self._client.read_range, file, offset, count, progress_listener)

    @override
    def write(
        self,
        file: str,
        replace: bool,
        data: BinaryIO | bytes,
        progress_listener: ProgressListener = NO_PROGRESS_AWARE,
    ) -> Future[CloudItemMetadata | None]:
        return self._submit(self._client.write, file, replace, data, progress_listener)

    @override
    def create_folder(self, folder: str) -> Future[str]:
        return self._submit(self._client.create_folder, folder)

    @override
    def delete(self, node: str) -> Future[None]:
        return self._submit(self._client.delete, node)

    @override
    def move(self, source: str, target: str, replace: bool) -> Future[str]:
        return self._submit(self._client.move, source, target, replace)

    @override
    def close(self) -> None:
        super().close()
        self._client.close()
