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

"""Backend-agnostic interface shared by all cloud providers."""

from __future__ import annotations

__all__ = (
    "NO_PROGRESS_AWARE",
    "CloudItemList",
    "CloudItemMetadata",
    "CloudItemType",
    "CloudProvider",
    "ProgressListener",
)

import abc
import enum
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from types import TracebackType
from typing import Any, BinaryIO, Protocol, runtime_checkable


class CloudItemType(enum.Enum):
    """Kind of node stored in a cloud."""

    FILE = "file"
    FOLDER = "folder"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class CloudItemMetadata:
    """Metadata of a single file or folder.

    Parameters
    ----------
    name : `str`
        Last component of ``path``.
    path : `str`
        Absolute, slash-separated path of the node, unique within a provider.
    item_type : `CloudItemType`
        Whether the node is a file or a folder.
    last_modified : `datetime.datetime`, optional
        Time of the last modification, timezone-aware, if known.
    size : `int`, optional
        Size in bytes, if known.
    """

    name: str
    path: str
    item_type: CloudItemType
    last_modified: datetime | None = None
    size: int | None = None


@dataclass(frozen=True)
class CloudItemList:
    """Ordered page of node metadata.

    Parameters
    ----------
    items : `tuple` [ `CloudItemMetadata`, ... ]
        Nodes of this page.
    next_page_token : `str`, optional
        Token to pass to `CloudProvider.list` to fetch the next page. `None`
        when this is the last page.
    """

    items: tuple[CloudItemMetadata, ...] = ()
    next_page_token: str | None = None

    def add(self, items: Iterable[CloudItemMetadata], next_page_token: str | None = None) -> CloudItemList:
        """Return a new list with ``items`` appended to the items of this
        one.
        """
        return CloudItemList(items=self.items + tuple(items), next_page_token=next_page_token)

    def __len__(self) -> int:
        return len(self.items)


@runtime_checkable
class ProgressListener(Protocol):
    """Sink of transfer progress notifications."""

    def on_progress(self, total_bytes: int) -> None:
        """Receive the cumulative number of bytes transferred so far."""
        ...


class _NoProgressAware:
    def on_progress(self, total_bytes: int) -> None:
        pass


# Listener to use when the caller is not interested in progress updates.
NO_PROGRESS_AWARE: ProgressListener = _NoProgressAware()


class CloudProvider(abc.ABC):
    """Asynchronous access to the nodes stored by a storage backend.

    Every operation returns immediately a `concurrent.futures.Future`. The
    work is performed synchronously on a worker thread owned by the provider.
    A failed future carries one of the exceptions defined in
    `cloudaccess.exceptions`.

    Parameters
    ----------
    max_workers : `int`, optional
        Maximum number of operations executed concurrently.
    """

    def __init__(self, max_workers: int | None = None) -> None:
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=type(self).__name__)

    def _submit(self, fn: Callable[..., Any], /, *args: Any) -> Future:
        return self._executor.submit(fn, *args)

    @abc.abstractmethod
    def item_metadata(self, node: str) -> Future[CloudItemMetadata | None]:
        """Retrieve the metadata of the file or folder at ``node``."""
        raise NotImplementedError()

    @abc.abstractmethod
    def list(self, folder: str, page_token: str | None = None) -> Future[CloudItemList]:
        """List the direct children of ``folder``.

        Parameters
        ----------
        folder : `str`
            Path of the folder to list.
        page_token : `str`, optional
            Token returned with a previous page, or `None` for the first
            page.
        """
        raise NotImplementedError()

    @abc.abstractmethod
    def list_exhaustively(self, folder: str) -> Future[CloudItemList]:
        """List all descendants of ``folder``."""
        raise NotImplementedError()

    @abc.abstractmethod
    def read(self, file: str, progress_listener: ProgressListener = NO_PROGRESS_AWARE) -> Future[BinaryIO]:
        """Open the whole content of ``file`` for reading.

        The returned stream must be drained or closed by the caller.
        """
        raise NotImplementedError()

    @abc.abstractmethod
    def read_range(
        self,
        file: str,
        offset: int,
        count: int,
        progress_listener: ProgressListener = NO_PROGRESS_AWARE,
    ) -> Future[BinaryIO]:
        """Open ``count`` bytes of ``file`` starting at byte ``offset``."""
        raise NotImplementedError()

    @abc.abstractmethod
    def write(
        self,
        file: str,
        replace: bool,
        data: BinaryIO | bytes,
        progress_listener: ProgressListener = NO_PROGRESS_AWARE,
    ) -> Future[CloudItemMetadata | None]:
        """Store ``data`` as the content of ``file``.

        Parameters
        ----------
        file : `str`
            Path of the file to write.
        replace : `bool`
            If `False` and a node exists at ``file``, fail with
            `~cloudaccess.exceptions.AlreadyExistsError`.
        data : `BinaryIO` or `bytes`
            Content to upload.
        progress_listener : `ProgressListener`, optional
            Receives the number of bytes uploaded so far.

        Returns
        -------
        metadata : `concurrent.futures.Future` [ `CloudItemMetadata` ]
            Metadata of the file after the upload.
        """
        raise NotImplementedError()

    @abc.abstractmethod
    def create_folder(self, folder: str) -> Future[str]:
        """Create ``folder`` and return its path."""
        raise NotImplementedError()

    @abc.abstractmethod
    def delete(self, node: str) -> Future[None]:
        """Delete the file or the whole folder tree at ``node``."""
        raise NotImplementedError()

    @abc.abstractmethod
    def move(self, source: str, target: str, replace: bool) -> Future[str]:
        """Move ``source`` to ``target`` and return ``target``."""
        raise NotImplementedError()

    def close(self) -> None:
        """Wait for pending operations and release the resources of this
        provider.
        """
        self._executor.shutdown(wait=True)

    def __enter__(self) -> CloudProvider:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
