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

__all__ = ("LocalFsCloudProvider",)

import contextlib
import errno
import io
import logging
import os
import shutil
import stat
import tempfile
from collections.abc import Iterator
from concurrent.futures import Future
from datetime import UTC, datetime
from typing import BinaryIO, NoReturn, cast, override

from ._resourceHandles._progressResourceHandle import ProgressReadHandle, ProgressWriteBody
from .api import NO_PROGRESS_AWARE, CloudItemList, CloudItemMetadata, CloudItemType, CloudProvider, ProgressListener
from .davutils import normalize_path
from .exceptions import (
    AlreadyExistsError,
    BackendError,
    ForbiddenError,
    InsufficientStorageError,
    NotFoundError,
)

log = logging.getLogger(__name__)


@contextlib.contextmanager
def _translate_errors(path: str) -> Iterator[None]:
    """Re-raise the `OSError` raised while operating on virtual `path` as
    the matching `BackendError`.
    """
    try:
        yield
    except (FileNotFoundError, NotADirectoryError) as e:
        raise NotFoundError(f"no such file or folder: {path}") from e
    except FileExistsError as e:
        raise AlreadyExistsError(f"a node already exists at {path}") from e
    except PermissionError as e:
        raise ForbiddenError(f"permission denied: {path}") from e
    except OSError as e:
        if e.errno in (errno.ENOSPC, errno.EDQUOT):
            raise InsufficientStorageError(f"no space left to store {path}") from e
        raise BackendError(f"could not access {path}: {e}") from e


def _raise(e: OSError) -> NoReturn:
    raise e


class LocalFsCloudProvider(CloudProvider):
    """Cloud provider storing its nodes in a directory of the local file
    system.

    Parameters
    ----------
    root : `str`
        Directory holding the tree. Virtual path '/a/b' is stored at
        'root/a/b'.
    max_workers : `int`, optional
        Maximum number of operations executed concurrently.
    buffer_size : `int`, optional
        Size of the chunks in which file contents are copied.
    """

    def __init__(
        self, root: str | os.PathLike, max_workers: int | None = None, buffer_size: int = 1_048_576
    ) -> None:
        super().__init__(max_workers=max_workers)
        self._root: str = os.path.realpath(root)
        self._buffer_size: int = buffer_size

    @property
    def root(self) -> str:
        return self._root

    def _resolve(self, path: str) -> str:
        """Return the local path of the node at virtual `path`.

        Raises
        ------
        ForbiddenError
            If the node would be outside the root directory, for instance
            because an ancestor is a symbolic link.
        """
        relative = normalize_path(path).lstrip("/")
        local_path = os.path.join(self._root, relative) if relative else self._root
        parent = os.path.realpath(os.path.dirname(local_path)) if relative else self._root
        if os.path.commonpath([self._root, parent]) != self._root:
            raise ForbiddenError(f"path {path} is outside of the root directory")

        return local_path

    def _virtual_path(self, local_path: str) -> str:
        relative = os.path.relpath(local_path, self._root)
        return "/" if relative == os.curdir else normalize_path(relative.replace(os.sep, "/"))

    def _metadata(self, local_path: str, st: os.stat_result) -> CloudItemMetadata:
        if stat.S_ISDIR(st.st_mode):
            item_type = CloudItemType.FOLDER
        elif stat.S_ISREG(st.st_mode):
            item_type = CloudItemType.FILE
        else:
            item_type = CloudItemType.UNKNOWN

        path = self._virtual_path(local_path)
        return CloudItemMetadata(
            name=os.path.basename(path),
            path=path,
            item_type=item_type,
            last_modified=datetime.fromtimestamp(st.st_mtime, tz=UTC),
            size=None if item_type == CloudItemType.FOLDER else st.st_size,
        )

    def _item_metadata(self, node: str) -> CloudItemMetadata:
        local_path = self._resolve(node)
        with _translate_errors(node):
            return self._metadata(local_path, os.lstat(local_path))

    def _list(self, folder: str) -> CloudItemList:
        local_path = self._resolve(folder)
        with _translate_errors(folder), os.scandir(local_path) as it:
            entries = sorted(it, key=lambda entry: entry.name)
            return CloudItemList().add(
                self._metadata(entry.path, entry.stat(follow_symlinks=False)) for entry in entries
            )

    def _list_exhaustively(self, folder: str) -> CloudItemList:
        local_path = self._resolve(folder)
        items: list[CloudItemMetadata] = []
        with _translate_errors(folder):
            for dirpath, dirnames, filenames in os.walk(local_path, onerror=_raise):
                dirnames.sort()
                for name in dirnames + sorted(filenames):
                    child = os.path.join(dirpath, name)
                    items.append(self._metadata(child, os.lstat(child)))

        return CloudItemList().add(items)

    def _open(
        self, file: str, offset: int, count: int | None, progress_listener: ProgressListener
    ) -> BinaryIO:
        local_path = self._resolve(file)
        with _translate_errors(file):
            raw = open(local_path, "rb", buffering=0)
            try:
                if offset:
                    raw.seek(offset)
            except OSError:
                raw.close()
                raise

        handle = ProgressReadHandle(raw, progress_listener, limit=count)
        return cast(BinaryIO, io.BufferedReader(handle, buffer_size=self._buffer_size))

    def _write(
        self, file: str, replace: bool, data: BinaryIO | bytes, progress_listener: ProgressListener
    ) -> CloudItemMetadata:
        local_path = self._resolve(file)
        if not replace and os.path.lexists(local_path):
            raise AlreadyExistsError(f"a node already exists at {file} and replace is disabled")

        with _translate_errors(file):
            fd, tmp_path = tempfile.mkstemp(
                dir=os.path.dirname(local_path), prefix=f".{os.path.basename(local_path)}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "wb") as out:
                    for chunk in ProgressWriteBody(data, progress_listener, chunk_size=self._buffer_size):
                        out.write(chunk)
                os.replace(tmp_path, local_path)
            except BaseException:
                with contextlib.suppress(FileNotFoundError):
                    os.remove(tmp_path)
                raise

        log.debug("wrote %s", local_path)
        return self._item_metadata(file)

    def _create_folder(self, folder: str) -> str:
        local_path = self._resolve(folder)
        with _translate_errors(folder):
            os.mkdir(local_path)

        return folder

    def _delete(self, node: str) -> None:
        local_path = self._resolve(node)
        if local_path == self._root:
            raise ForbiddenError("the root folder cannot be deleted")

        with _translate_errors(node):
            if stat.S_ISDIR(os.lstat(local_path).st_mode):
                shutil.rmtree(local_path)
            else:
                os.remove(local_path)

    def _move(self, source: str, target: str, replace: bool) -> str:
        source_path = self._resolve(source)
        target_path = self._resolve(target)
        with _translate_errors(source):
            os.lstat(source_path)

        if os.path.lexists(target_path):
            if not replace:
                raise AlreadyExistsError(f"a node already exists at {target} and replace is disabled")
            self._delete(target)

        with _translate_errors(target):
            os.rename(source_path, target_path)

        return target

    @override
    def item_metadata(self, node: str) -> Future[CloudItemMetadata | None]:
        return self._submit(self._item_metadata, node)

    @override
    def list(self, folder: str, page_token: str | None = None) -> Future[CloudItemList]:
        # The whole listing is always returned as a single page.
        return self._submit(self._list, folder)

    @override
    def list_exhaustively(self, folder: str) -> Future[CloudItemList]:
        return self._submit(self._list_exhaustively, folder)

    @override
    def read(self, file: str, progress_listener: ProgressListener = NO_PROGRESS_AWARE) -> Future[BinaryIO]:
        return self._submit(self._open, file, 0, None, progress_listener)

    @override
    def read_range(
        self,
        file: str,
        offset: int,
        count: int,
        progress_listener: ProgressListener = NO_PROGRESS_AWARE,
    ) -> Future[BinaryIO]:
        return self._submit(self._open, file, offset, count, progress_listener)

    @override
    def write(
        self,
        file: str,
        replace: bool,
        data: BinaryIO | bytes,
        progress_listener: ProgressListener = NO_PROGRESS_AWARE,
    ) -> Future[CloudItemMetadata | None]:
        return self._submit(self._write, file, replace, data, progress_listener)

    @override
    def create_folder(self, folder: str) -> Future[str]:
        return self._submit(self._create_folder, folder)

    @override
    def delete(self, node: str) -> Future[None]:
        return self._submit(self._delete, node)

    @override
    def move(self, source: str, target: str, replace: bool) -> Future[str]:
        return self._submit(self._move, source, target, replace)
