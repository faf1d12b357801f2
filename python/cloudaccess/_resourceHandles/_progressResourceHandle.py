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

__all__ = ("ProgressReadHandle", "ProgressWriteBody")

import io
import logging
from collections.abc import Callable, Iterator
from typing import TYPE_CHECKING, Any, BinaryIO

if TYPE_CHECKING:
    from ..api import ProgressListener

log = logging.getLogger(__name__)


class ProgressReadHandle(io.RawIOBase):
    """Raw binary stream reporting to a listener the number of bytes read
    so far.

    Parameters
    ----------
    raw : `typing.BinaryIO`
        Source of the bytes. It is closed when this handle is closed.
    progress_listener : `ProgressListener`
        Receives the cumulative number of bytes read after each read.
    limit : `int`, optional
        Maximum number of bytes to read from ``raw``. If `None`, ``raw`` is
        read until exhausted.
    on_close : `~collections.abc.Callable`, optional
        Called once when this handle is closed, after ``raw`` is closed.
    """

    def __init__(
        self,
        raw: BinaryIO | Any,
        progress_listener: ProgressListener,
        limit: int | None = None,
        on_close: Callable[[], None] | None = None,
    ) -> None:
        super().__init__()
        self._raw = raw
        self._progress_listener = progress_listener
        self._remaining = limit
        self._on_close = on_close
        self._total: int = 0

    def readable(self) -> bool:
        return True

    def readinto(self, b: Any) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed file.")

        size = len(b)
        if self._remaining is not None:
            size = min(size, self._remaining)
        if size == 0:
            return 0

        data = self._raw.read(size)
        n = len(data)
        if n == 0:
            return 0

        b[:n] = data
        self._total += n
        if self._remaining is not None:
            self._remaining -= n
        self._progress_listener.on_progress(self._total)
        return n

    def close(self) -> None:
        if self.closed:
            return

        try:
            self._raw.close()
            if self._on_close is not None:
                self._on_close()
        finally:
            log.debug("closing stream after reading %d bytes", self._total)
            super().close()


class ProgressWriteBody:
    """Iterable request body reporting to a listener the number of bytes
    consumed so far.

    Parameters
    ----------
    data : `typing.BinaryIO` or `bytes`
        Content to send.
    progress_listener : `ProgressListener`
        Receives the cumulative number of bytes consumed after each read.
    chunk_size : `int`, optional
        Size of the chunks yielded when iterating.

    Notes
    -----
    When the size of ``data`` can be determined, it is exposed as attribute
    ``len`` so that the body is sent with a ``Content-Length`` header instead
    of chunked transfer encoding. The body can be sent again after calling
    `rewind` if ``data`` is seekable.
    """

    def __init__(
        self,
        data: BinaryIO | bytes,
        progress_listener: ProgressListener,
        chunk_size: int = io.DEFAULT_BUFFER_SIZE,
    ) -> None:
        if isinstance(data, bytes | bytearray | memoryview):
            data = io.BytesIO(data)

        self._data = data
        self._progress_listener = progress_listener
        self._chunk_size: int = chunk_size
        self._total: int = 0
        self._start: int | None = None
        if getattr(data, "seekable", lambda: False)():
            self._start = data.tell()
            end = data.seek(0, io.SEEK_END)
            data.seek(self._start)
            self.len: int = end - self._start

    def read(self, size: int = -1) -> bytes:
        chunk = self._data.read(size)
        if chunk:
            self._total += len(chunk)
            self._progress_listener.on_progress(self._total)
        return chunk

    def __iter__(self) -> Iterator[bytes]:
        while chunk := self.read(self._chunk_size):
            yield chunk

    def rewind(self) -> None:
        """Position the body back to its start so that it can be sent
        again. Does nothing if the underlying data is not seekable.
        """
        if self._start is None or self._total == 0:
            return

        self._data.seek(self._start)
        self._total = 0
