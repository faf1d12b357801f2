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

"""Backend-independent errors raised by cloud providers."""

from __future__ import annotations

__all__ = (
    "AlreadyExistsError",
    "BackendError",
    "ForbiddenError",
    "InsufficientStorageError",
    "NotFoundError",
    "ServerNotWebDavCompatibleError",
    "UnauthorizedError",
)


class BackendError(Exception):
    """Generic failure of a storage backend.

    Parameters
    ----------
    message : `str`, optional
        Human readable description of the failure.
    status : `int`, optional
        HTTP status code of the response which caused the failure, if any.

    Notes
    -----
    When the failure was caused by a lower level exception (network error,
    malformed response body, ...) that exception is available as
    ``__cause__``.
    """

    def __init__(self, message: str = "", *, status: int | None = None) -> None:
        super().__init__(message)
        self.status: int | None = status


class UnauthorizedError(BackendError):
    """The server rejected the supplied credentials (HTTP 401)."""


class ForbiddenError(BackendError):
    """The authenticated user may not access the resource (HTTP 403)."""


class NotFoundError(BackendError):
    """The resource or one of its ancestors does not exist (HTTP 404, 409)."""


class AlreadyExistsError(BackendError):
    """A resource exists at the target path and replacing it is disabled."""


class InsufficientStorageError(BackendError):
    """The server has no space left to store the resource (HTTP 507)."""


class ServerNotWebDavCompatibleError(BackendError):
    """The server does not advertise webDAV support in its OPTIONS
    response.
    """
