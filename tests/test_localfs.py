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

import io
import os
import shutil
import tempfile
import unittest
from datetime import UTC, datetime

from cloudaccess import (
    AlreadyExistsError,
    CloudItemType,
    ForbiddenError,
    LocalFsCloudProvider,
    NotFoundError,
)

TESTDIR = os.path.abspath(os.path.dirname(__file__))

# Maximum time in seconds to wait for an operation to complete.
TIMEOUT = 5


class RecordingProgressListener:
    """Progress listener keeping all the notifications it receives."""

    def __init__(self):
        self.totals = []

    def on_progress(self, total_bytes: int) -> None:
        self.totals.append(total_bytes)


class LocalFsCloudProviderTestCase(unittest.TestCase):
    """Test for the cloud provider backed by a local directory."""

    def setUp(self):
        self.root = tempfile.mkdtemp(dir=TESTDIR)
        self.provider = LocalFsCloudProvider(self.root, max_workers=2)

    def tearDown(self):
        self.provider.close()
        shutil.rmtree(self.root, ignore_errors=True)

    def _local(self, *components: str) -> str:
        return os.path.join(self.root, *components)

    def _create_file(self, name: str, data: bytes = b"hello world") -> None:
        with open(self._local(name), "wb") as f:
            f.write(data)

    def test_item_metadata(self):
        self._create_file("file")

        metadata = self.provider.item_metadata("/file").result(TIMEOUT)
        self.assertEqual(metadata.name, "file")
        self.assertEqual(metadata.path, "/file")
        self.assertEqual(metadata.item_type, CloudItemType.FILE)
        self.assertEqual(metadata.size, 11)
        self.assertEqual(
            metadata.last_modified, datetime.fromtimestamp(os.stat(self._local("file")).st_mtime, tz=UTC)
        )

    def test_item_metadata_of_folder(self):
        os.mkdir(self._local("dir"))

        metadata = self.provider.item_metadata("/dir/").result(TIMEOUT)
        self.assertEqual(metadata.path, "/dir")
        self.assertEqual(metadata.item_type, CloudItemType.FOLDER)
        self.assertIsNone(metadata.size)

        root = self.provider.item_metadata("/").result(TIMEOUT)
        self.assertEqual(root.path, "/")
        self.assertEqual(root.item_type, CloudItemType.FOLDER)

    def test_item_metadata_missing(self):
        with self.assertRaises(NotFoundError):
            self.provider.item_metadata("/missing").result(TIMEOUT)

    def test_list(self):
        os.mkdir(self._local("dir"))
        self._create_file("file")
        self._create_file(os.path.join("dir", "nested"))

        items = self.provider.list("/").result(TIMEOUT)
        self.assertIsNone(items.next_page_token)
        self.assertEqual([item.path for item in items.items], ["/dir", "/file"])
        self.assertEqual([item.item_type for item in items.items], [CloudItemType.FOLDER, CloudItemType.FILE])

        with self.assertRaises(NotFoundError):
            self.provider.list("/file").result(TIMEOUT)

    def test_list_exhaustively(self):
        os.makedirs(self._local("dir", "subdir"))
        self._create_file("file")
        self._create_file(os.path.join("dir", "nested"))

        items = self.provider.list_exhaustively("/").result(TIMEOUT)
        self.assertIsNone(items.next_page_token)
        self.assertEqual(
            {item.path for item in items.items}, {"/dir", "/file", "/dir/subdir", "/dir/nested"}
        )

        with self.assertRaises(NotFoundError):
            self.provider.list_exhaustively("/missing").result(TIMEOUT)

    def test_read(self):
        self._create_file("file")
        listener = RecordingProgressListener()

        with self.provider.read("/file", listener).result(TIMEOUT) as stream:
            self.assertEqual(stream.read(), b"hello world")

        self.assertEqual(listener.totals[-1], 11)

    def test_read_range(self):
        self._create_file("file")

        with self.provider.read_range("/file", 4, 3).result(TIMEOUT) as stream:
            self.assertEqual(stream.read(), b"o w")

        with self.assertRaises(NotFoundError):
            self.provider.read_range("/missing", 4, 3).result(TIMEOUT)

    def test_write_new_file(self):
        listener = RecordingProgressListener()

        metadata = self.provider.write("/file", False, io.BytesIO(b"hallo welt"), listener).result(TIMEOUT)
        self.assertEqual(metadata.path, "/file")
        self.assertEqual(metadata.item_type, CloudItemType.FILE)
        self.assertEqual(metadata.size, 10)
        self.assertEqual(listener.totals[-1], 10)
        with open(self._local("file"), "rb") as f:
            self.assertEqual(f.read(), b"hallo welt")

        # No temporary file is left behind.
        self.assertEqual(os.listdir(self.root), ["file"])

    def test_write_existing_file(self):
        self._create_file("file")

        with self.assertRaises(AlreadyExistsError):
            self.provider.write("/file", False, b"hallo welt").result(TIMEOUT)

        with open(self._local("file"), "rb") as f:
            self.assertEqual(f.read(), b"hello world")

    def test_write_replace(self):
        self._create_file("file")

        metadata = self.provider.write("/file", True, b"hallo welt").result(TIMEOUT)
        self.assertEqual(metadata.size, 10)
        with open(self._local("file"), "rb") as f:
            self.assertEqual(f.read(), b"hallo welt")

    def test_write_missing_parent(self):
        with self.assertRaises(NotFoundError):
            self.provider.write("/missing/file", True, b"hallo welt").result(TIMEOUT)

    def test_create_folder(self):
        self.assertEqual(self.provider.create_folder("/folder").result(TIMEOUT), "/folder")
        self.assertTrue(os.path.isdir(self._local("folder")))

        with self.assertRaises(AlreadyExistsError):
            self.provider.create_folder("/folder").result(TIMEOUT)

        with self.assertRaises(NotFoundError):
            self.provider.create_folder("/missing/folder").result(TIMEOUT)

    def test_delete(self):
        self._create_file("file")
        os.mkdir(self._local("folder"))
        self._create_file(os.path.join("folder", "file"))

        self.assertIsNone(self.provider.delete("/file").result(TIMEOUT))
        self.assertFalse(os.path.exists(self._local("file")))

        self.assertIsNone(self.provider.delete("/folder").result(TIMEOUT))
        self.assertFalse(os.path.exists(self._local("folder")))

        with self.assertRaises(NotFoundError):
            self.provider.delete("/folder").result(TIMEOUT)

        with self.assertRaises(ForbiddenError):
            self.provider.delete("/").result(TIMEOUT)

    def test_move(self):
        self._create_file("foo")

        self.assertEqual(self.provider.move("/foo", "/bar", False).result(TIMEOUT), "/bar")
        self.assertFalse(os.path.exists(self._local("foo")))
        self.assertTrue(os.path.exists(self._local("bar")))

        with self.assertRaises(NotFoundError):
            self.provider.move("/foo", "/baz", False).result(TIMEOUT)

    def test_move_to_existing(self):
        self._create_file("foo", b"foo")
        self._create_file("bar", b"bar")

        with self.assertRaises(AlreadyExistsError):
            self.provider.move("/foo", "/bar", False).result(TIMEOUT)

        self.assertEqual(self.provider.move("/foo", "/bar", True).result(TIMEOUT), "/bar")
        self.assertFalse(os.path.exists(self._local("foo")))
        with open(self._local("bar"), "rb") as f:
            self.assertEqual(f.read(), b"foo")

    def test_move_replace_folder(self):
        os.mkdir(self._local("foo"))
        os.mkdir(self._local("bar"))
        self._create_file(os.path.join("bar", "file"))

        self.assertEqual(self.provider.move("/foo", "/bar", True).result(TIMEOUT), "/bar")
        self.assertEqual(os.listdir(self._local("bar")), [])

    def test_paths_stay_under_root(self):
        self._create_file("file")

        # Parent references cannot climb above the root.
        self.assertEqual(self.provider.item_metadata("/../../file").result(TIMEOUT).path, "/file")

        # Symbolic links pointing outside of the root cannot be traversed.
        outside = tempfile.mkdtemp(dir=TESTDIR)
        self.addCleanup(shutil.rmtree, outside, ignore_errors=True)
        os.symlink(outside, self._local("link"))
        with self.assertRaises(ForbiddenError):
            self.provider.write("/link/file", True, b"data").result(TIMEOUT)

        metadata = self.provider.item_metadata("/link").result(TIMEOUT)
        self.assertEqual(metadata.item_type, CloudItemType.UNKNOWN)


if __name__ == "__main__":
    unittest.main()
