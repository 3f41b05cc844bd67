"""
Unit Tests for Local Storage Backend
====================================
Tests cover:
- Saving streams under random, sharded names
- Reported size vs. bytes actually written
- Partial-write cleanup
- Open / exists / idempotent delete
- Rejection of locations outside the storage root
- Stray listing with an age threshold
"""

import io
import os
import shutil
import tempfile
import time
from pathlib import Path
from unittest.mock import patch

from django.core.files.uploadedfile import SimpleUploadedFile
from django.test import SimpleTestCase

from shares.exceptions import BlobNotFound, StorageFailure, UnsafeLocation
from shares.services.storage import LocalStorageBackend, safe_extension


class ExplodingStream(io.RawIOBase):
    """Yields one chunk, then fails like a dropped connection."""

    def __init__(self, first_chunk=b'partial data'):
        self._first = first_chunk
        self._sent = False

    def read(self, size=-1):
        if not self._sent:
            self._sent = True
            return self._first
        raise ConnectionResetError("client went away")


class LocalStorageBackendTests(SimpleTestCase):
    """Tests for LocalStorageBackend."""

    def setUp(self):
        self.root = tempfile.mkdtemp()
        self.storage = LocalStorageBackend(self.root)

    def tearDown(self):
        shutil.rmtree(self.root, ignore_errors=True)

    def _all_files(self):
        return [p for p in Path(self.root).rglob('*') if p.is_file()]

    # ===================
    # Save
    # ===================

    def test_save_returns_bytes_written(self):
        blob = self.storage.save(io.BytesIO(b'0123456789'), '.txt')

        self.assertEqual(blob.size_bytes, 10)
        self.assertTrue(self.storage.exists(blob.location))

    def test_save_accepts_uploaded_file(self):
        upload = SimpleUploadedFile('report.pdf', b'%PDF-1.4 test', content_type='application/pdf')

        blob = self.storage.save(upload, '.pdf')

        self.assertEqual(blob.size_bytes, len(b'%PDF-1.4 test'))
        self.assertTrue(blob.location.endswith('.pdf'))

    def test_save_handles_empty_stream(self):
        blob = self.storage.save(io.BytesIO(b''), '.txt')

        self.assertEqual(blob.size_bytes, 0)
        self.assertTrue(self.storage.exists(blob.location))

    def test_save_streams_large_content(self):
        content = os.urandom(300 * 1024)

        blob = self.storage.save(io.BytesIO(content), '.bin')

        with self.storage.open(blob.location) as stream:
            self.assertEqual(stream.read(), content)
        self.assertEqual(blob.size_bytes, len(content))

    def test_location_is_sharded_random_name(self):
        blob = self.storage.save(io.BytesIO(b'x'), '.txt')

        parts = blob.location.split('/')
        self.assertEqual(parts[0], 'blobs')
        name = parts[3].split('.')[0]
        self.assertEqual(len(name), 32)
        self.assertEqual(parts[1], name[:2])
        self.assertEqual(parts[2], name[2:4])

    def test_location_never_embeds_caller_filename(self):
        blob = self.storage.save(io.BytesIO(b'x'), 'quarterly-secrets.txt')

        self.assertNotIn('quarterly', blob.location)
        self.assertTrue(blob.location.endswith('.txt'))

    def test_locations_are_never_reused(self):
        locations = {self.storage.save(io.BytesIO(b'x'), '.txt').location for _ in range(50)}

        self.assertEqual(len(locations), 50)

    def test_name_collision_fails_without_touching_existing_blob(self):
        """A taken name is an error; Django must not suffix or overwrite it."""
        with patch('shares.services.storage.secrets.token_hex', return_value='ab' * 16):
            first = self.storage.save(io.BytesIO(b'first'), '.txt')
            with self.assertRaises(StorageFailure):
                self.storage.save(io.BytesIO(b'second'), '.txt')

        with self.storage.open(first.location) as stream:
            self.assertEqual(stream.read(), b'first')
        self.assertEqual(len(self._all_files()), 1)

    def test_partial_write_is_removed(self):
        """A stream failing mid-write must not leave a partial file behind."""
        with self.assertRaises(StorageFailure):
            self.storage.save(ExplodingStream(), '.txt')

        self.assertEqual(self._all_files(), [])
        self.assertFalse((Path(self.root) / 'blobs').exists() and any((Path(self.root) / 'blobs').iterdir()))

    def test_non_io_failure_propagates_after_cleanup(self):
        class Broken:
            def read(self, size=-1):
                raise RuntimeError("decoder bug")

        with self.assertRaises(RuntimeError):
            self.storage.save(Broken(), '.txt')

        self.assertEqual(self._all_files(), [])

    # ===================
    # Extension hints
    # ===================

    def test_safe_extension(self):
        self.assertEqual(safe_extension('.PDF'), '.pdf')
        self.assertEqual(safe_extension('archive.tar.gz'), '.gz')
        self.assertEqual(safe_extension('txt'), '.txt')
        self.assertEqual(safe_extension(''), '.bin')
        self.assertEqual(safe_extension(None), '.bin')
        self.assertEqual(safe_extension('../../etc/passwd'), '.bin')
        self.assertEqual(safe_extension('.a b'), '.bin')

    # ===================
    # Open / exists
    # ===================

    def test_open_returns_content(self):
        blob = self.storage.save(io.BytesIO(b'hello'), '.txt')

        with self.storage.open(blob.location) as stream:
            self.assertEqual(stream.read(), b'hello')

    def test_open_missing_raises_not_found(self):
        with self.assertRaises(BlobNotFound):
            self.storage.open('blobs/aa/bb/aabb0000000000000000000000000000.txt')

    def test_not_found_is_a_file_not_found_error(self):
        with self.assertRaises(FileNotFoundError):
            self.storage.open('blobs/aa/bb/missing.txt')

    def test_exists_false_for_missing(self):
        self.assertFalse(self.storage.exists('blobs/aa/bb/missing.txt'))

    # ===================
    # Delete
    # ===================

    def test_delete_removes_blob(self):
        blob = self.storage.save(io.BytesIO(b'bye'), '.txt')

        self.assertTrue(self.storage.delete(blob.location))
        self.assertFalse(self.storage.exists(blob.location))

    def test_delete_twice_is_idempotent(self):
        blob = self.storage.save(io.BytesIO(b'bye'), '.txt')

        self.storage.delete(blob.location)
        with self.assertLogs('shares.services.storage', level='WARNING') as logs:
            self.assertFalse(self.storage.delete(blob.location))

        self.assertTrue(any('non-existent' in line for line in logs.output))

    def test_delete_prunes_empty_shard_directories(self):
        blob = self.storage.save(io.BytesIO(b'bye'), '.txt')
        shard = (Path(self.root) / blob.location).parent

        self.storage.delete(blob.location)

        self.assertFalse(shard.exists())
        self.assertTrue((Path(self.root) / 'blobs').exists())

    # ===================
    # Path safety
    # ===================

    def test_traversal_locations_are_rejected(self):
        outside = Path(tempfile.mkdtemp())
        self.addCleanup(shutil.rmtree, outside, True)
        target = outside / 'victim.txt'
        target.write_bytes(b'keep me')

        relative = os.path.relpath(target, self.root)
        for location in (relative, str(target), '', 'blobs/../../x', 'a\0b'):
            with self.assertRaises(UnsafeLocation):
                self.storage.open(location)
            self.assertFalse(self.storage.exists(location))

        with self.assertRaises(UnsafeLocation):
            self.storage.delete(relative)
        self.assertTrue(target.exists())

    # ===================
    # Listing
    # ===================

    def test_iter_locations_skips_young_blobs(self):
        old = self.storage.save(io.BytesIO(b'old'), '.txt')
        young = self.storage.save(io.BytesIO(b'young'), '.txt')
        past = time.time() - 3600
        os.utime(Path(self.root) / old.location, (past, past))

        listed = list(self.storage.iter_locations(older_than=600))

        self.assertEqual(listed, [old.location])
        self.assertCountEqual(list(self.storage.iter_locations()), [old.location, young.location])

    def test_iter_locations_empty_root(self):
        self.assertEqual(list(self.storage.iter_locations()), [])
