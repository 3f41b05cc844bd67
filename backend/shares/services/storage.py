"""
Local Storage Backend
=====================
Blob store on a caller-trusted filesystem, addressed by random names.

Built on Django's FileSystemStorage: exclusive creation, chunked writes
and root containment come from Django. This module adds what a one-time
share needs on top of that: a size that reflects the bytes actually
written, removal of partial files, and pruning of empty shard folders.

Layout: blobs/{name[0:2]}/{name[2:4]}/{name}{ext}
where ``name`` is 128 random bits in hex. Names are never derived from
user input or from the record id.
"""

import logging
import os
import re
import secrets
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from django.core.exceptions import SuspiciousFileOperation
from django.core.files import File
from django.core.files.storage import FileSystemStorage
from django.utils import timezone

from shares.exceptions import BlobNotFound, StorageFailure, UnsafeLocation

logger = logging.getLogger(__name__)


BLOB_DIR = 'blobs'
DEFAULT_EXTENSION = '.bin'
_EXTENSION_RE = re.compile(r'^\.[A-Za-z0-9]{1,16}$')


@dataclass(frozen=True)
class StoredBlob:
    location: str
    size_bytes: int


def safe_extension(hint) -> str:
    """
    Reduce an extension hint to something harmless for a filename.

    Accepts '.pdf', 'pdf' or a whole filename; anything unusual becomes
    '.bin'.
    """
    if not hint:
        return DEFAULT_EXTENSION
    hint = str(hint)
    if '.' in hint:
        hint = '.' + hint.rsplit('.', 1)[-1]
    else:
        hint = '.' + hint
    if not _EXTENSION_RE.match(hint):
        return DEFAULT_EXTENSION
    return hint.lower()


class BlobFileSystemStorage(FileSystemStorage):
    """
    FileSystemStorage that never renames.

    Django normally appends a suffix when a name is taken; a blob name
    that already exists is an error here, so one share can never land
    on another's file.
    """

    def get_available_name(self, name, max_length=None):
        if self.exists(name):
            raise FileExistsError(f"Blob name already taken: {name}")
        return name


class LocalStorageBackend:
    """
    Save, open, delete and probe blobs under ``root``.

    Locations are relative POSIX paths. Anything that does not resolve
    inside the root is rejected with UnsafeLocation.
    """

    def __init__(self, root):
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self.files = BlobFileSystemStorage(location=str(self.root))

    def save(self, stream, extension_hint=None) -> StoredBlob:
        """
        Stream ``stream`` to a freshly named blob.

        The returned size is what landed on disk, not what the client
        claimed. A failed write removes the partial file before the
        error propagates.
        """
        name = secrets.token_hex(16)
        location = f"{BLOB_DIR}/{name[:2]}/{name[2:4]}/{name}{safe_extension(extension_hint)}"
        content = stream if hasattr(stream, 'chunks') else File(stream, name=location)

        try:
            location = self.files.save(location, content)
            size = self.files.size(location)
        except FileExistsError as e:
            # Someone else's blob; nothing of ours to remove
            logger.error(f"Blob name collision at {location}")
            raise StorageFailure(f"Failed to save blob: {e}") from e
        except BaseException as e:
            logger.error(f"Failed to save blob {location}: {e}")
            self._remove_partial(location)
            if isinstance(e, OSError):
                raise StorageFailure(f"Failed to save blob: {e}") from e
            raise

        logger.info(f"Blob saved to {location} ({size} bytes)")
        return StoredBlob(location=location, size_bytes=size)

    def open(self, location):
        """Open a blob for reading. Raises BlobNotFound if it is missing."""
        self._check(location)
        try:
            return self.files.open(location, 'rb')
        except (FileNotFoundError, IsADirectoryError) as e:
            raise BlobNotFound(f"Blob not found: {location}") from e
        except OSError as e:
            logger.error(f"Failed to open blob {location}: {e}")
            raise StorageFailure(f"Failed to open blob: {e}") from e

    def delete(self, location) -> bool:
        """
        Delete a blob. Idempotent.

        Returns:
            bool: True if a file was removed, False if it was already gone
            (logged as a warning so double deletes are visible).
        """
        full_path = self._check(location)
        if not os.path.isfile(full_path):
            logger.warning(f"Attempted to delete non-existent blob: {location}")
            return False
        try:
            self.files.delete(location)
        except OSError as e:
            logger.error(f"Failed to delete blob {location}: {e}")
            raise StorageFailure(f"Failed to delete blob: {e}") from e

        logger.info(f"Blob deleted: {location}")
        self._cleanup_empty_directories(full_path)
        return True

    def exists(self, location) -> bool:
        try:
            return os.path.isfile(self._check(location))
        except UnsafeLocation:
            return False

    def iter_locations(self, older_than=None):
        """
        Yield the location of every stored blob.

        Args:
            older_than: optional age in seconds; younger blobs are skipped
                so in-flight uploads are left alone.
        """
        if not self.files.exists(BLOB_DIR):
            return
        cutoff = timezone.now() - timedelta(seconds=older_than) if older_than is not None else None
        yield from self._walk(BLOB_DIR, cutoff)

    def _walk(self, directory, cutoff):
        try:
            dirnames, filenames = self.files.listdir(directory)
        except FileNotFoundError:
            return
        for filename in sorted(filenames):
            location = f"{directory}/{filename}"
            try:
                if cutoff is not None and self.files.get_modified_time(location) > cutoff:
                    continue
            except FileNotFoundError:
                continue
            yield location
        for dirname in sorted(dirnames):
            yield from self._walk(f"{directory}/{dirname}", cutoff)

    def _check(self, location) -> str:
        """Absolute path of ``location``, or UnsafeLocation."""
        if not location or '\0' in location:
            raise UnsafeLocation(f"Unsafe blob location: {location!r}")
        try:
            full_path = self.files.path(location)
        except SuspiciousFileOperation as e:
            raise UnsafeLocation(f"Unsafe blob location: {location!r}") from e
        if full_path == self.files.location:
            raise UnsafeLocation(f"Unsafe blob location: {location!r}")
        return full_path

    def _remove_partial(self, location) -> None:
        try:
            full_path = self._check(location)
            if os.path.isfile(full_path):
                os.remove(full_path)
            self._cleanup_empty_directories(full_path)
        except OSError as e:
            logger.warning(f"Failed to clean up partial blob {location}: {e}")

    def _cleanup_empty_directories(self, file_path) -> None:
        """
        Remove empty shard directories up to the blob root.

        For blobs/ab/cd/abcd1234.bin this tries blobs/ab/cd/ then blobs/ab/
        and stops at blobs/.
        """
        blob_root = self.root / BLOB_DIR
        parent = Path(file_path).parent
        while parent != blob_root and parent.is_relative_to(blob_root):
            try:
                parent.rmdir()
            except OSError:
                # Not empty (or raced with a concurrent save), stop climbing
                break
            parent = parent.parent
