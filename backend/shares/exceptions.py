"""
Exceptions raised by the share services.

None of these reach a downloader directly: the download coordinator
folds them into a DownloadStatus, and the views render anything else as
a generic server error.
"""


class ShareError(Exception):
    """Base class for share service failures."""


class BlobNotFound(ShareError, FileNotFoundError):
    """Location does not resolve to an existing stored object."""


class UnsafeLocation(BlobNotFound):
    """Location resolves outside the storage root."""


class StorageFailure(ShareError):
    """Storage backend I/O error."""
