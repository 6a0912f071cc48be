"""Exceptions raised while fetching and converting AW3D30 tiles

Every exception carries a short ``kind`` used in run reports. Errors local to
one tile are recorded and the run moves on; ``UnknownRegion`` and
``StorageExhausted`` are systemic and end the run.
"""

import errno

# errno values that mean the whole output volume is unusable
STORAGE_ERRNOS = frozenset({errno.ENOSPC, errno.EDQUOT})


class PipelineError(Exception):
    """Base exception for tile pipeline operations."""

    kind = "Error"


class UnknownRegion(PipelineError):
    """Region name is not one of the supported identifiers."""

    kind = "UnknownRegion"

    def __init__(self, region: str, known: list[str] | None = None):
        message = f"Unknown region {region!r}"
        if known:
            message += f", expected one of: {', '.join(known)}"
        super().__init__(message)
        self.region = region


class Cancelled(PipelineError):
    """Work was abandoned because the run is shutting down."""

    kind = "Cancelled"


class DownloadError(PipelineError):
    """Tile could not be fetched from the remote source."""

    kind = "Download"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retry_after: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class TransientDownloadError(DownloadError):
    """Connection error, timeout, throttling or 5xx; retried."""

    kind = "Transient"


class NotFound(DownloadError):
    """Remote source has no object for the tile (404/410)."""

    kind = "NotFound"


class RemoteRejected(DownloadError):
    """Remote source refused the request (any other 4xx)."""

    kind = "RemoteRejected"


class DecodeError(PipelineError):
    """Raw raster could not be decoded into samples."""

    kind = "Decode"


class CorruptRaster(DecodeError):
    """File cannot be opened or its georeferencing is missing or malformed."""

    kind = "Corrupt"


class UnsupportedFormat(DecodeError):
    """Raster is not a single-band numeric geographic elevation grid."""

    kind = "UnsupportedFormat"


class WriteError(PipelineError):
    """Columnar output could not be written."""

    kind = "IO"


class StorageExhausted(WriteError):
    """Disk full or quota exceeded; every further tile would fail the same way."""


def is_storage_exhausted(exc: OSError) -> bool:
    if exc.errno in STORAGE_ERRNOS:
        return True
    # pyarrow raises plain OSError without errno set
    return "No space left on device" in str(exc) or "Disk quota exceeded" in str(exc)


class RunAborted(PipelineError):
    """A systemic failure stopped the run; ``report`` holds what was recorded."""

    kind = "Aborted"

    def __init__(self, message: str, report):
        super().__init__(message)
        self.report = report
