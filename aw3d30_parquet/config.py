"""Run configuration for the tile pipeline."""

import dataclasses
import os
from pathlib import Path

from .catalog import DEFAULT_BASE_URL
from .validate import RawValidation

# S3 listing endpoint for discovering which tiles exist upstream
DEFAULT_LISTING_ENDPOINT = "https://opentopography.s3.sdsc.edu"
DEFAULT_BUCKET = "raster"
DEFAULT_PREFIX = "AW3D30/AW3D30_global/"

COMPRESSIONS = ("zstd", "snappy", "gzip", "none")


def default_convert_workers() -> int:
    # Each conversion holds one open raster, keep this small
    return max(1, min(4, os.cpu_count() or 1))


@dataclasses.dataclass
class RetryPolicy:
    """Bounded exponential backoff for transient network failures"""

    max_retries: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 60.0

    def delay(self, attempt: int, retry_after: str | None = None) -> float:
        """Seconds to wait before retry number ``attempt`` (0-based)"""
        if retry_after and retry_after.isdigit():
            return min(self.backoff_max, float(retry_after))
        return min(self.backoff_max, self.backoff_base * 2**attempt)


@dataclasses.dataclass
class PipelineConfig:
    """Configuration for downloading and converting a region"""

    raw_dir: Path
    output_dir: Path

    # Remote source
    base_url: str = DEFAULT_BASE_URL
    listing_endpoint: str = DEFAULT_LISTING_ENDPOINT
    bucket: str = DEFAULT_BUCKET
    prefix: str = DEFAULT_PREFIX
    only_available: bool = True

    # Download stage
    download_workers: int = 16
    retry: RetryPolicy = dataclasses.field(default_factory=RetryPolicy)
    timeout: float = 120.0
    chunk_size: int = 1024 * 1024
    raw_validation: RawValidation = RawValidation.SIZE

    # Conversion stage
    convert_workers: int = dataclasses.field(default_factory=default_convert_workers)
    queue_size: int | None = None  # Defaults to twice convert_workers
    rows_per_block: int = 256
    row_group_rows: int = 1024 * 1024
    compression: str = "zstd"

    def __post_init__(self):
        self.raw_dir = Path(self.raw_dir)
        self.output_dir = Path(self.output_dir)
        self.raw_validation = RawValidation(self.raw_validation)
        if self.compression not in COMPRESSIONS:
            raise ValueError(f"Unsupported compression {self.compression!r}")
        if self.download_workers < 1 or self.convert_workers < 1:
            raise ValueError("Worker counts must be at least 1")
        if self.queue_size is None:
            self.queue_size = 2 * self.convert_workers
        if self.queue_size < 1:
            raise ValueError("Queue size must be at least 1")
