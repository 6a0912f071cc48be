#!/usr/bin/env python3
"""Validity checks for raw tiles and converted Parquet files

A file found on disk only counts as done when it passes these checks, so they
decide whether a rerun skips or repeats work for a tile.

Usage:
    from aw3d30_parquet.validate import validate_output

    result = validate_output("ALPSMLC30_N052E004_DSM.parquet")
    if not result.is_valid:
        for error in result.errors:
            print(f"Error: {error}")
"""

import dataclasses
import enum
import hashlib
import json
import logging
from pathlib import Path
from typing import Any

import pyarrow
import pyarrow.parquet

from .catalog import Tile

logger = logging.getLogger(__name__)

# Key under which the writer stores tile details in Parquet key-value metadata
METADATA_KEY = b"aw3d30_parquet"

COORDINATE_COLUMNS = ("latitude", "longitude")
ELEVATION_COLUMN = "elevation"

# Little-endian and big-endian TIFF, then BigTIFF
TIFF_MAGIC = (b"II*\x00", b"MM\x00*", b"II+\x00", b"MM\x00+")


class RawValidation(enum.StrEnum):
    """How strictly a raw tile on disk is checked before it is trusted"""

    SIZE = "size"
    HEADER = "header"
    CHECKSUM = "checksum"


@dataclasses.dataclass
class ValidationResult:
    """Result of output file validation"""

    is_valid: bool
    errors: list[str]
    warnings: list[str]
    metadata: dict | None
    stats: dict[str, Any]

    def __str__(self) -> str:
        status = "VALID" if self.is_valid else "INVALID"
        lines = [f"Output Validation: {status}"]

        if self.errors:
            lines.append(f"\nErrors ({len(self.errors)}):")
            for error in self.errors:
                lines.append(f"  x {error}")

        if self.warnings:
            lines.append(f"\nWarnings ({len(self.warnings)}):")
            for warning in self.warnings:
                lines.append(f"  ! {warning}")

        if self.stats:
            lines.append("\nStatistics:")
            for key, value in self.stats.items():
                lines.append(f"  {key}: {value}")

        return "\n".join(lines)


def md5_path(path: Path) -> str:
    """Return the MD5 checksum for a file."""
    hasher = hashlib.md5()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def single_part_etag(etag: str | None) -> str | None:
    """Return the MD5 hex digest held by an S3 ETag, or None for multipart ETags"""
    if not etag:
        return None
    value = etag.strip('"')
    if "-" in value or len(value) != 32:
        return None
    return value.lower()


def has_tiff_header(path: Path) -> bool:
    with open(path, "rb") as handle:
        return handle.read(4) in TIFF_MAGIC


def is_valid_raw(path: Path, tile: Tile, mode: RawValidation = RawValidation.SIZE) -> bool:
    """Check a raw tile file against what is known about the remote object"""
    path = Path(path)
    try:
        size = path.stat().st_size
    except OSError:
        return False

    if size == 0:
        return False
    if tile.expected_size is not None and size != tile.expected_size:
        logger.info("%s: size %s does not match expected %s", tile.id, size, tile.expected_size)
        return False
    if mode is RawValidation.SIZE:
        return True

    if not has_tiff_header(path):
        logger.info("%s: %s is not a TIFF file", tile.id, path)
        return False
    if mode is RawValidation.HEADER:
        return True

    expected_md5 = single_part_etag(tile.etag)
    if expected_md5 is None:
        # Multipart ETags are not a content hash, nothing more to compare
        return True
    if md5_path(path) != expected_md5:
        logger.info("%s: checksum does not match ETag %s", tile.id, tile.etag)
        return False
    return True


def validate_schema(schema: pyarrow.Schema) -> tuple[list[str], list[str]]:
    """Validate output table schema"""
    errors = []
    warnings = []

    for name in COORDINATE_COLUMNS:
        if name not in schema.names:
            errors.append(f"Missing required column: {name!r}")
        elif schema.field(name).type != pyarrow.float64():
            errors.append(f"Column {name!r} should be double, got {schema.field(name).type}")

    if ELEVATION_COLUMN not in schema.names:
        errors.append(f"Missing required column: {ELEVATION_COLUMN!r}")
    else:
        field = schema.field(ELEVATION_COLUMN)
        if not (pyarrow.types.is_integer(field.type) or pyarrow.types.is_floating(field.type)):
            errors.append(f"Column 'elevation' should be numeric, got {field.type}")
        if not field.nullable:
            warnings.append("Column 'elevation' is not nullable, nodata cannot be represented")

    return errors, warnings


def read_tile_metadata(schema: pyarrow.Schema) -> dict | None:
    """Get the tile details stored by the writer, if present

    Raises:
        ValueError: The stored value is not a UTF-8 JSON object
    """
    kv = schema.metadata or {}
    if METADATA_KEY not in kv:
        return None
    metadata = json.loads(kv[METADATA_KEY])
    if not isinstance(metadata, dict):
        raise ValueError(f"expected a JSON object, got {type(metadata).__name__}")
    return metadata


def validate_output(filepath: str | Path) -> ValidationResult:
    """Validate a converted tile without reading its row data

    Args:
        filepath: Path to the Parquet file

    Returns:
        ValidationResult with validation status, errors, warnings, and stats
    """
    path = Path(filepath)
    try:
        size = path.stat().st_size
    except FileNotFoundError:
        return ValidationResult(False, [f"File not found: {path}"], [], None, {})
    except OSError as e:
        return ValidationResult(False, [f"Cannot access {path}: {e}"], [], None, {})
    if size == 0:
        return ValidationResult(False, ["File is empty"], [], None, {})

    try:
        parquet_metadata = pyarrow.parquet.read_metadata(path)
        schema = pyarrow.parquet.read_schema(path)
    except (pyarrow.ArrowException, OSError) as e:
        return ValidationResult(False, [f"Failed to read Parquet file: {e}"], [], None, {})

    stats = {
        "file_size": size,
        "row_count": parquet_metadata.num_rows,
        "row_groups": parquet_metadata.num_row_groups,
        "columns": schema.names,
    }

    errors, warnings = validate_schema(schema)

    try:
        metadata = read_tile_metadata(schema)
    except ValueError as e:
        # Covers JSONDecodeError and UnicodeDecodeError
        errors.append(f"Invalid tile metadata: {e}")
        metadata = None
    else:
        if metadata is None:
            errors.append("No tile metadata found in file")
        else:
            stats["tile"] = metadata.get("tile")

    if parquet_metadata.num_rows == 0:
        warnings.append("File contains no rows")

    return ValidationResult(
        is_valid=not errors,
        errors=errors,
        warnings=warnings,
        metadata=metadata,
        stats=stats,
    )


def is_valid_output(path: Path) -> bool:
    result = validate_output(path)
    if not result.is_valid and Path(path).exists():
        logger.info("Ignoring invalid output %s: %s", path, "; ".join(result.errors))
    return result.is_valid
