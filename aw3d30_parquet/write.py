"""Write decoded samples to one Parquet file per tile

Output files are written under a temporary name and renamed into place once
the writer has closed cleanly, so a file at the final path is always complete.
"""

from __future__ import annotations

import itertools
import json
import logging
import os
import typing
from pathlib import Path

import pyarrow
import pyarrow.parquet

from . import __version__
from .catalog import Tile
from .decode import Sample, SampleBatch
from .errors import StorageExhausted, WriteError, is_storage_exhausted
from .validate import ELEVATION_COLUMN, METADATA_KEY

logger = logging.getLogger(__name__)

DEFAULT_ROW_GROUP_ROWS = 1024 * 1024


def create_schema(tile: Tile, elevation_dtype: str, nodata: int | float | None = None) -> pyarrow.Schema:
    """Create table schema with tile details in its key-value metadata"""
    metadata_json = {
        "version": __version__,
        "tile": tile.id,
        "bounds": list(tile.bounds),
        "source_url": tile.url,
        "nodata": nodata,
        "elevation_type": elevation_dtype,
    }
    return pyarrow.schema(
        [
            pyarrow.field("latitude", pyarrow.float64(), nullable=False),
            pyarrow.field("longitude", pyarrow.float64(), nullable=False),
            pyarrow.field(
                ELEVATION_COLUMN, pyarrow.from_numpy_dtype(elevation_dtype), nullable=True
            ),
        ],
        metadata={METADATA_KEY: json.dumps(metadata_json)},
    )


def batch_to_table(batch: SampleBatch, schema: pyarrow.Schema) -> pyarrow.Table:
    elevation_type = schema.field(ELEVATION_COLUMN).type
    return pyarrow.Table.from_arrays(
        [
            pyarrow.array(batch.latitude, type=pyarrow.float64()),
            pyarrow.array(batch.longitude, type=pyarrow.float64()),
            pyarrow.array(batch.elevation, type=elevation_type, mask=batch.nodata_mask),
        ],
        schema=schema,
    )


def samples_to_table(samples: list[Sample], schema: pyarrow.Schema) -> pyarrow.Table:
    latitude, longitude, elevation = zip(*samples) if samples else ((), (), ())
    rows_dict = {
        "latitude": list(latitude),
        "longitude": list(longitude),
        ELEVATION_COLUMN: list(elevation),
    }
    return pyarrow.Table.from_pydict(rows_dict, schema=schema)


class ColumnarWriter:
    """Writes tiles into ``output_dir`` as Parquet"""

    def __init__(
        self,
        output_dir: Path,
        compression: str = "zstd",
        row_group_rows: int = DEFAULT_ROW_GROUP_ROWS,
    ):
        self.output_dir = Path(output_dir)
        self.compression = compression
        self.row_group_rows = row_group_rows

    def write(
        self,
        tile: Tile,
        samples: typing.Iterable[Sample],
        elevation_dtype: str = "int32",
        nodata: int | float | None = None,
    ) -> Path:
        """Consume samples once, buffering row_group_rows rows per row group"""
        schema = create_schema(tile, elevation_dtype, nodata)
        iterator = iter(samples)

        def tables():
            while rows := list(itertools.islice(iterator, self.row_group_rows)):
                yield samples_to_table(rows, schema)

        return self._commit(tile, schema, tables())

    def write_batches(
        self,
        tile: Tile,
        batches: typing.Iterable[SampleBatch],
        elevation_dtype: str,
        nodata: int | float | None = None,
    ) -> Path:
        """Write decoder batches without expanding them to per-pixel samples"""
        schema = create_schema(tile, elevation_dtype, nodata)
        return self._commit(tile, schema, (batch_to_table(b, schema) for b in batches))

    def _commit(
        self, tile: Tile, schema: pyarrow.Schema, tables: typing.Iterable[pyarrow.Table]
    ) -> Path:
        final = tile.output_path(self.output_dir)
        temporary = final.with_name(final.name + ".part")
        row_count = 0

        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            with pyarrow.parquet.ParquetWriter(
                temporary, schema, compression=self.compression
            ) as writer:
                for table in tables:
                    writer.write_table(table, row_group_size=self.row_group_rows)
                    row_count += len(table)
            os.replace(temporary, final)
        except OSError as e:
            if is_storage_exhausted(e):
                raise StorageExhausted(f"Cannot write {final}: {e}") from e
            raise WriteError(f"Cannot write {final}: {e}") from e
        finally:
            temporary.unlink(missing_ok=True)

        logger.info("Wrote %s rows to %s", row_count, final)
        return final
