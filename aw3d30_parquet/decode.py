"""Decode a raw elevation tile into geocoded samples

GDAL runs in a separate process and streams the raster to the parent in
blocks of rows, see https://github.com/apache/arrow/issues/44696 for why
GDAL and pyarrow are kept apart. Samples are produced lazily so memory stays
bounded by one block regardless of raster size.
"""

from __future__ import annotations

import dataclasses
import logging
import math
import multiprocessing
import signal
import typing
from pathlib import Path

import numpy

from .errors import CorruptRaster, DecodeError, UnsupportedFormat

logger = logging.getLogger(__name__)

DEFAULT_ROWS_PER_BLOCK = 256

# GDAL data type name to numpy dtype name for supported elevation bands
SUPPORTED_DTYPES: dict[str, str] = {
    "Byte": "uint8",
    "Int8": "int8",
    "UInt16": "uint16",
    "Int16": "int16",
    "UInt32": "uint32",
    "Int32": "int32",
    "UInt64": "uint64",
    "Int64": "int64",
    "Float32": "float32",
    "Float64": "float64",
}

# Threads share the pipeline process, so never fork it
_mp = multiprocessing.get_context("spawn")


@dataclasses.dataclass
class RasterInfo:
    """Convenience wrapper for raster size, georeferencing and band type"""

    width: int
    height: int
    geotransform: tuple[float, float, float, float, float, float]
    nodata: int | float | None
    dtype: str


class Sample(typing.NamedTuple):
    """One pixel, elevation is None where the raster declares nodata"""

    latitude: float
    longitude: float
    elevation: int | float | None


@dataclasses.dataclass
class SampleBatch:
    """Samples for a run of complete raster rows, flattened row-major"""

    row_offset: int
    latitude: numpy.ndarray
    longitude: numpy.ndarray
    elevation: numpy.ndarray
    nodata_mask: numpy.ndarray

    def __len__(self) -> int:
        return len(self.elevation)

    def samples(self) -> typing.Iterator[Sample]:
        for lat, lon, value, missing in zip(
            self.latitude.tolist(),
            self.longitude.tolist(),
            self.elevation.tolist(),
            self.nodata_mask.tolist(),
        ):
            yield Sample(lat, lon, None if missing else value)


def pixel_centers(
    geotransform: tuple[float, ...], row_offset: int, nrows: int, width: int
) -> tuple[numpy.ndarray, numpy.ndarray]:
    """Return flattened (latitude, longitude) of pixel centers for a block of rows

    See https://gdal.org/user/raster_data_model.html#affine-geotransform
    """
    gt = geotransform
    cols = numpy.arange(width, dtype=numpy.float64) + 0.5
    rows = numpy.arange(row_offset, row_offset + nrows, dtype=numpy.float64) + 0.5
    col_grid, row_grid = numpy.meshgrid(cols, rows)
    lon = gt[0] + col_grid * gt[1] + row_grid * gt[2]
    lat = gt[3] + col_grid * gt[4] + row_grid * gt[5]
    return lat.ravel(), lon.ravel()


def nodata_mask(values: numpy.ndarray, nodata: int | float | None) -> numpy.ndarray:
    """Boolean mask of pixels that carry no elevation"""
    if numpy.issubdtype(values.dtype, numpy.floating):
        mask = numpy.isnan(values)
        if nodata is not None and not math.isnan(nodata):
            mask |= values == nodata
        return mask
    if nodata is None or math.isnan(nodata):
        return numpy.zeros(values.shape, dtype=bool)
    return values == nodata


def open_elevation_band(filename: str):
    """Open a raster and check it is a single-band geographic elevation grid

    Returns:
        Tuple of (dataset, band, RasterInfo); keep the dataset referenced while
        reading the band.
    """
    import osgeo.gdal

    try:
        ds = osgeo.gdal.Open(filename)
    except RuntimeError as e:
        raise CorruptRaster(f"Cannot open {filename}: {e}") from None
    if ds is None:
        raise CorruptRaster(f"Cannot open {filename}")

    if ds.RasterCount != 1:
        raise UnsupportedFormat(f"{filename} has {ds.RasterCount} bands, expected 1")

    gt = ds.GetGeoTransform(can_return_null=True)
    if gt is None:
        raise CorruptRaster(f"{filename} has no geotransform")
    if len(gt) != 6 or gt[1] == 0 or gt[5] == 0 or not all(map(math.isfinite, gt)):
        raise CorruptRaster(f"{filename} has a malformed geotransform {gt}")

    srs = ds.GetSpatialRef()
    if srs is not None and not srs.IsGeographic():
        raise UnsupportedFormat(f"{filename} is not in a geographic coordinate system")

    band = ds.GetRasterBand(1)
    type_name = osgeo.gdal.GetDataTypeName(band.DataType)
    if type_name not in SUPPORTED_DTYPES:
        raise UnsupportedFormat(f"{filename} band type {type_name} is not an elevation type")
    dtype = SUPPORTED_DTYPES[type_name]

    nodata = band.GetNoDataValue()
    if nodata is not None and not dtype.startswith("float") and float(nodata).is_integer():
        nodata = int(nodata)

    info = RasterInfo(ds.RasterXSize, ds.RasterYSize, tuple(gt), nodata, dtype)
    return ds, band, info


def read_raster(filename: str, rows_per_block: int, pipe):
    """Worker process that reads a raster through pipes.

    Send RasterInfo via pipe first then follow with (row_offset, values)
    tuples. A DecodeError is sent in place of further messages if reading
    fails, and None always ends the stream.

    Args:
        filename: Name of raster file to open
        rows_per_block: Number of raster rows per message
        pipe: Connection to send data to parent
    """
    # Import osgeo only in this worker to avoid https://github.com/apache/arrow/issues/44696
    import osgeo.gdal

    osgeo.gdal.UseExceptions()

    # Ctrl-C is handled by the parent, which closes the reader
    signal.signal(signal.SIGINT, signal.SIG_IGN)

    try:
        ds, band, info = open_elevation_band(filename)
        pipe.send(info)

        for row_offset in range(0, info.height, rows_per_block):
            nrows = min(rows_per_block, info.height - row_offset)
            try:
                values = band.ReadAsArray(0, row_offset, info.width, nrows)
            except RuntimeError as e:
                raise CorruptRaster(f"Failed reading rows {row_offset}+{nrows} of {filename}: {e}") from None
            pipe.send((row_offset, values))
        del band, ds
    except DecodeError as e:
        pipe.send(e)
    except Exception as e:
        # Parent must not mistake a crash for a complete stream
        pipe.send(DecodeError(f"Unexpected error reading {filename}: {e!r}"))
        raise
    finally:
        # Send a None to signal end of messages
        pipe.send(None)
        pipe.close()


class RasterReader:
    """Connection to a raster reader running in another process

    The first message is read on construction, so open and metadata errors
    raise here. ``blocks()`` can be consumed only once.
    """

    def __init__(self, path: str | Path, rows_per_block: int = DEFAULT_ROWS_PER_BLOCK):
        self.path = str(path)
        self._finished = False
        self._consumed = False

        # Create communication pipe
        parent_recv, child_send = _mp.Pipe(duplex=False)

        # Start worker process
        self._process = _mp.Process(
            target=read_raster, args=(self.path, rows_per_block, child_send), daemon=True
        )
        self._process.start()

        # Close child end in parent process
        child_send.close()
        self._pipe = parent_recv

        try:
            info = self._receive()
            if not isinstance(info, RasterInfo):
                raise CorruptRaster(f"Raster reader for {self.path} sent no metadata")
        except BaseException:
            self.close()
            raise
        self.info: RasterInfo = info

    def __enter__(self) -> "RasterReader":
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _receive(self):
        try:
            message = self._pipe.recv()
        except EOFError:
            self._finished = True
            raise CorruptRaster(f"Raster reader for {self.path} exited unexpectedly") from None
        if message is None:
            self._finished = True
        elif isinstance(message, DecodeError):
            self._finished = True
            raise message
        return message

    def _to_batch(self, row_offset: int, values: numpy.ndarray) -> SampleBatch:
        nrows, width = values.shape
        lat, lon = pixel_centers(self.info.geotransform, row_offset, nrows, width)
        elevation = values.ravel()
        return SampleBatch(row_offset, lat, lon, elevation, nodata_mask(elevation, self.info.nodata))

    def blocks(self) -> typing.Iterator[SampleBatch]:
        """Yield SampleBatch objects top to bottom"""
        if self._consumed:
            raise RuntimeError(f"Samples of {self.path} were already consumed")
        self._consumed = True

        try:
            while (message := self._receive()) is not None:
                row_offset, values = message
                yield self._to_batch(row_offset, values)
        finally:
            self.close()

    def close(self):
        if self._process.is_alive() and not self._finished:
            # Abandoned part way, the worker may be blocked on a full pipe
            self._process.terminate()
        self._pipe.close()
        self._process.join(timeout=10)
        if self._process.is_alive():
            self._process.kill()
            self._process.join()


def decode(path: str | Path, rows_per_block: int = DEFAULT_ROWS_PER_BLOCK) -> typing.Iterator[Sample]:
    """Yield one Sample per pixel, row-major from the top-left corner

    Each call starts a fresh pass over the file. Raises CorruptRaster or
    UnsupportedFormat on first iteration when the file cannot be decoded.
    """
    with RasterReader(path, rows_per_block) as reader:
        logger.info(
            "Decoding %s: %sx%s %s nodata=%s",
            path,
            reader.info.width,
            reader.info.height,
            reader.info.dtype,
            reader.info.nodata,
        )
        for batch in reader.blocks():
            yield from batch.samples()
