#!/usr/bin/env python3
"""Pytest configuration and shared fixtures."""

import importlib.util
import json
import subprocess
import sys
import tempfile
from pathlib import Path

import httpx
import pytest

from aw3d30_parquet.catalog import Tile, parse_tile_id

HAS_GDAL = importlib.util.find_spec("osgeo") is not None

requires_gdal = pytest.mark.skipif(not HAS_GDAL, reason="GDAL Python bindings not installed")

# GeoTIFFs are written in a separate interpreter so GDAL is never loaded
# into the test process alongside pyarrow
GEOTIFF_SCRIPT = """
import json
import sys

import numpy
from osgeo import gdal, osr

gdal.UseExceptions()
params = json.loads(sys.argv[1])
values = numpy.array(params["values"], dtype=params["numpy_dtype"])
height, width = values.shape[-2:]
ds = gdal.GetDriverByName("GTiff").Create(
    params["path"], width, height, params["bands"], getattr(gdal, "GDT_" + params["dtype"])
)
if params["geotransform"] is not None:
    ds.SetGeoTransform(params["geotransform"])
if params["epsg"] is not None:
    srs = osr.SpatialReference()
    srs.ImportFromEPSG(params["epsg"])
    ds.SetSpatialRef(srs)
for n in range(1, 1 + params["bands"]):
    band = ds.GetRasterBand(n)
    if params["nodata"] is not None:
        band.SetNoDataValue(params["nodata"])
    band.WriteArray(values)
ds.FlushCache()
ds = None
"""

NUMPY_DTYPES = {"Int16": "int16", "Int32": "int32", "Float32": "float32", "Byte": "uint8"}


def write_geotiff(
    path: Path,
    values: list[list[int | float]],
    geotransform: list[float] | None,
    nodata: int | float | None = None,
    dtype: str = "Int16",
    epsg: int | None = 4326,
    bands: int = 1,
) -> Path:
    """Write a small GeoTIFF using GDAL in a subprocess"""
    params = {
        "path": str(path),
        "values": values,
        "numpy_dtype": NUMPY_DTYPES[dtype],
        "dtype": dtype,
        "geotransform": geotransform,
        "nodata": nodata,
        "epsg": epsg,
        "bands": bands,
    }
    subprocess.run([sys.executable, "-c", GEOTIFF_SCRIPT, json.dumps(params)], check=True)
    return Path(path)


def tile_geotransform(tile_id: str, size: int) -> list[float]:
    lat, lon = parse_tile_id(tile_id)
    return [lon, 1 / size, 0.0, lat + 1, 0.0, -1 / size]


class TileServer:
    """httpx MockTransport handler serving tile bodies by file name

    ``failures`` maps a file name to a list of status codes (or exceptions)
    returned before the real body, ``missing`` names files answered with 404.
    """

    def __init__(self):
        self.bodies: dict[str, bytes] = {}
        self.failures: dict[str, list] = {}
        self.requests: list[str] = []

    def add(self, tile: Tile, body: bytes):
        self.bodies[tile.filename] = body

    def __call__(self, request: httpx.Request) -> httpx.Response:
        name = request.url.path.rsplit("/", 1)[-1]
        self.requests.append(name)
        pending = self.failures.get(name)
        if pending:
            failure = pending.pop(0)
            if isinstance(failure, Exception):
                raise failure
            return httpx.Response(failure)
        if name not in self.bodies:
            return httpx.Response(404)
        return httpx.Response(200, content=self.bodies[name])

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))


@pytest.fixture
def temp_dir():
    """Create temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def tile_server():
    return TileServer()
