"""Map named regions to the AW3D30 1x1 degree tiles that cover them

Tiles are identified by their southwest corner, e.g. N052E004 covers
52..53N, 4..5E. Resolving a region is pure and always returns the same tiles
in the same order.
"""

import dataclasses
import re
from pathlib import Path

from .errors import UnknownRegion

DEFAULT_BASE_URL = "https://opentopography.s3.sdsc.edu/raster/AW3D30/AW3D30_global"

# Object names are ALPSMLC30_<id>_DSM.tif
FILENAME_PREFIX = "ALPSMLC30_"
FILENAME_SUFFIX = "_DSM.tif"

TILE_ID_PATTERN = re.compile(r"^([NS])(\d{3})([EW])(\d{3})$")

# Integer-degree boxes as (south, west, north, east), north and east exclusive
REGIONS: dict[str, tuple[tuple[int, int, int, int], ...]] = {
    "netherlands": ((50, 3, 54, 8),),
    "europe": ((35, -11, 72, 41),),
    "global": ((-82, -180, 82, 180),),
}


@dataclasses.dataclass(frozen=True)
class Tile:
    """One 1x1 degree cell of the source dataset"""

    id: str
    south: float
    west: float
    north: float
    east: float
    url: str
    expected_size: int | None = None
    etag: str | None = None

    @property
    def bounds(self) -> tuple[float, float, float, float]:
        return (self.south, self.west, self.north, self.east)

    @property
    def filename(self) -> str:
        return f"{FILENAME_PREFIX}{self.id}{FILENAME_SUFFIX}"

    def raw_path(self, raw_dir: Path) -> Path:
        return Path(raw_dir) / self.filename

    def output_path(self, output_dir: Path) -> Path:
        return (Path(output_dir) / self.filename).with_suffix(".parquet")


def tile_id(lat: int, lon: int) -> str:
    """Identifier for the cell whose southwest corner is (lat, lon)"""
    ns = "N" if lat >= 0 else "S"
    ew = "E" if lon >= 0 else "W"
    return f"{ns}{abs(lat):03d}{ew}{abs(lon):03d}"


def parse_tile_id(value: str) -> tuple[int, int]:
    """Return the (lat, lon) southwest corner encoded in a tile identifier"""
    match = TILE_ID_PATTERN.match(value)
    if match is None:
        raise ValueError(f"Not a tile identifier: {value!r}")
    ns, lat, ew, lon = match.groups()
    return (
        int(lat) if ns == "N" else -int(lat),
        int(lon) if ew == "E" else -int(lon),
    )


def tile_id_from_filename(filename: str) -> str | None:
    """Extract the tile identifier from an object or file name, if it has one"""
    name = filename.rsplit("/", 1)[-1]
    if not (name.startswith(FILENAME_PREFIX) and name.endswith(FILENAME_SUFFIX)):
        return None
    candidate = name[len(FILENAME_PREFIX) : -len(FILENAME_SUFFIX)]
    return candidate if TILE_ID_PATTERN.match(candidate) else None


def make_tile(lat: int, lon: int, base_url: str = DEFAULT_BASE_URL) -> Tile:
    ident = tile_id(lat, lon)
    url = f"{base_url.rstrip('/')}/{FILENAME_PREFIX}{ident}{FILENAME_SUFFIX}"
    return Tile(ident, lat, lon, lat + 1, lon + 1, url)


def region_names() -> list[str]:
    return sorted(REGIONS)


def resolve(region: str, base_url: str = DEFAULT_BASE_URL) -> tuple[Tile, ...]:
    """Resolve a region name to its ordered, deduplicated tiles

    Raises:
        UnknownRegion: If the name is not in REGIONS
    """
    try:
        boxes = REGIONS[region]
    except KeyError:
        raise UnknownRegion(region, region_names()) from None

    corners = {
        (lat, lon)
        for south, west, north, east in boxes
        for lat in range(south, north)
        for lon in range(west, east)
    }
    return tuple(make_tile(lat, lon, base_url) for lat, lon in sorted(corners))
