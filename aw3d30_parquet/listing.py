"""Discover which tiles exist upstream via S3 ListObjectsV2

The AW3D30 bucket holds no objects for cells without land, so restricting a
region to listed objects avoids requests that can only return 404. Listed
sizes and ETags also give downloads something to validate against.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
import xml.etree.ElementTree as ElementTree

import httpx

from .catalog import Tile, tile_id_from_filename
from .config import PipelineConfig
from .download import check_response, with_retries
from .errors import DownloadError, TransientDownloadError

logger = logging.getLogger(__name__)

S3_NAMESPACE = {"s3": "http://s3.amazonaws.com/doc/2006-03-01/"}


@dataclasses.dataclass(frozen=True)
class RemoteObject:
    """Details of one listed object"""

    key: str
    size: int
    etag: str | None


@dataclasses.dataclass
class ListingPage:
    objects: list[RemoteObject]
    next_token: str | None


def parse_listing(body: bytes) -> ListingPage:
    """Parse one ListObjectsV2 XML response"""
    try:
        root = ElementTree.fromstring(body)
    except ElementTree.ParseError as e:
        raise DownloadError(f"Malformed listing response: {e}") from e

    objects = []
    for contents in root.findall("s3:Contents", S3_NAMESPACE):
        key = contents.findtext("s3:Key", default="", namespaces=S3_NAMESPACE)
        size = contents.findtext("s3:Size", default="0", namespaces=S3_NAMESPACE)
        etag = contents.findtext("s3:ETag", default=None, namespaces=S3_NAMESPACE)
        objects.append(RemoteObject(key, int(size), etag))

    truncated = root.findtext("s3:IsTruncated", default="false", namespaces=S3_NAMESPACE)
    next_token = root.findtext("s3:NextContinuationToken", default=None, namespaces=S3_NAMESPACE)
    if truncated.lower() != "true":
        next_token = None

    return ListingPage(objects, next_token)


def _fetch_page(client: httpx.Client, url: str, params: dict) -> ListingPage:
    try:
        response = client.get(url, params=params)
    except httpx.TransportError as e:
        raise TransientDownloadError(f"Error listing {url}: {e!r}") from e
    check_response(response, url)
    return parse_listing(response.content)


def list_remote_objects(
    client: httpx.Client,
    config: PipelineConfig,
    cancel: threading.Event | None = None,
) -> dict[str, RemoteObject]:
    """List every tile object under the configured bucket prefix

    Returns:
        Mapping of tile identifier to its RemoteObject
    """
    cancel = cancel if cancel is not None else threading.Event()
    url = f"{config.listing_endpoint.rstrip('/')}/{config.bucket}"
    params = {"list-type": "2", "prefix": config.prefix}

    found: dict[str, RemoteObject] = {}
    page_count = 0
    while True:
        page = with_retries(
            lambda: _fetch_page(client, url, dict(params)),
            config.retry,
            cancel,
            f"Listing page {page_count + 1}",
        )
        page_count += 1
        for obj in page.objects:
            ident = tile_id_from_filename(obj.key)
            if ident is not None:
                found[ident] = obj
        if page.next_token is None:
            break
        params["continuation-token"] = page.next_token

    logger.info("Listed %s tile objects in %s pages", len(found), page_count)
    return found


def restrict_to_available(
    tiles: tuple[Tile, ...] | list[Tile], objects: dict[str, RemoteObject]
) -> tuple[Tile, ...]:
    """Keep listed tiles in their original order, attaching size and ETag"""
    available = tuple(
        dataclasses.replace(tile, expected_size=objects[tile.id].size, etag=objects[tile.id].etag)
        for tile in tiles
        if tile.id in objects
    )
    logger.info("%s of %s tiles are available upstream", len(available), len(tiles))
    return available
