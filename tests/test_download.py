#!/usr/bin/env python3
"""Tests for downloading raw tiles."""

import dataclasses
import threading

import httpx
import pytest

from aw3d30_parquet.catalog import make_tile
from aw3d30_parquet.config import PipelineConfig, RetryPolicy
from aw3d30_parquet.download import Downloader, check_response, with_retries
from aw3d30_parquet.errors import (
    Cancelled,
    NotFound,
    RemoteRejected,
    TransientDownloadError,
)
from aw3d30_parquet.validate import RawValidation

TIFF_BODY = b"II*\x00" + b"\x01" * 1020


@pytest.fixture
def tile():
    return make_tile(52, 4, base_url="http://tiles.test/aw3d30")


@pytest.fixture
def config(temp_dir):
    return PipelineConfig(
        raw_dir=temp_dir / "tif",
        output_dir=temp_dir / "parquet",
        retry=RetryPolicy(max_retries=3, backoff_base=0, backoff_max=0),
        chunk_size=256,
    )


def make_downloader(config, server, cancel=None):
    return Downloader(config, server.client(), cancel)


class TestEnsureDownloaded:
    """Tests for Downloader.ensure_downloaded."""

    def test_download_writes_final_file(self, config, tile_server, tile):
        tile_server.add(tile, TIFF_BODY)

        with make_downloader(config, tile_server) as downloader:
            path = downloader.ensure_downloaded(tile)

        assert path == config.raw_dir / "ALPSMLC30_N052E004_DSM.tif"
        assert path.read_bytes() == TIFF_BODY
        assert list(config.raw_dir.iterdir()) == [path]

    def test_existing_file_skips_network(self, config, tile_server, tile):
        config.raw_dir.mkdir(parents=True)
        tile.raw_path(config.raw_dir).write_bytes(TIFF_BODY)

        with make_downloader(config, tile_server) as downloader:
            downloader.ensure_downloaded(tile)

        assert tile_server.requests == []

    def test_existing_file_with_wrong_size_is_replaced(self, config, tile_server, tile):
        config.raw_dir.mkdir(parents=True)
        tile.raw_path(config.raw_dir).write_bytes(TIFF_BODY[:100])
        sized_tile = dataclasses.replace(tile, expected_size=len(TIFF_BODY))
        tile_server.add(tile, TIFF_BODY)

        with make_downloader(config, tile_server) as downloader:
            path = downloader.ensure_downloaded(sized_tile)

        assert len(tile_server.requests) == 1
        assert path.read_bytes() == TIFF_BODY

    def test_stale_partial_file_is_discarded(self, config, tile_server, tile):
        """An interrupted earlier transfer never counts and is restarted from scratch."""
        config.raw_dir.mkdir(parents=True)
        final = tile.raw_path(config.raw_dir)
        stale = final.with_name(final.name + ".part")
        stale.write_bytes(TIFF_BODY[:300])
        tile_server.add(tile, TIFF_BODY)

        with make_downloader(config, tile_server) as downloader:
            path = downloader.ensure_downloaded(tile)

        assert path.read_bytes() == TIFF_BODY
        assert not stale.exists()

    def test_not_found_is_not_retried(self, config, tile_server, tile):
        with make_downloader(config, tile_server) as downloader:
            with pytest.raises(NotFound):
                downloader.ensure_downloaded(tile)

        assert len(tile_server.requests) == 1
        assert not tile.raw_path(config.raw_dir).exists()

    def test_forbidden_is_rejected(self, config, tile_server, tile):
        tile_server.add(tile, TIFF_BODY)
        tile_server.failures[tile.filename] = [403]

        with make_downloader(config, tile_server) as downloader:
            with pytest.raises(RemoteRejected) as excinfo:
                downloader.ensure_downloaded(tile)

        assert excinfo.value.status_code == 403
        assert len(tile_server.requests) == 1

    def test_server_error_then_success(self, config, tile_server, tile):
        tile_server.add(tile, TIFF_BODY)
        tile_server.failures[tile.filename] = [503, 429]

        with make_downloader(config, tile_server) as downloader:
            path = downloader.ensure_downloaded(tile)

        assert len(tile_server.requests) == 3
        assert path.read_bytes() == TIFF_BODY

    def test_connection_error_then_success(self, config, tile_server, tile):
        tile_server.add(tile, TIFF_BODY)
        tile_server.failures[tile.filename] = [httpx.ConnectError("connection refused")]

        with make_downloader(config, tile_server) as downloader:
            downloader.ensure_downloaded(tile)

        assert len(tile_server.requests) == 2

    def test_retries_exhausted(self, config, tile_server, tile):
        tile_server.add(tile, TIFF_BODY)
        tile_server.failures[tile.filename] = [500] * 10

        with make_downloader(config, tile_server) as downloader:
            with pytest.raises(TransientDownloadError, match="after 4 attempts"):
                downloader.ensure_downloaded(tile)

        assert len(tile_server.requests) == 4
        assert not config.raw_dir.joinpath(tile.filename).exists()
        assert list(config.raw_dir.iterdir()) == []

    def test_truncated_body_is_retried(self, config, tile, temp_dir):
        attempts = []

        def handler(request):
            attempts.append(request)
            if len(attempts) == 1:
                # Declares more bytes than it sends
                return httpx.Response(
                    200, content=TIFF_BODY[:500], headers={"Content-Length": str(len(TIFF_BODY))}
                )
            return httpx.Response(200, content=TIFF_BODY)

        client = httpx.Client(transport=httpx.MockTransport(handler))
        with Downloader(config, client) as downloader:
            path = downloader.ensure_downloaded(tile)

        assert len(attempts) == 2
        assert path.read_bytes() == TIFF_BODY

    def test_size_mismatch_with_listing_is_retried(self, config, tile_server, tile):
        sized_tile = dataclasses.replace(tile, expected_size=len(TIFF_BODY) + 1)
        tile_server.add(tile, TIFF_BODY)

        with make_downloader(config, tile_server) as downloader:
            with pytest.raises(TransientDownloadError, match="Size mismatch"):
                downloader.ensure_downloaded(sized_tile)

        assert len(tile_server.requests) == 4

    def test_header_validation_rejects_non_tiff(self, config, tile_server, tile):
        config.raw_validation = RawValidation.HEADER
        config.retry = RetryPolicy(max_retries=0)
        tile_server.add(tile, b"<html>maintenance</html>")

        with make_downloader(config, tile_server) as downloader:
            with pytest.raises(TransientDownloadError):
                downloader.ensure_downloaded(tile)

        assert not tile.raw_path(config.raw_dir).exists()

    def test_cancel_mid_transfer_leaves_no_file(self, config, tile, temp_dir):
        """Cancelling while streaming removes the partial file."""
        cancel = threading.Event()

        def chunks():
            yield TIFF_BODY[:256]
            cancel.set()
            yield TIFF_BODY[256:]

        def handler(request):
            return httpx.Response(200, content=chunks())

        client = httpx.Client(transport=httpx.MockTransport(handler))
        with Downloader(config, client, cancel) as downloader:
            with pytest.raises(Cancelled):
                downloader.ensure_downloaded(tile)

        assert list(config.raw_dir.iterdir()) == []

    def test_cancelled_before_start(self, config, tile_server, tile):
        cancel = threading.Event()
        cancel.set()
        tile_server.add(tile, TIFF_BODY)

        with make_downloader(config, tile_server, cancel) as downloader:
            with pytest.raises(Cancelled):
                downloader.ensure_downloaded(tile)

        assert tile_server.requests == []


class TestRetryPolicy:
    """Tests for backoff calculation."""

    def test_exponential_backoff(self):
        policy = RetryPolicy(max_retries=5, backoff_base=0.5, backoff_max=3.0)
        assert [policy.delay(n) for n in range(5)] == [0.5, 1.0, 2.0, 3.0, 3.0]

    def test_retry_after_header(self):
        policy = RetryPolicy(backoff_base=1.0, backoff_max=30.0)
        assert policy.delay(0, "7") == 7.0
        assert policy.delay(0, "120") == 30.0
        assert policy.delay(2, "soon") == 4.0

    def test_with_retries_waits_between_attempts(self):
        waits = []

        class RecordingEvent(threading.Event):
            def wait(self, timeout=None):
                waits.append(timeout)
                return False

        calls = []

        def operation():
            calls.append(1)
            if len(calls) < 3:
                raise TransientDownloadError("busy")
            return "done"

        policy = RetryPolicy(max_retries=4, backoff_base=0.25, backoff_max=10)
        assert with_retries(operation, policy, RecordingEvent(), "test") == "done"
        assert waits == [0.25, 0.5]


class TestCheckResponse:
    """Tests for mapping HTTP status codes to errors."""

    @pytest.mark.parametrize(
        "status,error",
        [
            (404, NotFound),
            (410, NotFound),
            (401, RemoteRejected),
            (403, RemoteRejected),
            (429, TransientDownloadError),
            (500, TransientDownloadError),
            (503, TransientDownloadError),
        ],
    )
    def test_status_mapping(self, status, error):
        with pytest.raises(error):
            check_response(httpx.Response(status), "http://tiles.test/x.tif")

    def test_success_passes(self):
        check_response(httpx.Response(200), "http://tiles.test/x.tif")
