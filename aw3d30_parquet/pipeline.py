"""Drive every tile of a region through download and conversion

Two thread pools are joined by a bounded queue. Download workers fetch raw
tiles and block when the queue is full, conversion workers decode and write
one tile at a time. A tile's progress is owned by whichever worker holds it,
the shared report is the only state updated under a lock.
"""

from __future__ import annotations

import concurrent.futures
import dataclasses
import enum
import logging
import queue
import threading
import typing

import httpx

from .catalog import Tile, resolve
from .config import PipelineConfig
from .decode import RasterReader
from .download import Downloader
from .errors import Cancelled, PipelineError, RunAborted, StorageExhausted
from .listing import list_remote_objects, restrict_to_available
from .validate import is_valid_output
from .write import ColumnarWriter

logger = logging.getLogger(__name__)

# Poll interval for blocking queue operations that must notice cancellation
QUEUE_POLL_SECONDS = 0.2


class TileState(enum.StrEnum):
    PENDING = "pending"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    CONVERTING = "converting"
    CONVERTED = "converted"
    FAILED = "failed"


class DownloadState(enum.StrEnum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


class ConversionState(enum.StrEnum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


# A valid output found on disk takes a pending tile straight to converted
TRANSITIONS: dict[TileState, frozenset[TileState]] = {
    TileState.PENDING: frozenset({TileState.DOWNLOADING, TileState.CONVERTED}),
    TileState.DOWNLOADING: frozenset({TileState.DOWNLOADED, TileState.FAILED}),
    TileState.DOWNLOADED: frozenset({TileState.CONVERTING}),
    TileState.CONVERTING: frozenset({TileState.CONVERTED, TileState.FAILED}),
}


@dataclasses.dataclass
class TileProgress:
    """Mutable progress of one tile, held by one worker at a time"""

    tile: Tile
    state: TileState = TileState.PENDING
    download: DownloadState = DownloadState.NOT_STARTED
    conversion: ConversionState = ConversionState.NOT_STARTED
    downloaded: bool = False
    converted: bool = False

    def advance(self, state: TileState):
        if state not in TRANSITIONS.get(self.state, frozenset()):
            raise RuntimeError(f"{self.tile.id}: invalid transition {self.state} -> {state}")
        self.state = state


@dataclasses.dataclass(frozen=True)
class TileOutcome:
    """Final record for one tile

    ``downloaded`` and ``converted`` tell whether this run performed the
    transfer or conversion, as opposed to finding the result on disk.
    """

    tile_id: str
    state: TileState
    download: DownloadState
    conversion: ConversionState
    error_kind: str | None = None
    message: str | None = None
    downloaded: bool = False
    converted: bool = False

    @classmethod
    def from_progress(
        cls, progress: TileProgress, error: PipelineError | None = None
    ) -> "TileOutcome":
        return cls(
            tile_id=progress.tile.id,
            state=progress.state,
            download=progress.download,
            conversion=progress.conversion,
            error_kind=error.kind if error is not None else None,
            message=str(error) if error is not None else None,
            downloaded=progress.downloaded,
            converted=progress.converted,
        )


class RunReport:
    """Append-only collection of tile outcomes for one run"""

    def __init__(self, region: str | None, total: int):
        self.region = region
        self.total = total
        self.cancelled = False
        self._lock = threading.Lock()
        self._outcomes: list[TileOutcome] = []

    def record(self, outcome: TileOutcome):
        with self._lock:
            self._outcomes.append(outcome)

    @property
    def outcomes(self) -> list[TileOutcome]:
        with self._lock:
            return list(self._outcomes)

    def _count(self, predicate: typing.Callable[[TileOutcome], bool]) -> int:
        return sum(1 for outcome in self.outcomes if predicate(outcome))

    @property
    def converted(self) -> int:
        return self._count(lambda o: o.state is TileState.CONVERTED)

    @property
    def failed(self) -> int:
        return self._count(lambda o: o.state is TileState.FAILED)

    @property
    def incomplete(self) -> int:
        """Tiles that ended neither converted nor failed, e.g. after cancellation"""
        return self.total - self.converted - self.failed

    @property
    def downloads_performed(self) -> int:
        return self._count(lambda o: o.downloaded)

    @property
    def conversions_performed(self) -> int:
        return self._count(lambda o: o.converted)

    @property
    def failures(self) -> list[TileOutcome]:
        return sorted(
            (o for o in self.outcomes if o.state is TileState.FAILED), key=lambda o: o.tile_id
        )

    @property
    def exit_code(self) -> int:
        return 0 if self.converted == self.total and not self.cancelled else 1

    def summary(self) -> str:
        lines = [
            f"Region {self.region}: {self.converted} converted, {self.failed} failed, "
            f"{self.incomplete} incomplete of {self.total} tiles"
        ]
        for outcome in self.failures:
            lines.append(f"  {outcome.tile_id}: {outcome.error_kind}: {outcome.message}")
        return "\n".join(lines)


_STOP = object()


class Pipeline:
    """Downloads and converts tiles with separate, bounded worker pools

    Args:
        config: Run configuration
        client: Optional httpx.Client, e.g. with a mock transport
        cancel: Optional event another thread may set to stop issuing work
    """

    def __init__(
        self,
        config: PipelineConfig,
        client: httpx.Client | None = None,
        cancel: threading.Event | None = None,
    ):
        self.config = config
        self.cancel = cancel if cancel is not None else threading.Event()
        self.downloader = Downloader(config, client, self.cancel)
        self.writer = ColumnarWriter(config.output_dir, config.compression, config.row_group_rows)
        self.report: RunReport | None = None
        self._ready: queue.Queue = queue.Queue(maxsize=config.queue_size)
        self._fatal: PipelineError | None = None
        self._fatal_lock = threading.Lock()

    def __enter__(self) -> "Pipeline":
        return self

    def __exit__(self, *exc_info):
        self.close()

    def close(self):
        self.downloader.close()

    def run(self, tiles: typing.Sequence[Tile], region: str | None = None) -> RunReport:
        """Process tiles and return the report

        Raises:
            RunAborted: A systemic failure such as a full disk stopped the run
        """
        report = self.report = RunReport(region, len(tiles))
        pending: queue.Queue = queue.Queue()
        for tile in tiles:
            pending.put(tile)

        logger.info(
            "Processing %s tiles with %s download and %s conversion workers",
            len(tiles),
            self.config.download_workers,
            self.config.convert_workers,
        )

        download_count = max(1, min(self.config.download_workers, len(tiles)))
        with (
            concurrent.futures.ThreadPoolExecutor(
                self.config.convert_workers, thread_name_prefix="convert"
            ) as conversions,
            concurrent.futures.ThreadPoolExecutor(
                download_count, thread_name_prefix="download"
            ) as downloads,
        ):
            convert_futures = [
                conversions.submit(self._guarded, self._convert_worker)
                for _ in range(self.config.convert_workers)
            ]
            download_futures = [
                downloads.submit(self._guarded, self._download_worker, pending)
                for _ in range(download_count)
            ]
            self._wait(download_futures)
            self._stop_consumers(convert_futures)
            self._wait(convert_futures)

        for future in download_futures + convert_futures:
            future.result()

        report.cancelled = self.cancel.is_set()
        logger.info(report.summary())

        if self._fatal is not None:
            raise RunAborted(f"Run aborted: {self._fatal}", report) from self._fatal
        return report

    def _wait(self, futures: list[concurrent.futures.Future]):
        try:
            concurrent.futures.wait(futures)
        except KeyboardInterrupt:
            logger.warning("Interrupted, finishing tiles already in progress")
            self.cancel.set()
            concurrent.futures.wait(futures)

    def _guarded(self, worker: typing.Callable, *args):
        try:
            worker(*args)
        except BaseException:
            # Unexpected failure, stop everyone else too
            self.cancel.set()
            raise

    def _stop_consumers(self, convert_futures: list[concurrent.futures.Future]):
        for _ in convert_futures:
            while not all(f.done() for f in convert_futures):
                try:
                    self._ready.put(_STOP, timeout=QUEUE_POLL_SECONDS)
                    break
                except queue.Full:
                    continue

    def _set_fatal(self, error: PipelineError):
        with self._fatal_lock:
            if self._fatal is None:
                self._fatal = error
        self.cancel.set()

    def _fail(self, progress: TileProgress, error: PipelineError):
        if isinstance(error, Cancelled):
            # Left in its current state, counted as incomplete
            logger.info("%s: %s", progress.tile.id, error)
            self.report.record(TileOutcome.from_progress(progress, error))
            return
        if progress.state in (TileState.DOWNLOADING, TileState.CONVERTING):
            progress.advance(TileState.FAILED)
        logger.error("%s failed (%s): %s", progress.tile.id, error.kind, error)
        self.report.record(TileOutcome.from_progress(progress, error))
        if isinstance(error, StorageExhausted):
            self._set_fatal(error)

    def _download_worker(self, pending: queue.Queue):
        while not self.cancel.is_set():
            try:
                tile = pending.get_nowait()
            except queue.Empty:
                return
            self._download(TileProgress(tile))

    def _download(self, progress: TileProgress):
        tile = progress.tile
        if is_valid_output(tile.output_path(self.config.output_dir)):
            logger.info("%s already converted", tile.id)
            progress.conversion = ConversionState.COMPLETE
            progress.advance(TileState.CONVERTED)
            self.report.record(TileOutcome.from_progress(progress))
            return

        progress.advance(TileState.DOWNLOADING)
        progress.download = DownloadState.IN_PROGRESS
        try:
            if not self.downloader.has_valid_raw(tile):
                self.downloader.fetch(tile)
                progress.downloaded = True
        except PipelineError as e:
            if not isinstance(e, Cancelled):
                progress.download = DownloadState.FAILED
            self._fail(progress, e)
            return
        progress.download = DownloadState.COMPLETE
        progress.advance(TileState.DOWNLOADED)

        # Blocks while conversion is behind
        while True:
            try:
                self._ready.put(progress, timeout=QUEUE_POLL_SECONDS)
                return
            except queue.Full:
                if self.cancel.is_set():
                    self._fail(progress, Cancelled(f"{tile.id} not converted before shutdown"))
                    return

    def _convert_worker(self):
        while True:
            progress = self._ready.get()
            if progress is _STOP:
                return
            if self.cancel.is_set():
                self._fail(progress, Cancelled(f"{progress.tile.id} not converted before shutdown"))
                continue
            self._convert(progress)

    def _convert(self, progress: TileProgress):
        tile = progress.tile
        raw_path = tile.raw_path(self.config.raw_dir)
        progress.advance(TileState.CONVERTING)
        progress.conversion = ConversionState.IN_PROGRESS
        try:
            with RasterReader(raw_path, self.config.rows_per_block) as reader:
                self.writer.write_batches(
                    tile, reader.blocks(), reader.info.dtype, reader.info.nodata
                )
        except PipelineError as e:
            # Raw file stays on disk for inspection
            progress.conversion = ConversionState.FAILED
            self._fail(progress, e)
            return
        progress.converted = True
        progress.conversion = ConversionState.COMPLETE
        progress.advance(TileState.CONVERTED)
        self.report.record(TileOutcome.from_progress(progress))


def convert_region(
    region: str,
    config: PipelineConfig,
    client: httpx.Client | None = None,
    cancel: threading.Event | None = None,
) -> RunReport:
    """Resolve region and convert all its tiles

    Raises:
        UnknownRegion: Before any work, if region is not supported
        RunAborted: The bucket listing failed, or a systemic failure stopped the run
    """
    tiles = resolve(region, config.base_url)
    with Pipeline(config, client, cancel) as pipeline:
        if config.only_available:
            try:
                objects = list_remote_objects(pipeline.downloader.client, config, pipeline.cancel)
            except Cancelled:
                report = RunReport(region, len(tiles))
                report.cancelled = True
                return report
            except PipelineError as e:
                raise RunAborted(
                    f"Listing available tiles failed: {e}", RunReport(region, len(tiles))
                ) from e
            tiles = restrict_to_available(tiles, objects)
        return pipeline.run(tiles, region)
