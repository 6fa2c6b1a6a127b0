# cpe_scanner/updater.py
"""
Keeps the local vulnerability store and CPE index in step with the NVD feeds.

The feed is split into segments: one per year, the rolling "modified" delta
and, optionally, the CPE dictionary. Each segment's Last-Modified timestamp
(epoch milliseconds) is stored in the properties table once the segment is
ingested, and compared against the remote value on the next run to decide
what to download.
"""
import logging
import queue
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional

from .config import Settings
from .cpe_index import CpeIndex
from .exceptions import (DatabaseError, DownloadFailedError, InvalidDataError, SearchUnavailableError,
                         UpdateError)
from .fetcher import Downloader
from .nvd_parser import parse_cpe_dictionary, parse_nvd_12_previous_versions, parse_nvd_20
from .vulndb import CveDB

logger = logging.getLogger(__name__)

MODIFIED = "modified"
CPE_DICTIONARY = "cpe_dictionary"
MS_PER_DAY = 24 * 60 * 60 * 1000

PROXY_HINT = "If you are behind a proxy you may need to configure the scanner to use the proxy."


class UpdateState(Enum):
    NOTHING_TO_DO = "nothing_to_do"
    DONE = "done"
    FAILED = "failed"


@dataclass
class UpdateableEntry:
    id: str
    url: str
    old_schema_url: Optional[str] = None
    timestamp: int = 0
    needs_update: bool = True


class UpdateableFeed:
    """Ordered set of feed segments keyed by id ('modified', '2002', ...)."""

    def __init__(self):
        self._entries: dict[str, UpdateableEntry] = {}

    def add(self, id: str, url: str, old_schema_url: Optional[str] = None, timestamp: int = 0,
            needs_update: bool = True) -> UpdateableEntry:
        entry = UpdateableEntry(id, url, old_schema_url, timestamp, needs_update)
        self._entries[id] = entry
        return entry

    def get(self, id: str) -> Optional[UpdateableEntry]:
        return self._entries.get(id)

    def get_timestamp(self, id: str) -> int:
        entry = self._entries.get(id)
        return entry.timestamp if entry else 0

    def clear(self):
        """Marks every segment as up to date."""
        for entry in self._entries.values():
            entry.needs_update = False

    @property
    def is_update_needed(self) -> bool:
        return any(entry.needs_update for entry in self._entries.values())

    def needed(self) -> list[UpdateableEntry]:
        return [entry for entry in self._entries.values() if entry.needs_update]

    def __iter__(self) -> Iterator[UpdateableEntry]:
        return iter(list(self._entries.values()))

    def __len__(self):
        return len(self._entries)

    def __contains__(self, id):
        return id in self._entries


def within_date_range(earlier_ms: int, later_ms: int, days: int) -> bool:
    return (later_ms - earlier_ms) / MS_PER_DAY < days


@dataclass
class _DownloadedSegment:
    entry: UpdateableEntry
    path: Path
    old_schema_path: Optional[Path] = None


_ALL_DOWNLOADED = object()


class _SegmentConsumer(threading.Thread):
    """
    Single thread that ingests downloaded segments in arrival order. The
    modified segment is held back until every other download has finished.
    """

    def __init__(self, updater: "NvdCveUpdater", segments: queue.Queue):
        super().__init__(name="nvd-process", daemon=True)
        self.updater = updater
        self.segments = segments
        self.error: Optional[BaseException] = None
        self.failed_segment: Optional[str] = None
        self.processed: list[str] = []

    def _process(self, segment: _DownloadedSegment):
        try:
            self.updater.process_segment(segment)
            self.processed.append(segment.entry.id)
        except Exception as e:
            self.error = e
            self.failed_segment = segment.entry.id

    def run(self):
        try:
            held_back = None
            while self.error is None:
                item = self.segments.get()
                if item is _ALL_DOWNLOADED:
                    if held_back is not None:
                        self._process(held_back)
                    return
                if item.entry.id == MODIFIED:
                    held_back = item
                else:
                    self._process(item)
        finally:
            self.updater.cve_db.release_thread_connection()


class NvdCveUpdater:
    def __init__(self, settings: Settings, cve_db: CveDB, cpe_index: CpeIndex,
                 downloader: Optional[Downloader] = None):
        self.settings = settings
        self.cve_db = cve_db
        self.cpe_index = cpe_index
        self.downloader = downloader or Downloader(settings)

    # --- deciding what to fetch ---

    def retrieve_current_timestamps(self) -> UpdateableFeed:
        feed = UpdateableFeed()
        s = self.settings
        feed.add(MODIFIED, s.cve_modified_20_url, s.cve_modified_12_url,
                 self.downloader.get_last_modified(s.cve_modified_20_url))
        for year in range(s.cve_start_year, datetime.now().year + 1):
            url = s.cve_base_20_url.format(year=year)
            old_url = s.cve_base_12_url.format(year=year) if s.cve_base_12_url else None
            feed.add(str(year), url, old_url, self.downloader.get_last_modified(url))
        if s.cpe_dictionary_url:
            feed.add(CPE_DICTIONARY, s.cpe_dictionary_url, None,
                     self.downloader.get_last_modified(s.cpe_dictionary_url))
        return feed

    def get_updates_needed(self) -> UpdateableFeed:
        try:
            feed = self.retrieve_current_timestamps()
        except InvalidDataError as e:
            raise DownloadFailedError("Unable to retrieve valid timestamp from the NVD CVE feeds") from e

        try:
            properties = self.cve_db.get_properties()
        except DatabaseError as e:
            raise UpdateError("Unable to read the stored feed timestamps") from e
        if not properties:
            return feed

        try:
            last_updated = int(properties.get(MODIFIED, "0"))
            now_ms = int(time.time() * 1000)
            if last_updated == feed.get_timestamp(MODIFIED):
                feed.clear()
            elif within_date_range(last_updated, now_ms, self.settings.cve_modified_valid_for_days):
                for entry in feed:
                    entry.needs_update = entry.id == MODIFIED
            else:
                for entry in feed:
                    if entry.id == MODIFIED:
                        entry.needs_update = True
                        continue
                    try:
                        stored = int(properties.get(entry.id, "0"))
                    except ValueError:
                        logger.debug(f"Error parsing stored timestamp for '{entry.id}'")
                        stored = 0
                    entry.needs_update = stored != entry.timestamp
        except ValueError:
            logger.warning("An invalid timestamp exists in the stored feed properties; updating everything.")
        return feed

    # --- running an update ---

    def update(self) -> UpdateState:
        try:
            feed = self.get_updates_needed()
        except DownloadFailedError as e:
            logger.warning("Unable to download the NVD CVE data; the results may not include "
                           "the most recent CPE/CVEs from the NVD.")
            if self.settings.proxy is None:
                logger.info(PROXY_HINT)
            logger.debug(f"Timestamp retrieval failed: {e}")
            return UpdateState.FAILED

        if not feed.is_update_needed:
            logger.info("NVD CVE data is up to date.")
            self.ensure_index()
            return UpdateState.NOTHING_TO_DO
        if not self.perform_update(feed):
            logger.warning("No NVD CVE segment could be downloaded; the existing data was kept.")
            return UpdateState.FAILED
        return UpdateState.DONE

    def _download_segment(self, entry: UpdateableEntry, work_dir: Path, segments: queue.Queue):
        logger.info(f"Download Started for NVD CVE - {entry.id}")
        path = work_dir / f"cve_{entry.id}.xml"
        try:
            self.downloader.fetch_file(entry.url, path)
        except DownloadFailedError as e:
            logger.warning(f"Download Failed for NVD CVE - {entry.id}; some CVEs may not be reported.")
            if self.settings.proxy is None:
                logger.info(PROXY_HINT)
            logger.debug(f"Download of {entry.url} failed: {e}")
            return
        old_schema_path = None
        if entry.old_schema_url:
            old_schema_path = work_dir / f"cve_1_2_{entry.id}.xml"
            try:
                self.downloader.fetch_file(entry.old_schema_url, old_schema_path)
            except DownloadFailedError as e:
                logger.warning(f"Unable to download the 1.2 schema feed for {entry.id}; "
                               f"previous-version flags will be missing for this segment.")
                logger.debug(f"Download of {entry.old_schema_url} failed: {e}")
                old_schema_path = None
        logger.info(f"Download Complete for NVD CVE - {entry.id}")
        segments.put(_DownloadedSegment(entry, path, old_schema_path))

    def process_segment(self, segment: _DownloadedSegment) -> int:
        """Ingests one downloaded segment in a single transaction and records its timestamp in it."""
        entry = segment.entry
        logger.info(f"Processing Started for NVD CVE - {entry.id}")
        count = 0
        if entry.id == CPE_DICTIONARY:
            with self.cve_db.transaction() as conn:
                count = self.cve_db.add_cpe_entries(parse_cpe_dictionary(segment.path), conn)
                self.cve_db.save_property(entry.id, entry.timestamp, conn)
        else:
            previous_versions = {}
            if segment.old_schema_path is not None:
                try:
                    previous_versions = parse_nvd_12_previous_versions(segment.old_schema_path)
                except InvalidDataError as e:
                    logger.warning(f"Unable to read the 1.2 schema feed for {entry.id}; "
                                   f"previous-version flags will be missing for this segment.")
                    logger.debug(f"1.2 schema feed error: {e}")
            with self.cve_db.transaction() as conn:
                for vulnerability in parse_nvd_20(segment.path, previous_versions):
                    self.cve_db.update_vulnerability(vulnerability, conn)
                    count += 1
                self.cve_db.save_property(entry.id, entry.timestamp, conn)
        logger.info(f"Processing Complete for NVD CVE - {entry.id} ({count} entries)")
        return count

    def perform_update(self, feed: UpdateableFeed) -> list[str]:
        """
        Downloads every segment that needs it on a bounded pool and ingests them on
        one consumer thread. Returns the ids of the segments ingested.
        """
        needed = feed.needed()
        if not needed:
            return []
        if len(needed) > 3:
            logger.info("NVD CVE requires several updates; this could take a couple of minutes.")
        pool_size = min(self.settings.max_download_threads, len(needed))

        segments: queue.Queue = queue.Queue()
        consumer = _SegmentConsumer(self, segments)
        with tempfile.TemporaryDirectory(prefix="cpe_scanner_") as tmp:
            work_dir = Path(tmp)
            consumer.start()
            executor = ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="nvd-download")
            try:
                futures = [executor.submit(self._download_segment, entry, work_dir, segments) for entry in needed]
                for future in as_completed(futures):
                    future.result()
                    if consumer.error is not None:
                        break
            finally:
                executor.shutdown(wait=True, cancel_futures=consumer.error is not None)
                segments.put(_ALL_DOWNLOADED)
                consumer.join()

        if consumer.error is not None:
            raise UpdateError(f"Unable to process NVD CVE segment '{consumer.failed_segment}'") from consumer.error
        if consumer.processed:
            self.run_maintenance()
        return consumer.processed

    # --- after the update ---

    def run_maintenance(self):
        try:
            logger.info("Begin database maintenance.")
            self.cve_db.cleanup()
            self.cve_db.vacuum()
            logger.info("End database maintenance.")
            self.cpe_index.rebuild(self.cve_db.get_vendor_product_list())
        except (DatabaseError, SearchUnavailableError) as e:
            raise UpdateError("Database maintenance or CPE index rebuild failed") from e

    def ensure_index(self):
        """Builds the CPE index when the store has data but the index was never built."""
        try:
            self.cpe_index.entry_count()
        except SearchUnavailableError:
            try:
                if self.cve_db.has_data():
                    self.cpe_index.rebuild(self.cve_db.get_vendor_product_list())
            except (DatabaseError, SearchUnavailableError) as e:
                raise UpdateError("Unable to build the CPE index") from e
