"""
Batch ingestion of per-station weather files.

Each file in the data directory is named after its station (``USC00110072.txt``)
and holds one tab-separated record per line. Records are parsed, normalized and
written in fixed-size batches, one transaction per batch. A bad record is
counted and skipped, a failed file is reported and the run moves on to the next
one. Only an empty data directory stops the run.
"""
import os
import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

from .errors import (
    FileIngestionError, FlushFailure, IngestionCancelled, InvalidDate, MalformedRecord,
    NoDataFound, StationLookupOrCreateFailure,
)
from .metrics import MetricsCollector
from .records import parse_line

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 1000
DEFAULT_EXTENSIONS = ('.txt',)
DEFAULT_MAX_ERROR_SAMPLES = 100
UNKNOWN_STATE = 'XX'


def station_id_from_path(path):
    return Path(path).stem


def state_from_station_id(station_id):
    """Placeholder rule: the first two characters of the identifier."""
    if len(station_id) >= 2:
        return station_id[:2].upper()
    return UNKNOWN_STATE


class ErrorLog:
    """Keeps the first ``max_samples`` messages and counts the rest."""

    def __init__(self, max_samples=DEFAULT_MAX_ERROR_SAMPLES):
        self.max_samples = max_samples
        self.samples = []
        self.overflow = 0

    def add(self, message):
        if len(self.samples) < self.max_samples:
            self.samples.append(message)
        else:
            self.overflow += 1

    @property
    def total(self):
        return len(self.samples) + self.overflow

    def summary(self):
        lines = list(self.samples)
        if self.overflow:
            lines.append(f"... and {self.overflow} more errors")
        return lines

    def __len__(self):
        return self.total

    def __bool__(self):
        return self.total > 0


@dataclass
class FileResult:
    file_path: str
    station_id: str
    total_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    station_created: bool = False


@dataclass
class IngestionResult:
    total_files: int = 0
    files_succeeded: int = 0
    files_failed: int = 0
    files_skipped: int = 0
    total_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    stations_created: int = 0
    cancelled: bool = False
    duration: timedelta = timedelta(0)
    errors: ErrorLog = field(default_factory=ErrorLog)

    def add_counts(self, file_result):
        self.total_records += file_result.total_records
        self.successful_records += file_result.successful_records
        self.failed_records += file_result.failed_records
        if file_result.station_created:
            self.stations_created += 1

    @property
    def records_per_second(self):
        seconds = self.duration.total_seconds()
        return self.successful_records / seconds if seconds > 0 else 0.0

    def summary(self):
        return {
            'total_files': self.total_files,
            'files_succeeded': self.files_succeeded,
            'files_failed': self.files_failed,
            'files_skipped': self.files_skipped,
            'total_records': self.total_records,
            'successful_records': self.successful_records,
            'failed_records': self.failed_records,
            'stations_created': self.stations_created,
            'cancelled': self.cancelled,
            'duration_seconds': round(self.duration.total_seconds(), 3),
            'records_per_second': round(self.records_per_second, 1),
            'error_count': self.errors.total,
            'errors': self.errors.summary(),
        }


class IngestionService:
    """Streams station files into the repository in transactional batches."""

    def __init__(self, repository, metrics=None, state_resolver=state_from_station_id,
                 max_error_samples=DEFAULT_MAX_ERROR_SAMPLES, extensions=DEFAULT_EXTENSIONS):
        self.repository = repository
        self.metrics = metrics or MetricsCollector()
        self.state_resolver = state_resolver
        self.max_error_samples = max_error_samples
        self.extensions = tuple(ext.lower() for ext in extensions)

    def find_data_files(self, data_dir):
        """Sorted candidate files in data_dir. Raises NoDataFound when there are none."""
        try:
            names = os.listdir(data_dir)
        except (FileNotFoundError, NotADirectoryError):
            raise NoDataFound(data_dir) from None
        files = sorted(
            os.path.join(data_dir, name) for name in names
            if name.lower().endswith(self.extensions) and os.path.isfile(os.path.join(data_dir, name))
        )
        if not files:
            raise NoDataFound(data_dir)
        return files

    def ingest_directory(self, data_dir, batch_size=DEFAULT_BATCH_SIZE, max_workers=1, cancel_event=None):
        """Ingest every station file in data_dir and return the run summary.

        ``cancel_event`` (a ``threading.Event``) is checked before each file and
        before each batch flush. With ``max_workers > 1`` files are processed on a
        thread pool; results are still rolled up by the calling thread only.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        start = time.monotonic()
        logger.info(f"Starting ingestion of {data_dir} (batch size {batch_size}, workers {max_workers})")

        files = self.find_data_files(data_dir)
        result = IngestionResult(total_files=len(files), errors=ErrorLog(self.max_error_samples))
        logger.info(f"Found {len(files)} data files")

        if max_workers <= 1:
            for path in files:
                file_result, error = self._run_file(path, batch_size, cancel_event)
                self._collect(result, path, file_result, error)
        else:
            with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='ingest') as executor:
                futures = {
                    executor.submit(self._run_file, path, batch_size, cancel_event): path
                    for path in files
                }
                for future in as_completed(futures):
                    file_result, error = future.result()
                    self._collect(result, futures[future], file_result, error)

        result.duration = timedelta(seconds=time.monotonic() - start)
        self.metrics.observe_ingestion(result.duration.total_seconds())

        if result.cancelled:
            logger.warning(f"Ingestion cancelled after {result.files_succeeded} files, "
                           f"{result.files_skipped} skipped")
        logger.info(
            f"Ingestion complete: {result.total_files} files, {result.total_records} records "
            f"({result.successful_records} ok, {result.failed_records} failed) in {result.duration}, "
            f"{result.records_per_second:.1f} records/s, {result.errors.total} errors"
        )
        return result

    def _run_file(self, path, batch_size, cancel_event):
        if cancel_event is not None and cancel_event.is_set():
            return None, None
        try:
            return self.ingest_file(path, batch_size, cancel_event), None
        except FileIngestionError as e:
            return e.file_result, e
        except Exception as e:
            logger.exception(f"Unexpected error ingesting {path}")
            return None, e

    def _collect(self, result, path, file_result, error):
        if file_result is None and error is None:
            result.cancelled = True
            result.files_skipped += 1
            self.metrics.record_file('skipped')
            return

        if file_result is not None:
            result.add_counts(file_result)

        if error is None:
            result.files_succeeded += 1
            self.metrics.record_file('success')
            logger.info(
                f"Ingested {path}: {file_result.successful_records}/{file_result.total_records} records, "
                f"{file_result.failed_records} failed"
            )
        elif isinstance(error, IngestionCancelled):
            result.cancelled = True
            result.files_skipped += 1
            result.errors.add(str(error))
            self.metrics.record_file('cancelled')
        else:
            result.files_failed += 1
            result.errors.add(f"failed to ingest {path}: {error}")
            self.metrics.record_ingestion_error('file_error')
            self.metrics.record_file('failed')
            logger.error(f"Failed to ingest {path}: {error}")

    def ingest_file(self, file_path, batch_size=DEFAULT_BATCH_SIZE, cancel_event=None):
        """Ingest one station file.

        Batches already flushed stay committed when a later batch fails.
        """
        station_id = station_id_from_path(file_path)
        result = FileResult(file_path=str(file_path), station_id=station_id)

        try:
            state = self.state_resolver(station_id)
            result.station_created = self.repository.create_station_if_absent(station_id, state)
        except (SQLAlchemyError, ValueError) as e:
            raise StationLookupOrCreateFailure(
                f"failed to create station {station_id}: {e}", result) from e

        batch = []
        try:
            # parse_line decodes each line, a bad byte only fails its own record
            with open(file_path, 'rb') as handle:
                for line in handle:
                    if not line.strip():
                        continue
                    result.total_records += 1
                    try:
                        observation = parse_line(line).to_observation(station_id)
                    except MalformedRecord as e:
                        result.failed_records += 1
                        self.metrics.record_ingestion_error('parse_error')
                        logger.debug(f"{file_path}: {e}")
                        continue
                    except InvalidDate as e:
                        result.failed_records += 1
                        self.metrics.record_ingestion_error('conversion_error')
                        logger.debug(f"{file_path}: {e} in line {line.strip().decode('utf-8')!r}")
                        continue

                    batch.append(observation)
                    if len(batch) >= batch_size:
                        self._flush(batch, result, cancel_event)
                        batch = []
        except OSError as e:
            result.failed_records += len(batch)
            raise FileIngestionError(f"error reading {file_path}: {e}", result) from e

        if batch:
            self._flush(batch, result, cancel_event)
        return result

    def _flush(self, batch, result, cancel_event):
        if cancel_event is not None and cancel_event.is_set():
            result.failed_records += len(batch)
            raise IngestionCancelled(
                f"cancelled before flushing {len(batch)} records from {result.file_path}", result)
        try:
            self.repository.batch_upsert_observations(batch)
        except SQLAlchemyError as e:
            result.failed_records += len(batch)
            self.metrics.record_ingestion_error('flush_error')
            raise FlushFailure(
                f"failed to insert batch of {len(batch)} records for {result.station_id}: {e}",
                result) from e
        result.successful_records += len(batch)
        logger.debug(f"Flushed {len(batch)} records for {result.station_id}")
