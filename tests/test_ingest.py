import unittest
import os
import sys
import shutil
import tempfile
import threading
from datetime import date
from unittest import mock

from sqlalchemy.exc import SQLAlchemyError

# Add src directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from weather_pipeline.errors import FileIngestionError, NoDataFound
from weather_pipeline.ingest import ErrorLog, IngestionService, state_from_station_id, station_id_from_path
from weather_pipeline.metrics import MetricsCollector
from weather_pipeline.models import create_engine_and_session, create_tables, dispose_engines, Station
from weather_pipeline.repository import WeatherRepository


class FailingRepository(WeatherRepository):
    """Fails every batch for the given stations once `allowed` batches went through."""

    def __init__(self, *args, fail_stations=(), allowed=0, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_stations = set(fail_stations)
        self.allowed = allowed
        self.calls = {}

    def batch_upsert_observations(self, observations):
        station_id = observations[0].station_id
        self.calls[station_id] = self.calls.get(station_id, 0) + 1
        if station_id in self.fail_stations and self.calls[station_id] > self.allowed:
            raise SQLAlchemyError("simulated write failure")
        super().batch_upsert_observations(observations)


class CancellingRepository(WeatherRepository):
    """Sets the cancel event right after the first successful batch."""

    def __init__(self, *args, cancel_event=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.cancel_event = cancel_event

    def batch_upsert_observations(self, observations):
        super().batch_upsert_observations(observations)
        self.cancel_event.set()


class UnreadableFile:
    """File handle that fails with an OSError after yielding its lines."""

    def __init__(self, lines):
        self.lines = lines

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def __iter__(self):
        yield from self.lines
        raise OSError("simulated read error")


class IngestionTestCase(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.data_dir = os.path.join(self.tmp, 'wx_data')
        os.makedirs(self.data_dir)
        self.database_url = f"sqlite:///{os.path.join(self.tmp, 'test.db')}"
        self.engine, self.SessionLocal = create_engine_and_session(self.database_url)
        create_tables(self.engine)
        self.metrics = MetricsCollector()
        self.repository = WeatherRepository(session_factory=self.SessionLocal, metrics=self.metrics)
        self.service = IngestionService(self.repository, metrics=self.metrics)

    def tearDown(self):
        dispose_engines()
        shutil.rmtree(self.tmp, ignore_errors=True)

    def write_station(self, station_id, lines, extension='.txt'):
        path = os.path.join(self.data_dir, station_id + extension)
        with open(path, 'w') as f:
            f.write(''.join(line + '\n' for line in lines))
        return path

    def days(self, count, year=2000, values=(250, 150, 100)):
        return [f"{year}01{day:02d}\t{values[0]}\t{values[1]}\t{values[2]}" for day in range(1, count + 1)]


class TestHelpers(unittest.TestCase):

    def test_station_id_from_path(self):
        self.assertEqual(station_id_from_path('/data/wx_data/USC00110072.txt'), 'USC00110072')

    def test_state_from_station_id(self):
        self.assertEqual(state_from_station_id('USC00110072'), 'US')
        self.assertEqual(state_from_station_id('ne123'), 'NE')
        self.assertEqual(state_from_station_id('X'), 'XX')

    def test_error_log_caps_samples(self):
        errors = ErrorLog(max_samples=2)
        for i in range(5):
            errors.add(f"error {i}")
        self.assertEqual(errors.samples, ['error 0', 'error 1'])
        self.assertEqual(errors.overflow, 3)
        self.assertEqual(errors.total, 5)
        self.assertEqual(errors.summary()[-1], '... and 3 more errors')


class TestIngestDirectory(IngestionTestCase):

    def test_ingests_all_files(self):
        self.write_station('USC00110072', self.days(3))
        self.write_station('USC00110187', self.days(2))

        result = self.service.ingest_directory(self.data_dir, batch_size=1000)

        self.assertEqual(result.total_files, 2)
        self.assertEqual(result.files_succeeded, 2)
        self.assertEqual(result.files_failed, 0)
        self.assertEqual(result.total_records, 5)
        self.assertEqual(result.successful_records, 5)
        self.assertEqual(result.failed_records, 0)
        self.assertEqual(result.stations_created, 2)
        self.assertFalse(result.errors)
        self.assertFalse(result.cancelled)
        self.assertEqual(self.repository.count_observations(), 5)
        self.assertEqual(self.repository.count_observations('USC00110187'), 2)

    def test_stored_values(self):
        self.write_station('TEST001', ["20230115\t250\t150\t100", "20230116\t-9999\t150\t-9999"])
        self.service.ingest_directory(self.data_dir)

        first = self.repository.get_observation('TEST001', date(2023, 1, 15))
        self.assertEqual(first.max_temperature_celsius, 25.0)
        self.assertEqual(first.min_temperature_celsius, 15.0)
        self.assertEqual(first.precipitation_cm, 1.0)

        second = self.repository.get_observation('TEST001', date(2023, 1, 16))
        self.assertIsNone(second.max_temperature_celsius)
        self.assertEqual(second.min_temperature_celsius, 15.0)
        self.assertIsNone(second.precipitation_cm)

    def test_bad_records_are_counted_and_skipped(self):
        self.write_station('TEST001', [
            "20230115\t250\t150\t100",
            "2023-01-15\t250\t150\t100",
            "20230116\t250\t150",
            "20230117\tabc\t150\t100",
            "20230118\t250\t150\t100",
        ])

        result = self.service.ingest_directory(self.data_dir)

        self.assertEqual(result.total_records, 5)
        self.assertEqual(result.successful_records, 2)
        self.assertEqual(result.failed_records, 3)
        self.assertEqual(result.files_succeeded, 1)
        self.assertEqual(self.repository.count_observations(), 2)
        self.assertEqual(self.metrics.get('ingestion_errors_total', {'error_type': 'parse_error'}), 2)
        self.assertEqual(self.metrics.get('ingestion_errors_total', {'error_type': 'conversion_error'}), 1)

    def test_undecodable_line_is_skipped(self):
        path = os.path.join(self.data_dir, 'TEST001.txt')
        with open(path, 'wb') as f:
            f.write(b"20230115\t250\t150\t100\n2023011\xff\t250\t150\t100\n20230117\t250\t150\t100\n")

        result = self.service.ingest_directory(self.data_dir)

        self.assertEqual(result.files_succeeded, 1)
        self.assertEqual(result.files_failed, 0)
        self.assertEqual(result.total_records, 3)
        self.assertEqual(result.successful_records, 2)
        self.assertEqual(result.failed_records, 1)
        self.assertEqual(self.repository.count_observations(), 2)
        self.assertEqual(self.metrics.get('ingestion_errors_total', {'error_type': 'parse_error'}), 1)

    def test_blank_lines_are_ignored(self):
        self.write_station('TEST001', ["20230115\t250\t150\t100", "", "   ", "20230116\t250\t150\t100"])
        result = self.service.ingest_directory(self.data_dir)
        self.assertEqual(result.total_records, 2)
        self.assertEqual(result.failed_records, 0)

    def test_reingestion_is_idempotent(self):
        path = self.write_station('TEST001', self.days(4))
        self.service.ingest_directory(self.data_dir)
        created_at = self.repository.get_observation('TEST001', date(2000, 1, 1)).created_at

        # Second run with changed values updates rows in place
        self.write_station('TEST001', self.days(4, values=(-9999, 11, 22)))
        result = self.service.ingest_directory(self.data_dir)

        self.assertTrue(os.path.exists(path))
        self.assertEqual(result.successful_records, 4)
        self.assertEqual(result.stations_created, 0)
        self.assertEqual(self.repository.count_observations(), 4)
        obs = self.repository.get_observation('TEST001', date(2000, 1, 1))
        self.assertIsNone(obs.max_temperature_celsius)
        self.assertAlmostEqual(obs.min_temperature_celsius, 1.1, places=2)
        self.assertAlmostEqual(obs.precipitation_cm, 0.22, places=3)
        self.assertEqual(obs.created_at, created_at)

    def test_station_is_created_once_with_derived_state(self):
        self.write_station('NE0001', self.days(1))
        self.service.ingest_directory(self.data_dir)
        station = self.repository.get_station('NE0001')
        self.assertEqual(station.state, 'NE')
        first_created = station.created_at

        result = self.service.ingest_directory(self.data_dir)
        self.assertEqual(result.stations_created, 0)
        self.assertEqual(self.repository.get_station('NE0001').created_at, first_created)

        session = self.SessionLocal()
        try:
            self.assertEqual(session.query(Station).count(), 1)
        finally:
            session.close()

    def test_station_created_concurrently_is_not_counted(self):
        self.assertTrue(self.repository.create_station_if_absent('TEST001', 'TE'))
        # Another worker inserted the row between the lookup and the insert
        with mock.patch('sqlalchemy.orm.Session.get', return_value=None):
            self.assertFalse(self.repository.create_station_if_absent('TEST001', 'TE'))
        self.assertEqual(self.repository.get_station('TEST001').state, 'TE')

    def test_pluggable_state_resolver(self):
        service = IngestionService(self.repository, metrics=self.metrics, state_resolver=lambda station_id: 'IA')
        self.write_station('USC00110338', self.days(1))
        service.ingest_directory(self.data_dir)
        self.assertEqual(self.repository.get_station('USC00110338').state, 'IA')

    def test_batches_are_flushed_at_batch_size(self):
        self.write_station('TEST001', self.days(5))
        result = self.service.ingest_directory(self.data_dir, batch_size=2)
        self.assertEqual(result.successful_records, 5)
        # 2 + 2 + final partial batch of 1
        self.assertEqual(self.metrics.get('ingestion_batch_size_count'), 3)
        self.assertEqual(self.metrics.get('ingestion_records_total'), 5)

    def test_only_matching_extensions_are_read(self):
        self.write_station('TEST001', self.days(2))
        self.write_station('NOTES', ["not weather data"], extension='.md')
        result = self.service.ingest_directory(self.data_dir)
        self.assertEqual(result.total_files, 1)
        self.assertIsNone(self.repository.get_station('NOTES'))

    def test_invalid_batch_size(self):
        self.write_station('TEST001', self.days(1))
        with self.assertRaises(ValueError):
            self.service.ingest_directory(self.data_dir, batch_size=0)


class TestNoDataFound(IngestionTestCase):

    def test_empty_directory(self):
        with self.assertRaises(NoDataFound):
            self.service.ingest_directory(self.data_dir)

    def test_missing_directory(self):
        with self.assertRaises(NoDataFound):
            self.service.ingest_directory(os.path.join(self.tmp, 'missing'))

    def test_no_candidate_files(self):
        self.write_station('README', ["hello"], extension='.md')
        with self.assertRaises(NoDataFound) as ctx:
            self.service.ingest_directory(self.data_dir)
        self.assertEqual(ctx.exception.path, self.data_dir)


class TestFileFailures(IngestionTestCase):

    def test_read_error_counts_pending_batch_as_failed(self):
        path = self.write_station('TEST001', self.days(3))
        lines = [line.encode() + b'\n' for line in self.days(3)]

        with mock.patch('weather_pipeline.ingest.open', create=True, return_value=UnreadableFile(lines)):
            with self.assertRaises(FileIngestionError) as ctx:
                self.service.ingest_file(path, batch_size=2)

        file_result = ctx.exception.file_result
        self.assertEqual(file_result.total_records, 3)
        self.assertEqual(file_result.successful_records, 2)
        self.assertEqual(file_result.failed_records, 1)
        self.assertEqual(self.repository.count_observations(), 2)

    def test_flush_failure_aborts_only_that_file(self):
        repository = FailingRepository(session_factory=self.SessionLocal, metrics=self.metrics,
                                       fail_stations={'BAD001'}, allowed=1)
        service = IngestionService(repository, metrics=self.metrics)
        self.write_station('BAD001', self.days(5))
        self.write_station('GOOD01', self.days(3))

        result = service.ingest_directory(self.data_dir, batch_size=2)

        self.assertEqual(result.files_failed, 1)
        self.assertEqual(result.files_succeeded, 1)
        self.assertEqual(len(result.errors.samples), 1)
        self.assertIn('BAD001', result.errors.samples[0])
        self.assertIn('simulated write failure', result.errors.samples[0])
        # First batch of the failing file stays committed
        self.assertEqual(repository.count_observations('BAD001'), 2)
        self.assertEqual(repository.count_observations('GOOD01'), 3)
        self.assertEqual(result.successful_records, 5)
        self.assertEqual(result.failed_records, 2)
        self.assertEqual(self.metrics.get('ingestion_errors_total', {'error_type': 'flush_error'}), 1)
        self.assertEqual(self.metrics.get('ingestion_files_total', {'status': 'failed'}), 1)

    def test_errors_are_capped(self):
        repository = FailingRepository(session_factory=self.SessionLocal,
                                       fail_stations={'BAD001', 'BAD002', 'BAD003'})
        service = IngestionService(repository, metrics=self.metrics, max_error_samples=1)
        for station_id in ('BAD001', 'BAD002', 'BAD003'):
            self.write_station(station_id, self.days(1))

        result = service.ingest_directory(self.data_dir)

        self.assertEqual(result.files_failed, 3)
        self.assertEqual(len(result.errors.samples), 1)
        self.assertEqual(result.errors.overflow, 2)
        summary = result.summary()
        self.assertEqual(summary['error_count'], 3)
        self.assertEqual(summary['errors'][-1], '... and 2 more errors')

    def test_station_failure_is_file_level(self):
        def broken_resolver(station_id):
            raise ValueError("no state for station")

        service = IngestionService(self.repository, metrics=self.metrics, state_resolver=broken_resolver)
        self.write_station('TEST001', self.days(2))
        result = service.ingest_directory(self.data_dir)
        self.assertEqual(result.files_failed, 1)
        self.assertIn('failed to create station TEST001', result.errors.samples[0])
        self.assertEqual(self.repository.count_observations(), 0)


class TestCancellation(IngestionTestCase):

    def test_cancel_before_start_skips_every_file(self):
        self.write_station('TEST001', self.days(2))
        self.write_station('TEST002', self.days(2))
        cancel_event = threading.Event()
        cancel_event.set()

        result = self.service.ingest_directory(self.data_dir, cancel_event=cancel_event)

        self.assertTrue(result.cancelled)
        self.assertEqual(result.files_skipped, 2)
        self.assertEqual(result.total_records, 0)
        self.assertEqual(self.repository.count_observations(), 0)

    def test_cancel_between_batches_keeps_committed_batch(self):
        cancel_event = threading.Event()
        repository = CancellingRepository(session_factory=self.SessionLocal, cancel_event=cancel_event)
        service = IngestionService(repository, metrics=self.metrics)
        self.write_station('TEST001', self.days(5))
        self.write_station('TEST002', self.days(5))

        result = service.ingest_directory(self.data_dir, batch_size=2, cancel_event=cancel_event)

        self.assertTrue(result.cancelled)
        self.assertEqual(repository.count_observations('TEST001'), 2)
        self.assertEqual(repository.count_observations('TEST002'), 0)
        self.assertEqual(result.successful_records, 2)
        self.assertEqual(result.files_skipped, 2)
        self.assertIn('cancelled', result.errors.samples[0])


class TestParallelIngestion(IngestionTestCase):

    def test_workers_produce_same_totals(self):
        for i in range(4):
            self.write_station(f'PAR00{i}', self.days(6) + ["bad line"])

        result = self.service.ingest_directory(self.data_dir, batch_size=4, max_workers=2)

        self.assertEqual(result.total_files, 4)
        self.assertEqual(result.files_succeeded, 4)
        self.assertEqual(result.total_records, 28)
        self.assertEqual(result.successful_records, 24)
        self.assertEqual(result.failed_records, 4)
        self.assertEqual(result.stations_created, 4)
        self.assertEqual(self.repository.count_observations(), 24)


if __name__ == '__main__':
    unittest.main()
