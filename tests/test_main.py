import unittest
import io
import json
import logging
import os
import sys
import shutil
import signal
import tempfile
from contextlib import redirect_stdout
from unittest import mock

# Add src directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from weather_pipeline.config import Settings
from weather_pipeline.main import main
from weather_pipeline.models import create_engine_and_session, dispose_engines, YearStatistic


class TestSettings(unittest.TestCase):

    def test_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            settings = Settings.from_env()
        self.assertEqual(settings.database_url, 'sqlite:///weather_data.db')
        self.assertEqual(settings.batch_size, 1000)
        self.assertEqual((settings.start_year, settings.end_year), (1985, 2014))

    def test_environment_overrides(self):
        env = {'DATABASE_URL': 'sqlite:///other.db', 'BATCH_SIZE': '250',
               'INGEST_WORKERS': '4', 'LOG_LEVEL': 'debug'}
        with mock.patch.dict(os.environ, env, clear=True):
            settings = Settings.from_env()
        self.assertEqual(settings.database_url, 'sqlite:///other.db')
        self.assertEqual(settings.batch_size, 250)
        self.assertEqual(settings.workers, 4)
        self.assertEqual(settings.log_level, 'DEBUG')

    def test_invalid_values(self):
        for env in ({'BATCH_SIZE': 'many'}, {'BATCH_SIZE': '0'},
                    {'STATS_START_YEAR': '2020', 'STATS_END_YEAR': '2010'}):
            with mock.patch.dict(os.environ, env, clear=True):
                with self.assertRaises(ValueError):
                    Settings.from_env()


class TestCommandLine(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.mkdtemp()
        self.data_dir = os.path.join(self.tmp, 'wx_data')
        os.makedirs(self.data_dir)
        self.database_url = f"sqlite:///{os.path.join(self.tmp, 'cli.db')}"
        self.env = mock.patch.dict(os.environ, {'LOG_FILE': os.path.join(self.tmp, 'pipeline.log')})
        self.env.start()
        self.handlers = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}

    def tearDown(self):
        for sig, handler in self.handlers.items():
            signal.signal(sig, handler)
        for handler in logging.getLogger().handlers[:]:
            logging.getLogger().removeHandler(handler)
            handler.close()
        self.env.stop()
        dispose_engines()
        shutil.rmtree(self.tmp, ignore_errors=True)

    def run_main(self, *argv):
        out = io.StringIO()
        with redirect_stdout(out):
            code = main(['--database-url', self.database_url] + list(argv))
        return code, out.getvalue()

    def test_ingest_and_calculate_stats(self):
        with open(os.path.join(self.data_dir, 'USC00110072.txt'), 'w') as f:
            f.write("19850101\t-22\t-128\t94\n19850102\t-122\t-217\t0\nbroken\n")

        code, output = self.run_main('--data-dir', self.data_dir, '--batch-size', '1', '--calculate-stats')

        self.assertEqual(code, 0)
        ingestion_summary, _ = json.JSONDecoder().raw_decode(output)
        self.assertEqual(ingestion_summary['successful_records'], 2)
        self.assertEqual(ingestion_summary['failed_records'], 1)

        _, SessionLocal = create_engine_and_session(self.database_url)
        session = SessionLocal()
        try:
            stat = session.get(YearStatistic, ('USC00110072', 1985))
            self.assertEqual(stat.observation_count, 2)
            self.assertAlmostEqual(stat.avg_max_temperature_celsius, -7.2, places=2)
        finally:
            session.close()

    def test_empty_directory_fails(self):
        code, _ = self.run_main('--data-dir', self.data_dir)
        self.assertEqual(code, 1)

    def test_invalid_arguments(self):
        code, _ = self.run_main('--data-dir', self.data_dir, '--batch-size', '0')
        self.assertEqual(code, 2)


if __name__ == '__main__':
    unittest.main()
