#!/usr/bin/env python3
"""
Command-line entry point for the weather data pipeline.

Ingests a directory of station files, optionally recomputes yearly statistics,
or serves the read-only query API.
"""
import argparse
import dataclasses
import json
import logging
import os
import signal
import sys
import threading

from .analyze import StatisticsService
from .config import Settings
from .errors import NoDataFound
from .ingest import IngestionService
from .metrics import MetricsCollector
from .models import create_engine_and_session, create_tables
from .repository import WeatherRepository

logger = logging.getLogger(__name__)


def setup_logging(settings):
    handlers = [logging.StreamHandler()]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file))
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )


def setup_database(database_url):
    """Create the tables if needed and return a session factory."""
    engine, SessionLocal = create_engine_and_session(database_url)
    create_tables(engine)
    logger.info(f"Database ready ({engine.dialect.name})")
    return SessionLocal


def build_services(settings, metrics=None):
    metrics = metrics or MetricsCollector()
    SessionLocal = setup_database(settings.database_url)
    repository = WeatherRepository(session_factory=SessionLocal, metrics=metrics)
    ingestion = IngestionService(repository, metrics=metrics, max_error_samples=settings.max_error_samples)
    statistics = StatisticsService(repository, metrics=metrics, station_page_size=settings.station_page_size)
    return ingestion, statistics


def install_cancel_handler(cancel_event):
    def _handler(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        logger.warning("Cancellation requested, stopping after the current batch")
        cancel_event.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Weather data ingestion and statistics pipeline')
    parser.add_argument('--data-dir', help='Directory containing station files (default: $WX_DATA_DIR or wx_data)')
    parser.add_argument('--database-url', help='SQLAlchemy database URL (default: $DATABASE_URL)')
    parser.add_argument('--batch-size', type=int, help='Records per transactional batch (default: 1000)')
    parser.add_argument('--workers', type=int, help='Files ingested in parallel (default: 1)')
    parser.add_argument('--calculate-stats', action='store_true',
                        help='Recompute yearly statistics after ingestion')
    parser.add_argument('--stats-only', action='store_true',
                        help='Only recompute yearly statistics, skip ingestion')
    parser.add_argument('--start-year', type=int, help='First year of the statistics range (default: 1985)')
    parser.add_argument('--end-year', type=int, help='Last year of the statistics range (default: 2014)')
    parser.add_argument('--api-only', action='store_true', help='Only start the API server')
    parser.add_argument('--port', type=int, default=5000, help='Port for API server (default: 5000)')
    parser.add_argument('--metrics-port', type=int, help='Expose Prometheus metrics on this port')
    return parser.parse_args(argv)


def settings_from_args(args):
    overrides = {
        'data_dir': args.data_dir,
        'database_url': args.database_url,
        'batch_size': args.batch_size,
        'workers': args.workers,
        'start_year': args.start_year,
        'end_year': args.end_year,
    }
    settings = dataclasses.replace(
        Settings.from_env(), **{k: v for k, v in overrides.items() if v is not None})
    settings.validate()
    return settings


def run_api(settings, port):
    from .app import app

    # The API resolves its database from the environment on every request
    os.environ['DATABASE_URL'] = settings.database_url
    setup_database(settings.database_url)
    logger.info(f"Starting API server on port {port}")
    app.run(host='0.0.0.0', port=port)


def main(argv=None):
    args = parse_args(argv)
    try:
        settings = settings_from_args(args)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2
    setup_logging(settings)

    if args.api_only:
        run_api(settings, args.port)
        return 0

    metrics = MetricsCollector()
    if args.metrics_port:
        metrics.serve(args.metrics_port)
        logger.info(f"Serving metrics on port {args.metrics_port}")

    ingestion, statistics = build_services(settings, metrics)

    if not args.stats_only:
        cancel_event = threading.Event()
        install_cancel_handler(cancel_event)
        try:
            result = ingestion.ingest_directory(
                settings.data_dir, settings.batch_size,
                max_workers=settings.workers, cancel_event=cancel_event)
        except NoDataFound as e:
            logger.error(str(e))
            return 1
        print(json.dumps(result.summary(), indent=2))
        if result.cancelled:
            return 1

    if args.stats_only or args.calculate_stats:
        stats_result = statistics.recompute_all_statistics(
            settings.start_year, settings.end_year, max_workers=settings.workers)
        print(json.dumps(stats_result.summary(), indent=2))

    return 0


if __name__ == "__main__":
    sys.exit(main())
