"""
Per-station, per-year statistics.

Statistics are recomputed from stored observations and written with an
insert-or-replace, so a recomputation can be repeated at any time.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timedelta

from .metrics import MetricsCollector

logger = logging.getLogger(__name__)

DEFAULT_START_YEAR = 1985
DEFAULT_END_YEAR = 2014
DEFAULT_STATION_PAGE_SIZE = 500


@dataclass
class StatisticsRunResult:
    stations: int = 0
    pairs_computed: int = 0
    pairs_saved: int = 0
    pairs_skipped: int = 0
    pairs_failed: int = 0
    duration: timedelta = timedelta(0)

    def summary(self):
        return {
            'stations': self.stations,
            'pairs_computed': self.pairs_computed,
            'pairs_saved': self.pairs_saved,
            'pairs_skipped': self.pairs_skipped,
            'pairs_failed': self.pairs_failed,
            'duration_seconds': round(self.duration.total_seconds(), 3),
        }


# Outcomes of one station-year pair
SAVED = 'saved'
EMPTY = 'empty'
FAILED = 'failed'


class StatisticsService:

    def __init__(self, repository, metrics=None, station_page_size=DEFAULT_STATION_PAGE_SIZE):
        self.repository = repository
        self.metrics = metrics or MetricsCollector()
        self.station_page_size = station_page_size

    def compute_year_statistic(self, station_id, year):
        """Aggregate and store one station-year.

        Returns the stored aggregate, or None when the station has no
        observations that year (nothing is written in that case).
        """
        aggregate = self.repository.compute_year_aggregate(station_id, year)
        if aggregate.observation_count == 0:
            return None
        self.repository.upsert_year_statistic(aggregate)
        self.metrics.record_statistic_saved()
        return aggregate

    def _process_pair(self, station_id, year):
        try:
            aggregate = self.compute_year_statistic(station_id, year)
        except Exception as e:
            self.metrics.record_statistic_error()
            logger.error(f"Failed to calculate statistics for {station_id}/{year}: {e}")
            return FAILED
        return EMPTY if aggregate is None else SAVED

    def recompute_all_statistics(self, start_year=DEFAULT_START_YEAR, end_year=DEFAULT_END_YEAR, max_workers=1):
        """Recompute every station over [start_year, end_year].

        Listing stations failing propagates; a failing station-year is logged,
        counted and skipped.
        """
        if start_year > end_year:
            raise ValueError("start_year must not be after end_year")
        start = time.monotonic()
        logger.info(f"Starting statistics calculation for {start_year}-{end_year}")
        result = StatisticsRunResult()
        years = range(start_year, end_year + 1)

        executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='stats') if max_workers > 1 else None
        try:
            for station in self.repository.iter_stations(self.station_page_size):
                station_id = station.station_id
                result.stations += 1
                if executor is None:
                    outcomes = [self._process_pair(station_id, year) for year in years]
                else:
                    outcomes = list(executor.map(lambda year: self._process_pair(station_id, year), years))
                for outcome in outcomes:
                    if outcome == FAILED:
                        result.pairs_failed += 1
                        continue
                    result.pairs_computed += 1
                    if outcome == SAVED:
                        result.pairs_saved += 1
                    else:
                        result.pairs_skipped += 1
                logger.debug(f"Statistics calculated for station {station_id}")
        finally:
            if executor is not None:
                executor.shutdown(wait=True)

        result.duration = timedelta(seconds=time.monotonic() - start)
        logger.info(
            f"Statistics calculation complete: {result.stations} stations, {result.pairs_saved} saved, "
            f"{result.pairs_skipped} empty, {result.pairs_failed} failed in {result.duration}"
        )
        return result
