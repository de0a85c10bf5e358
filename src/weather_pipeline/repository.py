"""
SQLAlchemy-backed persistence for stations, observations and yearly statistics.

Every write opens its own session and transaction, so a repository instance can
be shared by worker threads.
"""
import logging
import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import Optional

from sqlalchemy import func
from sqlalchemy.dialects.sqlite import insert as sqlite_upsert
from sqlalchemy.dialects.postgresql import insert as pg_upsert
from sqlalchemy.exc import SQLAlchemyError

from .models import create_engine_and_session, Station, WeatherObservation, YearStatistic

logger = logging.getLogger(__name__)

OBSERVATION_KEYS = ['station_id', 'observation_date']
OBSERVATION_VALUES = ['max_temperature_celsius', 'min_temperature_celsius', 'precipitation_cm']

STATISTIC_KEYS = ['station_id', 'year']
STATISTIC_VALUES = [
    'avg_max_temperature_celsius', 'avg_min_temperature_celsius', 'total_precipitation_cm',
    'observation_count', 'valid_max_temp_count', 'valid_min_temp_count', 'valid_precipitation_count',
    'updated_at',
]


@dataclass
class YearAggregate:
    station_id: str
    year: int
    observation_count: int = 0
    valid_max_count: int = 0
    valid_min_count: int = 0
    valid_precip_count: int = 0
    avg_max_temp_c: Optional[float] = None
    avg_min_temp_c: Optional[float] = None
    total_precip_cm: Optional[float] = None

    def as_row(self, now=None):
        now = now or datetime.utcnow()
        return {
            'station_id': self.station_id,
            'year': self.year,
            'avg_max_temperature_celsius': self.avg_max_temp_c,
            'avg_min_temperature_celsius': self.avg_min_temp_c,
            'total_precipitation_cm': self.total_precip_cm,
            'observation_count': self.observation_count,
            'valid_max_temp_count': self.valid_max_count,
            'valid_min_temp_count': self.valid_min_count,
            'valid_precipitation_count': self.valid_precip_count,
            'created_at': now,
            'updated_at': now,
        }


def _float_or_none(value):
    return float(value) if value is not None else None


def upsert_rows(session, model, rows, keys, update_columns):
    """Insert rows, overwriting only update_columns on identity conflict.

    Runs inside the caller's transaction; nothing is committed here. Returns the
    number of rows inserted or updated, so a conflict skipped by an empty
    update_columns does not count.
    """
    if not rows:
        return 0
    table = model.__table__
    dialect = session.bind.dialect.name
    if dialect in ('sqlite', 'postgresql'):
        insert = sqlite_upsert if dialect == 'sqlite' else pg_upsert
        stmt = insert(table)
        if update_columns:
            stmt = stmt.on_conflict_do_update(
                index_elements=keys,
                set_={name: stmt.excluded[name] for name in update_columns}
            )
        else:
            stmt = stmt.on_conflict_do_nothing(index_elements=keys)
        # rowcount is only reliable for a single-row execute
        if len(rows) == 1:
            return session.execute(stmt, rows[0]).rowcount
        return session.execute(stmt, rows).rowcount
    # Fallback: look up each identity and update in place
    written = 0
    for row in rows:
        identity = {k: row[k] for k in keys}
        existing = session.query(model).filter_by(**identity).one_or_none()
        if existing is None:
            session.add(model(**row))
            written += 1
        elif update_columns:
            for name in update_columns:
                setattr(existing, name, row[name])
            written += 1
        session.flush()
    return written


class WeatherRepository:
    """Persistence operations used by the ingestion and statistics services."""

    def __init__(self, session_factory=None, database_url=None, metrics=None):
        if session_factory is None:
            _, session_factory = create_engine_and_session(database_url)
        self.SessionLocal = session_factory
        self.metrics = metrics

    def _write(self, operation, *args):
        session = self.SessionLocal()
        try:
            result = operation(session, *args)
            session.commit()
            return result
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    # Stations

    def create_station_if_absent(self, station_id, state):
        """Insert the station unless it exists. Returns True when a row was created."""
        def _create(session):
            if session.get(Station, station_id) is not None:
                return False
            now = datetime.utcnow()
            # The insert is a no-op when another worker created the row first
            return upsert_rows(session, Station, [{
                'station_id': station_id,
                'state': state,
                'created_at': now,
                'updated_at': now,
            }], ['station_id'], []) > 0

        created = self._write(_create)
        if created:
            logger.debug(f"Created station {station_id} (state {state})")
        return created

    def get_station(self, station_id):
        session = self.SessionLocal()
        try:
            return session.get(Station, station_id)
        finally:
            session.close()

    def list_stations(self, limit, offset=0):
        session = self.SessionLocal()
        try:
            return (session.query(Station)
                    .order_by(Station.station_id)
                    .limit(limit)
                    .offset(offset)
                    .all())
        finally:
            session.close()

    def iter_stations(self, page_size=500):
        """Yield every station, one page at a time."""
        offset = 0
        while True:
            page = self.list_stations(page_size, offset)
            yield from page
            if len(page) < page_size:
                return
            offset += page_size

    # Observations

    def batch_upsert_observations(self, observations):
        """Upsert observations in one all-or-nothing transaction."""
        if not observations:
            return
        start = time.perf_counter()
        rows = [obs.as_row() for obs in observations]
        self._write(lambda session: upsert_rows(
            session, WeatherObservation, rows, OBSERVATION_KEYS, OBSERVATION_VALUES))
        elapsed = time.perf_counter() - start
        if self.metrics is not None:
            self.metrics.observe_batch(len(rows))
        logger.debug(f"Batch upsert of {len(rows)} observations took {elapsed * 1000:.1f} ms")

    def count_observations(self, station_id=None):
        session = self.SessionLocal()
        try:
            query = session.query(func.count()).select_from(WeatherObservation)
            if station_id:
                query = query.filter(WeatherObservation.station_id == station_id)
            return query.scalar()
        finally:
            session.close()

    def get_observation(self, station_id, observation_date):
        session = self.SessionLocal()
        try:
            return session.get(WeatherObservation, (station_id, observation_date))
        finally:
            session.close()

    def query_observations(self, station_id=None, start_date=None, end_date=None, page=1, per_page=50):
        session = self.SessionLocal()
        try:
            query = session.query(WeatherObservation)
            if station_id:
                query = query.filter(WeatherObservation.station_id == station_id)
            if start_date:
                query = query.filter(WeatherObservation.observation_date >= start_date)
            if end_date:
                query = query.filter(WeatherObservation.observation_date <= end_date)
            query = query.order_by(WeatherObservation.observation_date.desc(), WeatherObservation.station_id)
            return paginate(query, page, per_page)
        finally:
            session.close()

    def query_stations(self, state=None, page=1, per_page=50):
        session = self.SessionLocal()
        try:
            query = session.query(Station)
            if state:
                query = query.filter(Station.state == state)
            return paginate(query.order_by(Station.station_id), page, per_page)
        finally:
            session.close()

    # Statistics

    def compute_year_aggregate(self, station_id, year) -> YearAggregate:
        """Aggregate one station-year. NULL measurements are left out of every average and sum."""
        start = time.perf_counter()
        session = self.SessionLocal()
        try:
            row = session.query(
                func.count().label('observation_count'),
                func.count(WeatherObservation.max_temperature_celsius).label('valid_max'),
                func.count(WeatherObservation.min_temperature_celsius).label('valid_min'),
                func.count(WeatherObservation.precipitation_cm).label('valid_precip'),
                func.avg(WeatherObservation.max_temperature_celsius).label('avg_max'),
                func.avg(WeatherObservation.min_temperature_celsius).label('avg_min'),
                func.sum(WeatherObservation.precipitation_cm).label('total_precip'),
            ).filter(
                WeatherObservation.station_id == station_id,
                WeatherObservation.observation_date >= date(year, 1, 1),
                WeatherObservation.observation_date < date(year + 1, 1, 1),
            ).one()
        finally:
            session.close()
            if self.metrics is not None:
                self.metrics.observe_stats_calculation(time.perf_counter() - start)

        return YearAggregate(
            station_id=station_id,
            year=year,
            observation_count=row.observation_count or 0,
            valid_max_count=row.valid_max or 0,
            valid_min_count=row.valid_min or 0,
            valid_precip_count=row.valid_precip or 0,
            avg_max_temp_c=_float_or_none(row.avg_max),
            avg_min_temp_c=_float_or_none(row.avg_min),
            total_precip_cm=_float_or_none(row.total_precip),
        )

    def upsert_year_statistic(self, aggregate: YearAggregate):
        """Insert or replace the statistic keyed on (station_id, year)."""
        row = aggregate.as_row()
        self._write(lambda session: upsert_rows(
            session, YearStatistic, [row], STATISTIC_KEYS, STATISTIC_VALUES))

    def get_year_statistic(self, station_id, year):
        session = self.SessionLocal()
        try:
            return session.get(YearStatistic, (station_id, year))
        finally:
            session.close()

    def query_statistics(self, station_id=None, year=None, page=1, per_page=50):
        session = self.SessionLocal()
        try:
            query = session.query(YearStatistic)
            if station_id:
                query = query.filter(YearStatistic.station_id == station_id)
            if year is not None:
                query = query.filter(YearStatistic.year == year)
            query = query.order_by(YearStatistic.year.desc(), YearStatistic.station_id)
            return paginate(query, page, per_page)
        finally:
            session.close()


def paginate(query, page, per_page):
    total = query.count()
    pages = (total + per_page - 1) // per_page
    records = query.offset((page - 1) * per_page).limit(per_page).all()
    return {
        'data': records,
        'pagination': {
            'page': page,
            'per_page': per_page,
            'total': total,
            'pages': pages,
            'has_next': page < pages,
            'has_prev': page > 1
        }
    }
