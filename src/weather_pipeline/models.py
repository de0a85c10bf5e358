import threading
from datetime import datetime

from sqlalchemy import (
    create_engine, Column, Integer, String, Date, Float, DateTime, ForeignKey, Index, CheckConstraint
)
from sqlalchemy.orm import declarative_base, sessionmaker, relationship

from .config import get_database_url

Base = declarative_base()


class Station(Base):
    """Weather station, created the first time a file named after it is ingested."""
    __tablename__ = 'weather_stations'

    station_id = Column(String(50), primary_key=True)
    state = Column(String(2), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    observations = relationship("WeatherObservation", back_populates="station", cascade="all, delete-orphan")
    statistics = relationship("YearStatistic", back_populates="station", cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint('length(station_id) > 0', name='ck_station_id'),
        CheckConstraint('length(state) = 2', name='ck_station_state'),
        Index('idx_weather_stations_state', 'state'),
    )


class WeatherObservation(Base):
    """One row per station and day. NULL measurements were -9999 in the source file."""
    __tablename__ = 'weather_observations'

    # Composite PK makes re-ingestion an in-place update
    station_id = Column(String(50), ForeignKey('weather_stations.station_id', ondelete='CASCADE'), primary_key=True)
    observation_date = Column(Date, primary_key=True)

    max_temperature_celsius = Column(Float)
    min_temperature_celsius = Column(Float)
    precipitation_cm = Column(Float)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    station = relationship("Station", back_populates="observations")

    __table_args__ = (
        CheckConstraint(
            'max_temperature_celsius IS NULL OR max_temperature_celsius BETWEEN -100 AND 100',
            name='ck_max_temp'),
        CheckConstraint(
            'min_temperature_celsius IS NULL OR min_temperature_celsius BETWEEN -100 AND 100',
            name='ck_min_temp'),
        CheckConstraint('precipitation_cm IS NULL OR precipitation_cm >= 0', name='ck_precipitation'),
        Index('idx_weather_obs_date', 'observation_date'),
    )


class YearStatistic(Base):
    """Per-station, per-year aggregates. Recomputed wholesale, never patched."""
    __tablename__ = 'weather_statistics'

    station_id = Column(String(50), ForeignKey('weather_stations.station_id', ondelete='CASCADE'), primary_key=True)
    year = Column(Integer, primary_key=True)

    avg_max_temperature_celsius = Column(Float)
    avg_min_temperature_celsius = Column(Float)
    total_precipitation_cm = Column(Float)

    observation_count = Column(Integer, nullable=False)
    valid_max_temp_count = Column(Integer, nullable=False, default=0)
    valid_min_temp_count = Column(Integer, nullable=False, default=0)
    valid_precipitation_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    station = relationship("Station", back_populates="statistics")

    __table_args__ = (
        CheckConstraint('observation_count >= 0', name='ck_observation_count'),
        CheckConstraint(
            'valid_max_temp_count >= 0 AND valid_min_temp_count >= 0 AND valid_precipitation_count >= 0 '
            'AND valid_max_temp_count <= observation_count '
            'AND valid_min_temp_count <= observation_count '
            'AND valid_precipitation_count <= observation_count',
            name='ck_valid_counts'),
        Index('idx_weather_stats_year', 'year'),
    )


# Database setup

_engines = {}
_engines_lock = threading.Lock()


def get_engine(database_url=None):
    """Return a process-wide engine for the URL, creating it on first use."""
    url = database_url or get_database_url()
    with _engines_lock:
        engine = _engines.get(url)
        if engine is None:
            connect_args = {}
            if url.startswith('sqlite'):
                # Sessions are handed to worker threads during parallel ingestion
                connect_args['check_same_thread'] = False
            engine = create_engine(url, connect_args=connect_args)
            _engines[url] = engine
        return engine


def create_engine_and_session(database_url=None):
    engine = get_engine(database_url)
    SessionLocal = sessionmaker(autoflush=False, bind=engine)
    return engine, SessionLocal


def create_tables(engine):
    Base.metadata.create_all(bind=engine)


def dispose_engines():
    with _engines_lock:
        for engine in _engines.values():
            engine.dispose()
        _engines.clear()
