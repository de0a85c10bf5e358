import os
from dataclasses import dataclass

DEFAULT_DATABASE_URL = 'sqlite:///weather_data.db'


def _int_env(name, default):
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def get_database_url():
    return os.getenv('DATABASE_URL', DEFAULT_DATABASE_URL)


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    data_dir: str = 'wx_data'
    batch_size: int = 1000
    workers: int = 1

    # Whole-catalog statistics range, inclusive
    start_year: int = 1985
    end_year: int = 2014
    station_page_size: int = 500

    max_error_samples: int = 100
    log_level: str = 'INFO'
    log_file: str = 'pipeline.log'

    @classmethod
    def from_env(cls):
        settings = cls(
            database_url=get_database_url(),
            data_dir=os.getenv('WX_DATA_DIR', cls.data_dir),
            batch_size=_int_env('BATCH_SIZE', cls.batch_size),
            workers=_int_env('INGEST_WORKERS', cls.workers),
            start_year=_int_env('STATS_START_YEAR', cls.start_year),
            end_year=_int_env('STATS_END_YEAR', cls.end_year),
            station_page_size=_int_env('STATION_PAGE_SIZE', cls.station_page_size),
            max_error_samples=_int_env('MAX_ERROR_SAMPLES', cls.max_error_samples),
            log_level=os.getenv('LOG_LEVEL', cls.log_level).upper(),
            log_file=os.getenv('LOG_FILE', cls.log_file),
        )
        settings.validate()
        return settings

    def validate(self):
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.workers < 1:
            raise ValueError("workers must be at least 1")
        if self.start_year > self.end_year:
            raise ValueError("start_year must not be after end_year")
        if self.station_page_size < 1:
            raise ValueError("station_page_size must be at least 1")
        if self.max_error_samples < 0:
            raise ValueError("max_error_samples must not be negative")
