"""Ingestion and yearly aggregation of historical daily weather readings."""

__version__ = '1.0.0'

from .errors import (
    WeatherPipelineError, MalformedRecord, InvalidDate, NoDataFound,
    FileIngestionError, FlushFailure, StationLookupOrCreateFailure, IngestionCancelled,
)
from .records import RawRecord, Observation, parse_line, normalize
from .ingest import IngestionService, IngestionResult
from .analyze import StatisticsService
from .repository import WeatherRepository, YearAggregate
