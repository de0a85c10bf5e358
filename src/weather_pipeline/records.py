"""
Parsing and normalization of raw weather lines.

A line holds four tab-separated fields: date (YYYYMMDD), max temperature,
min temperature and precipitation. The numeric fields are integers in tenths
of a degree Celsius and tenths of a millimeter; -9999 marks a missing value.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from .errors import InvalidDate, MalformedRecord

MISSING = -9999
FIELD_COUNT = 4

_INTEGER = re.compile(r'^[+-]?[0-9]+$')
_DATE = re.compile(r'^[0-9]{8}$')


@dataclass(frozen=True)
class RawRecord:
    date: str
    max_temp_tenths: int
    min_temp_tenths: int
    precip_tenths: int

    def to_observation(self, station_id):
        return normalize(self, station_id)


@dataclass(frozen=True)
class Observation:
    """One station-day. A None measurement means it was not recorded."""
    station_id: str
    observation_date: date
    max_temp_c: Optional[float] = None
    min_temp_c: Optional[float] = None
    precip_cm: Optional[float] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def as_row(self) -> dict:
        """Column mapping used by the repository."""
        return {
            'station_id': self.station_id,
            'observation_date': self.observation_date,
            'max_temperature_celsius': self.max_temp_c,
            'min_temperature_celsius': self.min_temp_c,
            'precipitation_cm': self.precip_cm,
            'created_at': self.created_at,
        }


def _parse_int(value, name, line):
    value = value.strip()
    if not _INTEGER.match(value):
        raise MalformedRecord(line, f"invalid {name}: {value!r}")
    return int(value)


def parse_line(line) -> RawRecord:
    """Split one line (str, or bytes read from a file) into a RawRecord.

    Only the shape is validated here. Bytes that are not valid UTF-8 make the
    line malformed.
    """
    if isinstance(line, bytes):
        try:
            line = line.decode('utf-8')
        except UnicodeDecodeError as e:
            text = line.rstrip(b'\r\n').decode('utf-8', 'replace')
            raise MalformedRecord(text, f"not valid UTF-8: {e.reason}") from None
    line = line.rstrip('\r\n')
    parts = line.split('\t')
    if len(parts) != FIELD_COUNT:
        raise MalformedRecord(line, f"expected {FIELD_COUNT} fields, got {len(parts)}")
    date_str, max_str, min_str, precip_str = parts
    return RawRecord(
        date=date_str.strip(),
        max_temp_tenths=_parse_int(max_str, 'max temperature', line),
        min_temp_tenths=_parse_int(min_str, 'min temperature', line),
        precip_tenths=_parse_int(precip_str, 'precipitation', line),
    )


def parse_date(value: str) -> date:
    if not _DATE.match(value):
        raise InvalidDate(value)
    try:
        return datetime.strptime(value, '%Y%m%d').date()
    except ValueError:
        raise InvalidDate(value) from None


def tenths_to_celsius(value: int) -> Optional[float]:
    if value == MISSING:
        return None
    return value / 10.0


def tenths_mm_to_cm(value: int) -> Optional[float]:
    if value == MISSING:
        return None
    return value / 100.0


def normalize(record: RawRecord, station_id: str) -> Observation:
    """Convert units and map the sentinel to None, field by field."""
    return Observation(
        station_id=station_id,
        observation_date=parse_date(record.date),
        max_temp_c=tenths_to_celsius(record.max_temp_tenths),
        min_temp_c=tenths_to_celsius(record.min_temp_tenths),
        precip_cm=tenths_mm_to_cm(record.precip_tenths),
    )
