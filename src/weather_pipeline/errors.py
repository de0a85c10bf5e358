"""Error taxonomy for the ingestion and aggregation pipeline."""


class WeatherPipelineError(Exception):
    """Base class for all pipeline errors."""


class MalformedRecord(WeatherPipelineError):
    """A line has the wrong field count or a non-integer numeric field."""

    def __init__(self, line, reason):
        self.line = line
        self.reason = reason
        super().__init__(f"malformed record {line!r}: {reason}")


class InvalidDate(WeatherPipelineError):
    """The date field is not an 8-digit YYYYMMDD calendar date."""

    def __init__(self, value):
        self.value = value
        super().__init__(f"invalid date {value!r}, expected YYYYMMDD")


class NoDataFound(WeatherPipelineError):
    """The ingestion directory holds no candidate files."""

    def __init__(self, path):
        self.path = path
        super().__init__(f"no data files found in {path}")


class FileIngestionError(WeatherPipelineError):
    """A file-level failure; carries the counts gathered before it happened."""

    def __init__(self, message, file_result=None):
        self.file_result = file_result
        super().__init__(message)


class FlushFailure(FileIngestionError):
    """A transactional batch upsert failed."""


class StationLookupOrCreateFailure(FileIngestionError):
    """The station row could not be looked up or created."""


class IngestionCancelled(FileIngestionError):
    """The cancel signal was observed before a flush."""
