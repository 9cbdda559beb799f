from .catalog import MetricCatalog
from .daily_metrics import DailyMetricStore
from .database import MetricStorageError, SQLiteHealthDB
from .extraction_log import ExtractionLog
from .service import CorrectionOutcome, IngestOutcome, MetricService
from .training import TrainingSampleRecorder

__all__ = [
    "CorrectionOutcome",
    "DailyMetricStore",
    "ExtractionLog",
    "IngestOutcome",
    "MetricCatalog",
    "MetricService",
    "MetricStorageError",
    "SQLiteHealthDB",
    "TrainingSampleRecorder",
]
