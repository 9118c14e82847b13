"""jobspine core: errors, logging, settings, timestamps, and the dispatch core.

Architecture::

    errors.py          Structured error hierarchy (JobSpineError, StoreUnavailable)
    logging.py         structlog configuration, get_logger, LogContext
    settings.py        DispatchSettings (JOBSPINE_* environment)
    timestamps.py      UTC and epoch-second helpers, job id generation
    scheduling/        Cron engine, envelope codec, claim store, dispatchers
"""

from jobspine.core.errors import (
    CronError,
    InvalidExpression,
    JobSpineError,
    MalformedEnvelope,
    NoMatchFound,
    StoreUnavailable,
)

__all__ = [
    "JobSpineError",
    "StoreUnavailable",
    "MalformedEnvelope",
    "CronError",
    "InvalidExpression",
    "NoMatchFound",
]
