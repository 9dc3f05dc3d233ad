"""Optimistic concurrency helpers.

Mutating operations are written as a read-check-write closure that is
re-run from a fresh read whenever storage reports a version conflict.
"""

import logging
import time
from typing import Callable, TypeVar

from gigsettle.config import SettlementConfig
from gigsettle.errors import ConcurrencyConflict
from gigsettle.types import VersionConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_on_conflict(
    operation: Callable[[], T],
    config: SettlementConfig,
    label: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run operation, retrying on VersionConflictError with exponential backoff.

    Raises ConcurrencyConflict (retryable) once config.max_conflict_retries
    retries are used up. Any other exception propagates unchanged.
    """
    attempt = 0
    while True:
        try:
            return operation()
        except VersionConflictError as e:
            if attempt >= config.max_conflict_retries:
                logger.warning(f"{label}: giving up after {attempt + 1} attempts ({e})")
                raise ConcurrencyConflict(
                    f"Concurrent modification of {e.table}/{e.record_id}; retry the request"
                ) from e
            delay = config.conflict_backoff_seconds * (2**attempt)
            logger.debug(f"{label}: version conflict, retrying in {delay:.3f}s ({e})")
            attempt += 1
            if delay > 0:
                sleep(delay)
