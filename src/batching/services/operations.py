"""Conversion of service exceptions into operation results."""

from __future__ import annotations

import logging
from typing import Callable

from ..errors import BatchingError
from ..models.results import OperationResult

logger = logging.getLogger(__name__)


def run_operation(description: str, func: Callable[[], OperationResult]) -> OperationResult:
    """Run ``func`` and report any failure as a failed ``OperationResult``."""
    try:
        return func()
    except BatchingError as exc:
        logger.warning(f"Failed to {description}: [{exc.code}] {exc.message}")
        return OperationResult.from_error(exc)
    except Exception as exc:
        logger.exception(f"Unexpected error while trying to {description}: {exc}")
        return OperationResult.fail(f"Failed to {description}: {exc}", error="internal")
