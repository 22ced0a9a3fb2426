#!/usr/bin/env python3
"""
circuit_breaker.py - Suppress opportunity types that keep failing

Looks at the last few outcomes recorded for a type. If most of them failed
(missing privilege, missing tool, ...) the type is skipped for this cycle
only; the check runs again next cycle, so a later success clears it.
"""

import logging
from typing import Sequence

from state_store import OptimizationHistoryEntry

logger = logging.getLogger(__name__)

WINDOW = 3
FAILURE_THRESHOLD = 2


def recent_outcomes(
    history: Sequence[OptimizationHistoryEntry],
    opt_type: str,
    window: int = WINDOW
) -> list:
    """Most recent `window` entries of a type, oldest first."""
    matching = [entry for entry in history if entry.type == opt_type]
    return matching[-window:]


def should_skip(
    history: Sequence[OptimizationHistoryEntry],
    opt_type: str,
    window: int = WINDOW,
    threshold: int = FAILURE_THRESHOLD
) -> bool:
    recent = recent_outcomes(history, opt_type, window)
    failures = sum(1 for entry in recent if not entry.outcome.success)
    if failures >= threshold:
        logger.warning(
            f"Skipping {opt_type}: {failures} of last {len(recent)} attempts failed"
        )
        return True
    return False
