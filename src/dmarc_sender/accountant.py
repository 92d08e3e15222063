# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Persistent error accounting and report deletion.

Every recordable delivery failure is appended to the report's error trail
in the queue. Once the trail reaches ``MAX_ERRORS`` entries the report is
abandoned and deleted; below that it stays queued for the next run.
"""

from __future__ import annotations

import logging
from typing import Any

from .logger import get_logger, log_event

MAX_ERRORS = 12


class ErrorAccountant:
    """Tracks per-report failures and enforces the deletion threshold.

    Attributes:
        queue: Report queue providing ``record_error`` and ``delete_report``.
        threshold: Error count at which a report is abandoned.
    """

    def __init__(self, queue: Any, *, metrics: Any = None, logger=None, threshold: int = MAX_ERRORS):
        self.queue = queue
        self.metrics = metrics
        self.logger = logger or get_logger("ErrorAccountant")
        self.threshold = threshold
        self._deleted: set[str] = set()

    async def record_error(self, report_id: str, message: str) -> int:
        """Append ``message`` to the report's error trail and return the new total."""
        count = await self.queue.record_error(report_id, message)
        log_event(
            self.logger, "error_recorded",
            level=logging.WARNING, report_id=report_id, count=count, error=message,
        )
        return count

    async def enforce_threshold(self, report_id: str, count: int) -> bool:
        """Delete the report if ``count`` reached the threshold.

        Returns:
            True if the report was deleted.
        """
        if count < self.threshold:
            return False
        log_event(
            self.logger, "report_abandoned",
            level=logging.ERROR, report_id=report_id, errors=count, threshold=self.threshold,
        )
        await self.delete_report(report_id, reason="threshold")
        return True

    async def delete_report(self, report_id: str, reason: str = "delivered") -> bool:
        """Remove the report from the queue. Repeated calls are no-ops.

        Returns:
            True if this call removed the report.
        """
        if report_id in self._deleted:
            return False
        removed = await self.queue.delete_report(report_id)
        self._deleted.add(report_id)
        if removed:
            if self.metrics is not None:
                self.metrics.inc_deleted(reason)
            log_event(self.logger, "report_deleted", report_id=report_id, reason=reason)
        return bool(removed)
