# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Run driver: walks the report queue and decides each report's fate.

Reports are processed strictly one after the other. For each report:

1. A deadline of ``per_report_timeout`` seconds is armed with
   ``asyncio.wait_for``; expiry cancels the in-flight attempt.
2. The planner resolves the endpoints. An unroutable report is deleted.
3. If the payload exceeds every endpoint's cap, a short notice goes to the
   mail endpoints and the report is deleted whatever the notice's fate.
4. Otherwise each endpoint that fits is tried in ``rua`` order. A permanent
   rejection deletes the report and stops there.
5. One success is enough to delete the report. When every attempt failed
   the recordable failures are written to the error trail and the report
   is deleted once it has accumulated ``MAX_ERRORS`` errors.

After every ``batch_size`` processed reports the scheduler pauses for
``inter_batch_delay`` seconds. A report that raises is logged and skipped;
only a failure to read the queue aborts the run.

Example:
    One run with the configured parameters::

        scheduler = build_scheduler(load_config("config.ini"))
        summary = await scheduler.run_once()
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum

from .accountant import ErrorAccountant
from .config_loader import SenderConfig
from .context import DeliveryContext, ReportState
from .logger import get_logger, log_event
from .models import AggregateReport, FailureKind, Unroutable
from .persistence import Persistence
from .planner import DeliveryPlan, DeliveryPlanner
from .signer import DkimSigner
from .transport import TransportDispatcher


class Disposition(str, Enum):
    """What happened to a report at the end of its turn."""

    DELIVERED = "delivered"
    DELETED = "deleted"
    DEFERRED = "deferred"
    FAILED = "failed"


@dataclass
class RunSummary:
    """Per-disposition report counts for one run."""

    delivered: int = 0
    deleted: int = 0
    deferred: int = 0
    failed: int = 0
    pauses: int = 0

    @property
    def processed(self) -> int:
        return self.delivered + self.deleted + self.deferred + self.failed

    def add(self, disposition: Disposition) -> None:
        match disposition:
            case Disposition.DELIVERED:
                self.delivered += 1
            case Disposition.DELETED:
                self.deleted += 1
            case Disposition.DEFERRED:
                self.deferred += 1
            case Disposition.FAILED:
                self.failed += 1


class BatchScheduler:
    """Sequential delivery of queued reports with throttling and deadlines.

    Attributes:
        context: Run context shared with the other components.
        planner: Resolves endpoints and splits them by size.
        dispatcher: Delivers a payload to one endpoint.
        accountant: Records errors and deletes reports.
    """

    def __init__(
        self,
        context: DeliveryContext,
        planner: DeliveryPlanner,
        dispatcher: TransportDispatcher,
        accountant: ErrorAccountant,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.context = context
        self.planner = planner
        self.dispatcher = dispatcher
        self.accountant = accountant
        self.logger = context.logger
        self._sleep = sleep

    async def run_once(self) -> RunSummary:
        """Deliver everything currently queued using the configured parameters.

        Raises:
            Exception: Whatever the queue raises when it cannot be read.
        """
        queue = self.context.queue
        await queue.init_db()
        reports = await queue.retrieve_todo()
        log_event(self.logger, "run_started", reports=len(reports))
        sending = self.context.config.sending
        summary = await self.run(
            reports,
            batch_size=sending.batch_size,
            inter_batch_delay=sending.delay,
            per_report_timeout=sending.timeout,
        )
        if self.context.metrics is not None:
            self.context.metrics.set_pending(await queue.count_reports())
        return summary

    async def run(
        self,
        reports: Iterable[AggregateReport],
        batch_size: int = 1,
        inter_batch_delay: float = 5,
        per_report_timeout: float | None = 60,
    ) -> RunSummary:
        """Process ``reports`` in order.

        Args:
            reports: Reports to deliver, typically ``queue.retrieve_todo()``.
            batch_size: Number of reports between two pauses.
            inter_batch_delay: Pause length in seconds; 0 disables pausing.
            per_report_timeout: Deadline for one report in seconds; None or
                0 disables it.

        Returns:
            Counts of delivered, deleted, deferred and failed reports.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        summary = RunSummary()
        for report in reports:
            disposition = await self._guarded(report, per_report_timeout)
            summary.add(disposition)
            if inter_batch_delay > 0 and summary.processed % batch_size == 0:
                log_event(self.logger, "batch_pause", processed=summary.processed, seconds=inter_batch_delay)
                summary.pauses += 1
                await self._sleep(inter_batch_delay)
        log_event(
            self.logger, "run_finished",
            processed=summary.processed, delivered=summary.delivered, deleted=summary.deleted,
            deferred=summary.deferred, failed=summary.failed,
        )
        return summary

    async def _guarded(self, report: AggregateReport, timeout: float | None) -> Disposition:
        state = ReportState(report=report)
        try:
            try:
                return await asyncio.wait_for(self.process_report(state), timeout=timeout or None)
            except asyncio.TimeoutError:
                return await self._timed_out(state, timeout)
        except Exception:
            self.logger.exception("Unhandled error while delivering report %s", report.report_id)
            return Disposition.FAILED

    async def _timed_out(self, state: ReportState, timeout: float | None) -> Disposition:
        log_event(
            self.logger, "report_timeout",
            level=logging.WARNING, report_id=state.report_id, seconds=timeout, sent=state.sent_count,
        )
        if state.deleted:
            return Disposition.DELETED
        if state.oversized:
            await self._delete(state, FailureKind.OVERSIZED.value)
            return Disposition.DELETED
        if state.sent_count > 0:
            await self._delete(state, "delivered")
            return Disposition.DELIVERED
        if self.context.metrics is not None:
            self.context.metrics.inc_error(FailureKind.TIMEOUT.value)
        count = await self.accountant.record_error(
            state.report_id, f"{FailureKind.TIMEOUT.value}: no delivery within {timeout}s"
        )
        if await self.accountant.enforce_threshold(state.report_id, count):
            state.deleted = True
            return Disposition.DELETED
        return Disposition.DEFERRED

    async def _delete(self, state: ReportState, reason: str) -> None:
        await self.accountant.delete_report(state.report_id, reason=reason)
        state.deleted = True

    async def process_report(self, state: ReportState) -> Disposition:
        """Deliver one report without a deadline. ``state`` is updated in place."""
        report = state.report
        try:
            plan = self.planner.plan(report)
        except Unroutable as exc:
            log_event(
                self.logger, "report_unroutable",
                level=logging.WARNING, report_id=report.report_id, rua=exc.rua,
            )
            await self._delete(state, FailureKind.UNROUTABLE.value)
            return Disposition.DELETED

        if plan.all_too_big:
            return await self._oversized(state, plan)

        for endpoint in plan.endpoints:
            outcome = await self.dispatcher.dispatch(endpoint, plan.payload, state)
            if outcome.failure is FailureKind.PERMANENT_REJECTION:
                log_event(
                    self.logger, "report_rejected",
                    level=logging.WARNING, report_id=report.report_id, endpoint=endpoint.uri,
                    code=outcome.smtp_code,
                )
                await self._delete(state, "rejected")
                return Disposition.DELETED

        if state.sent_count > 0:
            await self._delete(state, "delivered")
            return Disposition.DELIVERED

        for outcome in state.outcomes:
            if outcome.failure is None or not outcome.failure.recordable:
                continue
            count = await self.accountant.record_error(
                report.report_id, f"{outcome.failure.value}: {outcome.endpoint.uri}: {outcome.reason}"
            )
            if await self.accountant.enforce_threshold(report.report_id, count):
                state.deleted = True
                return Disposition.DELETED
        return Disposition.DEFERRED

    async def _oversized(self, state: ReportState, plan: DeliveryPlan) -> Disposition:
        state.oversized = True
        for endpoint in plan.notice_endpoints:
            await self.dispatcher.send_notice(endpoint, state, plan.byte_length)
        await self._delete(state, FailureKind.OVERSIZED.value)
        return Disposition.DELETED


def build_scheduler(config: SenderConfig, metrics=None, logger: logging.Logger | None = None) -> BatchScheduler:
    """Wire the default components for ``config``.

    Raises:
        SigningError: If signing is configured but the key cannot be loaded.
    """
    logger = logger or get_logger("DmarcSender")
    context = DeliveryContext(
        config=config,
        queue=Persistence(config.db_path),
        metrics=metrics,
        logger=logger,
    )
    signer = DkimSigner.from_config(config.signing, default_domain=config.organization.domain)
    return BatchScheduler(
        context,
        DeliveryPlanner(logger=logger),
        TransportDispatcher(context, signer=signer),
        ErrorAccountant(context.queue, metrics=metrics, logger=logger),
    )
