# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Explicit run and per-report state passed between delivery components.

``DeliveryContext`` carries the collaborators shared by a run (configuration,
queue, metrics, logger). ``ReportState`` carries the mutable bookkeeping of
the report currently being delivered. Components receive these values as
arguments rather than reading module-level state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from .config_loader import SenderConfig
from .logger import get_logger
from .models import AggregateReport, DeliveryOutcome


@dataclass
class DeliveryContext:
    config: SenderConfig
    queue: Any
    metrics: Any = None
    logger: logging.Logger = field(default_factory=lambda: get_logger("DmarcSender"))

    @property
    def reporter_email(self) -> str:
        return self.config.organization.email


@dataclass
class ReportState:
    """Bookkeeping for one report while it is being delivered.

    Attributes:
        report: The report being delivered.
        sent_count: Number of endpoints that accepted the report.
        cc_sent: Whether the carbon-copy recipient has been submitted.
        deleted: Whether the report has been removed from the queue.
        oversized: Whether the report was found too big for every endpoint.
        outcomes: Outcomes of the attempts made so far, in order.
    """

    report: AggregateReport
    sent_count: int = 0
    cc_sent: bool = False
    deleted: bool = False
    oversized: bool = False
    outcomes: list[DeliveryOutcome] = field(default_factory=list)

    @property
    def report_id(self) -> str:
        return self.report.report_id

    def add(self, outcome: DeliveryOutcome) -> DeliveryOutcome:
        self.outcomes.append(outcome)
        if outcome.success:
            self.sent_count += 1
        return outcome
