# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Data models and error types for the DMARC report sender.

Models:
    - PublishedPolicy: Snapshot of the policy a report was generated under
    - AggregateReport: A queued aggregate report awaiting delivery
    - MailEndpoint / WebEndpoint: Delivery endpoint variants parsed from ``rua``
    - DeliveryOutcome: Result of one delivery attempt
    - FailureKind: Classification of delivery failures

Errors:
    - DeliveryError and its subclasses, raised inside the delivery pipeline
      and converted to ``DeliveryOutcome`` values at the transport edge.
    - PolicyError: Invalid DMARC policy record.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field


class FailureKind(str, Enum):
    """Classification of everything that can go wrong with a report."""

    UNROUTABLE = "unroutable"
    OVERSIZED = "oversized"
    CONNECT_FAILURE = "connect_failure"
    TRANSIENT_REJECTION = "transient_rejection"
    PERMANENT_REJECTION = "permanent_rejection"
    SIGNING_FAILURE = "signing_failure"
    TIMEOUT = "timeout"
    THRESHOLD_BREACH = "threshold_breach"

    @property
    def recordable(self) -> bool:
        """Whether this failure is added to the report's error trail."""
        return self in (
            FailureKind.CONNECT_FAILURE,
            FailureKind.TRANSIENT_REJECTION,
            FailureKind.TIMEOUT,
        )


# Errors ----------------------------------------------------------------------
class PolicyError(ValueError):
    """Raised when a DMARC policy record is missing a tag or has an invalid value."""


class DeliveryError(RuntimeError):
    """Base class for errors raised inside the delivery pipeline."""

    code = "delivery_error"


class Unroutable(DeliveryError):
    """Raised when a report's ``rua`` yields no usable endpoint."""

    code = "unroutable"

    def __init__(self, report_id: Any, rua: str | None):
        super().__init__(f"no valid rua for report {report_id}: {rua or '(empty)'}")
        self.report_id = report_id
        self.rua = rua


class SessionError(DeliveryError):
    """An SMTP session step was refused by the remote server."""

    code = "session_error"
    step = "session"

    def __init__(self, smtp_code: int | None, message: str):
        super().__init__(f"{self.step} rejected ({smtp_code}): {message}")
        self.smtp_code = smtp_code
        self.message = message

    @property
    def is_permanent(self) -> bool:
        """True for a 5xx reply code."""
        return self.smtp_code is not None and 500 <= self.smtp_code < 600


class SenderRejected(SessionError):
    code = "sender_rejected"
    step = "MAIL FROM"


class RecipientRejected(SessionError):
    code = "recipient_rejected"
    step = "RCPT TO"


class BodyRejected(SessionError):
    code = "body_rejected"
    step = "DATA"


class SessionStateError(DeliveryError):
    """A session step was invoked out of protocol order."""

    code = "session_state"


class SigningError(DeliveryError):
    """Raised when the DKIM key cannot be loaded or the message cannot be signed."""

    code = "signing_error"


# Reports ---------------------------------------------------------------------
class PublishedPolicy(BaseModel):
    """Snapshot of the policy published by the domain when the report was built.

    Only ``rua`` is needed for delivery; the other tags are kept as they were
    captured by the report generator.
    """

    model_config = ConfigDict(extra="allow")

    domain: str | None = None
    p: str | None = None
    sp: str | None = None
    adkim: str | None = None
    aspf: str | None = None
    pct: int | None = None
    rua: str | None = None

    @classmethod
    def from_record(cls, domain: str, record: Any) -> PublishedPolicy:
        """Capture the delivery-relevant tags of a ``PolicyRecord``."""
        return cls(
            domain=domain,
            p=record.p.value,
            sp=record.subdomain_policy.value,
            adkim=record.adkim.value,
            aspf=record.aspf.value,
            pct=record.pct,
            rua=record.rua,
        )


class AggregateReport(BaseModel):
    """A queued aggregate report.

    Attributes:
        report_id: Opaque identifier assigned by the queue.
        domain: The policy domain the report is about.
        policy_published: Policy snapshot; ``rua`` names the recipients.
        xml: The report payload, uncompressed.
        begin: Start of the reporting window (epoch seconds).
        end: End of the reporting window (epoch seconds).
        error_count: Number of delivery errors recorded so far.
        errors: The persisted error trail, oldest first.
    """

    model_config = ConfigDict(extra="forbid")

    report_id: Annotated[str, Field(min_length=1)]
    domain: Annotated[str, Field(min_length=1)]
    policy_published: PublishedPolicy = Field(default_factory=PublishedPolicy)
    xml: str
    begin: int = 0
    end: int = 0
    error_count: Annotated[int, Field(ge=0)] = 0
    errors: list[str] = Field(default_factory=list)

    @property
    def rua(self) -> str | None:
        return self.policy_published.rua


# Endpoints -------------------------------------------------------------------
class EndpointScheme(str, Enum):
    MAIL = "mail"
    WEB = "web"


@dataclass(frozen=True)
class MailEndpoint:
    """A ``mailto:`` report recipient."""

    address: str
    max_bytes: int | None = None
    uri: str = ""

    scheme = EndpointScheme.MAIL

    @property
    def domain(self) -> str:
        return self.address.rpartition("@")[2].lower()


@dataclass(frozen=True)
class WebEndpoint:
    """An ``http:``/``https:`` report recipient."""

    url: str
    max_bytes: int | None = None
    uri: str = ""

    scheme = EndpointScheme.WEB

    @property
    def address(self) -> str:
        return self.url


DeliveryEndpoint = MailEndpoint | WebEndpoint


@dataclass
class DeliveryOutcome:
    """Result of one delivery attempt to one endpoint."""

    endpoint: DeliveryEndpoint
    success: bool
    failure: FailureKind | None = None
    reason: str | None = None
    smtp_code: int | None = None

    @classmethod
    def ok(cls, endpoint: DeliveryEndpoint, reason: str | None = None) -> DeliveryOutcome:
        return cls(endpoint=endpoint, success=True, reason=reason)

    @classmethod
    def failed(
        cls,
        endpoint: DeliveryEndpoint,
        failure: FailureKind,
        reason: str,
        smtp_code: int | None = None,
    ) -> DeliveryOutcome:
        return cls(endpoint=endpoint, success=False, failure=failure, reason=reason, smtp_code=smtp_code)
