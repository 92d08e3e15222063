# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery of one report to one endpoint.

``TransportDispatcher.dispatch`` picks the transport from the endpoint
variant decided at parse time:

- ``MailEndpoint``: build the report email and deliver it through an
  ``SmtpSession`` to the configured smarthost or the recipient's MX hosts.
  The configured carbon-copy address is submitted before the primary
  recipient, at most once per report. The message is DKIM signed when a
  signer is configured.
- ``WebEndpoint``: POST the gzip payload. Only a 2xx response counts as
  delivered.

Transport failures never raise out of ``dispatch``; they are returned as a
``DeliveryOutcome`` tagged with a ``FailureKind``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

import aiohttp
import aiosmtplib
import dns.exception

from .context import DeliveryContext, ReportState
from .logger import log_event
from .message import build_report_message, build_too_big_notice, report_filename
from .models import (
    BodyRejected,
    DeliveryEndpoint,
    DeliveryOutcome,
    FailureKind,
    MailEndpoint,
    RecipientRejected,
    SenderRejected,
    SigningError,
    WebEndpoint,
)
from .session import SmtpSession, resolve_mail_hosts
from .signer import DkimSigner


def _classify_session_error(exc: Exception) -> tuple[FailureKind, int | None]:
    """Map a session-layer exception to a failure kind and SMTP code."""
    match exc:
        case RecipientRejected() if exc.is_permanent:
            return FailureKind.PERMANENT_REJECTION, exc.smtp_code
        case SenderRejected() | RecipientRejected() | BodyRejected():
            return FailureKind.TRANSIENT_REJECTION, exc.smtp_code
        case aiosmtplib.SMTPResponseException():
            return FailureKind.TRANSIENT_REJECTION, exc.code
        case _:
            return FailureKind.CONNECT_FAILURE, None


class TransportDispatcher:
    """Sends a report body to a single endpoint.

    Attributes:
        context: Run context (configuration, metrics, logger).
        signer: Optional DKIM signer applied to every outgoing email.
    """

    def __init__(
        self,
        context: DeliveryContext,
        *,
        signer: DkimSigner | None = None,
        session_factory: Callable[[], SmtpSession] | None = None,
        resolve_hosts: Callable[[str], Awaitable[list[str]]] | None = None,
    ):
        self.context = context
        self.signer = signer
        self.logger = context.logger
        self._session_factory = session_factory or self._default_session
        self._resolve_hosts = resolve_hosts or resolve_mail_hosts

    def _default_session(self) -> SmtpSession:
        smtp = self.context.config.smtp
        return SmtpSession(
            port=smtp.port,
            timeout=smtp.timeout,
            local_hostname=smtp.hostname or self.context.config.organization.domain,
            validate_certs=smtp.validate_certs,
            logger=self.logger,
        )

    # ------------------------------------------------------------------ public
    async def dispatch(self, endpoint: DeliveryEndpoint, body: bytes, state: ReportState) -> DeliveryOutcome:
        """Attempt delivery of the compressed report to ``endpoint``.

        The outcome is appended to ``state``; a success increments
        ``state.sent_count``.
        """
        log_event(
            self.logger, "delivery_attempt",
            report_id=state.report_id, scheme=endpoint.scheme.value, endpoint=endpoint.uri,
            bytes=len(body),
        )
        match endpoint:
            case MailEndpoint():
                message = build_report_message(
                    state.report, endpoint, body, self.context.config.organization
                )
                outcome = await self._send_mail(endpoint, message, state, include_cc=True)
            case WebEndpoint():
                outcome = await self._send_web(endpoint, body, state)
            case _:
                raise TypeError(f"unsupported endpoint type: {type(endpoint).__name__}")
        state.add(outcome)
        self._record(outcome, state)
        return outcome

    async def send_notice(self, endpoint: MailEndpoint, state: ReportState, byte_length: int) -> DeliveryOutcome:
        """Best-effort "report too large" notice. Does not count as delivery."""
        message = build_too_big_notice(
            state.report, endpoint, byte_length, self.context.config.organization
        )
        outcome = await self._send_mail(endpoint, message, state, include_cc=False)
        log_event(
            self.logger, "too_big_notice",
            report_id=state.report_id, endpoint=endpoint.uri, bytes=byte_length,
            sent=outcome.success, reason=outcome.reason,
        )
        return outcome

    # -------------------------------------------------------------------- mail
    async def _mail_hosts(self, endpoint: MailEndpoint) -> list[str]:
        smarthost = self.context.config.smtp.smarthost
        if smarthost:
            return [smarthost]
        return await self._resolve_hosts(endpoint.domain)

    async def _open_session(self, hosts: list[str]) -> SmtpSession | None:
        for host in hosts:
            session = self._session_factory()
            if await session.connect(host) is not None:
                return session
        return None

    async def _send_mail(
        self,
        endpoint: MailEndpoint,
        message: bytes,
        state: ReportState,
        *,
        include_cc: bool,
    ) -> DeliveryOutcome:
        try:
            hosts = await self._mail_hosts(endpoint)
        except dns.exception.DNSException as exc:
            return DeliveryOutcome.failed(
                endpoint, FailureKind.CONNECT_FAILURE, f"MX lookup for {endpoint.domain} failed: {exc}"
            )
        if not hosts:
            return DeliveryOutcome.failed(
                endpoint, FailureKind.CONNECT_FAILURE, f"no mail exchanger for {endpoint.domain}"
            )

        session = await self._open_session(hosts)
        if session is None:
            return DeliveryOutcome.failed(
                endpoint, FailureKind.CONNECT_FAILURE,
                f"no SMTP connection for {endpoint.domain} ({', '.join(hosts)})",
            )

        smtp_config = self.context.config.smtp
        try:
            await session.submit_sender(self.context.reporter_email)
            if include_cc and smtp_config.cc_enabled and not state.cc_sent:
                state.cc_sent = True
                try:
                    await session.submit_recipient(smtp_config.cc)
                except RecipientRejected as exc:
                    log_event(
                        self.logger, "cc_rejected",
                        level=logging.WARNING, report_id=state.report_id, cc=smtp_config.cc,
                        code=exc.smtp_code, reason=exc.message,
                    )
            await session.submit_recipient(endpoint.address)
            if self.signer is not None:
                try:
                    message = self.signer.sign_message(message)
                except SigningError as exc:
                    return DeliveryOutcome.failed(endpoint, FailureKind.SIGNING_FAILURE, str(exc))
            accepted = await session.submit_body(message)
        except (SenderRejected, RecipientRejected, BodyRejected,
                aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
            kind, code = _classify_session_error(exc)
            return DeliveryOutcome.failed(
                endpoint, kind, f"{session.host}: {exc}", smtp_code=code
            )
        finally:
            await session.close()
        return DeliveryOutcome.ok(endpoint, f"{session.host}: {accepted}")

    # --------------------------------------------------------------------- web
    async def _send_web(self, endpoint: WebEndpoint, body: bytes, state: ReportState) -> DeliveryOutcome:
        filename = report_filename(state.report, self.context.config.organization)
        headers = {
            "Content-Type": "application/gzip",
            "Content-Disposition": f'attachment; filename="{filename}"',
        }
        timeout = aiohttp.ClientTimeout(total=self.context.config.sending.http_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(endpoint.url, data=body, headers=headers) as resp:
                    status = resp.status
                    reason = resp.reason or ""
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            return DeliveryOutcome.failed(
                endpoint, FailureKind.CONNECT_FAILURE, f"HTTP POST to {endpoint.url} failed: {exc}"
            )
        if 200 <= status < 300:
            return DeliveryOutcome.ok(endpoint, f"HTTP {status} {reason}".strip())
        return DeliveryOutcome.failed(
            endpoint, FailureKind.TRANSIENT_REJECTION, f"HTTP {status} {reason}".strip()
        )

    # ------------------------------------------------------------- observation
    def _record(self, outcome: DeliveryOutcome, state: ReportState) -> None:
        metrics = self.context.metrics
        if outcome.success:
            if metrics is not None:
                metrics.inc_sent(outcome.endpoint.scheme.value)
            log_event(
                self.logger, "delivery_succeeded",
                report_id=state.report_id, endpoint=outcome.endpoint.uri, response=outcome.reason,
            )
            return
        if metrics is not None:
            metrics.inc_error(outcome.failure.value)
        log_event(
            self.logger, "delivery_failed",
            level=logging.WARNING, report_id=state.report_id, endpoint=outcome.endpoint.uri,
            kind=outcome.failure.value, code=outcome.smtp_code, reason=outcome.reason,
        )
