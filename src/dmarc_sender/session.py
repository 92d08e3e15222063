# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Stepwise SMTP session used for one report delivery attempt.

``SmtpSession`` wraps an ``aiosmtplib.SMTP`` client and exposes the SMTP
transaction as explicit steps, each moving the session forward one state::

    DISCONNECTED -> CONNECTED -> SENDER_ACCEPTED -> RECIPIENT_ACCEPTED
                 -> DATA_SENT -> CLOSED

Refusals are raised as ``SenderRejected``, ``RecipientRejected`` or
``BodyRejected`` carrying the SMTP reply code. Network failures propagate as
the underlying ``aiosmtplib``/``OSError`` exceptions. ``close()`` may be
called from any state and swallows transport errors.

Connection establishment tries STARTTLS first and falls back to a plain
connection. There is no pooling: a session lives for a single attempt.

Example:
    Delivering one message::

        session = SmtpSession(port=25, timeout=30)
        if await session.connect("mx.example.com") is None:
            ...  # host unreachable
        try:
            await session.submit_sender("dmarc@receiver.example")
            await session.submit_recipient("rua@example.com")
            line = await session.submit_body(message_bytes)
        finally:
            await session.close()
"""

from __future__ import annotations

import asyncio
from enum import Enum

import aiosmtplib
import dns.asyncresolver
import dns.resolver

from .logger import get_logger
from .models import BodyRejected, RecipientRejected, SenderRejected, SessionStateError


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    SENDER_ACCEPTED = "sender_accepted"
    RECIPIENT_ACCEPTED = "recipient_accepted"
    DATA_SENT = "data_sent"
    CLOSED = "closed"


class SmtpSession:
    """One SMTP transaction against one host.

    Attributes:
        port: SMTP port to connect to.
        timeout: Per-command timeout in seconds.
        local_hostname: Name announced in EHLO, or None for the default.
        validate_certs: Verify the server certificate during STARTTLS.
        state: Current protocol state.
        host: Host the session is connected to, once connected.
        secure: Whether the connection was upgraded with STARTTLS.
    """

    def __init__(
        self,
        *,
        port: int = 25,
        timeout: float = 30.0,
        local_hostname: str | None = None,
        validate_certs: bool = False,
        logger=None,
    ):
        self.port = port
        self.timeout = timeout
        self.local_hostname = local_hostname
        self.validate_certs = validate_certs
        self.logger = logger or get_logger("SmtpSession")
        self.state = SessionState.DISCONNECTED
        self.host: str | None = None
        self.secure = False
        self._smtp: aiosmtplib.SMTP | None = None

    def _require(self, *states: SessionState) -> None:
        if self.state not in states:
            expected = ", ".join(s.value for s in states)
            raise SessionStateError(f"session is {self.state.value}, expected {expected}")

    async def _open(self, host: str, *, start_tls: bool) -> aiosmtplib.SMTP:
        smtp = aiosmtplib.SMTP(
            hostname=host,
            port=self.port,
            use_tls=False,
            start_tls=start_tls,
            validate_certs=self.validate_certs,
            local_hostname=self.local_hostname,
            timeout=self.timeout,
        )
        try:
            # aiosmtplib applies its timeout per read; bound the whole handshake too
            await asyncio.wait_for(smtp.connect(), timeout=self.timeout + 5.0)
        except BaseException:
            smtp.close()
            raise
        return smtp

    async def connect(self, host: str) -> SmtpSession | None:
        """Connect to ``host``, STARTTLS first, plain second.

        Returns:
            The session itself when either attempt succeeds, None when both
            fail.
        """
        self._require(SessionState.DISCONNECTED)
        for secure in (True, False):
            try:
                smtp = await self._open(host, start_tls=secure)
            except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as exc:
                self.logger.debug(
                    "%s connection to %s:%s failed: %s",
                    "STARTTLS" if secure else "Plain",
                    host,
                    self.port,
                    exc,
                )
                continue
            self._smtp = smtp
            self.host = host
            self.secure = secure
            self.state = SessionState.CONNECTED
            return self
        return None

    async def submit_sender(self, sender: str) -> None:
        """Send ``MAIL FROM``.

        Raises:
            SenderRejected: If the server refuses the sender.
        """
        self._require(SessionState.CONNECTED)
        try:
            await self._smtp.mail(sender)
        except aiosmtplib.SMTPResponseException as exc:
            raise SenderRejected(exc.code, exc.message) from exc
        self.state = SessionState.SENDER_ACCEPTED

    async def submit_recipient(self, recipient: str) -> None:
        """Send ``RCPT TO``. May be called again for additional recipients.

        Raises:
            RecipientRejected: If the server refuses the recipient. Check
                ``is_permanent`` for a 5xx reply.
        """
        self._require(SessionState.SENDER_ACCEPTED, SessionState.RECIPIENT_ACCEPTED)
        try:
            await self._smtp.rcpt(recipient)
        except aiosmtplib.SMTPResponseException as exc:
            raise RecipientRejected(exc.code, exc.message) from exc
        self.state = SessionState.RECIPIENT_ACCEPTED

    async def submit_body(self, body: bytes) -> str:
        """Send ``DATA`` and the message.

        Returns:
            The server's acceptance line, e.g. ``"250 2.0.0 Ok: queued as X"``.

        Raises:
            BodyRejected: If the server refuses the message.
        """
        self._require(SessionState.RECIPIENT_ACCEPTED)
        try:
            response = await self._smtp.data(body)
        except aiosmtplib.SMTPResponseException as exc:
            raise BodyRejected(exc.code, exc.message) from exc
        self.state = SessionState.DATA_SENT
        return f"{response.code} {response.message}".strip()

    async def close(self) -> None:
        """Terminate the session. Idempotent; only cancellation propagates."""
        smtp, self._smtp = self._smtp, None
        self.state = SessionState.CLOSED
        if smtp is None:
            return
        try:
            await asyncio.wait_for(smtp.quit(), timeout=min(self.timeout, 5.0))
        except asyncio.CancelledError:
            smtp.close()
            raise
        except Exception:
            smtp.close()


async def resolve_mail_hosts(domain: str, resolver: dns.asyncresolver.Resolver | None = None) -> list[str]:
    """Return the mail exchangers for ``domain`` in preference order.

    Falls back to the domain itself when it has no MX record. A null MX
    (``MX 0 .``) or a nonexistent domain yields an empty list.

    Raises:
        dns.exception.DNSException: On lookup failures other than
            NXDOMAIN / no answer (timeouts, SERVFAIL).
    """
    resolver = resolver or dns.asyncresolver.get_default_resolver()
    try:
        answer = await resolver.resolve(domain, "MX")
    except dns.resolver.NXDOMAIN:
        return []
    except dns.resolver.NoAnswer:
        return [domain]
    records = sorted(answer, key=lambda r: (r.preference, r.exchange.to_text()))
    hosts = [r.exchange.to_text(omit_final_dot=True) for r in records]
    return [host for host in hosts if host and host != "."]
