# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Assembly of the outgoing report messages.

Two kinds of message are built here:

- the aggregate report itself, a short text part plus the gzip payload
  attached as ``<submitter>!<policy domain>!<begin>!<end>.xml.gz``;
- the "report too large" notice (RFC 7489 section 7.2.2), sent when a
  report exceeds every recipient's size cap.

Messages are serialised with CRLF line endings so the bytes can be DKIM
signed and handed to the SMTP session unchanged.
"""

from __future__ import annotations

import email.policy
from email.message import EmailMessage
from email.utils import formatdate, make_msgid

from .config_loader import OrganizationConfig
from .models import AggregateReport, MailEndpoint


def report_filename(report: AggregateReport, organization: OrganizationConfig) -> str:
    return f"{organization.domain}!{report.domain}!{report.begin}!{report.end}.xml.gz"


def report_subject(report: AggregateReport, organization: OrganizationConfig) -> str:
    return (
        f"Report Domain: {report.domain} Submitter: {organization.domain} "
        f"Report-ID: <{report.report_id}>"
    )


def _base_message(organization: OrganizationConfig, to: str, subject: str) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = organization.email
    msg["To"] = to
    msg["Subject"] = subject
    msg["Date"] = formatdate(localtime=False, usegmt=True)
    msg["Message-ID"] = make_msgid(domain=organization.domain)
    return msg


def build_report_message(
    report: AggregateReport,
    endpoint: MailEndpoint,
    payload: bytes,
    organization: OrganizationConfig,
) -> bytes:
    """Build the report email for one recipient.

    Args:
        report: The report being delivered.
        endpoint: Recipient endpoint; its address goes in ``To``.
        payload: The gzip-compressed report.
        organization: Submitter identity.

    Returns:
        The serialised message, CRLF line endings.
    """
    msg = _base_message(organization, endpoint.address, report_subject(report, organization))
    msg.set_content(
        f"This is a DMARC aggregate report for {report.domain}\n"
        f"\n"
        f"Submitted by {organization.org_name} ({organization.domain})\n"
        f"Report-ID: {report.report_id}\n"
    )
    msg.add_attachment(
        payload,
        maintype="application",
        subtype="gzip",
        filename=report_filename(report, organization),
    )
    return msg.as_bytes(policy=email.policy.SMTP)


def build_too_big_notice(
    report: AggregateReport,
    endpoint: MailEndpoint,
    byte_length: int,
    organization: OrganizationConfig,
) -> bytes:
    """Build the short notice telling a recipient its report was too large."""
    msg = _base_message(
        organization,
        endpoint.address,
        f"DMARC report for {report.domain} too large",
    )
    msg.set_content(
        f"Report-Date: {formatdate(localtime=False, usegmt=True)}\n"
        f"Report-Domain: {report.domain}\n"
        f"Report-ID: {report.report_id}\n"
        f"Report-Size: {byte_length}\n"
        f"Submitter: {organization.domain}\n"
        f"Submitting-URI: {endpoint.uri}\n"
    )
    return msg.as_bytes(policy=email.policy.SMTP)
