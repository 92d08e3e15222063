# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Delivery planning: endpoint resolution and size-limit enforcement.

The ``rua`` tag of a DMARC record is a comma-separated list of URIs, each
optionally followed by ``!<size>`` where size is a byte count with an
optional ``k``, ``m``, ``g`` or ``t`` unit (powers of 1024)::

    rua=mailto:dmarc@example.com!10m,https://reports.example.net/dmarc

Endpoints are parsed once into ``MailEndpoint`` or ``WebEndpoint`` values.
Unsupported schemes are ignored. A report whose ``rua`` yields no endpoint
at all is unroutable.

The payload is compressed once per report and its length is checked against
each endpoint's cap.
"""

from __future__ import annotations

import gzip
import re
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import unquote

from .logger import get_logger, log_event
from .models import AggregateReport, DeliveryEndpoint, MailEndpoint, Unroutable, WebEndpoint

_SIZE_SUFFIX = re.compile(r"^(?P<uri>.+)!(?P<size>\d+)(?P<unit>[kmgt]?)$", re.IGNORECASE)
_UNITS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4}


class SizeCheck(str, Enum):
    FITS = "fits"
    TOO_BIG = "too_big"


def compress(payload: str) -> bytes:
    """Gzip the report payload. Output is byte-for-byte reproducible."""
    return gzip.compress(payload.encode("utf-8"), mtime=0)


def parse_endpoint(text: str) -> DeliveryEndpoint | None:
    """Parse one ``rua`` entry, or return None if it is not deliverable."""
    text = text.strip()
    if not text:
        return None
    max_bytes = None
    if "!" in text:
        match = _SIZE_SUFFIX.match(text)
        if not match:
            return None
        uri = match.group("uri")
        max_bytes = int(match.group("size")) * _UNITS[match.group("unit").lower()]
    else:
        uri = text
    scheme, sep, rest = uri.partition(":")
    if not sep:
        return None
    match scheme.lower():
        case "mailto":
            address = unquote(rest.split("?", 1)[0]).strip()
            local, at, domain = address.rpartition("@")
            if not at or not local or not domain or "." not in domain:
                return None
            return MailEndpoint(address=address, max_bytes=max_bytes, uri=uri)
        case "http" | "https":
            if not rest.startswith("//") or len(rest) <= 2:
                return None
            return WebEndpoint(url=uri, max_bytes=max_bytes, uri=uri)
        case _:
            return None


@dataclass
class DeliveryPlan:
    """The endpoints of one report split by whether the payload fits.

    Attributes:
        endpoints: Endpoints the compressed payload fits, in ``rua`` order.
        too_big: Endpoints whose cap is smaller than the payload.
        payload: Gzip-compressed report.
        byte_length: Length of ``payload``.
    """

    endpoints: list[DeliveryEndpoint] = field(default_factory=list)
    too_big: list[DeliveryEndpoint] = field(default_factory=list)
    payload: bytes = b""
    byte_length: int = 0

    @property
    def all_too_big(self) -> bool:
        return not self.endpoints and bool(self.too_big)

    @property
    def notice_endpoints(self) -> list[MailEndpoint]:
        """Too-big endpoints that can receive the short notice (mail only)."""
        return [ep for ep in self.too_big if isinstance(ep, MailEndpoint)]


class DeliveryPlanner:
    """Resolves destinations for a report and enforces per-endpoint size caps."""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("DeliveryPlanner")

    def resolve_endpoints(self, report: AggregateReport) -> list[DeliveryEndpoint]:
        """Parse the report's ``rua`` into an ordered list of endpoints.

        Raises:
            Unroutable: If ``rua`` is empty or contains no usable endpoint.
        """
        rua = report.rua
        if not rua or not rua.strip():
            raise Unroutable(report.report_id, rua)
        endpoints: list[DeliveryEndpoint] = []
        for entry in rua.split(","):
            if not entry.strip():
                continue
            endpoint = parse_endpoint(entry)
            if endpoint is None:
                log_event(
                    self.logger, "endpoint_ignored",
                    report_id=report.report_id, uri=entry.strip(),
                )
                continue
            if endpoint not in endpoints:
                endpoints.append(endpoint)
        if not endpoints:
            raise Unroutable(report.report_id, rua)
        return endpoints

    @staticmethod
    def check_size(endpoint: DeliveryEndpoint, byte_length: int) -> SizeCheck:
        if endpoint.max_bytes is not None and byte_length > endpoint.max_bytes:
            return SizeCheck.TOO_BIG
        return SizeCheck.FITS

    def plan(self, report: AggregateReport) -> DeliveryPlan:
        """Resolve endpoints, compress once, and split by size.

        Raises:
            Unroutable: Propagated from ``resolve_endpoints``.
        """
        endpoints = self.resolve_endpoints(report)
        payload = compress(report.xml)
        plan = DeliveryPlan(payload=payload, byte_length=len(payload))
        for endpoint in endpoints:
            if self.check_size(endpoint, plan.byte_length) is SizeCheck.TOO_BIG:
                log_event(
                    self.logger, "endpoint_too_big",
                    report_id=report.report_id, endpoint=endpoint.uri,
                    bytes=plan.byte_length, max_bytes=endpoint.max_bytes,
                )
                plan.too_big.append(endpoint)
            else:
                plan.endpoints.append(endpoint)
        return plan
