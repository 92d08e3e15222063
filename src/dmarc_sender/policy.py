# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""DMARC policy record model.

A DMARC record is published as a TXT resource record at ``_dmarc.<domain>``
and looks like this::

    v=DMARC1; p=reject; adkim=s; aspf=s; rua=mailto:dmarc@example.com; pct=100;

``PolicyRecord`` holds the parsed tags. ``v`` and ``p`` are required and have
no default; every other tag falls back to the RFC 7489 default. Values are
validated on construction and again on every assignment, so a record can
never be mutated into an invalid state.

Example:
    Parsing and inspecting a record::

        pol = PolicyRecord.parse("v=DMARC1; p=none; rua=mailto:dmarc@example.com")
        if pol.p is PolicyAction.NONE:
            print("take no action")
        if not pol.rua:
            print("do not send aggregate reports")

        pol.pct = 50        # validated
        pol.pct = 150       # raises PolicyError
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .models import PolicyError

DMARC_VERSION = "DMARC1"
FAILURE_OPTIONS = frozenset({"0", "1", "d", "s"})
REPORT_FORMATS = frozenset({"afrf", "iodef"})
MAX_REPORT_INTERVAL = 4294967295


class PolicyAction(str, Enum):
    """Requested handling for messages failing DMARC."""

    NONE = "none"
    QUARANTINE = "quarantine"
    REJECT = "reject"


class Alignment(str, Enum):
    """Identifier alignment mode; ``s`` is strict, anything else relaxed."""

    RELAXED = "r"
    STRICT = "s"


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    loc = ".".join(str(part) for part in err.get("loc", ()))
    return f"invalid {loc}: {err.get('msg')}" if loc else str(err.get("msg"))


class PolicyRecord(BaseModel):
    """A DMARC policy in object form.

    Attributes:
        v: Protocol version. Must be exactly ``DMARC1``.
        p: Requested receiver policy for the domain.
        sp: Requested policy for subdomains; see ``subdomain_policy``.
        adkim: DKIM identifier alignment mode.
        aspf: SPF identifier alignment mode.
        fo: Failure reporting options, a set of ``0``, ``1``, ``d``, ``s``.
        rf: Failure report formats, from the registered set.
        ri: Requested interval between aggregate reports, in seconds.
        pct: Percentage of the mail stream the policy applies to.
        rua: Raw aggregate report URI list.
        ruf: Raw failure report URI list.
    """

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    v: Literal["DMARC1"]
    p: PolicyAction
    sp: PolicyAction | None = None
    adkim: Alignment = Alignment.RELAXED
    aspf: Alignment = Alignment.RELAXED
    fo: frozenset[str] = frozenset({"0"})
    rf: list[str] = Field(default_factory=lambda: ["afrf"])
    ri: Annotated[int, Field(ge=0, le=MAX_REPORT_INTERVAL)] = 86400
    pct: Annotated[int, Field(ge=0, le=100)] = 100
    rua: str | None = None
    ruf: str | None = None

    def __init__(self, **data: Any):
        try:
            super().__init__(**data)
        except ValidationError as exc:
            raise PolicyError(_first_error(exc)) from exc

    def __setattr__(self, name: str, value: Any) -> None:
        try:
            super().__setattr__(name, value)
        except ValidationError as exc:
            raise PolicyError(_first_error(exc)) from exc

    @field_validator("p", "sp", "adkim", "aspf", mode="before")
    @classmethod
    def _lower_enum_text(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("fo", mode="before")
    @classmethod
    def _split_failure_options(cls, v: Any) -> Any:
        if isinstance(v, (str, int)):
            v = [part for part in str(v).lower().split(":") if part]
        flags = frozenset(str(flag) for flag in v)
        unknown = flags - FAILURE_OPTIONS
        if unknown:
            raise ValueError(f"unknown failure option(s): {', '.join(sorted(unknown))}")
        if not flags:
            raise ValueError("at least one failure option is required")
        return flags

    @field_validator("rf", mode="before")
    @classmethod
    def _split_report_formats(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = [part for part in v.split(",") if part]
        formats = [str(fmt).strip().lower() for fmt in v]
        for fmt in formats:
            if fmt not in REPORT_FORMATS:
                raise ValueError(f"invalid format: {fmt}")
        if not formats:
            raise ValueError("at least one report format is required")
        return formats

    @field_validator("rua", "ruf", mode="before")
    @classmethod
    def _empty_uri_list(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    # ------------------------------------------------------------ accessors
    @property
    def policy_action(self) -> PolicyAction:
        return self.p

    @property
    def subdomain_policy(self) -> PolicyAction:
        """Subdomain policy; falls back to ``p`` when ``sp`` is absent."""
        return self.sp or self.p

    @property
    def dkim_alignment(self) -> Alignment:
        return self.adkim

    @property
    def spf_alignment(self) -> Alignment:
        return self.aspf

    @property
    def failure_options(self) -> frozenset[str]:
        return self.fo

    @property
    def report_formats(self) -> list[str]:
        return list(self.rf)

    @property
    def report_interval(self) -> int:
        return self.ri

    @property
    def percentage(self) -> int:
        return self.pct

    # --------------------------------------------------------------- parsing
    @classmethod
    def parse(cls, text: str) -> PolicyRecord:
        """Parse a DMARC resource record as retrieved from DNS.

        Whitespace is removed, ``\\;`` is unescaped, and tags are split on
        ``;`` then on the first ``=``. Tag names and the ``v`` value are
        case-insensitive and unknown tags are ignored.

        Raises:
            PolicyError: If the record is malformed, lacks ``v`` or ``p``,
                or carries an invalid value.
        """
        if not isinstance(text, str):
            raise PolicyError("invalid parse request")
        cleaned = re.sub(r"\s+", "", text).replace("\\;", ";")
        tags: dict[str, str] = {}
        for part in cleaned.split(";"):
            if not part:
                continue
            key, sep, value = part.partition("=")
            if not sep or not key:
                raise PolicyError(f"malformed tag: {part}")
            tags[key.lower()] = value
        return cls.from_tags(tags)

    @classmethod
    def from_tags(cls, tags: dict[str, Any]) -> PolicyRecord:
        """Build a record from a tag mapping, applying defaults."""
        if not tags.get("v"):
            raise PolicyError("missing version specifier")
        if str(tags["v"]).upper() != DMARC_VERSION:
            raise PolicyError("invalid version")
        tags = {**tags, "v": DMARC_VERSION}
        if not tags.get("p"):
            raise PolicyError("missing policy action")
        known = {key: value for key, value in tags.items() if key in cls.model_fields}
        return cls(**known)

    def as_record(self) -> str:
        """Render the record as DNS TXT text, omitting default-valued tags."""
        parts = [f"v={self.v}", f"p={self.p.value}"]
        if self.sp is not None:
            parts.append(f"sp={self.sp.value}")
        if self.adkim is not Alignment.RELAXED:
            parts.append(f"adkim={self.adkim.value}")
        if self.aspf is not Alignment.RELAXED:
            parts.append(f"aspf={self.aspf.value}")
        if self.pct != 100:
            parts.append(f"pct={self.pct}")
        if self.fo != frozenset({"0"}):
            parts.append("fo=" + ":".join(sorted(self.fo)))
        if self.rf != ["afrf"]:
            parts.append("rf=" + ",".join(self.rf))
        if self.ri != 86400:
            parts.append(f"ri={self.ri}")
        if self.rua:
            parts.append(f"rua={self.rua}")
        if self.ruf:
            parts.append(f"ruf={self.ruf}")
        return "; ".join(parts)
