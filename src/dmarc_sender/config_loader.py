# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for the DMARC report sender.

Settings are read from an INI-style configuration file, with environment
variables (prefixed ``DMARC_``) taking precedence over file values.

Example:
    Configuration file format (config.ini)::

        [organization]
        org_name = Example Receiver
        domain = receiver.example.com
        email = dmarc-reports@receiver.example.com

        [storage]
        db_path = /var/lib/dmarc-sender/reports.db

        [smtp]
        # Leave empty to deliver directly to the recipient's MX hosts
        smarthost =
        port = 25
        cc = set.this@for.a.test.report.com
        timeout = 30
        validate_certs = false

        [report_sign]
        algorithm = rsa-sha256
        method = relaxed/relaxed
        domain = receiver.example.com
        selector = dmarc
        keyfile = /etc/dmarc-sender/dkim.key

        [sending]
        batch_size = 1
        delay = 5
        timeout = 60
        http_timeout = 30

    Loading it::

        config = load_config("/etc/dmarc-sender/config.ini")
        config.sending.batch_size   # 1

Environment variables follow ``DMARC_<SECTION>_<KEY>``, for example
``DMARC_SMTP_SMARTHOST`` or ``DMARC_SENDING_DELAY``.
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from .logger import get_logger

CC_PLACEHOLDER = "set.this@for.a.test.report.com"
ENV_PREFIX = "DMARC_"

logger = get_logger("ConfigLoader")


class ConfigurationError(RuntimeError):
    """Raised when the configuration is unreadable or holds an invalid value."""

    def __init__(self, message: str):
        super().__init__(message)
        self.code = "invalid_configuration"


@dataclass
class OrganizationConfig:
    """Identity of the report submitter."""

    org_name: str = "Unconfigured Reporter"
    domain: str = "localhost"
    email: str = "dmarc-noreply@localhost"


@dataclass
class SmtpConfig:
    """SMTP delivery settings.

    Attributes:
        smarthost: Relay used for every mail delivery. Empty means deliver
            straight to the recipient domain's MX hosts.
        port: SMTP port on the smarthost or MX hosts.
        cc: Extra recipient added once per report, unless left at the
            placeholder default.
        timeout: Per-command timeout in seconds.
        validate_certs: Verify the server certificate on STARTTLS.
        hostname: Name announced in EHLO; defaults to the organization domain.
    """

    smarthost: str | None = None
    port: int = 25
    cc: str | None = CC_PLACEHOLDER
    timeout: float = 30.0
    validate_certs: bool = False
    hostname: str | None = None

    @property
    def cc_enabled(self) -> bool:
        return bool(self.cc) and self.cc != CC_PLACEHOLDER


@dataclass
class SigningConfig:
    """DKIM signing settings; signing is enabled when ``keyfile`` is set."""

    algorithm: str = "rsa-sha256"
    method: str = "relaxed/relaxed"
    domain: str | None = None
    selector: str | None = None
    keyfile: str | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.keyfile)


@dataclass
class SendingConfig:
    """Run parameters for a delivery pass."""

    batch_size: int = 1
    delay: float = 5.0
    timeout: float = 60.0
    http_timeout: float = 30.0


@dataclass
class SenderConfig:
    organization: OrganizationConfig = field(default_factory=OrganizationConfig)
    smtp: SmtpConfig = field(default_factory=SmtpConfig)
    signing: SigningConfig = field(default_factory=SigningConfig)
    sending: SendingConfig = field(default_factory=SendingConfig)
    db_path: str = "dmarc_reports.db"


class _Settings:
    """Lookup helper: environment first, then the parsed INI file."""

    def __init__(self, parser: configparser.ConfigParser, env: Mapping[str, str]):
        self.parser = parser
        self.env = env

    def get(self, section: str, option: str, default: str | None = None) -> str | None:
        env_key = f"{ENV_PREFIX}{section}_{option}".upper()
        if env_key in self.env:
            return self.env[env_key]
        if self.parser.has_option(section, option):
            return self.parser.get(section, option)
        return default

    def get_str(self, section: str, option: str, default: str | None = None) -> str | None:
        value = self.get(section, option)
        if value is None:
            return default
        value = value.strip()
        return value or None

    def get_int(self, section: str, option: str, default: int) -> int:
        value = self.get(section, option)
        if value is None or not value.strip():
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigurationError(f"[{section}] {option}: expected an integer, got {value!r}") from exc

    def get_float(self, section: str, option: str, default: float) -> float:
        value = self.get(section, option)
        if value is None or not value.strip():
            return default
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigurationError(f"[{section}] {option}: expected a number, got {value!r}") from exc

    def get_bool(self, section: str, option: str, default: bool) -> bool:
        value = self.get(section, option)
        if value is None or not value.strip():
            return default
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        raise ConfigurationError(f"[{section}] {option}: expected a boolean, got {value!r}")


def load_config(config_path: str | None = None, env: Mapping[str, str] | None = None) -> SenderConfig:
    """Load settings from an INI file and ``DMARC_*`` environment variables.

    Args:
        config_path: Path to config.ini. When None, ``DMARC_CONFIG`` is
            consulted; a missing default file is not an error.
        env: Environment mapping; defaults to ``os.environ``.

    Returns:
        A populated SenderConfig.

    Raises:
        ConfigurationError: If an explicitly requested file does not exist
            or a value cannot be converted.
    """
    env = os.environ if env is None else env
    parser = configparser.ConfigParser()
    explicit = config_path is not None or "DMARC_CONFIG" in env
    path = Path(config_path or env.get("DMARC_CONFIG", "config.ini"))
    if path.exists():
        parser.read(path)
        logger.debug("Loaded configuration from %s", path)
    elif explicit:
        raise ConfigurationError(f"Config file not found: {path}")

    s = _Settings(parser, env)
    organization = OrganizationConfig(
        org_name=s.get_str("organization", "org_name", OrganizationConfig.org_name),
        domain=s.get_str("organization", "domain", OrganizationConfig.domain),
        email=s.get_str("organization", "email", OrganizationConfig.email),
    )
    smtp = SmtpConfig(
        smarthost=s.get_str("smtp", "smarthost"),
        port=s.get_int("smtp", "port", 25),
        cc=s.get_str("smtp", "cc", CC_PLACEHOLDER),
        timeout=s.get_float("smtp", "timeout", 30.0),
        validate_certs=s.get_bool("smtp", "validate_certs", False),
        hostname=s.get_str("smtp", "hostname"),
    )
    signing = SigningConfig(
        algorithm=s.get_str("report_sign", "algorithm", "rsa-sha256"),
        method=s.get_str("report_sign", "method", "relaxed/relaxed"),
        domain=s.get_str("report_sign", "domain"),
        selector=s.get_str("report_sign", "selector"),
        keyfile=s.get_str("report_sign", "keyfile"),
    )
    sending = SendingConfig(
        batch_size=s.get_int("sending", "batch_size", 1),
        delay=s.get_float("sending", "delay", 5.0),
        timeout=s.get_float("sending", "timeout", 60.0),
        http_timeout=s.get_float("sending", "http_timeout", 30.0),
    )
    if sending.batch_size < 1:
        raise ConfigurationError("[sending] batch_size must be at least 1")
    if sending.delay < 0 or sending.timeout <= 0:
        raise ConfigurationError("[sending] delay must be >= 0 and timeout > 0")
    if signing.enabled and not (signing.selector and (signing.domain or organization.domain)):
        raise ConfigurationError("[report_sign] keyfile requires a selector and a signing domain")

    return SenderConfig(
        organization=organization,
        smtp=smtp,
        signing=signing,
        sending=sending,
        db_path=s.get_str("storage", "db_path") or "dmarc_reports.db",
    )
