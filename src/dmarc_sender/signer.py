# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""DKIM signing of outgoing report messages.

Signing is optional and enabled by setting ``keyfile`` in the
``[report_sign]`` section. The key is loaded once at startup; an unreadable
key is a fatal configuration error. A failure while signing an individual
message only aborts that delivery attempt.

Example:
    Signing a message::

        signer = DkimSigner.from_config(config.signing, default_domain="receiver.example")
        signed = signer.sign_message(message_bytes)
"""

from __future__ import annotations

from pathlib import Path

import dkim

from .config_loader import SigningConfig
from .models import SigningError

SIGNED_HEADERS = [b"from", b"to", b"subject", b"date", b"message-id", b"mime-version", b"content-type"]


def load_key(path: str) -> bytes:
    """Read a PEM private key.

    Raises:
        SigningError: If the file is missing, unreadable or empty.
    """
    try:
        key = Path(path).read_bytes()
    except OSError as exc:
        raise SigningError(f"cannot load DKIM key {path}: {exc}") from exc
    if not key.strip():
        raise SigningError(f"DKIM key file {path} is empty")
    return key


def _canonicalization(method: str) -> tuple[bytes, bytes]:
    header, _, body = (method or "relaxed/relaxed").lower().partition("/")
    body = body or "simple"
    for part in (header, body):
        if part not in ("relaxed", "simple"):
            raise SigningError(f"unsupported canonicalization: {method}")
    return header.encode(), body.encode()


def sign(body: bytes, algorithm: str, method: str, domain: str, selector: str, key: bytes) -> str:
    """Compute the DKIM-Signature header for ``body``.

    Args:
        body: Complete RFC 5322 message, CRLF line endings.
        algorithm: ``rsa-sha256`` or ``ed25519-sha256``.
        method: Canonicalization, ``header/body`` (e.g. ``relaxed/simple``).
        domain: Signing domain (``d=``).
        selector: Key selector (``s=``).
        key: PEM private key.

    Returns:
        The header line, ``DKIM-Signature: ...`` with trailing CRLF.

    Raises:
        SigningError: If the key is unusable or signing fails.
    """
    try:
        signature = dkim.sign(
            body,
            selector.encode(),
            domain.encode(),
            key,
            canonicalize=_canonicalization(method),
            signature_algorithm=algorithm.encode(),
            include_headers=SIGNED_HEADERS,
        )
    except (dkim.DKIMException, ValueError, TypeError) as exc:
        raise SigningError(f"DKIM signing failed: {exc}") from exc
    if not signature:
        raise SigningError("DKIM signing produced no signature")
    return signature.decode("ascii")


class DkimSigner:
    """Signs messages with a fixed key, selector and domain."""

    def __init__(self, *, key: bytes, domain: str, selector: str,
                 algorithm: str = "rsa-sha256", method: str = "relaxed/relaxed"):
        self.key = key
        self.domain = domain
        self.selector = selector
        self.algorithm = algorithm
        self.method = method

    @classmethod
    def from_config(cls, config: SigningConfig, default_domain: str) -> DkimSigner | None:
        """Build a signer, or return None when signing is not configured.

        Raises:
            SigningError: If a key file is configured but cannot be loaded.
        """
        if not config.enabled:
            return None
        return cls(
            key=load_key(config.keyfile),
            domain=config.domain or default_domain,
            selector=config.selector,
            algorithm=config.algorithm,
            method=config.method,
        )

    def sign_message(self, body: bytes) -> bytes:
        """Return ``body`` with its DKIM-Signature header prepended."""
        header = sign(body, self.algorithm, self.method, self.domain, self.selector, self.key)
        return header.encode("ascii") + body
