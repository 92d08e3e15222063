"""Delivery engine for queued DMARC aggregate reports.

This package takes aggregate reports that an external generator has already
queued and delivers each one to the endpoints listed in the ``rua`` tag of
the publishing domain's DMARC policy. Its features include:

- Endpoint resolution from ``rua`` with per-endpoint size caps (``!10m``)
- SMTP delivery with STARTTLS-then-plain fallback and optional DKIM signing
- HTTP(S) delivery of the gzip payload with confirmed responses
- Per-report deadline, batching with inter-batch delay, failure isolation
- Persistent error accounting: reports are abandoned after 12 errors
- SQLite persistence and Prometheus metrics

Example:
    Running one delivery pass from code::

        from dmarc_sender.config_loader import load_config
        from dmarc_sender.scheduler import build_scheduler

        config = load_config("/etc/dmarc-sender/config.ini")
        scheduler = build_scheduler(config)
        summary = await scheduler.run_once()

Authors:
    Softwell S.r.l.
"""

__version__ = "0.4.0"
