"""Log rotation and secret scrubbing for the billing ledger.

Payment code logs intent ids, webhook payloads, and processor errors, any
of which can carry a Stripe key, a PaymentIntent client secret, or a
webhook signing secret.  :class:`ScrubFilter` redacts those before a
record reaches any handler.

Call :func:`configure_logging` once from a long-running entry point
(``clubledger reconcile serve``); library code only ever uses
``logging.getLogger(__name__)``.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

_DEFAULT_LOG_DIR = Path.home() / ".clubledger" / "logs"
_LOG_FILE = "clubledger.log"
_FORMAT = "%(asctime)s %(threadName)s %(name)s %(levelname)s %(message)s"

_REDACTED = "***REDACTED***"


def _keyed(name: str) -> re.Pattern[str]:
    """``name=value`` / ``"name": "value"`` pairs, value captured in group 2."""
    return re.compile(
        rf'({name}["\x27]?\s*[:=]\s*["\x27]?)([^"\x27\s,}}{{\]]+)', re.IGNORECASE
    )


# Token shapes first, then key=value pairs whose value may be anything.
_SCRUB_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\b(sk|rk)_(live|test)_[A-Za-z0-9]+"), r"\1_\2_" + _REDACTED),
    (re.compile(r"\bwhsec_[A-Za-z0-9]+"), "whsec_" + _REDACTED),
    (re.compile(r"\b(pi_[A-Za-z0-9]+)_secret_[A-Za-z0-9]+"), r"\1_secret_" + _REDACTED),
    (re.compile(r"(Stripe-Signature:\s*)(\S+)", re.IGNORECASE), r"\1" + _REDACTED),
] + [
    (_keyed(name), r"\1" + _REDACTED)
    for name in ("api_key", "token", "password", "secret")
]


def scrub(text: str) -> str:
    """Return *text* with every known secret shape redacted."""
    for pattern, replacement in _SCRUB_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class ScrubFilter(logging.Filter):
    """Redacts secrets from a record's message and its string arguments.

    Never drops a record.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = scrub(record.msg)
        if isinstance(record.args, dict):
            record.args = {k: self._clean(v) for k, v in record.args.items()}
        elif isinstance(record.args, tuple):
            record.args = tuple(self._clean(a) for a in record.args)
        return True

    @staticmethod
    def _clean(value: object) -> object:
        return scrub(value) if isinstance(value, str) else value


def _install_filter(handler: logging.Handler) -> None:
    if not any(isinstance(f, ScrubFilter) for f in handler.filters):
        handler.addFilter(ScrubFilter())


def configure_logging(
    log_dir: Optional[str] = None,
    *,
    max_bytes: int = 10_000_000,
    backup_count: int = 5,
    level: Optional[str] = None,
    console: bool = False,
) -> Path:
    """Route ledger logs to a rotating file, scrubbed of secrets.

    :param log_dir: Directory for ``clubledger.log``.  Reads
        ``CLUBLEDGER_LOG_DIR``, then falls back to ``~/.clubledger/logs/``.
    :param max_bytes: Size at which the file rotates (default 10 MB).
    :param backup_count: Rotated files to keep.
    :param level: Level name.  Reads ``CLUBLEDGER_LOG_LEVEL``, then
        ``"INFO"``.
    :param console: Also echo records to stderr.
    :returns: The log file path.

    Safe to call more than once: handlers are only added the first time.
    """
    directory = Path(log_dir or os.environ.get("CLUBLEDGER_LOG_DIR") or _DEFAULT_LOG_DIR)
    level_name = (level or os.environ.get("CLUBLEDGER_LOG_LEVEL") or "INFO").upper()
    log_level = getattr(logging, level_name, logging.INFO)

    directory.mkdir(parents=True, exist_ok=True)
    log_path = directory / _LOG_FILE
    formatter = logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root = logging.getLogger()
    root.setLevel(log_level)

    if not any(isinstance(h, RotatingFileHandler) for h in root.handlers):
        file_handler = RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if console and not any(getattr(h, "stream", None) is sys.stderr for h in root.handlers):
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)

    # Handlers added by the host application are scrubbed too.
    for handler in root.handlers:
        _install_filter(handler)
    return log_path
