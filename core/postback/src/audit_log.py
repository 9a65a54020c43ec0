"""
Append-only audit files for the postback receiver.

Two line-oriented UTF-8 streams, never read back by the service:

  conversions.log   offer_id,payout,ip,iso_timestamp
  security.log      [BLOCKED] iso_timestamp | IP: caller_ip

Each append is a single .write() of one complete line on a file opened in
append mode, serialized by a lock so concurrent threadpool writers cannot
interleave partial lines.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


def iso_now() -> str:
    """UTC timestamp with millisecond precision, e.g. 2026-10-17T12:00:00.123Z."""
    return (
        datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )


def conversion_line(offer_id: str, payout: str, ip: str, timestamp: str) -> str:
    return f"{offer_id},{payout},{ip},{timestamp}\n"


def blocked_line(caller_ip: str | None, timestamp: str) -> str:
    return f"[BLOCKED] {timestamp} | IP: {caller_ip or 'unknown'}\n"


class AuditLogWriter:
    """Best-effort writer for the conversions and security logs."""

    def __init__(self, conversions_path: Path, security_path: Path) -> None:
        self.conversions_path = Path(conversions_path)
        self.security_path = Path(security_path)
        self._lock = threading.Lock()

    def initialize(self) -> None:
        """
        Create each log file with a SERVER STARTED marker if it is absent.
        Existing content is never truncated.  A file that cannot be created
        is logged and skipped; later appends report their own failures.
        """
        for path in (self.conversions_path, self.security_path):
            # "x" fails if the file exists, so a concurrent start cannot clobber it.
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with open(path, "x", encoding="utf-8") as f:
                    f.write(f"SERVER STARTED {iso_now()}\n")
            except FileExistsError:
                if path.is_file():
                    continue
                logger.exception("Log failed: could not initialize %s", path)
            except OSError:
                logger.exception("Log failed: could not initialize %s", path)

    def _append(self, path: Path, line: str) -> None:
        with self._lock:
            with open(path, "a", encoding="utf-8") as f:
                f.write(line)
                f.flush()

    def append_conversion(self, offer_id: str, payout: str, ip: str) -> bool:
        """Append a conversion line.  Failures are logged, never raised."""
        try:
            self._append(
                self.conversions_path,
                conversion_line(offer_id, payout, ip, iso_now()),
            )
        except OSError:
            logger.exception("Log failed: could not append conversion %s", offer_id)
            return False
        return True

    def append_blocked(self, caller_ip: str | None) -> bool:
        """Append a blocked-caller line.  Failures are logged, never raised."""
        try:
            self._append(self.security_path, blocked_line(caller_ip, iso_now()))
        except OSError:
            logger.exception("Log failed: could not record blocked caller %s", caller_ip)
            return False
        return True
