"""
workflow/audit.py

Audit trail of every mutating cloud call, one line each:
    2026-02-27T12:34:56Z  TERMINATE  i-0abc123  eu-west-1

The logger has no handler until configure_audit() is called by the CLI, so
library use and tests do not write files.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

_audit_logger = logging.getLogger("devlaunch.audit")
_audit_logger.setLevel(logging.INFO)
_audit_logger.propagate = False
_audit_logger.addHandler(logging.NullHandler())


def configure_audit(path: Optional[str]) -> None:
    """Attach a FileHandler writing to `path`. Empty path disables the trail."""
    if not path:
        return
    for handler in list(_audit_logger.handlers):
        if isinstance(handler, logging.FileHandler):
            _audit_logger.removeHandler(handler)
            handler.close()
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(message)s"))
    _audit_logger.addHandler(handler)


def write_audit(operation: str, target: str, extra: str = "") -> None:
    """Append one line: timestamp  OPERATION  target  [extra]."""
    ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    parts = [ts, operation.upper(), target]
    if extra:
        parts.append(extra)
    _audit_logger.info("  ".join(parts))
