"""
Session Audit Log
==================
Every session lifecycle event is written as one JSON object per line on a
dedicated logger, independent of the root logger configuration, so the
login/invalidate/relogin churn of a long-running client can be searched and
alerted on.

Events logged:
  LOGIN_SUCCESS, LOGIN_FAILED, SESSION_INVALIDATED, LOGOUT,
  ORDER_PLACED, ORDER_REJECTED, RETRIES_EXHAUSTED

Entries never carry credentials, cookies, request tokens or form-state values.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

_audit_logger = logging.getLogger("SessionAudit")
_handler = logging.StreamHandler()
_handler.setFormatter(logging.Formatter("%(message)s"))
_audit_logger.addHandler(_handler)
_audit_logger.setLevel(logging.INFO)
_audit_logger.propagate = False

LOGIN_SUCCESS       = "LOGIN_SUCCESS"
LOGIN_FAILED        = "LOGIN_FAILED"
SESSION_INVALIDATED = "SESSION_INVALIDATED"
LOGOUT              = "LOGOUT"
ORDER_PLACED        = "ORDER_PLACED"
ORDER_REJECTED      = "ORDER_REJECTED"
RETRIES_EXHAUSTED   = "RETRIES_EXHAUSTED"


def audit(
    event:      str,
    backend:    Optional[str] = None,
    operation:  Optional[str] = None,
    detail:     Optional[str] = None,
    success:    bool = True,
    extra:      Optional[dict] = None,
) -> dict:
    """
    Emit a single structured audit log entry and return it.

    Args:
        event:     Event type string (e.g. 'LOGIN_FAILED')
        backend:   'mobile' or 'web'
        operation: Logical operation in progress (e.g. 'place_order')
        detail:    Human-readable description, already free of secrets
        success:   True = success, False = failure/anomaly
        extra:     Additional key-value pairs to include
    """
    entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service":   "broker-session",
        "log_type":  "session_audit",
        "event":     event,
        "success":   success,
        "backend":   backend or "unknown",
        "operation": operation or "",
        "detail":    (detail or "")[:500],
    }
    if extra:
        entry.update(extra)

    level = logging.INFO if success else logging.WARNING
    _audit_logger.log(level, json.dumps(entry, default=str))
    return entry
