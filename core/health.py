"""
core/health.py -- Health report shared by GET /health and GET /api/v1/health.

The report is a plain dict so the web layer can render it into a template
and the API layer can return it as JSON without either importing the other.

Overall status:
  ok        -- every check passed                     -> HTTP 200
  degraded  -- the database check failed              -> HTTP 206
  error     -- no database store is configured at all -> HTTP 503
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

logger = logging.getLogger("formwork.health")

_STARTED_AT = time.monotonic()

_STATUS_CODES = {"ok": 200, "degraded": 206, "warning": 206, "error": 503}


class _Pingable(Protocol):
    def ping(self) -> bool: ...


def uptime() -> str:
    return str(timedelta(seconds=int(time.monotonic() - _STARTED_AT)))


def build_health_report(store: Optional[_Pingable], service: str, version: str) -> tuple[dict[str, Any], int]:
    """Return (report, http_status) for the given store."""
    checks: dict[str, str] = {"app": "ok"}
    status = "ok"

    if store is None:
        checks["database"] = "error"
        status = "error"
    else:
        try:
            healthy = store.ping()
        except Exception:
            logger.warning("Health check database ping failed", exc_info=True)
            healthy = False
        checks["database"] = "ok" if healthy else "error"
        if not healthy:
            status = "degraded"

    report = {
        "status": status,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": service,
        "version": version,
        "uptime": uptime(),
        "checks": checks,
    }
    return report, _STATUS_CODES[status]
