"""
Production Workflow & Billing
Scheduled Jobs.

Concrete job implementations run by the in-process scheduler.

Jobs:
    - outbox_drain: dispatch one batch of pending outbox events
    - outbox_parked_alert: log an ERROR while parked events are waiting
"""

from __future__ import annotations

import logging
from typing import Any

from app.services import outbox_service
from app.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  Job 1: Outbox Drain
# ═══════════════════════════════════════════════════════════════════════════

@register_job("outbox_drain", "OUTBOX_POLL_INTERVAL_SECONDS")
def drain_outbox(app) -> dict[str, Any]:
    """Dispatch one batch of pending outbox events."""
    report = outbox_service.drain()
    return report.to_dict()


# ═══════════════════════════════════════════════════════════════════════════
#  Job 2: Parked Event Alert
# ═══════════════════════════════════════════════════════════════════════════

@register_job("outbox_parked_alert", "OUTBOX_PARKED_ALERT_INTERVAL_SECONDS")
def alert_parked_events(app) -> dict[str, Any]:
    """Report outbox events that exhausted their retries."""
    parked = outbox_service.list_parked(limit=20)
    if parked:
        logger.error(
            "%d outbox events parked (oldest %s %s)",
            len(parked), parked[0]["event_type"], parked[0]["id"],
            extra={"event_id": parked[0]["id"], "event_type": parked[0]["event_type"]},
        )
    return {"parked": len(parked)}
