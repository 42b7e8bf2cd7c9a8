"""
Request Lifecycle Platform
Scheduled Jobs.

Jobs:
    - outbox_dispatcher: drains due outbox events to the automation consumer
"""

from __future__ import annotations

from typing import Any

from reqflow.services.outbox_service import dispatch_pending
from reqflow.services.scheduler_service import register_job


@register_job("outbox_dispatcher", interval_config="OUTBOX_DISPATCH_INTERVAL")
def dispatch_outbox(app) -> dict[str, Any]:
    """Deliver pending outbox events with retry and backoff."""
    return dispatch_pending()
