"""
Webhook and reconciliation schemas.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from billing_core.services.reconciliation_service import ReconcileMode


class WebhookResponse(BaseModel):
    """
    Acknowledgment returned to the gateway.

    WHY: Any 2xx stops redelivery, so duplicates and unknown event types
    are acknowledged with 200 as well.
    """

    received: bool = True
    duplicate: bool = False
    event_type: Optional[str] = None
    handled: bool = False


class ReconcileRequest(BaseModel):
    mode: ReconcileMode = ReconcileMode.ALL
    user_id: Optional[str] = Field(default=None, description="Required when mode=user")


class ReconcileResponse(BaseModel):
    """processed = created + updated + skipped + len(failed)"""

    processed: int
    created: int
    updated: int
    skipped: int
    failed: List[Dict[str, Any]]
