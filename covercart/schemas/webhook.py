"""
Webhook acknowledgement schema (both providers).
"""

from typing import Optional

from covercart.schemas.base import BaseSchema
from covercart.services.reconciliation import WebhookOutcome


class WebhookAck(BaseSchema):
    success: bool = True
    event: Optional[str] = None
    matched: bool = False
    applied: bool = False
    order: Optional[str] = None
    detail: Optional[str] = None
    is_test: bool = False

    @classmethod
    def from_outcome(cls, outcome: WebhookOutcome) -> "WebhookAck":
        return cls(
            event=outcome.event,
            matched=outcome.matched,
            applied=outcome.applied,
            order=outcome.order,
            detail=outcome.detail,
            is_test=outcome.is_test,
        )


__all__ = ["WebhookAck"]
