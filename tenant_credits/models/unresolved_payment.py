from datetime import datetime
from enum import Enum
from typing import Any

from beanie import Document
from pydantic import BaseModel, Field

from tenant_credits.models.credit_ledger import utcnow


class UnresolvedReason(str, Enum):
    MISSING_TENANT = "missing_tenant"
    MALFORMED_TENANT = "malformed_tenant"
    UNKNOWN_TENANT = "unknown_tenant"
    NON_POSITIVE_AMOUNT = "non_positive_amount"
    NOT_PAID = "not_paid"


class UnresolvedPayment(BaseModel):
    """A verified payment event that could not be credited."""

    event_id: str
    session_id: str
    transaction_id: str | None = None
    reason: UnresolvedReason
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class UnresolvedPaymentRecord(Document):
    event_id: str
    session_id: str
    transaction_id: str | None = None
    reason: str
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "unresolved_payments"
        indexes = [[("created_at", -1)], [("session_id", 1)]]

    @classmethod
    def from_unresolved(cls, item: UnresolvedPayment) -> "UnresolvedPaymentRecord":
        return cls(**item.model_dump(mode="python") | {"reason": item.reason.value})

    def to_unresolved(self) -> UnresolvedPayment:
        return UnresolvedPayment(
            event_id=self.event_id,
            session_id=self.session_id,
            transaction_id=self.transaction_id,
            reason=UnresolvedReason(self.reason),
            details=self.details,
            created_at=self.created_at,
        )
