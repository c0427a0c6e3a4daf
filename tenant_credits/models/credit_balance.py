from datetime import datetime
from decimal import Decimal
from uuid import UUID

from beanie import Document
from pydantic import BaseModel, Field
from pymongo import ASCENDING, IndexModel

from tenant_credits.models.credit_ledger import Money, utcnow


class CreditAccount(BaseModel):
    """Materialized balance for one tenant; a cache of its ledger total."""

    tenant_id: UUID
    balance: Money = Decimal("0.00")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class CreditBalance(Document):
    """Current balance per tenant; updated in the same transaction as the ledger."""
    tenant_id: str
    balance: Money = Decimal("0.00")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "credit_accounts"
        indexes = [IndexModel([("tenant_id", ASCENDING)], unique=True)]

    def to_account(self) -> CreditAccount:
        return CreditAccount(
            tenant_id=UUID(self.tenant_id),
            balance=self.balance,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )
