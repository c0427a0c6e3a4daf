from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated
from uuid import UUID, uuid4

from beanie import Document
from bson import Decimal128
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pymongo import ASCENDING, DESCENDING, IndexModel


def _from_decimal128(v):
    return v.to_decimal() if isinstance(v, Decimal128) else v


Money = Annotated[Decimal, BeforeValidator(_from_decimal128)]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CreditSource(str, Enum):
    COURTESY = "courtesy"
    EXTERNAL_PAYMENT = "external_payment"


class LedgerEntry(BaseModel):
    """One credit event. Write-once; id and created_at are assigned on append."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    tenant_id: UUID
    source: CreditSource
    amount: Money
    description: str | None = Field(default=None, max_length=200)
    external_reference: str | None = Field(default=None, max_length=120)
    created_at: datetime = Field(default_factory=utcnow)


class CreditLedgerEntry(Document):
    """Mongo row for a LedgerEntry."""

    entry_id: str
    tenant_id: str
    source: str  # courtesy, external_payment
    amount: Money
    description: str | None = None
    external_reference: str | None = None  # Stripe payment intent id
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "credit_ledger"
        indexes = [
            IndexModel([("entry_id", ASCENDING)], unique=True),
            IndexModel([("tenant_id", ASCENDING), ("created_at", DESCENDING)]),
            IndexModel(
                [("source", ASCENDING), ("external_reference", ASCENDING)],
                unique=True,
                partialFilterExpression={
                    "source": CreditSource.EXTERNAL_PAYMENT.value,
                    "external_reference": {"$type": "string"},
                },
                name="uniq_source_external_reference",
            ),
        ]

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> "CreditLedgerEntry":
        return cls(
            entry_id=str(entry.id),
            tenant_id=str(entry.tenant_id),
            source=entry.source.value,
            amount=entry.amount,
            description=entry.description,
            external_reference=entry.external_reference,
            created_at=entry.created_at,
        )

    def to_entry(self) -> LedgerEntry:
        created_at = self.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return LedgerEntry(
            id=UUID(self.entry_id),
            tenant_id=UUID(self.tenant_id),
            source=CreditSource(self.source),
            amount=self.amount,
            description=self.description,
            external_reference=self.external_reference,
            created_at=created_at,
        )
