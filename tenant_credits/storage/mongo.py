from contextlib import asynccontextmanager
from decimal import Decimal
from typing import AsyncIterator
from uuid import UUID

from bson import Decimal128
from motor.motor_asyncio import AsyncIOMotorClientSession
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from tenant_credits.core.exceptions import AlreadyProcessed, StorageError, TransientStorageError
from tenant_credits.core.logging import get_logger
from tenant_credits.core.money import ZERO, quantize
from tenant_credits.models.credit_balance import CreditAccount, CreditBalance
from tenant_credits.models.credit_ledger import CreditLedgerEntry, CreditSource, LedgerEntry, utcnow
from tenant_credits.models.tenant import Tenant, TenantProfile
from tenant_credits.models.unresolved_payment import UnresolvedPayment, UnresolvedPaymentRecord
from tenant_credits.storage.base import BalanceAccumulator, CreditStore, LedgerStore

log = get_logger(__name__)


def _storage_error(e: PyMongoError) -> StorageError:
    if e.has_error_label("TransientTransactionError"):
        return TransientStorageError(f"Transient storage conflict: {e}")
    return StorageError(f"Storage failure: {e}")


class MongoLedgerStore(LedgerStore):
    async def append(self, entry: LedgerEntry, session: AsyncIOMotorClientSession | None = None) -> LedgerEntry:
        try:
            await CreditLedgerEntry.from_entry(entry).insert(session=session)
        except DuplicateKeyError as e:
            if entry.source is not CreditSource.EXTERNAL_PAYMENT or entry.external_reference is None:
                # Only payments carry the unique reference key; anything else is an entry_id collision.
                raise TransientStorageError(f"Ledger id collision: {e}") from e
            raise AlreadyProcessed(entry.source.value, entry.external_reference) from e
        except PyMongoError as e:
            raise _storage_error(e) from e
        return entry

    async def find_by_external_reference(
        self, source: CreditSource, external_reference: str, session: AsyncIOMotorClientSession | None = None
    ) -> LedgerEntry | None:
        doc = await CreditLedgerEntry.find_one(
            CreditLedgerEntry.source == source.value,
            CreditLedgerEntry.external_reference == external_reference,
            session=session,
        )
        return doc.to_entry() if doc else None

    async def list_for_tenant(self, tenant_id: UUID, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        docs = (
            await CreditLedgerEntry.find(CreditLedgerEntry.tenant_id == str(tenant_id))
            .sort(-CreditLedgerEntry.created_at)
            .skip(offset)
            .limit(limit)
            .to_list()
        )
        return [d.to_entry() for d in docs]

    async def total_for_tenant(self, tenant_id: UUID) -> Decimal:
        rows = await CreditLedgerEntry.find(CreditLedgerEntry.tenant_id == str(tenant_id)).aggregate(
            [{"$group": {"_id": None, "total": {"$sum": "$amount"}}}]
        ).to_list()
        if not rows:
            return ZERO
        total = rows[0]["total"]
        return quantize(total.to_decimal() if isinstance(total, Decimal128) else total)


class MongoBalanceAccumulator(BalanceAccumulator):
    async def apply(self, tenant_id: UUID, delta: Decimal, session: AsyncIOMotorClientSession | None = None) -> Decimal:
        now = utcnow()
        try:
            raw = await CreditBalance.get_motor_collection().find_one_and_update(
                {"tenant_id": str(tenant_id)},
                {
                    "$inc": {"balance": Decimal128(str(delta))},
                    "$set": {"updated_at": now},
                    "$setOnInsert": {"created_at": now},
                },
                upsert=True,
                return_document=ReturnDocument.AFTER,
                session=session,
            )
        except DuplicateKeyError as e:
            # Two first-credits racing on the account upsert.
            raise TransientStorageError(f"Account creation conflict: {e}") from e
        except PyMongoError as e:
            raise _storage_error(e) from e
        return raw["balance"].to_decimal()

    async def get(self, tenant_id: UUID) -> Decimal:
        doc = await CreditBalance.find_one(CreditBalance.tenant_id == str(tenant_id))
        return doc.balance if doc else ZERO

    async def list_accounts(self) -> list[CreditAccount]:
        return [d.to_account() async for d in CreditBalance.find_all()]


class MongoCreditStore(CreditStore):
    """
    Multi-document transactions (replica set required). Same-tenant writers
    collide on the account document and surface as TransientStorageError.
    """

    def __init__(self) -> None:
        self.ledger = MongoLedgerStore()
        self.balances = MongoBalanceAccumulator()

    @asynccontextmanager
    async def transaction(self, tenant_id: UUID) -> AsyncIterator[AsyncIOMotorClientSession]:
        client = CreditLedgerEntry.get_motor_collection().database.client
        try:
            async with await client.start_session() as session:
                async with session.start_transaction():
                    yield session
        except PyMongoError as e:
            log.warning("credit_transaction_failed", tenant_id=str(tenant_id), error=str(e))
            raise _storage_error(e) from e

    async def get_tenant(self, tenant_id: UUID) -> TenantProfile | None:
        doc = await Tenant.find_one(Tenant.tenant_id == str(tenant_id))
        return doc.to_profile() if doc else None

    async def record_unresolved(self, item: UnresolvedPayment) -> None:
        await UnresolvedPaymentRecord.from_unresolved(item).insert()

    async def list_unresolved(self, limit: int = 50, offset: int = 0) -> list[UnresolvedPayment]:
        docs = (
            await UnresolvedPaymentRecord.find_all()
            .sort(-UnresolvedPaymentRecord.created_at)
            .skip(offset)
            .limit(limit)
            .to_list()
        )
        return [d.to_unresolved() for d in docs]
