import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from decimal import Decimal
from typing import AsyncIterator, Iterable
from uuid import UUID

from tenant_credits.core.exceptions import AlreadyProcessed
from tenant_credits.core.money import ZERO
from tenant_credits.models.credit_balance import CreditAccount
from tenant_credits.models.credit_ledger import CreditSource, LedgerEntry, utcnow
from tenant_credits.models.tenant import TenantProfile
from tenant_credits.models.unresolved_payment import UnresolvedPayment
from tenant_credits.storage.base import BalanceAccumulator, CreditStore, LedgerStore


@dataclass
class MemoryTransaction:
    """Writes staged until the owning transaction() block exits cleanly."""
    tenant_id: UUID
    entries: list[LedgerEntry] = field(default_factory=list)
    deltas: dict[UUID, Decimal] = field(default_factory=dict)


def _deduplicated(entry: LedgerEntry) -> bool:
    # Only processor payments are keyed by their reference.
    return entry.source is CreditSource.EXTERNAL_PAYMENT and entry.external_reference is not None


class MemoryLedgerStore(LedgerStore):
    def __init__(self) -> None:
        self._entries: list[LedgerEntry] = []
        self._by_reference: dict[tuple[str, str], LedgerEntry] = {}

    def _check_unique(self, entry: LedgerEntry, pending: Iterable[LedgerEntry] = ()) -> None:
        if not _deduplicated(entry):
            return
        key = (entry.source.value, entry.external_reference)
        existing = self._by_reference.get(key)
        if existing is None:
            existing = next(
                (e for e in pending if (e.source.value, e.external_reference) == key),
                None,
            )
        if existing is not None:
            raise AlreadyProcessed(entry.source.value, entry.external_reference, entry=existing)

    def _write(self, entry: LedgerEntry) -> None:
        self._check_unique(entry)
        self._entries.append(entry)
        if _deduplicated(entry):
            self._by_reference[(entry.source.value, entry.external_reference)] = entry

    async def append(self, entry: LedgerEntry, session: MemoryTransaction | None = None) -> LedgerEntry:
        if session is None:
            self._write(entry)
            return entry
        self._check_unique(entry, session.entries)
        session.entries.append(entry)
        return entry

    async def find_by_external_reference(
        self, source: CreditSource, external_reference: str, session: MemoryTransaction | None = None
    ) -> LedgerEntry | None:
        def matches(e: LedgerEntry) -> bool:
            return e.source is source and e.external_reference == external_reference

        if source is CreditSource.EXTERNAL_PAYMENT:
            found = self._by_reference.get((source.value, external_reference))
        else:
            found = next((e for e in self._entries if matches(e)), None)
        if found is not None or session is None:
            return found
        return next((e for e in session.entries if matches(e)), None)

    async def list_for_tenant(self, tenant_id: UUID, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        rows = [e for e in reversed(self._entries) if e.tenant_id == tenant_id]
        return rows[offset : offset + limit]

    async def total_for_tenant(self, tenant_id: UUID) -> Decimal:
        return sum((e.amount for e in self._entries if e.tenant_id == tenant_id), ZERO)


class MemoryBalanceAccumulator(BalanceAccumulator):
    def __init__(self) -> None:
        self._accounts: dict[UUID, CreditAccount] = {}

    def _committed(self, tenant_id: UUID) -> Decimal:
        account = self._accounts.get(tenant_id)
        return account.balance if account else ZERO

    def _write(self, tenant_id: UUID, delta: Decimal) -> Decimal:
        now = utcnow()
        account = self._accounts.get(tenant_id) or CreditAccount(tenant_id=tenant_id, created_at=now)
        # Replace rather than mutate so readers never see a half-updated account.
        self._accounts[tenant_id] = account.model_copy(
            update={"balance": account.balance + delta, "updated_at": now}
        )
        return self._accounts[tenant_id].balance

    async def apply(self, tenant_id: UUID, delta: Decimal, session: MemoryTransaction | None = None) -> Decimal:
        if session is None:
            return self._write(tenant_id, delta)
        session.deltas[tenant_id] = session.deltas.get(tenant_id, ZERO) + delta
        return self._committed(tenant_id) + session.deltas[tenant_id]

    async def get(self, tenant_id: UUID) -> Decimal:
        return self._committed(tenant_id)

    async def list_accounts(self) -> list[CreditAccount]:
        return list(self._accounts.values())


class MemoryCreditStore(CreditStore):
    """
    Single-process store: per-tenant asyncio locks, commit without awaits.

    For tests and local development only. A lock is created the first time a
    tenant is written and kept for the life of the process, so memory grows
    with the number of distinct tenants.
    """

    def __init__(self, tenants: Iterable[UUID | TenantProfile] = ()) -> None:
        self.ledger = MemoryLedgerStore()
        self.balances = MemoryBalanceAccumulator()
        self._tenants: dict[UUID, TenantProfile] = {}
        self._locks: defaultdict[UUID, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._unresolved: list[UnresolvedPayment] = []
        for tenant in tenants:
            if isinstance(tenant, TenantProfile):
                self._tenants[tenant.tenant_id] = tenant
            else:
                self.add_tenant(tenant)

    def add_tenant(self, tenant_id: UUID, name: str = "", email: str | None = None) -> None:
        self._tenants[tenant_id] = TenantProfile(tenant_id=tenant_id, name=name, email=email)

    @asynccontextmanager
    async def transaction(self, tenant_id: UUID) -> AsyncIterator[MemoryTransaction]:
        async with self._locks[tenant_id]:
            tx = MemoryTransaction(tenant_id=tenant_id)
            yield tx
            self._commit(tx)

    def _commit(self, tx: MemoryTransaction) -> None:
        # Validate everything before the first write so a conflict leaves no trace.
        staged: list[LedgerEntry] = []
        for entry in tx.entries:
            self.ledger._check_unique(entry, staged)
            staged.append(entry)
        for entry in tx.entries:
            self.ledger._write(entry)
        for tenant_id, delta in tx.deltas.items():
            self.balances._write(tenant_id, delta)

    async def get_tenant(self, tenant_id: UUID) -> TenantProfile | None:
        return self._tenants.get(tenant_id)

    async def record_unresolved(self, item: UnresolvedPayment) -> None:
        self._unresolved.append(item)

    async def list_unresolved(self, limit: int = 50, offset: int = 0) -> list[UnresolvedPayment]:
        return list(reversed(self._unresolved))[offset : offset + limit]
