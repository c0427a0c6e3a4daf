from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from decimal import Decimal
from functools import lru_cache
from typing import Any
from uuid import UUID

from tenant_credits.core.config import get_settings
from tenant_credits.models.credit_balance import CreditAccount
from tenant_credits.models.credit_ledger import CreditSource, LedgerEntry
from tenant_credits.models.tenant import TenantProfile
from tenant_credits.models.unresolved_payment import UnresolvedPayment


class LedgerStore(ABC):
    """Append-only credit events. There is deliberately no update or delete."""

    @abstractmethod
    async def append(self, entry: LedgerEntry, session: Any = None) -> LedgerEntry:
        """Persist entry. Raises AlreadyProcessed on a duplicate (source, external_reference), StorageError otherwise."""
        ...

    @abstractmethod
    async def find_by_external_reference(
        self, source: CreditSource, external_reference: str, session: Any = None
    ) -> LedgerEntry | None:
        ...

    @abstractmethod
    async def list_for_tenant(self, tenant_id: UUID, limit: int = 50, offset: int = 0) -> list[LedgerEntry]:
        """Newest first."""
        ...

    @abstractmethod
    async def total_for_tenant(self, tenant_id: UUID) -> Decimal:
        ...


class BalanceAccumulator(ABC):
    @abstractmethod
    async def apply(self, tenant_id: UUID, delta: Decimal, session: Any = None) -> Decimal:
        """Add delta to the tenant's balance (creating the account at zero); return the new balance."""
        ...

    @abstractmethod
    async def get(self, tenant_id: UUID) -> Decimal:
        """Committed balance, zero when the tenant has no account yet."""
        ...

    @abstractmethod
    async def list_accounts(self) -> list[CreditAccount]:
        ...


class CreditStore(ABC):
    """Owns the transactional scope shared by the ledger and the balances."""

    ledger: LedgerStore
    balances: BalanceAccumulator

    @abstractmethod
    def transaction(self, tenant_id: UUID) -> AbstractAsyncContextManager[Any]:
        """
        Serialize writers for one tenant and yield a session handle.
        Writes made with the handle commit together on clean exit and are
        discarded if the block raises.
        """
        ...

    @abstractmethod
    async def get_tenant(self, tenant_id: UUID) -> TenantProfile | None:
        """Directory lookup; None when the tenant is unknown."""
        ...

    async def tenant_exists(self, tenant_id: UUID) -> bool:
        return await self.get_tenant(tenant_id) is not None

    @abstractmethod
    async def record_unresolved(self, item: UnresolvedPayment) -> None:
        ...

    @abstractmethod
    async def list_unresolved(self, limit: int = 50, offset: int = 0) -> list[UnresolvedPayment]:
        """Newest first."""
        ...


@lru_cache
def get_store() -> CreditStore:
    settings = get_settings()
    if settings.storage_backend == "memory":
        from tenant_credits.storage.memory import MemoryCreditStore
        return MemoryCreditStore()
    from tenant_credits.storage.mongo import MongoCreditStore
    return MongoCreditStore()
