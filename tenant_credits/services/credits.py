"""Credit issuance: ledger append and balance update in one transaction, idempotent on external references."""

from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from tenant_credits.core.authz import CallerContext, ensure_can_read_balance, require_admin
from tenant_credits.core.config import get_settings
from tenant_credits.core.exceptions import AlreadyProcessed, NotFoundError, TransientStorageError, ValidationError
from tenant_credits.core.logging import get_logger
from tenant_credits.core.money import quantize, quantize_amount
from tenant_credits.core.pagination import paginate
from tenant_credits.models.credit_ledger import CreditSource, LedgerEntry
from tenant_credits.storage.base import CreditStore

log = get_logger(__name__)

COURTESY_DESCRIPTION = "Courtesy credit"


@dataclass(frozen=True)
class CreditGrant:
    entry: LedgerEntry
    balance: Decimal
    replayed: bool = False


@dataclass(frozen=True)
class BalanceDrift:
    tenant_id: UUID
    balance: Decimal
    ledger_total: Decimal


class CreditService:
    def __init__(self, store: CreditStore, retry_attempts: int | None = None, retry_wait_seconds: float | None = None):
        settings = get_settings()
        self.store = store
        self.retry_attempts = retry_attempts or settings.storage_retry_attempts
        self.retry_wait_seconds = (
            settings.storage_retry_wait_seconds if retry_wait_seconds is None else retry_wait_seconds
        )

    async def grant_credit(
        self,
        tenant_id: UUID | None,
        amount: Decimal | int | float | str,
        source: CreditSource | str,
        description: str | None = None,
        external_reference: str | None = None,
    ) -> tuple[LedgerEntry, Decimal]:
        """Return (entry, new_balance). A replayed external reference returns the original entry."""
        grant = await self.issue_credit(tenant_id, amount, source, description, external_reference)
        return grant.entry, grant.balance

    async def issue_credit(
        self,
        tenant_id: UUID | None,
        amount: Decimal | int | float | str,
        source: CreditSource | str,
        description: str | None = None,
        external_reference: str | None = None,
    ) -> CreditGrant:
        if tenant_id is None:
            raise ValidationError("tenant_id is required", code="MISSING_TENANT")
        try:
            source = CreditSource(source)
        except ValueError as e:
            raise ValidationError(f"Unknown credit source: {source}", code="INVALID_SOURCE") from e
        amount = quantize_amount(amount)
        external_reference = (external_reference or "").strip() or None
        if source is CreditSource.EXTERNAL_PAYMENT and external_reference is None:
            raise ValidationError("external_reference is required for external payments", code="MISSING_REFERENCE")

        try:
            entry = LedgerEntry(
                tenant_id=tenant_id,
                source=source,
                amount=amount,
                description=description,
                external_reference=external_reference,
            )
        except PydanticValidationError as e:
            raise ValidationError("Invalid ledger entry", details={"errors": e.errors(include_url=False, include_context=False)}) from e
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.retry_attempts),
                wait=wait_exponential(multiplier=self.retry_wait_seconds, max=2),
                retry=retry_if_exception_type(TransientStorageError),
                reraise=True,
            ):
                with attempt:
                    balance = await self._append_and_apply(entry)
        except AlreadyProcessed as e:
            return await self._replay(e)

        log.info(
            "credit_granted",
            tenant_id=str(tenant_id),
            entry_id=str(entry.id),
            source=source.value,
            amount=str(amount),
            balance=str(balance),
            external_reference=external_reference,
        )
        return CreditGrant(entry=entry, balance=balance)

    async def _append_and_apply(self, entry: LedgerEntry) -> Decimal:
        async with self.store.transaction(entry.tenant_id) as session:
            if entry.source is CreditSource.EXTERNAL_PAYMENT:
                existing = await self.store.ledger.find_by_external_reference(
                    entry.source, entry.external_reference, session=session
                )
                if existing is not None:
                    raise AlreadyProcessed(entry.source.value, entry.external_reference, entry=existing)
            await self.store.ledger.append(entry, session=session)
            balance = await self.store.balances.apply(entry.tenant_id, entry.amount, session=session)
        return balance

    async def _replay(self, exc: AlreadyProcessed) -> CreditGrant:
        existing = exc.entry or await self.store.ledger.find_by_external_reference(
            CreditSource(exc.source), exc.external_reference
        )
        if existing is None:
            # Conflict reported but the winning row is not visible yet.
            raise TransientStorageError(f"Reference {exc.external_reference} conflicted but was not found")
        balance = await self.store.balances.get(existing.tenant_id)
        log.info(
            "credit_replayed",
            tenant_id=str(existing.tenant_id),
            entry_id=str(existing.id),
            source=exc.source,
            external_reference=exc.external_reference,
        )
        return CreditGrant(entry=existing, balance=balance, replayed=True)

    async def grant_courtesy(
        self,
        caller: CallerContext,
        tenant_id: UUID,
        amount: Decimal | int | float | str,
        description: str | None = None,
    ) -> CreditGrant:
        """Admin-only courtesy credit for an existing tenant."""
        require_admin(caller)
        if not await self.store.tenant_exists(tenant_id):
            raise NotFoundError("Tenant not found", code="TENANT_NOT_FOUND")
        return await self.issue_credit(
            tenant_id,
            amount,
            CreditSource.COURTESY,
            description=description or COURTESY_DESCRIPTION,
        )

    async def get_balance(self, caller: CallerContext, tenant_id: UUID) -> Decimal:
        ensure_can_read_balance(caller, tenant_id)
        return quantize(await self.store.balances.get(tenant_id))

    async def list_ledger(
        self, caller: CallerContext, tenant_id: UUID, limit: int = 50, offset: int = 0
    ) -> list[LedgerEntry]:
        ensure_can_read_balance(caller, tenant_id)
        limit, offset = paginate(limit, offset)
        return await self.store.ledger.list_for_tenant(tenant_id, limit=limit, offset=offset)

    async def audit_balances(self) -> list[BalanceDrift]:
        """Compare every materialized balance with its ledger total; report mismatches."""
        drifts = []
        for account in await self.store.balances.list_accounts():
            total = await self.store.ledger.total_for_tenant(account.tenant_id)
            if quantize(total) != quantize(account.balance):
                drift = BalanceDrift(tenant_id=account.tenant_id, balance=account.balance, ledger_total=total)
                log.error(
                    "balance_drift",
                    tenant_id=str(account.tenant_id),
                    balance=str(account.balance),
                    ledger_total=str(total),
                )
                drifts.append(drift)
        return drifts
