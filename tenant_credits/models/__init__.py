from tenant_credits.models.credit_balance import CreditAccount, CreditBalance
from tenant_credits.models.credit_ledger import CreditLedgerEntry, CreditSource, LedgerEntry
from tenant_credits.models.tenant import Tenant, TenantProfile
from tenant_credits.models.unresolved_payment import (
    UnresolvedPayment,
    UnresolvedPaymentRecord,
    UnresolvedReason,
)

__all__ = [
    "CreditAccount",
    "CreditBalance",
    "CreditLedgerEntry",
    "CreditSource",
    "LedgerEntry",
    "Tenant",
    "TenantProfile",
    "UnresolvedPayment",
    "UnresolvedPaymentRecord",
    "UnresolvedReason",
]
