import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from tenant_credits.core.config import get_settings
from tenant_credits.models.credit_balance import CreditBalance
from tenant_credits.models.credit_ledger import CreditLedgerEntry
from tenant_credits.models.tenant import Tenant
from tenant_credits.models.unresolved_payment import UnresolvedPaymentRecord

DOCUMENT_MODELS = [
    Tenant,
    CreditBalance,
    CreditLedgerEntry,
    UnresolvedPaymentRecord,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db() -> None:
    settings = get_settings()
    kwargs = {"uuidRepresentation": "standard"}
    if _use_tls(settings.mongodb_uri):
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
    database = client[settings.mongodb_db_name]
    # Indexes carry the (source, external_reference) uniqueness the ledger relies on.
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
