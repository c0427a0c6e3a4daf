from datetime import datetime
from uuid import UUID

from beanie import Document, Indexed
from pydantic import BaseModel, Field

from tenant_credits.models.credit_ledger import utcnow


class TenantProfile(BaseModel):
    """What the credit service reads from the tenant directory."""

    tenant_id: UUID
    name: str = ""
    email: str | None = None


class Tenant(Document):
    """Tenant directory row. Owned by the directory service; read-only here."""
    tenant_id: Indexed(str, unique=True)
    name: str = ""
    email: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    class Settings:
        name = "tenants"

    def to_profile(self) -> TenantProfile:
        return TenantProfile(tenant_id=UUID(self.tenant_id), name=self.name, email=self.email)
