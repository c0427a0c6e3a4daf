"""Caller privilege checks. The caller context is always passed in explicitly."""

from dataclasses import dataclass
from uuid import UUID

from tenant_credits.core.exceptions import AccessDenied


@dataclass(frozen=True)
class CallerContext:
    is_admin: bool
    bound_tenant: UUID | None = None

    @classmethod
    def admin(cls) -> "CallerContext":
        return cls(is_admin=True)

    @classmethod
    def tenant(cls, tenant_id: UUID) -> "CallerContext":
        return cls(is_admin=False, bound_tenant=tenant_id)


def require_admin(caller: CallerContext) -> None:
    if not caller.is_admin:
        raise AccessDenied("Administrator access required")


def ensure_can_read_balance(caller: CallerContext, tenant_id: UUID) -> None:
    """Admins read any tenant; tenant-scoped callers only their own."""
    if caller.is_admin:
        return
    if caller.bound_tenant is None or caller.bound_tenant != tenant_id:
        raise AccessDenied("You cannot access another tenant's credits")
