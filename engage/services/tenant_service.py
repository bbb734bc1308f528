from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from engage.config import Settings, settings
from engage.logging_config import get_logger
from engage.models import Tenant

logger = get_logger("tenant_service")

DEFAULT_AI_NAME = "Assistant"


@dataclass(frozen=True)
class TenantContext:
    """Per-tenant values threaded explicitly through every pipeline call."""

    tenant_id: UUID
    tenant_name: str
    phone_number_id: str
    access_token: Optional[str] = None
    ai_enabled: bool = True
    ai_model: str = "gpt-4o-mini"
    ai_name: str = DEFAULT_AI_NAME
    system_prompt: Optional[str] = None
    history_limit: int = 10
    buffer_seconds: float = 0.0
    default_country_code: Optional[str] = None

    @classmethod
    def from_tenant(cls, tenant: Tenant, defaults: Settings = settings) -> "TenantContext":
        config = tenant.config or {}
        ai = config.get("ai") or {}
        return cls(
            tenant_id=tenant.id,
            tenant_name=tenant.name,
            phone_number_id=tenant.phone_number_id,
            access_token=tenant.access_token,
            ai_enabled=bool(ai.get("enabled", True)),
            ai_model=ai.get("model") or defaults.default_ai_model,
            ai_name=ai.get("name") or DEFAULT_AI_NAME,
            system_prompt=ai.get("system_prompt"),
            history_limit=max(int(ai.get("history_limit") or defaults.history_limit), 1),
            buffer_seconds=max(float(ai.get("buffer_seconds") or 0), 0.0),
            default_country_code=config.get("default_country_code"),
        )


def resolve_tenant_context(db: Session, phone_number_id: Optional[str]) -> Optional[TenantContext]:
    """Map the provider's receiving number to an active tenant."""
    if not phone_number_id:
        return None
    tenant = (
        db.query(Tenant)
        .filter(Tenant.phone_number_id == phone_number_id, Tenant.is_active.is_(True))
        .first()
    )
    if not tenant:
        logger.warning(
            "No active tenant for phone_number_id",
            extra={"context": {"phone_number_id": phone_number_id}},
        )
        return None
    return TenantContext.from_tenant(tenant)


def get_tenant_context(db: Session, tenant_id: UUID) -> Optional[TenantContext]:
    tenant = db.query(Tenant).filter(Tenant.id == tenant_id).first()
    return TenantContext.from_tenant(tenant) if tenant else None


def is_valid_verify_token(db: Session, token: Optional[str]) -> bool:
    """Webhook subscription token: the global one, or any active tenant's."""
    if not token:
        return False
    if settings.whatsapp_verify_token and token == settings.whatsapp_verify_token:
        return True
    match = (
        db.query(Tenant.id)
        .filter(Tenant.verify_token == token, Tenant.is_active.is_(True))
        .first()
    )
    return match is not None
