"""
Billing API - FastAPI router for billing cycles, items and the audit trail.
"""
from decimal import Decimal
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..engine.models import AuditFilters
from ..services.container import PricingServices
from .deps import Actor, UtcDatetime, get_actor, get_services, serialize, serialize_page

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


class CycleCreate(BaseModel):
    tenant_id: str
    scope_id: str
    scope_type: str
    cycle_type: str
    start_date: UtcDatetime
    end_date: Optional[UtcDatetime] = None


class ItemCreate(BaseModel):
    tenant_id: str
    pricing_model_id: str
    item_type: str
    quantity: Decimal
    scope_type: str
    scope_id: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    deployment_type: Optional[str] = None
    evaluated_at: Optional[UtcDatetime] = None


class StatusUpdate(BaseModel):
    tenant_id: str
    status: str


class TenantAction(BaseModel):
    tenant_id: str


# Endpoints: cycles

@router.post("/cycles", status_code=201)
def create_cycle(body: CycleCreate, services: PricingServices = Depends(get_services),
                 actor: Actor = Depends(get_actor)):
    cycle = services.billing.create_billing_cycle(
        body.tenant_id, body.scope_id, body.scope_type, body.cycle_type, body.start_date,
        end_date=body.end_date, created_by=actor.id, created_by_role=actor.role,
    )
    return serialize(cycle)


@router.get("/cycles")
def list_cycles(
    tenant_id: str,
    scope_id: Optional[str] = None,
    scope_type: Optional[str] = None,
    status: Optional[str] = None,
    from_date: Optional[UtcDatetime] = None,
    to_date: Optional[UtcDatetime] = None,
    limit: int = 50,
    offset: int = 0,
    services: PricingServices = Depends(get_services),
):
    page = services.billing.list_billing_cycles(
        tenant_id, scope_id=scope_id, scope_type=scope_type, status=status,
        from_date=from_date, to_date=to_date, limit=limit, offset=offset,
    )
    return serialize_page(page, "cycles")


@router.get("/cycles/{cycle_id}")
def get_cycle(cycle_id: str, tenant_id: str, services: PricingServices = Depends(get_services)):
    return serialize(services.billing.get_billing_cycle(tenant_id, cycle_id))


@router.get("/cycles/{cycle_id}/summary")
def cycle_summary(cycle_id: str, tenant_id: str, services: PricingServices = Depends(get_services)):
    return serialize(services.billing.get_cycle_summary(tenant_id, cycle_id))


@router.post("/cycles/{cycle_id}/items", status_code=201)
def add_item(cycle_id: str, body: ItemCreate, services: PricingServices = Depends(get_services),
             actor: Actor = Depends(get_actor)):
    """Price an item and record it in the cycle."""
    item = services.billing.add_billing_item(
        body.tenant_id, cycle_id, body.pricing_model_id, body.item_type, body.quantity,
        body.scope_type, body.scope_id,
        description=body.description, metadata=body.metadata,
        deployment_type=body.deployment_type, evaluated_at=body.evaluated_at,
        added_by=actor.id, added_by_role=actor.role,
    )
    return serialize(item)


@router.get("/cycles/{cycle_id}/items")
def list_items(cycle_id: str, tenant_id: str, services: PricingServices = Depends(get_services)):
    return serialize(services.billing.list_billing_items(tenant_id, cycle_id))


@router.post("/cycles/{cycle_id}/close")
def close_cycle(cycle_id: str, body: TenantAction, services: PricingServices = Depends(get_services),
                actor: Actor = Depends(get_actor)):
    return serialize(services.billing.close_billing_cycle(body.tenant_id, cycle_id, actor.id, actor.role))


@router.patch("/cycles/{cycle_id}/status")
def update_status(cycle_id: str, body: StatusUpdate, services: PricingServices = Depends(get_services),
                  actor: Actor = Depends(get_actor)):
    cycle = services.billing.update_cycle_status(body.tenant_id, cycle_id, body.status, actor.id, actor.role)
    return serialize(cycle)


# Endpoints: audit

@router.get("/audit")
def search_audit(
    tenant_id: str,
    entity_type: Optional[str] = None,
    action: Optional[str] = None,
    actor_id: Optional[str] = None,
    actor_role: Optional[str] = None,
    from_date: Optional[UtcDatetime] = None,
    to_date: Optional[UtcDatetime] = None,
    limit: int = 50,
    offset: int = 0,
    services: PricingServices = Depends(get_services),
):
    filters = AuditFilters(
        entity_type=entity_type, action=action, actor_id=actor_id,
        actor_role=actor_role, from_date=from_date, to_date=to_date,
    )
    page = services.audit.search_audit_logs(tenant_id, filters, limit=limit, offset=offset)
    return serialize_page(page, "logs")


@router.get("/audit/{entity_type}/{entity_id}")
def audit_history(entity_type: str, entity_id: str, tenant_id: str, limit: int = 50, offset: int = 0,
                  services: PricingServices = Depends(get_services)):
    page = services.audit.get_audit_history(tenant_id, entity_type, entity_id, limit=limit, offset=offset)
    return serialize_page(page, "logs")


@router.post("/audit/{audit_log_id}/reverse")
def reverse_action(audit_log_id: str, body: TenantAction, services: PricingServices = Depends(get_services),
                   actor: Actor = Depends(get_actor)):
    result = services.audit.reverse_action(body.tenant_id, audit_log_id, actor.id, actor.role)
    return serialize(result)
