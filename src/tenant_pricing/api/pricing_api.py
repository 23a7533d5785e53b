"""
Pricing API - FastAPI router for models, rules, scopes, overrides and price calculation.
"""
from decimal import Decimal
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..engine.models import PriceRequest
from ..services.container import PricingServices
from .deps import Actor, UtcDatetime, get_actor, get_services, serialize, serialize_page

router = APIRouter(prefix="/api/v1/pricing", tags=["pricing"])


# Pydantic models for API
class ModelCreate(BaseModel):
    """Request model for creating a pricing model."""
    tenant_id: str
    name: str
    model_type: str
    config: dict[str, Any]
    description: Optional[str] = None
    is_system: bool = False


class ModelUpdate(BaseModel):
    """Request model for updating a pricing model."""
    tenant_id: str
    name: Optional[str] = None
    description: Optional[str] = None
    config: Optional[dict[str, Any]] = None
    is_active: Optional[bool] = None
    reason: Optional[str] = None


class RuleCreate(BaseModel):
    tenant_id: str
    name: str
    rule_type: str
    conditions: list[dict[str, Any]] = Field(default_factory=list)
    actions: list[dict[str, Any]]
    description: Optional[str] = None
    priority: int = 0
    effective_from: Optional[UtcDatetime] = None
    effective_to: Optional[UtcDatetime] = None


class CalculateRequest(BaseModel):
    tenant_id: str
    scope_type: str
    item_type: str
    quantity: Decimal
    pricing_model_id: Optional[str] = None
    scope_id: Optional[str] = None
    deployment_type: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    evaluated_at: Optional[UtcDatetime] = None


class ScopeCreate(BaseModel):
    tenant_id: str
    pricing_model_id: str
    scope_type: str
    scope_id: Optional[str] = None
    deployment_type: Optional[str] = None
    is_override: bool = False
    parent_scope_id: Optional[str] = None


class OverrideCreate(BaseModel):
    tenant_id: str
    pricing_model_id: str
    scope_id: str
    override_type: str
    override_value: dict[str, Any]
    reason: str
    effective_from: UtcDatetime
    effective_to: Optional[UtcDatetime] = None
    requires_approval: bool = False


class TenantAction(BaseModel):
    tenant_id: str
    reason: Optional[str] = None


# Endpoints: models

@router.post("/models", status_code=201)
def create_model(body: ModelCreate, services: PricingServices = Depends(get_services),
                 actor: Actor = Depends(get_actor)):
    """Create a pricing model."""
    model = services.models.create_pricing_model(
        body.tenant_id, body.name, body.model_type, body.config,
        actor.id, actor.role, description=body.description, is_system=body.is_system,
    )
    return serialize(model)


@router.get("/models")
def list_models(
    tenant_id: str,
    model_type: Optional[str] = None,
    is_active: Optional[bool] = None,
    is_system: Optional[bool] = None,
    limit: int = 50,
    offset: int = 0,
    services: PricingServices = Depends(get_services),
):
    page = services.models.list_pricing_models(
        tenant_id, model_type=model_type, is_active=is_active, is_system=is_system,
        limit=limit, offset=offset,
    )
    return serialize_page(page, "models")


@router.get("/models/{model_id}")
def get_model(model_id: str, tenant_id: str, services: PricingServices = Depends(get_services)):
    return serialize(services.models.get_pricing_model(tenant_id, model_id))


@router.put("/models/{model_id}")
def update_model(model_id: str, body: ModelUpdate, services: PricingServices = Depends(get_services),
                 actor: Actor = Depends(get_actor)):
    """Update a pricing model; only fields present in the body are changed."""
    updates = body.model_dump(exclude_unset=True, exclude={"tenant_id", "reason"})
    model = services.models.update_pricing_model(
        body.tenant_id, model_id, updates, actor.id, actor.role, reason=body.reason,
    )
    return serialize(model)


@router.delete("/models/{model_id}")
def delete_model(model_id: str, tenant_id: str, reason: Optional[str] = None,
                 services: PricingServices = Depends(get_services), actor: Actor = Depends(get_actor)):
    services.models.delete_pricing_model(tenant_id, model_id, actor.id, actor.role, reason=reason)
    return {"success": True, "message": f"Pricing model '{model_id}' deleted"}


# Endpoints: rules

@router.post("/models/{model_id}/rules", status_code=201)
def create_rule(model_id: str, body: RuleCreate, services: PricingServices = Depends(get_services),
                actor: Actor = Depends(get_actor)):
    rule = services.models.create_rule(
        body.tenant_id, model_id, body.name, body.rule_type, body.conditions, body.actions,
        description=body.description, priority=body.priority,
        effective_from=body.effective_from, effective_to=body.effective_to,
        created_by=actor.id, created_by_role=actor.role,
    )
    return serialize(rule)


@router.get("/models/{model_id}/rules")
def list_rules(model_id: str, tenant_id: str, services: PricingServices = Depends(get_services)):
    return serialize(services.models.list_rules(tenant_id, model_id))


# Endpoints: calculation

@router.post("/calculate")
def calculate_price(body: CalculateRequest, services: PricingServices = Depends(get_services)):
    """Calculate a price with full trace."""
    result = services.calculator.calculate_price(PriceRequest(**body.model_dump()))
    data = serialize(result)
    data["trace_text"] = result.get_trace_text()
    return data


@router.get("/resolve")
def resolve_model(
    tenant_id: str,
    scope_type: str,
    scope_id: Optional[str] = None,
    deployment_type: Optional[str] = None,
    services: PricingServices = Depends(get_services),
):
    """Show which pricing model a scope context resolves to, and why."""
    model_id, trace = services.scope_resolver.resolve_with_trace(
        tenant_id, scope_type, scope_id, deployment_type,
    )
    return {"pricing_model_id": model_id, "trace": serialize(trace)}


# Endpoints: scopes

@router.post("/scopes", status_code=201)
def create_scope(body: ScopeCreate, services: PricingServices = Depends(get_services),
                 actor: Actor = Depends(get_actor)):
    scope = services.scopes.create_scope(
        body.tenant_id, body.pricing_model_id, body.scope_type,
        scope_id=body.scope_id, deployment_type=body.deployment_type,
        is_override=body.is_override, parent_scope_id=body.parent_scope_id,
        created_by=actor.id, created_by_role=actor.role,
    )
    return serialize(scope)


@router.get("/scopes")
def list_scopes(
    tenant_id: str,
    pricing_model_id: Optional[str] = None,
    scope_type: Optional[str] = None,
    deployment_type: Optional[str] = None,
    services: PricingServices = Depends(get_services),
):
    scopes = services.scopes.list_scopes(
        tenant_id, pricing_model_id=pricing_model_id, scope_type=scope_type, deployment_type=deployment_type,
    )
    return serialize(scopes)


@router.get("/scopes/lookup")
def lookup_scope(
    tenant_id: str,
    scope_type: str,
    scope_id: Optional[str] = None,
    deployment_type: Optional[str] = None,
    services: PricingServices = Depends(get_services),
):
    """Exact scope row for a (type, scope_id) pair; null when there is none."""
    scope = services.scopes.find_scope(tenant_id, scope_type, scope_id, deployment_type)
    return {"scope": serialize(scope)}


@router.get("/scopes/{scope_id}/hierarchy")
def scope_hierarchy(scope_id: str, tenant_id: str, services: PricingServices = Depends(get_services)):
    return serialize(services.scopes.get_scope_hierarchy(tenant_id, scope_id))


@router.delete("/scopes/{scope_id}")
def delete_scope(scope_id: str, tenant_id: str, reason: Optional[str] = None,
                 services: PricingServices = Depends(get_services), actor: Actor = Depends(get_actor)):
    services.scopes.delete_scope(tenant_id, scope_id, actor.id, actor.role, reason=reason)
    return {"success": True, "message": f"Scope '{scope_id}' deleted"}


# Endpoints: overrides

@router.post("/overrides", status_code=201)
def create_override(body: OverrideCreate, services: PricingServices = Depends(get_services),
                    actor: Actor = Depends(get_actor)):
    override = services.overrides.create_override(
        body.tenant_id, body.pricing_model_id, body.scope_id, body.override_type,
        body.override_value, body.reason, body.effective_from, actor.id, actor.role,
        effective_to=body.effective_to, requires_approval=body.requires_approval,
    )
    return serialize(override)


@router.get("/overrides")
def list_overrides(
    tenant_id: str,
    pricing_model_id: Optional[str] = None,
    scope_id: Optional[str] = None,
    is_active: Optional[bool] = None,
    include_expired: bool = False,
    limit: int = 50,
    offset: int = 0,
    services: PricingServices = Depends(get_services),
):
    page = services.overrides.list_overrides(
        tenant_id, pricing_model_id=pricing_model_id, scope_id=scope_id, is_active=is_active,
        include_expired=include_expired, limit=limit, offset=offset,
    )
    return serialize_page(page, "overrides")


@router.get("/overrides/history")
def override_history(tenant_id: str, pricing_model_id: str, scope_id: str,
                     services: PricingServices = Depends(get_services)):
    return serialize(services.overrides.get_override_history(tenant_id, pricing_model_id, scope_id))


@router.get("/overrides/{override_id}")
def get_override(override_id: str, tenant_id: str, services: PricingServices = Depends(get_services)):
    return serialize(services.overrides.get_override(tenant_id, override_id))


@router.post("/overrides/{override_id}/approve")
def approve_override(override_id: str, body: TenantAction, services: PricingServices = Depends(get_services),
                     actor: Actor = Depends(get_actor)):
    override = services.overrides.approve_override(body.tenant_id, override_id, actor.id, actor.role)
    return serialize(override)


@router.post("/overrides/{override_id}/deactivate")
def deactivate_override(override_id: str, body: TenantAction, services: PricingServices = Depends(get_services),
                        actor: Actor = Depends(get_actor)):
    override = services.overrides.deactivate_override(
        body.tenant_id, override_id, actor.id, actor.role, reason=body.reason,
    )
    return serialize(override)
