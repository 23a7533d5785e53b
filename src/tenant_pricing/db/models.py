"""
Database Models - SQLAlchemy ORM tables for pricing and billing.

Each record maps onto the matching dataclass in ``engine.models`` via
``to_domain()`` so the pricing engine never touches ORM objects.
"""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..engine import models as domain

JSONType = JSON().with_variant(JSONB(), "postgresql")
Money = Numeric(20, 6)


def utc_now() -> datetime:
    """Current UTC time as a naive datetime (the store keeps naive UTC)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class PricingModelRecord(Base):
    __tablename__ = "pricing_models"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    model_type: Mapped[str] = mapped_column(String(50), nullable=False)
    config: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[str] = mapped_column(String(36), nullable=False)
    created_by_role: Mapped[str] = mapped_column(String(50), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint(
            "model_type IN ('flat', 'usage_based', 'tiered', 'subscription', 'revenue_share', 'hybrid')",
            name="ck_pricing_models_model_type",
        ),
        Index("idx_pricing_models_type", "model_type"),
    )

    def to_domain(self) -> domain.PricingModel:
        return domain.PricingModel(
            id=self.id,
            tenant_id=self.tenant_id,
            name=self.name,
            description=self.description,
            model_type=self.model_type,
            config=dict(self.config or {}),
            is_active=self.is_active,
            is_system=self.is_system,
            created_by=self.created_by,
            created_by_role=self.created_by_role,
            created_at=self.created_at,
            updated_at=self.updated_at,
            version=self.version,
        )


class PricingRuleRecord(Base):
    __tablename__ = "pricing_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    pricing_model_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("pricing_models.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rule_type: Mapped[str] = mapped_column(String(50), nullable=False)
    conditions: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)
    actions: Mapped[list[Any]] = mapped_column(JSONType, nullable=False, default=list)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    effective_from: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    effective_to: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    def to_domain(self) -> domain.PricingRule:
        return domain.PricingRule(
            id=self.id,
            tenant_id=self.tenant_id,
            pricing_model_id=self.pricing_model_id,
            name=self.name,
            description=self.description,
            rule_type=self.rule_type,
            conditions=[domain.RuleCondition.from_dict(c) for c in self.conditions or []],
            actions=[domain.RuleAction.from_dict(a) for a in self.actions or []],
            priority=self.priority,
            is_active=self.is_active,
            effective_from=self.effective_from,
            effective_to=self.effective_to,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class PricingScopeRecord(Base):
    __tablename__ = "pricing_scopes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    pricing_model_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("pricing_models.id", ondelete="CASCADE"), nullable=False, index=True
    )
    scope_type: Mapped[str] = mapped_column(String(50), nullable=False)
    scope_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    deployment_type: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    is_override: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    parent_scope_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("pricing_scopes.id"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(
            "scope_type IN ('global', 'deployment', 'partner', 'client', 'merchant', 'agent', "
            "'staff', 'individual', 'group', 'segment', 'contract')",
            name="ck_pricing_scopes_scope_type",
        ),
        CheckConstraint(
            "deployment_type IS NULL OR deployment_type IN ('shared_saas', 'partner_deployed', 'self_hosted')",
            name="ck_pricing_scopes_deployment_type",
        ),
        Index("idx_pricing_scopes_type", "tenant_id", "scope_type", "scope_id"),
    )

    def to_domain(self) -> domain.PricingScope:
        return domain.PricingScope(
            id=self.id,
            tenant_id=self.tenant_id,
            pricing_model_id=self.pricing_model_id,
            scope_type=self.scope_type,
            scope_id=self.scope_id,
            deployment_type=self.deployment_type,
            is_override=self.is_override,
            parent_scope_id=self.parent_scope_id,
            created_at=self.created_at,
        )


class PricingOverrideRecord(Base):
    __tablename__ = "pricing_overrides"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    pricing_model_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("pricing_models.id"), nullable=False
    )
    scope_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("pricing_scopes.id"), nullable=False, index=True
    )
    override_type: Mapped[str] = mapped_column(String(50), nullable=False)
    override_value: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    approved_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    effective_from: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    effective_to: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[str] = mapped_column(String(36), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    def to_domain(self) -> domain.PricingOverride:
        return domain.PricingOverride(
            id=self.id,
            tenant_id=self.tenant_id,
            pricing_model_id=self.pricing_model_id,
            scope_id=self.scope_id,
            override_type=self.override_type,
            override_value=dict(self.override_value or {}),
            reason=self.reason,
            approved_by=self.approved_by,
            approved_at=self.approved_at,
            effective_from=self.effective_from,
            effective_to=self.effective_to,
            version=self.version,
            is_active=self.is_active,
            created_by=self.created_by,
            created_at=self.created_at,
        )


class BillingCycleRecord(Base):
    __tablename__ = "billing_cycles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    scope_id: Mapped[str] = mapped_column(String(36), nullable=False)
    scope_type: Mapped[str] = mapped_column(String(50), nullable=False)
    cycle_type: Mapped[str] = mapped_column(String(50), nullable=False)
    start_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint(
            "cycle_type IN ('daily', 'weekly', 'monthly', 'quarterly', 'yearly', 'custom')",
            name="ck_billing_cycles_cycle_type",
        ),
        CheckConstraint(
            "status IN ('active', 'closed', 'invoiced', 'paid', 'overdue', 'cancelled')",
            name="ck_billing_cycles_status",
        ),
        CheckConstraint("end_date >= start_date", name="ck_billing_cycles_dates"),
        Index("idx_billing_cycles_scope", "scope_id", "scope_type"),
        # At most one active cycle per (tenant, scope)
        Index(
            "uq_billing_cycles_active_scope",
            "tenant_id", "scope_id", "scope_type",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    def to_domain(self) -> domain.BillingCycle:
        return domain.BillingCycle(
            id=self.id,
            tenant_id=self.tenant_id,
            scope_id=self.scope_id,
            scope_type=self.scope_type,
            cycle_type=self.cycle_type,
            start_date=self.start_date,
            end_date=self.end_date,
            status=self.status,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class BillingItemRecord(Base):
    __tablename__ = "billing_items"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    billing_cycle_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("billing_cycles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    pricing_model_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("pricing_models.id"), nullable=False
    )
    item_type: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    quantity: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal("1"))
    unit_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    # "metadata" is reserved on declarative classes
    item_metadata: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_billing_items_total_non_negative"),
    )

    def to_domain(self) -> domain.BillingItem:
        return domain.BillingItem(
            id=self.id,
            tenant_id=self.tenant_id,
            billing_cycle_id=self.billing_cycle_id,
            pricing_model_id=self.pricing_model_id,
            item_type=self.item_type,
            description=self.description,
            quantity=Decimal(self.quantity),
            unit_price=Decimal(self.unit_price),
            total_amount=Decimal(self.total_amount),
            currency=self.currency,
            metadata=dict(self.item_metadata or {}),
            created_at=self.created_at,
        )


class PricingAuditLogRecord(Base):
    __tablename__ = "pricing_audit_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(36), nullable=False)
    actor_role: Mapped[str] = mapped_column(String(50), nullable=False)
    previous_state: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    new_state: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_reversible: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    reversed_by: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    reversed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index("idx_pricing_audit_entity", "tenant_id", "entity_type", "entity_id"),
        Index("idx_pricing_audit_created", "created_at"),
    )

    def to_domain(self) -> domain.AuditLogEntry:
        return domain.AuditLogEntry(
            id=self.id,
            tenant_id=self.tenant_id,
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            action=self.action,
            actor_id=self.actor_id,
            actor_role=self.actor_role,
            previous_state=self.previous_state,
            new_state=self.new_state,
            reason=self.reason,
            is_reversible=self.is_reversible,
            reversed_by=self.reversed_by,
            reversed_at=self.reversed_at,
            created_at=self.created_at,
        )
