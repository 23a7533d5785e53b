"""
Data models for the pricing engine.

Uses dataclasses for structured, type-safe data representation. Pricing
configs are a tagged variant per model type; rule operators and actions are
closed enums so an unknown kind fails loudly at parse time instead of being
silently ignored during evaluation.
"""
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Optional, Union

from ..errors import ValidationError

Number = Union[int, float, Decimal]

ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")


class ModelType(str, Enum):
    FLAT = "flat"
    USAGE_BASED = "usage_based"
    TIERED = "tiered"
    SUBSCRIPTION = "subscription"
    REVENUE_SHARE = "revenue_share"
    HYBRID = "hybrid"


class ScopeType(str, Enum):
    GLOBAL = "global"
    DEPLOYMENT = "deployment"
    PARTNER = "partner"
    CLIENT = "client"
    MERCHANT = "merchant"
    AGENT = "agent"
    STAFF = "staff"
    INDIVIDUAL = "individual"
    GROUP = "group"
    SEGMENT = "segment"
    CONTRACT = "contract"


class DeploymentType(str, Enum):
    SHARED_SAAS = "shared_saas"
    PARTNER_DEPLOYED = "partner_deployed"
    SELF_HOSTED = "self_hosted"


class ActorRole(str, Enum):
    SUPER_ADMIN = "super_admin"
    PARTNER = "partner"
    CLIENT = "client"
    MERCHANT = "merchant"
    AGENT = "agent"
    STAFF = "staff"


class CycleType(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class CycleStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"
    INVOICED = "invoiced"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class ConditionOperator(str, Enum):
    EQ = "eq"
    NEQ = "neq"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NOT_IN = "not_in"
    CONTAINS = "contains"
    BETWEEN = "between"


class ActionType(str, Enum):
    APPLY_DISCOUNT = "apply_discount"
    APPLY_SURCHARGE = "apply_surcharge"
    ADD_FEE = "add_fee"
    SET_PRICE = "set_price"
    APPLY_MULTIPLIER = "apply_multiplier"
    SKIP = "skip"


class ActionUnit(str, Enum):
    PERCENT = "percent"
    FIXED = "fixed"


def parse_enum(enum_cls: type[Enum], value: Any, label: str) -> Any:
    """Parse a raw string into ``enum_cls``; ValidationError on unknown values."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(
            f"Invalid {label} '{value}', must be one of: {allowed}",
            code=f"invalid_{label.replace(' ', '_')}",
        )


def to_decimal(value: Any, label: str = "value") -> Decimal:
    """Convert a JSON/user number into a Decimal without float artefacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool) or value is None:
        raise ValidationError(f"{label} must be numeric, got {value!r}", code="not_numeric")
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{label} must be numeric, got {value!r}", code="not_numeric")


def optional_decimal(value: Any, label: str = "value") -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return to_decimal(value, label)


def to_jsonable(value: Any) -> Any:
    """Convert dataclasses, enums, Decimals and datetimes into JSON-safe values."""
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


# ---------------------------------------------------------------------------
# Pricing configuration (tagged variant per model type)
# ---------------------------------------------------------------------------


@dataclass
class PricingTier:
    """One band of a tiered price list; ``max_quantity`` None means open-ended."""
    min_quantity: Decimal
    unit_price: Decimal
    max_quantity: Optional[Decimal] = None
    flat_fee: Optional[Decimal] = None

    @classmethod
    def from_dict(cls, raw: dict) -> 'PricingTier':
        return cls(
            min_quantity=to_decimal(raw.get('min_quantity', 0), 'tier min_quantity'),
            unit_price=to_decimal(raw.get('unit_price', 0), 'tier unit_price'),
            max_quantity=optional_decimal(raw.get('max_quantity'), 'tier max_quantity'),
            flat_fee=optional_decimal(raw.get('flat_fee'), 'tier flat_fee'),
        )


@dataclass
class HybridComponent:
    """A weighted sub-model of a hybrid config; ``config`` is a partial patch."""
    type: ModelType
    config: dict = field(default_factory=dict)
    weight: Decimal = ONE

    @classmethod
    def from_dict(cls, raw: dict) -> 'HybridComponent':
        weight = raw.get('weight')
        return cls(
            type=parse_enum(ModelType, raw.get('type'), 'model type'),
            config=dict(raw.get('config') or {}),
            weight=to_decimal(weight, 'component weight') if weight is not None else ONE,
        )

    def merged_with(self, parent: dict) -> dict:
        """Component config layered over the parent's shared fields.

        The parent's own components and charge bounds stay at the hybrid level.
        """
        inherited = {
            k: v for k, v in parent.items()
            if k not in ('components', 'minimum_charge', 'maximum_charge')
        }
        inherited.update(self.config)
        return inherited


@dataclass
class BaseConfig:
    """Fields shared by every model type."""
    currency: Optional[str] = None
    minimum_charge: Optional[Decimal] = None
    maximum_charge: Optional[Decimal] = None


@dataclass
class FlatConfig(BaseConfig):
    base_price: Decimal = ZERO


@dataclass
class UsageBasedConfig(BaseConfig):
    base_price: Decimal = ZERO
    usage_metric: Optional[str] = None
    usage_unit: Optional[str] = None


@dataclass
class TieredConfig(BaseConfig):
    tiers: list[PricingTier] = field(default_factory=list)


@dataclass
class SubscriptionConfig(BaseConfig):
    base_price: Decimal = ZERO
    subscription_period: str = "monthly"


@dataclass
class RevenueShareConfig(BaseConfig):
    revenue_share_percent: Decimal = ZERO
    commission_percent: Optional[Decimal] = None


@dataclass
class HybridConfig(BaseConfig):
    components: list[HybridComponent] = field(default_factory=list)


PricingConfig = Union[
    FlatConfig, UsageBasedConfig, TieredConfig,
    SubscriptionConfig, RevenueShareConfig, HybridConfig,
]


def build_config(model_type: ModelType, raw: dict) -> PricingConfig:
    """Build the typed config variant for ``model_type`` from a raw dict."""
    common = dict(
        currency=raw.get('currency') or None,
        minimum_charge=optional_decimal(raw.get('minimum_charge'), 'minimum_charge'),
        maximum_charge=optional_decimal(raw.get('maximum_charge'), 'maximum_charge'),
    )
    base_price = to_decimal(raw.get('base_price') or 0, 'base_price')

    if model_type is ModelType.FLAT:
        return FlatConfig(base_price=base_price, **common)
    if model_type is ModelType.USAGE_BASED:
        return UsageBasedConfig(
            base_price=base_price,
            usage_metric=raw.get('usage_metric'),
            usage_unit=raw.get('usage_unit'),
            **common,
        )
    if model_type is ModelType.TIERED:
        tiers = [PricingTier.from_dict(t) for t in raw.get('tiers') or []]
        tiers.sort(key=lambda t: t.min_quantity)
        return TieredConfig(tiers=tiers, **common)
    if model_type is ModelType.SUBSCRIPTION:
        return SubscriptionConfig(
            base_price=base_price,
            subscription_period=raw.get('subscription_period') or "monthly",
            **common,
        )
    if model_type is ModelType.REVENUE_SHARE:
        return RevenueShareConfig(
            revenue_share_percent=to_decimal(raw.get('revenue_share_percent') or 0, 'revenue_share_percent'),
            commission_percent=optional_decimal(raw.get('commission_percent'), 'commission_percent'),
            **common,
        )
    if model_type is ModelType.HYBRID:
        components = [HybridComponent.from_dict(c) for c in raw.get('components') or []]
        return HybridConfig(components=components, **common)
    raise ValidationError(f"Unknown pricing model type: {model_type}", code="unknown_model_type")


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def _condition_value(value: Any) -> Any:
    # Decimals are stored as JSON numbers, not strings
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (list, tuple)):
        return [_condition_value(v) for v in value]
    return to_jsonable(value)


@dataclass
class RuleCondition:
    """A single ``field operator value`` test against the evaluation context."""
    field: str
    operator: ConditionOperator
    value: Any

    @classmethod
    def from_dict(cls, raw: dict) -> 'RuleCondition':
        if not raw.get('field'):
            raise ValidationError("Rule condition requires a field", code="invalid_condition")
        operator = parse_enum(ConditionOperator, raw.get('operator'), 'condition operator')
        value = raw.get('value')
        if operator is ConditionOperator.BETWEEN and (
            not isinstance(value, (list, tuple)) or len(value) != 2
        ):
            raise ValidationError("between requires a [low, high] pair", code="invalid_condition")
        return cls(field=raw['field'], operator=operator, value=value)

    def to_dict(self) -> dict:
        return {"field": self.field, "operator": self.operator.value, "value": _condition_value(self.value)}


@dataclass
class RuleAction:
    """An adjustment produced when a rule fires."""
    type: ActionType
    value: Decimal = ZERO
    unit: ActionUnit = ActionUnit.FIXED
    reason: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: dict) -> 'RuleAction':
        action_type = parse_enum(ActionType, raw.get('type'), 'action type')
        value = raw.get('value')
        return cls(
            type=action_type,
            value=ZERO if value is None and action_type is ActionType.SKIP else to_decimal(value, 'action value'),
            unit=parse_enum(ActionUnit, raw.get('unit') or 'fixed', 'action unit'),
            reason=raw.get('reason'),
        )

    def to_dict(self) -> dict:
        data = {"type": self.type.value, "value": str(self.value), "unit": self.unit.value}
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass
class PricingRule:
    """A conditional adjustment attached to a pricing model."""
    id: str
    tenant_id: str
    pricing_model_id: str
    name: str
    rule_type: str
    conditions: list[RuleCondition] = field(default_factory=list)
    actions: list[RuleAction] = field(default_factory=list)
    priority: int = 0
    is_active: bool = True
    effective_from: Optional[datetime] = None
    effective_to: Optional[datetime] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_effective(self, at: datetime) -> bool:
        """Active and inside the [effective_from, effective_to] window at ``at``."""
        if not self.is_active:
            return False
        if self.effective_from and at < self.effective_from:
            return False
        if self.effective_to and at > self.effective_to:
            return False
        return True


# ---------------------------------------------------------------------------
# Stored entities
# ---------------------------------------------------------------------------


@dataclass
class PricingModel:
    id: str
    tenant_id: str
    name: str
    model_type: str
    config: dict
    is_active: bool = True
    is_system: bool = False
    created_by: str = "system"
    created_by_role: str = ActorRole.SUPER_ADMIN.value
    version: int = 1
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class PricingScope:
    id: str
    tenant_id: str
    pricing_model_id: str
    scope_type: str
    scope_id: Optional[str] = None
    deployment_type: Optional[str] = None
    is_override: bool = False
    parent_scope_id: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class PricingOverride:
    id: str
    tenant_id: str
    pricing_model_id: str
    scope_id: str
    override_type: str
    override_value: dict
    reason: str
    effective_from: datetime
    created_by: str
    version: int = 1
    is_active: bool = True
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    effective_to: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class BillingCycle:
    id: str
    tenant_id: str
    scope_id: str
    scope_type: str
    cycle_type: str
    start_date: datetime
    end_date: datetime
    status: str = CycleStatus.ACTIVE.value
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class BillingItem:
    id: str
    tenant_id: str
    billing_cycle_id: str
    pricing_model_id: str
    item_type: str
    quantity: Decimal
    unit_price: Decimal
    total_amount: Decimal
    currency: str
    metadata: dict = field(default_factory=dict)
    description: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class AuditLogEntry:
    id: str
    tenant_id: str
    entity_type: str
    entity_id: str
    action: str
    actor_id: str
    actor_role: str
    previous_state: Optional[dict] = None
    new_state: Optional[dict] = None
    reason: Optional[str] = None
    is_reversible: bool = True
    reversed_by: Optional[str] = None
    reversed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


@dataclass
class Page:
    """A page of results plus the unpaginated total."""
    items: list
    total: int
    limit: int
    offset: int


# ---------------------------------------------------------------------------
# Calculation request / result
# ---------------------------------------------------------------------------


@dataclass
class TraceStep:
    """A single step in the pricing resolution trace."""
    step: str
    description: str
    value: Optional[str] = None


@dataclass
class PriceRequest:
    """A pricing request with tenant, scope context and quantity."""
    tenant_id: str
    scope_type: str
    item_type: str
    quantity: Number
    pricing_model_id: Optional[str] = None
    scope_id: Optional[str] = None
    deployment_type: Optional[str] = None
    metadata: Optional[dict] = None
    # Explicit evaluation time keeps repeated evaluations reproducible
    evaluated_at: Optional[datetime] = None


@dataclass
class PriceBreakdown:
    """One line of the base-price computation."""
    component: str
    quantity: Decimal
    unit_price: Decimal
    subtotal: Decimal


@dataclass
class PriceAdjustment:
    """An incremental delta produced by a rule action."""
    type: str
    amount: Decimal
    reason: str
    rule_id: Optional[str] = None


@dataclass
class PriceResult:
    """Complete result of a pricing calculation."""
    pricing_model_id: str
    base_price: Decimal
    final_price: Decimal
    currency: str
    evaluated_at: datetime
    adjustments: list[PriceAdjustment] = field(default_factory=list)
    breakdown: list[PriceBreakdown] = field(default_factory=list)
    applied_rules: list[str] = field(default_factory=list)
    applied_overrides: list[str] = field(default_factory=list)
    trace: list[TraceStep] = field(default_factory=list)

    def add_trace(self, step: str, description: str, value: Optional[str] = None):
        """Add a step to the result-level trace."""
        self.trace.append(TraceStep(step=step, description=description, value=value))

    def get_trace_text(self) -> str:
        """Get human-readable result trace as formatted text."""
        lines = []
        for t in self.trace:
            if t.value:
                lines.append(f"• {t.step}: {t.description} = {t.value}")
            else:
                lines.append(f"• {t.step}: {t.description}")
        return "\n".join(lines)


@dataclass
class CycleSummary:
    cycle: BillingCycle
    items: list[BillingItem]
    subtotal: Decimal
    total: Decimal
    currency: str
    item_count: int


@dataclass
class AuditFilters:
    entity_type: Optional[str] = None
    action: Optional[str] = None
    actor_id: Optional[str] = None
    actor_role: Optional[str] = None
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None


@dataclass
class ReversalResult:
    """Outcome of reversing an audit entry."""
    audit_log: AuditLogEntry
    compensating_entry: AuditLogEntry
    restored_state: Optional[dict]
