"""
Pricing Engine - Core price calculation with traceability.

Resolution order:
1. Resolve the pricing model for the scope (unless an id is given)
2. Layer active overrides onto the model config
3. Compute the base price by model type, then clamp to min/max charge
4. Apply the model's effective rules in priority order
5. Floor the final price at zero
"""
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config.settings import Settings, get_settings
from ..db.models import PricingModelRecord, utc_now
from ..db.session import Database
from ..errors import InvalidStateError, NotFoundError, ValidationError
from .models import (
    ZERO,
    HUNDRED,
    FlatConfig,
    HybridConfig,
    ModelType,
    PriceBreakdown,
    PriceRequest,
    PriceResult,
    PricingConfig,
    RevenueShareConfig,
    SubscriptionConfig,
    TieredConfig,
    UsageBasedConfig,
    build_config,
    to_decimal,
)
from .rule_matcher import RuleMatcher

logger = structlog.get_logger(__name__)


class PricingCalculator:
    """
    Computes prices for a tenant/scope context.

    Collaborators are passed in explicitly: the scope resolver, the override
    manager and the pricing model service (for rules).
    """

    def __init__(
        self,
        db: Database,
        scope_resolver,
        override_manager,
        model_service,
        settings: Optional[Settings] = None,
        rule_matcher: Optional[RuleMatcher] = None,
    ):
        self.db = db
        self.scope_resolver = scope_resolver
        self.override_manager = override_manager
        self.model_service = model_service
        self.settings = settings or get_settings()
        self.rule_matcher = rule_matcher or RuleMatcher()

    def calculate_price(self, request: PriceRequest, session: Optional[Session] = None) -> PriceResult:
        """
        Calculate a price with full traceability.

        Args:
            request: PriceRequest with tenant, scope context and quantity
            session: Optional open session to run inside (e.g. a billing transaction)

        Returns:
            PriceResult with base/final price, adjustments, breakdown and trace
        """
        evaluated_at = request.evaluated_at or utc_now()
        quantity = to_decimal(request.quantity, 'quantity')
        if quantity < ZERO:
            raise ValidationError("quantity must not be negative", code="negative_quantity")

        with self.db.session_scope(session) as s:
            resolution_trace = []
            pricing_model_id = request.pricing_model_id
            if not pricing_model_id:
                pricing_model_id, resolution_trace = self.scope_resolver.resolve_with_trace(
                    request.tenant_id, request.scope_type, request.scope_id,
                    request.deployment_type, session=s,
                )
                if not pricing_model_id:
                    raise InvalidStateError(
                        "No applicable pricing model found for the given scope",
                        code="no_pricing_model",
                        details={"scope_type": request.scope_type, "scope_id": request.scope_id},
                    )

            model = s.scalar(
                select(PricingModelRecord).where(
                    PricingModelRecord.id == pricing_model_id,
                    PricingModelRecord.tenant_id == request.tenant_id,
                )
            )
            if model is None:
                raise NotFoundError("Pricing model not found", code="pricing_model_not_found",
                                    details={"pricing_model_id": pricing_model_id})
            if not model.is_active:
                raise InvalidStateError("Pricing model is inactive", code="pricing_model_inactive",
                                        details={"pricing_model_id": pricing_model_id})
            try:
                model_type = ModelType(model.model_type)
            except ValueError:
                raise InvalidStateError(f"Unknown pricing model type: {model.model_type}",
                                        code="unknown_model_type")

            overrides = self.override_manager.get_active_overrides(
                request.tenant_id, pricing_model_id, request.scope_type, request.scope_id,
                at=evaluated_at, session=s,
            )
            rules = self.model_service.list_rules(request.tenant_id, pricing_model_id, session=s)

        result = PriceResult(
            pricing_model_id=pricing_model_id,
            base_price=ZERO,
            final_price=ZERO,
            currency=self.settings.default_currency,
            evaluated_at=evaluated_at,
        )
        result.trace.extend(resolution_trace)
        result.add_trace("Pricing Model", f"{model.name} ({model_type.value})", pricing_model_id)

        # Oldest first so the most recent override is applied last and wins
        effective_config = dict(model.config or {})
        for override in reversed(overrides):
            effective_config.update(override.override_value)
            result.applied_overrides.append(override.id)
            result.add_trace("Override Applied", f"{override.override_type}: {override.reason}", override.id)

        base_price, breakdown = self._calculate_base_price(model_type, effective_config, quantity, request.item_type)
        result.base_price = base_price
        result.breakdown = breakdown
        result.add_trace("Base Price", f"{model_type.value} pricing for quantity {quantity}", str(base_price))

        outcome = self.rule_matcher.apply_rules(rules, base_price, request.metadata, evaluated_at)
        result.adjustments = outcome.adjustments
        result.applied_rules = outcome.applied_rules
        result.trace.extend(outcome.trace)

        final_price = base_price + sum((a.amount for a in outcome.adjustments), ZERO)
        if final_price < ZERO:
            logger.debug("final_price_floored", pricing_model_id=pricing_model_id, price=str(final_price))
            final_price = ZERO
        result.final_price = final_price
        result.currency = effective_config.get('currency') or self.settings.default_currency
        result.add_trace("Final Price", f"Base {base_price} with {len(result.adjustments)} adjustment(s)",
                         f"{final_price} {result.currency}")

        logger.info(
            "price_calculated",
            tenant_id=request.tenant_id,
            pricing_model_id=pricing_model_id,
            model_type=model_type.value,
            base_price=str(base_price),
            final_price=str(final_price),
        )
        return result

    def _calculate_base_price(
        self,
        model_type: ModelType,
        raw_config: dict,
        quantity: Decimal,
        item_type: str,
    ) -> tuple[Decimal, list[PriceBreakdown]]:
        """Base total and breakdown for one model type, clamped to min/max charge."""
        config = build_config(model_type, raw_config)
        total, breakdown = self._price_by_type(config, raw_config, quantity, item_type)

        if config.minimum_charge is not None and total < config.minimum_charge:
            total = config.minimum_charge
        if config.maximum_charge is not None and total > config.maximum_charge:
            total = config.maximum_charge
        return total, breakdown

    def _price_by_type(
        self,
        config: PricingConfig,
        raw_config: dict,
        quantity: Decimal,
        item_type: str,
    ) -> tuple[Decimal, list[PriceBreakdown]]:
        if isinstance(config, FlatConfig):
            total = config.base_price * quantity
            return total, [PriceBreakdown("Flat Rate", quantity, config.base_price, total)]

        if isinstance(config, UsageBasedConfig):
            total = config.base_price * quantity
            label = f"Usage ({config.usage_metric or item_type})"
            return total, [PriceBreakdown(label, quantity, config.base_price, total)]

        if isinstance(config, TieredConfig):
            total = ZERO
            breakdown = []
            remaining = quantity
            for tier in config.tiers:
                if remaining <= ZERO:
                    break
                if tier.max_quantity is None:
                    tier_qty = remaining
                else:
                    tier_qty = min(remaining, tier.max_quantity - tier.min_quantity + 1)
                if tier_qty <= ZERO:
                    continue
                subtotal = tier.unit_price * tier_qty + (tier.flat_fee or ZERO)
                upper = tier.max_quantity if tier.max_quantity is not None else "∞"
                breakdown.append(PriceBreakdown(f"Tier {tier.min_quantity}-{upper}", tier_qty, tier.unit_price, subtotal))
                total += subtotal
                remaining -= tier_qty
            return total, breakdown

        if isinstance(config, SubscriptionConfig):
            label = f"Subscription ({config.subscription_period})"
            return config.base_price, [PriceBreakdown(label, Decimal("1"), config.base_price, config.base_price)]

        if isinstance(config, RevenueShareConfig):
            percent = config.revenue_share_percent
            total = quantity * percent / HUNDRED
            return total, [PriceBreakdown(f"Revenue Share ({percent}%)", quantity, percent / HUNDRED, total)]

        if isinstance(config, HybridConfig):
            total = ZERO
            breakdown = []
            for component in config.components:
                sub_total, sub_breakdown = self._calculate_base_price(
                    component.type, component.merged_with(raw_config), quantity, item_type
                )
                total += sub_total * component.weight
                for line in sub_breakdown:
                    breakdown.append(PriceBreakdown(
                        component=f"{component.type.value}: {line.component}",
                        quantity=line.quantity,
                        unit_price=line.unit_price,
                        subtotal=line.subtotal * component.weight,
                    ))
            return total, breakdown

        raise InvalidStateError(f"Unknown pricing config: {type(config).__name__}", code="unknown_model_type")
