"""
Price calculation by model type, overrides, clamps and rules.
"""
from datetime import timedelta
from decimal import Decimal

import pytest

from tenant_pricing.engine.models import PriceRequest
from tenant_pricing.errors import InvalidStateError, NotFoundError

from conftest import ADMIN, NOW, TENANT, make_model, make_scope

TIERS = [
    {"min_quantity": 1, "max_quantity": 10, "unit_price": 100},
    {"min_quantity": 11, "max_quantity": 50, "unit_price": 80},
]


def price(services, model, quantity, **kwargs):
    request = PriceRequest(
        tenant_id=kwargs.pop("tenant_id", TENANT),
        scope_type=kwargs.pop("scope_type", "merchant"),
        item_type=kwargs.pop("item_type", "transaction"),
        quantity=quantity,
        pricing_model_id=model.id if model else None,
        evaluated_at=kwargs.pop("evaluated_at", NOW),
        **kwargs,
    )
    return services.calculator.calculate_price(request)


@pytest.mark.parametrize("model_type,config", [
    ("flat", {"base_price": 500}),
    ("usage_based", {"base_price": 5}),
    ("tiered", {"tiers": TIERS}),
    ("revenue_share", {"revenue_share_percent": 15}),
])
def test_zero_quantity_prices_zero(services, model_type, config):
    model = make_model(services, model_type, config)
    assert price(services, model, 0).base_price == 0


def test_flat_and_usage(services):
    flat = make_model(services, "flat", {"base_price": 500})
    usage = make_model(services, "usage_based", {"base_price": "2.5", "usage_metric": "sms"})

    flat_result = price(services, flat, 3)
    usage_result = price(services, usage, 4)

    assert flat_result.base_price == Decimal("1500")
    assert flat_result.breakdown[0].component == "Flat Rate"
    assert usage_result.base_price == Decimal("10")
    assert usage_result.breakdown[0].component == "Usage (sms)"


def test_usage_label_falls_back_to_item_type(services):
    usage = make_model(services, "usage_based", {"base_price": 1})
    assert price(services, usage, 1, item_type="api_call").breakdown[0].component == "Usage (api_call)"


def test_tiered_consumes_bands_in_order(services):
    """[1-10]@100 + [11-50]@80 at quantity 15 = 1000 + 400."""
    model = make_model(services, "tiered", {"tiers": list(reversed(TIERS))})

    result = price(services, model, 15)

    assert result.base_price == Decimal("1400")
    assert [b.component for b in result.breakdown] == ["Tier 1-10", "Tier 11-50"]
    assert [b.quantity for b in result.breakdown] == [Decimal("10"), Decimal("5")]


def test_tiered_open_ended_tier_and_flat_fee(services):
    model = make_model(services, "tiered", {"tiers": [
        {"min_quantity": 1, "max_quantity": 2, "unit_price": 10, "flat_fee": 5},
        {"min_quantity": 3, "unit_price": 1},
    ]})

    result = price(services, model, 7)

    assert result.base_price == Decimal("30")
    assert result.breakdown[1].component == "Tier 3-∞"


def test_subscription_ignores_quantity(services):
    model = make_model(services, "subscription", {"base_price": 9000, "subscription_period": "yearly"})

    result = price(services, model, 42)

    assert result.base_price == Decimal("9000")
    assert result.breakdown[0].component == "Subscription (yearly)"


def test_revenue_share(services):
    model = make_model(services, "revenue_share", {"revenue_share_percent": 15})

    result = price(services, model, 10000)

    assert result.base_price == Decimal("1500")
    assert result.breakdown[0].component == "Revenue Share (15%)"


def test_hybrid_weights_and_prefixes(services):
    model = make_model(services, "hybrid", {
        "base_price": 100,
        "components": [
            {"type": "subscription"},
            {"type": "usage_based", "config": {"base_price": 2, "usage_metric": "calls"}, "weight": 0.5},
        ],
    })

    result = price(services, model, 10)

    # 100 (subscription inherits base_price) + 0.5 * (2 * 10)
    assert result.base_price == Decimal("110")
    assert [b.component for b in result.breakdown] == [
        "subscription: Subscription (monthly)",
        "usage_based: Usage (calls)",
    ]
    assert result.breakdown[1].subtotal == Decimal("10")


def test_hybrid_bounds_apply_to_total(services):
    model = make_model(services, "hybrid", {
        "base_price": 10,
        "minimum_charge": 500,
        "components": [{"type": "flat"}, {"type": "flat"}],
    })
    assert price(services, model, 1).base_price == Decimal("500")


def test_minimum_and_maximum_charge(services):
    low = make_model(services, "flat", {"base_price": 10, "minimum_charge": 50})
    high = make_model(services, "flat", {"base_price": 10, "maximum_charge": 75})

    assert price(services, low, 1).base_price == Decimal("50")
    assert price(services, high, 10).base_price == Decimal("75")


def test_discount_rule_applies_above_threshold(services):
    model = make_model(services, "tiered", {"tiers": TIERS})
    services.models.create_rule(
        TENANT, model.id, "Big order", "discount",
        [{"field": "price", "operator": "gt", "value": 1000}],
        [{"type": "apply_discount", "value": 10, "unit": "percent"}],
        priority=10,
    )

    big = price(services, model, 15)
    small = price(services, model, 5)

    assert big.final_price == Decimal("1260")
    assert big.adjustments[0].amount == Decimal("-140")
    assert big.adjustments[0].reason == "Big order"
    assert small.final_price == Decimal("500")
    assert small.applied_rules == []


def test_rule_uses_request_metadata(services):
    model = make_model(services, "flat", {"base_price": 100})
    created = services.models.create_rule(
        TENANT, model.id, "Express", "fee",
        [{"field": "delivery", "operator": "eq", "value": "express"}],
        [{"type": "add_fee", "value": 25}],
    )

    express = price(services, model, 1, metadata={"delivery": "express"})
    standard = price(services, model, 1, metadata={"delivery": "standard"})

    assert express.final_price == Decimal("125")
    assert express.applied_rules == [created.id]
    assert standard.final_price == Decimal("100")


def test_final_price_floored_at_zero(services):
    model = make_model(services, "flat", {"base_price": 100})
    services.models.create_rule(TENANT, model.id, "Giveaway", "discount", [], [{"type": "apply_discount", "value": 500}])

    result = price(services, model, 1)

    assert result.final_price == 0
    assert result.adjustments[0].amount == Decimal("-500")


def test_currency_defaults_to_settings(services):
    model = make_model(services, "flat", {"base_price": 1})
    usd = make_model(services, "flat", {"base_price": 1, "currency": "USD"})

    assert price(services, model, 1).currency == "NGN"
    assert price(services, usd, 1).currency == "USD"


def test_most_recent_override_wins(services):
    model = make_model(services, "flat", {"base_price": 100})
    scope = make_scope(services, model, "merchant", "m-1")
    older = services.overrides.create_override(
        TENANT, model.id, scope.id, "price", {"base_price": 80}, "Promo",
        NOW - timedelta(days=10), *ADMIN,
    )
    newer = services.overrides.create_override(
        TENANT, model.id, scope.id, "price", {"base_price": 60}, "Better promo",
        NOW - timedelta(days=5), *ADMIN,
    )

    result = price(services, model, 1, scope_id="m-1")

    assert result.base_price == Decimal("60")
    assert result.applied_overrides == [older.id, newer.id]


def test_unapproved_and_future_overrides_ignored(services):
    model = make_model(services, "flat", {"base_price": 100})
    scope = make_scope(services, model, "merchant", "m-1")
    services.overrides.create_override(
        TENANT, model.id, scope.id, "price", {"base_price": 1}, "Pending",
        NOW - timedelta(days=1), *ADMIN, requires_approval=True,
    )
    services.overrides.create_override(
        TENANT, model.id, scope.id, "price", {"base_price": 2}, "Next month",
        NOW + timedelta(days=30), *ADMIN,
    )

    result = price(services, model, 1, scope_id="m-1")

    assert result.base_price == Decimal("100")
    assert result.applied_overrides == []


def test_override_scoped_to_requested_scope(services):
    model = make_model(services, "flat", {"base_price": 100})
    mine = make_scope(services, model, "merchant", "m-1")
    services.overrides.create_override(
        TENANT, model.id, mine.id, "price", {"base_price": 50}, "Mine", NOW - timedelta(days=1), *ADMIN,
    )

    assert price(services, model, 1, scope_id="m-2").base_price == Decimal("100")
    assert price(services, model, 1, scope_id="m-1").base_price == Decimal("50")


def test_repeated_evaluation_is_deterministic(services):
    model = make_model(services, "tiered", {"tiers": TIERS})
    services.models.create_rule(TENANT, model.id, "Fee", "fee", [], [{"type": "add_fee", "value": 3}])

    first = price(services, model, 12)
    second = price(services, model, 12)

    assert first.final_price == second.final_price
    assert first.breakdown == second.breakdown
    assert first.evaluated_at == second.evaluated_at == NOW


def test_resolves_model_from_scope(services, flat_model):
    result = price(services, None, 2)

    assert result.pricing_model_id == flat_model.id
    assert result.base_price == Decimal("1000")
    assert "Matched global scope" in result.get_trace_text()


def test_no_model_for_scope(services):
    with pytest.raises(InvalidStateError):
        price(services, None, 1)


def test_inactive_model_rejected(services):
    model = make_model(services, "flat", {"base_price": 1})
    services.models.update_pricing_model(TENANT, model.id, {"is_active": False}, *ADMIN)

    with pytest.raises(InvalidStateError):
        price(services, model, 1)


def test_other_tenant_cannot_price_with_model(services):
    model = make_model(services, "flat", {"base_price": 1})

    with pytest.raises(NotFoundError):
        price(services, model, 1, tenant_id="tenant-b")
