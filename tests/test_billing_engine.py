"""
Billing cycles: date derivation, lifecycle transitions and priced items.
"""
from dataclasses import asdict
from datetime import datetime
from decimal import Decimal

import pytest

from tenant_pricing.db.models import BillingCycleRecord
from tenant_pricing.engine.models import CycleType
from tenant_pricing.errors import InvalidStateError, NotFoundError, ValidationError
from tenant_pricing.services.billing_service import BillingEngine, calculate_cycle_end_date

from conftest import ADMIN, NOW, OTHER_TENANT, TENANT, make_model

JAN_1 = datetime(2026, 1, 1)


@pytest.mark.parametrize("start,cycle_type,expected", [
    (JAN_1, CycleType.DAILY, datetime(2026, 1, 1, 23, 59, 59, 999000)),
    (JAN_1, CycleType.WEEKLY, datetime(2026, 1, 7, 23, 59, 59, 999000)),
    (JAN_1, CycleType.MONTHLY, datetime(2026, 1, 31, 23, 59, 59, 999000)),
    (JAN_1, CycleType.QUARTERLY, datetime(2026, 3, 31, 23, 59, 59, 999000)),
    (JAN_1, CycleType.YEARLY, datetime(2026, 12, 31, 23, 59, 59, 999000)),
    (datetime(2026, 1, 31, 15, 30), CycleType.MONTHLY, datetime(2026, 2, 27, 23, 59, 59, 999000)),
    (datetime(2028, 2, 1), CycleType.MONTHLY, datetime(2028, 2, 29, 23, 59, 59, 999000)),
])
def test_cycle_end_dates(start, cycle_type, expected):
    assert calculate_cycle_end_date(start, cycle_type) == expected


def test_custom_cycle_needs_end_date(services):
    with pytest.raises(ValidationError):
        calculate_cycle_end_date(JAN_1, CycleType.CUSTOM)
    with pytest.raises(ValidationError):
        services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "custom", JAN_1)


def test_custom_cycle_with_end_date(services):
    end = datetime(2026, 1, 10, 18, 0)
    cycle = services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "custom", JAN_1, end_date=end)

    assert cycle.end_date == end


def test_end_before_start_rejected(services):
    with pytest.raises(ValidationError):
        services.billing.create_billing_cycle(
            TENANT, "m-1", "merchant", "custom", JAN_1, end_date=datetime(2025, 12, 1),
        )


def test_create_cycle_normalizes_start(services):
    cycle = services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", datetime(2026, 1, 1, 9, 45))

    assert cycle.start_date == JAN_1
    assert cycle.end_date == datetime(2026, 1, 31, 23, 59, 59, 999000)
    assert cycle.status == "active"


def test_one_active_cycle_per_scope(services):
    services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", JAN_1)

    with pytest.raises(InvalidStateError):
        services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", datetime(2026, 2, 1))

    # Different scope or tenant is fine
    services.billing.create_billing_cycle(TENANT, "m-2", "merchant", "monthly", JAN_1)
    services.billing.create_billing_cycle(OTHER_TENANT, "m-1", "merchant", "monthly", JAN_1)


def test_new_cycle_allowed_after_close(services):
    first = services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", JAN_1)
    services.billing.close_billing_cycle(TENANT, first.id, *ADMIN)

    second = services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", datetime(2026, 2, 1))

    assert services.billing.get_active_cycle(TENANT, "m-1", "merchant").id == second.id


def test_close_only_active_cycle(services):
    cycle = services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", JAN_1)

    closed = services.billing.close_billing_cycle(TENANT, cycle.id, *ADMIN)
    assert closed.status == "closed"

    with pytest.raises(InvalidStateError):
        services.billing.close_billing_cycle(TENANT, cycle.id, *ADMIN)


@pytest.mark.parametrize("path", [
    ["closed", "invoiced", "paid"],
    ["closed", "invoiced", "overdue", "paid"],
    ["closed", "invoiced", "overdue", "cancelled"],
    ["cancelled"],
])
def test_allowed_status_paths(services, path):
    cycle = services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", JAN_1)
    for status in path:
        cycle = services.billing.update_cycle_status(TENANT, cycle.id, status, *ADMIN)
    assert cycle.status == path[-1]


@pytest.mark.parametrize("path,illegal", [
    ([], "paid"),
    ([], "invoiced"),
    (["closed"], "active"),
    (["closed", "invoiced", "paid"], "cancelled"),
    (["cancelled"], "active"),
])
def test_illegal_status_transitions(services, path, illegal):
    cycle = services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", JAN_1)
    for status in path:
        services.billing.update_cycle_status(TENANT, cycle.id, status, *ADMIN)

    with pytest.raises(InvalidStateError):
        services.billing.update_cycle_status(TENANT, cycle.id, illegal, *ADMIN)


def test_unknown_status_rejected(services):
    cycle = services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", JAN_1)

    with pytest.raises(ValidationError):
        services.billing.update_cycle_status(TENANT, cycle.id, "refunded", *ADMIN)


def test_cycle_transitions_are_audited(services):
    cycle = services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", JAN_1)
    services.billing.close_billing_cycle(TENANT, cycle.id, *ADMIN)
    services.billing.update_cycle_status(TENANT, cycle.id, "invoiced", *ADMIN)

    history = services.audit.get_audit_history(TENANT, "billing_cycle", cycle.id)

    assert [e.action for e in history.items] == ["status_change", "close", "create"]
    assert history.items[0].previous_state["status"] == "closed"
    assert history.items[0].new_state["status"] == "invoiced"


def test_concurrent_close_loses_at_the_guarded_update(services, monkeypatch):
    active = services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", JAN_1)
    services.billing.update_cycle_status(TENANT, active.id, "cancelled", *ADMIN)
    # Closer read the cycle while it was still active
    monkeypatch.setattr(BillingEngine, "_require_cycle", staticmethod(
        lambda s, tenant_id, id: BillingCycleRecord(**asdict(active))
    ))

    with pytest.raises(InvalidStateError) as exc:
        services.billing.close_billing_cycle(TENANT, active.id, *ADMIN)

    monkeypatch.undo()
    assert exc.value.code == "concurrent_status_change"
    assert services.billing.get_billing_cycle(TENANT, active.id).status == "cancelled"


def add_item(services, cycle, model, quantity, **kwargs):
    return services.billing.add_billing_item(
        TENANT, cycle.id, model.id, "transaction", quantity, "merchant", "m-1",
        evaluated_at=NOW, **kwargs,
    )


def test_add_item_prices_and_stores(services, flat_model):
    cycle = services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", JAN_1)

    item = add_item(services, cycle, flat_model, 3, description="Card payments", metadata={"batch": "b-1"})

    assert item.total_amount == Decimal("1500")
    assert item.unit_price == Decimal("500")
    assert item.currency == "NGN"
    assert item.metadata["batch"] == "b-1"
    assert item.metadata["price_breakdown"][0]["component"] == "Flat Rate"
    assert item.metadata["applied_rules"] == []


def test_unit_price_is_effective_price(services):
    model = make_model(services, "flat", {"base_price": 100})
    services.models.create_rule(TENANT, model.id, "Fee", "fee", [], [{"type": "add_fee", "value": 10}])
    cycle = services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", JAN_1)

    item = add_item(services, cycle, model, 3)

    assert item.total_amount == Decimal("310")
    assert item.unit_price == Decimal("103.333333")


def test_zero_quantity_item(services):
    model = make_model(services, "subscription", {"base_price": 100})
    cycle = services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", JAN_1)

    item = add_item(services, cycle, model, 0)

    assert item.total_amount == Decimal("100")
    assert item.unit_price == 0


def test_cannot_add_to_closed_cycle(services, flat_model):
    cycle = services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", JAN_1)
    services.billing.close_billing_cycle(TENANT, cycle.id, *ADMIN)

    with pytest.raises(InvalidStateError):
        add_item(services, cycle, flat_model, 1)
    assert services.billing.list_billing_items(TENANT, cycle.id) == []


def test_mixed_currency_rejected(services, flat_model):
    usd = make_model(services, "flat", {"base_price": 2, "currency": "USD"})
    cycle = services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", JAN_1)
    add_item(services, cycle, flat_model, 1)

    with pytest.raises(InvalidStateError):
        add_item(services, cycle, usd, 1)
    assert len(services.billing.list_billing_items(TENANT, cycle.id)) == 1


def test_unknown_cycle(services, flat_model):
    with pytest.raises(NotFoundError):
        services.billing.add_billing_item(TENANT, "missing", flat_model.id, "transaction", 1, "merchant")


def test_summary_totals_items(services, flat_model):
    cycle = services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", JAN_1)
    add_item(services, cycle, flat_model, 1)
    add_item(services, cycle, flat_model, 2)

    summary = services.billing.get_cycle_summary(TENANT, cycle.id)

    assert summary.item_count == 2
    assert summary.subtotal == summary.total == Decimal("1500")
    assert summary.currency == "NGN"


def test_empty_summary_uses_default_currency(services):
    cycle = services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", JAN_1)

    summary = services.billing.get_cycle_summary(TENANT, cycle.id)

    assert summary.item_count == 0
    assert summary.total == 0
    assert summary.currency == "NGN"


def test_items_frame(services, flat_model):
    cycle = services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", JAN_1)
    add_item(services, cycle, flat_model, 2)

    df = services.billing.cycle_items_frame(TENANT, cycle.id)

    assert len(df) == 1
    assert df.iloc[0]['item_type'] == "transaction"
    assert df.iloc[0]['total_amount'] == Decimal("1000")


def test_list_cycles_filters(services):
    services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", JAN_1)
    closed = services.billing.create_billing_cycle(TENANT, "m-2", "merchant", "monthly", JAN_1)
    services.billing.close_billing_cycle(TENANT, closed.id, *ADMIN)

    page = services.billing.list_billing_cycles(TENANT, status="closed")

    assert page.total == 1
    assert page.items[0].id == closed.id


def test_cycles_are_tenant_scoped(services):
    cycle = services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", JAN_1)

    with pytest.raises(NotFoundError):
        services.billing.get_billing_cycle(OTHER_TENANT, cycle.id)


def test_item_total_is_quantized(services):
    model = make_model(services, "flat", {"base_price": 100})
    services.models.create_rule(
        TENANT, model.id, "Loyalty", "discount", [],
        [{"type": "apply_discount", "value": "33.3333333", "unit": "percent"}],
    )
    cycle = services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", JAN_1)

    item = add_item(services, cycle, model, 1)

    assert item.total_amount == Decimal("66.666667")
    assert services.billing.list_billing_items(TENANT, cycle.id)[0].total_amount == item.total_amount
    assert services.billing.get_cycle_summary(TENANT, cycle.id).total == item.total_amount


def test_added_item_is_audited(services, flat_model):
    cycle = services.billing.create_billing_cycle(TENANT, "m-1", "merchant", "monthly", JAN_1)

    item = add_item(services, cycle, flat_model, 2, added_by="ops-1", added_by_role="client")

    history = services.audit.get_audit_history(TENANT, "billing_item", item.id)
    assert [e.action for e in history.items] == ["add_item"]
    entry = history.items[0]
    assert (entry.actor_id, entry.actor_role) == ("ops-1", "client")
    assert entry.previous_state is None
    assert entry.new_state["billing_cycle_id"] == cycle.id
    assert Decimal(entry.new_state["total_amount"]) == Decimal("1000")
