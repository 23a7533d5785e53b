"""
Override lifecycle: creation, approval, activation window and history.
"""
from dataclasses import asdict
from datetime import timedelta

import pytest

from tenant_pricing.db.models import PricingOverrideRecord
from tenant_pricing.errors import InvalidStateError, NotFoundError, ValidationError
from tenant_pricing.services.override_service import OverrideManager

from conftest import ADMIN, NOW, OTHER_TENANT, TENANT, make_model, make_scope


@pytest.fixture
def model(services):
    return make_model(services, "flat", {"base_price": 100})


@pytest.fixture
def scope(services, model):
    return make_scope(services, model, "merchant", "m-1")


def create(services, model, scope, value=None, **kwargs):
    return services.overrides.create_override(
        kwargs.pop("tenant_id", TENANT), model.id, scope.id, "price",
        value or {"base_price": 80}, kwargs.pop("reason", "Negotiated rate"),
        kwargs.pop("effective_from", NOW - timedelta(days=1)), *ADMIN, **kwargs,
    )


def active(services, model, scope_id="m-1"):
    return services.overrides.get_active_overrides(TENANT, model.id, "merchant", scope_id, at=NOW)


def test_override_without_approval_is_usable(services, model, scope):
    override = create(services, model, scope)

    assert override.version == 1
    assert override.approved_by == ADMIN[0]
    assert [o.id for o in active(services, model)] == [override.id]


def test_approval_required_before_use(services, model, scope):
    override = create(services, model, scope, requires_approval=True)
    assert override.is_active is False
    assert active(services, model) == []

    approved = services.overrides.approve_override(TENANT, override.id, "approver-1", "client")

    assert approved.approved_by == "approver-1"
    assert approved.is_active is True
    assert [o.id for o in active(services, model)] == [override.id]


def test_approval_happens_once(services, model, scope):
    override = create(services, model, scope, requires_approval=True)
    services.overrides.approve_override(TENANT, override.id, "approver-1", "client")

    with pytest.raises(InvalidStateError):
        services.overrides.approve_override(TENANT, override.id, "approver-2", "client")
    assert services.overrides.get_override(TENANT, override.id).approved_by == "approver-1"


def test_concurrent_approval_loses_at_the_guarded_update(services, model, scope, monkeypatch):
    pending = create(services, model, scope, requires_approval=True)
    services.overrides.approve_override(TENANT, pending.id, "approver-1", "client")
    # Second approver read the row before the first one committed
    monkeypatch.setattr(OverrideManager, "_require", staticmethod(
        lambda s, tenant_id, id: PricingOverrideRecord(**asdict(pending))
    ))

    with pytest.raises(InvalidStateError) as exc:
        services.overrides.approve_override(TENANT, pending.id, "approver-2", "client")

    monkeypatch.undo()
    assert exc.value.code == "override_already_approved"
    assert services.overrides.get_override(TENANT, pending.id).approved_by == "approver-1"
    approvals = services.audit.get_audit_history(TENANT, "pricing_override", pending.id).items
    assert [e.actor_id for e in approvals if e.action == "approve"] == ["approver-1"]


def test_effective_window_respected(services, model, scope):
    create(services, model, scope, effective_from=NOW + timedelta(days=1))
    create(services, model, scope, effective_from=NOW - timedelta(days=10), effective_to=NOW - timedelta(days=5))

    assert active(services, model) == []


def test_inverted_window_rejected(services, model, scope):
    with pytest.raises(ValidationError):
        create(services, model, scope, effective_from=NOW, effective_to=NOW - timedelta(days=1))


def test_active_overrides_filtered_by_scope(services, model, scope):
    other = make_scope(services, model, "merchant", "m-2")
    mine = create(services, model, scope)
    theirs = create(services, model, other)

    assert [o.id for o in active(services, model, "m-1")] == [mine.id]
    # No scope_id means every scope of the model
    assert {o.id for o in active(services, model, None)} == {mine.id, theirs.id}


def test_active_overrides_newest_first(services, model, scope):
    older = create(services, model, scope)
    newer = create(services, model, scope, value={"base_price": 70})

    assert [o.id for o in active(services, model)] == [newer.id, older.id]


def test_deactivated_override_not_usable(services, model, scope):
    override = create(services, model, scope)

    services.overrides.deactivate_override(TENANT, override.id, *ADMIN, reason="Contract ended")

    assert active(services, model) == []
    assert services.overrides.get_override(TENANT, override.id).is_active is False


def test_history_lists_every_override_for_scope(services, model, scope):
    first = create(services, model, scope)
    services.overrides.deactivate_override(TENANT, first.id, *ADMIN)
    second = create(services, model, scope, value={"base_price": 60})

    history = services.overrides.get_override_history(TENANT, model.id, scope.id)

    assert [o.id for o in history] == [second.id, first.id]


def test_list_overrides_pages(services, model, scope):
    for _ in range(3):
        create(services, model, scope)

    page = services.overrides.list_overrides(TENANT, pricing_model_id=model.id, limit=2)

    assert page.total == 3
    assert len(page.items) == 2


def test_creation_is_audited(services, model, scope):
    override = create(services, model, scope)

    history = services.audit.get_audit_history(TENANT, "pricing_override", override.id)

    assert [e.action for e in history.items] == ["create"]
    assert history.items[0].new_state["override_value"] == {"base_price": 80}


def test_unknown_scope_or_model(services, model, scope):
    with pytest.raises(NotFoundError):
        services.overrides.create_override(
            TENANT, model.id, "missing", "price", {}, "x", NOW, *ADMIN,
        )
    with pytest.raises(NotFoundError):
        services.overrides.create_override(
            TENANT, "missing", scope.id, "price", {}, "x", NOW, *ADMIN,
        )


def test_tenant_isolation(services, model, scope):
    override = create(services, model, scope)

    with pytest.raises(NotFoundError):
        services.overrides.get_override(OTHER_TENANT, override.id)
    with pytest.raises(NotFoundError):
        create(services, model, scope, tenant_id=OTHER_TENANT)
