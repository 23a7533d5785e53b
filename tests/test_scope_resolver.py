"""
Scope resolution waterfall.
"""
import pytest

from tenant_pricing.errors import ValidationError
from tenant_pricing.policy.scope_resolver import scope_precedence

from conftest import ADMIN, OTHER_TENANT, TENANT, make_model, make_scope


def flat(services, price, **kwargs):
    return make_model(services, "flat", {"base_price": price}, name=f"Flat {price}", **kwargs)


def test_precedence_slots_requested_type_before_deployment():
    assert scope_precedence("merchant") == [
        "individual", "contract", "segment", "group", "merchant", "deployment", "global",
    ]


def test_precedence_deduplicates_specific_types():
    assert scope_precedence("segment") == ["individual", "contract", "segment", "group", "deployment", "global"]
    assert scope_precedence("global") == ["individual", "contract", "segment", "group", "global", "deployment"]


def test_more_specific_level_wins_over_older_global(services):
    general = flat(services, 500)
    special = flat(services, 300)
    make_scope(services, general, "global")
    make_scope(services, special, "individual", "user-7")

    assert services.scope_resolver.resolve_pricing_model(TENANT, "merchant", "m-1") == special.id


def test_requested_scope_filtered_by_scope_id(services):
    general = flat(services, 500)
    mine = flat(services, 400)
    make_scope(services, general, "global")
    make_scope(services, mine, "merchant", "m-1")

    assert services.scope_resolver.resolve_pricing_model(TENANT, "merchant", "m-1") == mine.id
    assert services.scope_resolver.resolve_pricing_model(TENANT, "merchant", "m-2") == general.id


def test_override_scope_beats_older_plain_scope(services):
    first = flat(services, 500)
    second = flat(services, 450)
    make_scope(services, first, "merchant", "m-1")
    make_scope(services, second, "merchant", "m-1", is_override=True)

    assert services.scope_resolver.resolve_pricing_model(TENANT, "merchant", "m-1") == second.id


def test_oldest_scope_wins_within_a_level(services):
    first = flat(services, 500)
    second = flat(services, 450)
    make_scope(services, first, "global")
    make_scope(services, second, "global")

    assert services.scope_resolver.resolve_pricing_model(TENANT, "client") == first.id


def test_deployment_level_filtered_by_deployment_type(services):
    saas = flat(services, 100)
    hosted = flat(services, 200)
    make_scope(services, saas, "deployment", deployment_type="shared_saas")
    make_scope(services, hosted, "deployment", deployment_type="self_hosted")

    resolve = services.scope_resolver.resolve_pricing_model
    assert resolve(TENANT, "merchant", deployment_type="self_hosted") == hosted.id
    assert resolve(TENANT, "merchant", deployment_type="shared_saas") == saas.id


def test_inactive_models_are_skipped(services):
    retired = flat(services, 100)
    fallback = flat(services, 200)
    make_scope(services, retired, "merchant", "m-1")
    make_scope(services, fallback, "global")
    services.models.update_pricing_model(TENANT, retired.id, {"is_active": False}, *ADMIN)

    assert services.scope_resolver.resolve_pricing_model(TENANT, "merchant", "m-1") == fallback.id


def test_no_match_returns_none_with_trace(services):
    model_id, trace = services.scope_resolver.resolve_with_trace(TENANT, "merchant", "m-1")

    assert model_id is None
    assert trace[-1].step == "Fallback"
    assert len([t for t in trace if t.step == "Scope Match"]) == 7


def test_trace_names_matched_level(services, flat_model):
    model_id, trace = services.scope_resolver.resolve_with_trace(TENANT, "agent", "a-1")

    assert model_id == flat_model.id
    assert trace[-1].description == "Matched global scope"
    assert trace[-1].value == flat_model.id


def test_tenants_are_isolated(services, flat_model):
    assert services.scope_resolver.resolve_pricing_model(OTHER_TENANT, "merchant") is None


def test_unknown_scope_type_rejected(services):
    with pytest.raises(ValidationError):
        services.scope_resolver.resolve_pricing_model(TENANT, "planet")
