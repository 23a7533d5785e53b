"""
Shared fixtures: an in-memory SQLite store and a wired service container per test.
"""
from datetime import datetime
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from tenant_pricing.config.settings import Settings
from tenant_pricing.db.session import Database, enable_sqlite_foreign_keys
from tenant_pricing.services.container import PricingServices

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"
ADMIN = ("admin-1", "super_admin")

# Fixed evaluation time keeps pricing deterministic
NOW = datetime(2026, 3, 15, 12, 0, 0)

SEED_DIR = Path(__file__).parent.parent / "seed"


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", default_currency="NGN", seed_dir=SEED_DIR)


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    database = Database(engine)
    database.init_db()
    yield database
    database.dispose()


@pytest.fixture
def services(settings, db):
    return PricingServices.build(settings, db=db)


def make_model(services, model_type, config, tenant_id=TENANT, name=None, **kwargs):
    """Create a pricing model as the super admin."""
    return services.models.create_pricing_model(
        tenant_id, name or f"{model_type} model", model_type, config, *ADMIN, **kwargs
    )


def make_scope(services, model, scope_type, scope_id=None, tenant_id=TENANT, **kwargs):
    return services.scopes.create_scope(tenant_id, model.id, scope_type, scope_id=scope_id, **kwargs)


@pytest.fixture
def flat_model(services):
    """Flat 500 NGN model attached to the global scope."""
    model = make_model(services, "flat", {"base_price": 500, "currency": "NGN"})
    make_scope(services, model, "global")
    return model
