"""
Service container - wires the pricing and billing services together.

Built once at process start (or per test) instead of module-level
singletons, so every collaborator shares one Database handle.
"""
from dataclasses import dataclass
from typing import Optional

from ..config.settings import Settings, get_settings
from ..db.session import Database
from ..engine.pricing_engine import PricingCalculator
from ..policy.scope_resolver import ScopeResolver
from .audit_service import AuditTrail
from .billing_service import BillingEngine
from .override_service import OverrideManager
from .pricing_model_service import PricingModelService
from .scope_service import ScopeService


@dataclass
class PricingServices:
    settings: Settings
    db: Database
    audit: AuditTrail
    scopes: ScopeService
    scope_resolver: ScopeResolver
    models: PricingModelService
    overrides: OverrideManager
    calculator: PricingCalculator
    billing: BillingEngine

    @classmethod
    def build(cls, settings: Optional[Settings] = None, db: Optional[Database] = None) -> 'PricingServices':
        settings = settings or get_settings()
        db = db or Database.from_settings(settings)

        audit = AuditTrail(db)
        scope_resolver = ScopeResolver(db)
        models = PricingModelService(db, audit)
        overrides = OverrideManager(db, audit)
        calculator = PricingCalculator(db, scope_resolver, overrides, models, settings=settings)

        return cls(
            settings=settings,
            db=db,
            audit=audit,
            scopes=ScopeService(db, audit),
            scope_resolver=scope_resolver,
            models=models,
            overrides=overrides,
            calculator=calculator,
            billing=BillingEngine(db, calculator, audit, settings=settings),
        )
