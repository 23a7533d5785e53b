"""
Scope Resolver - Resolves the pricing model that applies to a scope context.
"""
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db.models import PricingModelRecord, PricingScopeRecord
from ..db.session import Database
from ..engine.models import ScopeType, TraceStep, parse_enum

logger = structlog.get_logger(__name__)

# Most specific first; the requested type is slotted in before deployment
PRECEDENCE_HEAD = [ScopeType.INDIVIDUAL, ScopeType.CONTRACT, ScopeType.SEGMENT, ScopeType.GROUP]
PRECEDENCE_TAIL = [ScopeType.DEPLOYMENT, ScopeType.GLOBAL]


def scope_precedence(scope_type: str) -> list[str]:
    """Candidate scope types in lookup order, de-duplicated keeping the first."""
    ordered = [s.value for s in PRECEDENCE_HEAD] + [scope_type] + [s.value for s in PRECEDENCE_TAIL]
    seen = set()
    result = []
    for candidate in ordered:
        if candidate not in seen:
            seen.add(candidate)
            result.append(candidate)
    return result


class ScopeResolver:
    """
    Resolves the single most specific active pricing model for a context.

    Waterfall precedence:
    1. individual, contract, segment, group
    2. The requested scope type (filtered by scope_id when given)
    3. deployment (filtered by deployment_type when given)
    4. global

    Within a level, override scopes beat plain ones, then the oldest row
    wins. The first level with a match decides; levels are never merged.
    """

    def __init__(self, db: Database):
        self.db = db

    def resolve_pricing_model(
        self,
        tenant_id: str,
        scope_type: str,
        scope_id: Optional[str] = None,
        deployment_type: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> Optional[str]:
        """Resolve the pricing model id, or None when no scope matches."""
        model_id, _ = self.resolve_with_trace(
            tenant_id, scope_type, scope_id, deployment_type, session=session
        )
        return model_id

    def resolve_with_trace(
        self,
        tenant_id: str,
        scope_type: str,
        scope_id: Optional[str] = None,
        deployment_type: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> tuple[Optional[str], list[TraceStep]]:
        """
        Resolve with trace of resolution steps.

        Returns (pricing_model_id, trace_steps).
        """
        scope_type = parse_enum(ScopeType, scope_type, 'scope type').value
        trace = [TraceStep("Scope Lookup", f"Resolving pricing model for {scope_type} scope", scope_id)]

        with self.db.session_scope(session) as s:
            for candidate in scope_precedence(scope_type):
                model_id = self._match_level(
                    s, tenant_id, candidate,
                    scope_id if candidate == scope_type else None,
                    deployment_type if candidate == ScopeType.DEPLOYMENT.value else None,
                )
                if model_id:
                    trace.append(TraceStep("Scope Match", f"Matched {candidate} scope", model_id))
                    logger.debug(
                        "pricing_model_resolved",
                        tenant_id=tenant_id,
                        scope_type=scope_type,
                        matched_scope_type=candidate,
                        pricing_model_id=model_id,
                    )
                    return model_id, trace
                trace.append(TraceStep("Scope Match", f"No active {candidate} scope"))

        trace.append(TraceStep("Fallback", "No applicable pricing model"))
        logger.debug("pricing_model_unresolved", tenant_id=tenant_id, scope_type=scope_type, scope_id=scope_id)
        return None, trace

    def _match_level(
        self,
        s: Session,
        tenant_id: str,
        candidate: str,
        scope_id: Optional[str],
        deployment_type: Optional[str],
    ) -> Optional[str]:
        stmt = (
            select(PricingScopeRecord.pricing_model_id)
            .join(PricingModelRecord, PricingModelRecord.id == PricingScopeRecord.pricing_model_id)
            .where(
                PricingScopeRecord.tenant_id == tenant_id,
                PricingScopeRecord.scope_type == candidate,
                PricingModelRecord.tenant_id == tenant_id,
                PricingModelRecord.is_active.is_(True),
            )
        )
        if scope_id:
            stmt = stmt.where(PricingScopeRecord.scope_id == scope_id)
        if deployment_type:
            stmt = stmt.where(PricingScopeRecord.deployment_type == deployment_type)

        stmt = stmt.order_by(
            PricingScopeRecord.is_override.desc(),
            PricingScopeRecord.created_at.asc(),
        ).limit(1)
        return s.scalar(stmt)
