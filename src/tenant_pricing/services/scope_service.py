"""
Scope Service - CRUD for pricing scopes and their parent hierarchy.
"""
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from ..db.models import PricingModelRecord, PricingScopeRecord, new_id, utc_now
from ..db.session import Database
from ..engine.models import ActorRole, DeploymentType, PricingScope, ScopeType, parse_enum
from ..errors import InvalidStateError, NotFoundError
from .audit_service import AuditTrail

logger = structlog.get_logger(__name__)

ENTITY_TYPE = "pricing_scope"


class ScopeService:
    """Manages the scopes that attach pricing models to tenants' entities."""

    def __init__(self, db: Database, audit: AuditTrail):
        self.db = db
        self.audit = audit

    def create_scope(
        self,
        tenant_id: str,
        pricing_model_id: str,
        scope_type: str,
        scope_id: Optional[str] = None,
        deployment_type: Optional[str] = None,
        is_override: bool = False,
        parent_scope_id: Optional[str] = None,
        created_by: str = "system",
        created_by_role: str = ActorRole.SUPER_ADMIN.value,
    ) -> PricingScope:
        scope_type = parse_enum(ScopeType, scope_type, 'scope type').value
        if deployment_type is not None:
            deployment_type = parse_enum(DeploymentType, deployment_type, 'deployment type').value

        with self.db.session_scope() as s:
            model = s.scalar(
                select(PricingModelRecord.id).where(
                    PricingModelRecord.id == pricing_model_id,
                    PricingModelRecord.tenant_id == tenant_id,
                )
            )
            if model is None:
                raise NotFoundError("Pricing model not found", code="pricing_model_not_found",
                                    details={"pricing_model_id": pricing_model_id})
            if parent_scope_id and self._get(s, tenant_id, parent_scope_id) is None:
                raise NotFoundError("Parent scope not found", code="scope_not_found",
                                    details={"scope_id": parent_scope_id})

            record = PricingScopeRecord(
                id=new_id(),
                tenant_id=tenant_id,
                pricing_model_id=pricing_model_id,
                scope_type=scope_type,
                scope_id=scope_id,
                deployment_type=deployment_type,
                is_override=is_override,
                parent_scope_id=parent_scope_id,
                created_at=utc_now(),
            )
            s.add(record)
            s.flush()
            scope = record.to_domain()
            self.audit.log_action(
                tenant_id, ENTITY_TYPE, scope.id, "create", created_by, created_by_role,
                new_state=scope, session=s,
            )

        logger.info("scope_created", tenant_id=tenant_id, scope_type=scope_type,
                    scope_id=scope_id, pricing_model_id=pricing_model_id)
        return scope

    def get_scope(self, tenant_id: str, id: str) -> PricingScope:
        with self.db.session_scope() as s:
            record = self._get(s, tenant_id, id)
            if record is None:
                raise NotFoundError("Scope not found", code="scope_not_found", details={"scope_id": id})
            return record.to_domain()

    def find_scope(
        self,
        tenant_id: str,
        scope_type: str,
        scope_id: Optional[str] = None,
        deployment_type: Optional[str] = None,
    ) -> Optional[PricingScope]:
        """Exact lookup; a None ``scope_id`` matches rows whose scope_id is NULL."""
        stmt = select(PricingScopeRecord).where(
            PricingScopeRecord.tenant_id == tenant_id,
            PricingScopeRecord.scope_type == scope_type,
        )
        if scope_id is None:
            stmt = stmt.where(PricingScopeRecord.scope_id.is_(None))
        else:
            stmt = stmt.where(PricingScopeRecord.scope_id == scope_id)
        if deployment_type:
            stmt = stmt.where(PricingScopeRecord.deployment_type == deployment_type)

        with self.db.session_scope() as s:
            record = s.scalar(stmt.order_by(PricingScopeRecord.created_at).limit(1))
            return record.to_domain() if record else None

    def list_scopes(
        self,
        tenant_id: str,
        pricing_model_id: Optional[str] = None,
        scope_type: Optional[str] = None,
        deployment_type: Optional[str] = None,
    ) -> list[PricingScope]:
        stmt = select(PricingScopeRecord).where(PricingScopeRecord.tenant_id == tenant_id)
        if pricing_model_id:
            stmt = stmt.where(PricingScopeRecord.pricing_model_id == pricing_model_id)
        if scope_type:
            stmt = stmt.where(PricingScopeRecord.scope_type == scope_type)
        if deployment_type:
            stmt = stmt.where(PricingScopeRecord.deployment_type == deployment_type)

        with self.db.session_scope() as s:
            records = s.scalars(stmt.order_by(PricingScopeRecord.created_at)).all()
            return [r.to_domain() for r in records]

    def get_scope_hierarchy(self, tenant_id: str, scope_id: str) -> list[PricingScope]:
        """Ancestors of ``scope_id`` followed by the scope itself (root first)."""
        chain = []
        seen = set()
        with self.db.session_scope() as s:
            current = self._get(s, tenant_id, scope_id)
            if current is None:
                raise NotFoundError("Scope not found", code="scope_not_found", details={"scope_id": scope_id})
            while current is not None and current.id not in seen:
                seen.add(current.id)
                chain.append(current.to_domain())
                if not current.parent_scope_id:
                    break
                current = self._get(s, tenant_id, current.parent_scope_id)
        chain.reverse()
        return chain

    def delete_scope(
        self,
        tenant_id: str,
        id: str,
        deleted_by: str = "system",
        deleted_by_role: str = ActorRole.SUPER_ADMIN.value,
        reason: Optional[str] = None,
    ) -> None:
        with self.db.session_scope() as s:
            record = self._get(s, tenant_id, id)
            if record is None:
                raise NotFoundError("Scope not found", code="scope_not_found", details={"scope_id": id})
            before = record.to_domain()
            s.delete(record)
            try:
                s.flush()
            except IntegrityError as e:
                raise InvalidStateError(
                    "Scope is referenced by overrides or child scopes",
                    code="scope_in_use",
                    details={"scope_id": id},
                ) from e
            self.audit.log_action(
                tenant_id, ENTITY_TYPE, id, "delete", deleted_by, deleted_by_role,
                previous_state=before, reason=reason, session=s,
            )
        logger.info("scope_deleted", tenant_id=tenant_id, id=id)

    @staticmethod
    def _get(s, tenant_id: str, id: str) -> Optional[PricingScopeRecord]:
        return s.scalar(
            select(PricingScopeRecord).where(
                PricingScopeRecord.id == id,
                PricingScopeRecord.tenant_id == tenant_id,
            )
        )
