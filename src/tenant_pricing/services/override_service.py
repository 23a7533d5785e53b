"""
Override Service - Tenant-approved patches layered onto pricing model configs.

An override is only usable once it is approved, active and inside its
effective window. Approval is a single guarded UPDATE so concurrent
approvers cannot both succeed.
"""
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from ..db.models import PricingModelRecord, PricingOverrideRecord, PricingScopeRecord, new_id, utc_now
from ..db.session import Database
from ..engine.models import Page, PricingOverride, to_jsonable
from ..errors import InvalidStateError, NotFoundError, ValidationError
from .audit_service import AuditTrail

logger = structlog.get_logger(__name__)

ENTITY_TYPE = "pricing_override"


class OverrideManager:
    """Creates, approves and looks up pricing overrides."""

    def __init__(self, db: Database, audit: AuditTrail):
        self.db = db
        self.audit = audit

    def create_override(
        self,
        tenant_id: str,
        pricing_model_id: str,
        scope_id: str,
        override_type: str,
        override_value: dict,
        reason: str,
        effective_from: datetime,
        created_by: str,
        created_by_role: str,
        *,
        effective_to: Optional[datetime] = None,
        requires_approval: bool = False,
    ) -> PricingOverride:
        """
        Create a version 1 override.

        Without ``requires_approval`` the creator counts as the approver and
        the override is usable immediately; otherwise it stays inactive until
        ``approve_override``.
        """
        if not isinstance(override_value, dict):
            raise ValidationError("override_value must be an object", code="invalid_override_value")
        if effective_to and effective_to < effective_from:
            raise ValidationError("effective_to is before effective_from", code="invalid_effective_window")
        now = utc_now()

        with self.db.session_scope() as s:
            scope = s.scalar(
                select(PricingScopeRecord.id).where(
                    PricingScopeRecord.id == scope_id,
                    PricingScopeRecord.tenant_id == tenant_id,
                )
            )
            if scope is None:
                raise NotFoundError("Scope not found", code="scope_not_found", details={"scope_id": scope_id})
            model = s.scalar(
                select(PricingModelRecord.id).where(
                    PricingModelRecord.id == pricing_model_id,
                    PricingModelRecord.tenant_id == tenant_id,
                )
            )
            if model is None:
                raise NotFoundError("Pricing model not found", code="pricing_model_not_found",
                                    details={"pricing_model_id": pricing_model_id})

            record = PricingOverrideRecord(
                id=new_id(),
                tenant_id=tenant_id,
                pricing_model_id=pricing_model_id,
                scope_id=scope_id,
                override_type=override_type,
                override_value=to_jsonable(override_value),
                reason=reason,
                effective_from=effective_from,
                effective_to=effective_to,
                version=1,
                is_active=not requires_approval,
                created_by=created_by,
                created_at=now,
                approved_by=None if requires_approval else created_by,
                approved_at=None if requires_approval else now,
            )
            s.add(record)
            s.flush()
            override = record.to_domain()
            self.audit.log_action(
                tenant_id, ENTITY_TYPE, override.id, "create", created_by, created_by_role,
                new_state=override, reason=reason, session=s,
            )

        logger.info(
            "override_created",
            tenant_id=tenant_id,
            id=override.id,
            pricing_model_id=pricing_model_id,
            scope_id=scope_id,
            requires_approval=requires_approval,
        )
        return override

    def get_override(self, tenant_id: str, id: str) -> PricingOverride:
        with self.db.session_scope() as s:
            return self._require(s, tenant_id, id).to_domain()

    def get_active_overrides(
        self,
        tenant_id: str,
        pricing_model_id: str,
        scope_type: str,
        scope_id: Optional[str] = None,
        at: Optional[datetime] = None,
        session: Optional[Session] = None,
    ) -> list[PricingOverride]:
        """
        Usable overrides at ``at`` (default now), most recent first.

        When ``scope_id`` is given only overrides attached to a scope row of
        that scope_type and scope_id are returned.
        """
        at = at or utc_now()
        stmt = (
            select(PricingOverrideRecord)
            .join(PricingScopeRecord, PricingScopeRecord.id == PricingOverrideRecord.scope_id)
            .where(
                PricingOverrideRecord.tenant_id == tenant_id,
                PricingOverrideRecord.pricing_model_id == pricing_model_id,
                PricingOverrideRecord.is_active.is_(True),
                PricingOverrideRecord.approved_by.is_not(None),
                PricingOverrideRecord.effective_from <= at,
                or_(PricingOverrideRecord.effective_to.is_(None), PricingOverrideRecord.effective_to >= at),
            )
        )
        if scope_id:
            stmt = stmt.where(
                PricingScopeRecord.scope_type == scope_type,
                PricingScopeRecord.scope_id == scope_id,
            )
        stmt = stmt.order_by(PricingOverrideRecord.created_at.desc())

        with self.db.session_scope(session) as s:
            return [r.to_domain() for r in s.scalars(stmt).all()]

    def list_overrides(
        self,
        tenant_id: str,
        pricing_model_id: Optional[str] = None,
        scope_id: Optional[str] = None,
        is_active: Optional[bool] = None,
        include_expired: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> Page:
        criteria = [PricingOverrideRecord.tenant_id == tenant_id]
        if pricing_model_id:
            criteria.append(PricingOverrideRecord.pricing_model_id == pricing_model_id)
        if scope_id:
            criteria.append(PricingOverrideRecord.scope_id == scope_id)
        if is_active is not None:
            criteria.append(PricingOverrideRecord.is_active.is_(is_active))
        if not include_expired:
            criteria.append(or_(
                PricingOverrideRecord.effective_to.is_(None),
                PricingOverrideRecord.effective_to >= utc_now(),
            ))

        with self.db.session_scope() as s:
            total = s.scalar(select(func.count()).select_from(PricingOverrideRecord).where(*criteria))
            records = s.scalars(
                select(PricingOverrideRecord)
                .where(*criteria)
                .order_by(PricingOverrideRecord.created_at.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            return Page(items=[r.to_domain() for r in records], total=total or 0, limit=limit, offset=offset)

    def approve_override(
        self,
        tenant_id: str,
        id: str,
        approved_by: str,
        approved_by_role: str,
    ) -> PricingOverride:
        """Approve and activate; exactly one of several concurrent approvers wins."""
        now = utc_now()
        with self.db.session_scope() as s:
            existing = self._require(s, tenant_id, id).to_domain()
            if existing.approved_by:
                raise InvalidStateError("Override has already been approved", code="override_already_approved")

            result = s.execute(
                update(PricingOverrideRecord)
                .where(
                    PricingOverrideRecord.id == id,
                    PricingOverrideRecord.tenant_id == tenant_id,
                    PricingOverrideRecord.approved_by.is_(None),
                )
                .values(approved_by=approved_by, approved_at=now, is_active=True)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise InvalidStateError("Override has already been approved", code="override_already_approved")

            record = self._require(s, tenant_id, id)
            s.refresh(record)
            updated = record.to_domain()
            self.audit.log_action(
                tenant_id, ENTITY_TYPE, id, "approve", approved_by, approved_by_role,
                previous_state=existing, new_state=updated, reason="Override approved", session=s,
            )

        logger.info("override_approved", tenant_id=tenant_id, id=id, approved_by=approved_by)
        return updated

    def deactivate_override(
        self,
        tenant_id: str,
        id: str,
        deactivated_by: str,
        deactivated_by_role: str,
        reason: Optional[str] = None,
    ) -> PricingOverride:
        with self.db.session_scope() as s:
            record = self._require(s, tenant_id, id)
            existing = record.to_domain()
            record.is_active = False
            s.flush()
            updated = record.to_domain()
            self.audit.log_action(
                tenant_id, ENTITY_TYPE, id, "deactivate", deactivated_by, deactivated_by_role,
                previous_state=existing, new_state=updated, reason=reason, session=s,
            )

        logger.info("override_deactivated", tenant_id=tenant_id, id=id)
        return updated

    def get_override_history(self, tenant_id: str, pricing_model_id: str, scope_id: str) -> list[PricingOverride]:
        """Every override for a (model, scope) pair, newest version first."""
        with self.db.session_scope() as s:
            records = s.scalars(
                select(PricingOverrideRecord)
                .where(
                    PricingOverrideRecord.tenant_id == tenant_id,
                    PricingOverrideRecord.pricing_model_id == pricing_model_id,
                    PricingOverrideRecord.scope_id == scope_id,
                )
                .order_by(PricingOverrideRecord.version.desc(), PricingOverrideRecord.created_at.desc())
            ).all()
            return [r.to_domain() for r in records]

    @staticmethod
    def _require(s, tenant_id: str, id: str) -> PricingOverrideRecord:
        record = s.scalar(
            select(PricingOverrideRecord).where(
                PricingOverrideRecord.id == id,
                PricingOverrideRecord.tenant_id == tenant_id,
            )
        )
        if record is None:
            raise NotFoundError("Override not found", code="override_not_found", details={"override_id": id})
        return record
