"""
Pricing Model Service - CRUD operations for pricing models and their rules.

Model mutations are audited; system models may only be changed by a
super admin and can never be deleted.
"""
from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from ..db.models import PricingModelRecord, PricingRuleRecord, new_id, utc_now
from ..db.session import Database
from ..engine.models import (
    ActorRole,
    ModelType,
    Page,
    PricingModel,
    PricingRule,
    RuleAction,
    RuleCondition,
    build_config,
    parse_enum,
    to_jsonable,
)
from ..errors import InvalidStateError, NotFoundError, ValidationError
from .audit_service import AuditTrail

logger = structlog.get_logger(__name__)

ENTITY_TYPE = "pricing_model"
RULE_ENTITY_TYPE = "pricing_rule"

UPDATABLE_FIELDS = ('name', 'description', 'config', 'is_active')


class PricingModelService:
    """Service for managing pricing models and rules."""

    def __init__(self, db: Database, audit: AuditTrail):
        self.db = db
        self.audit = audit

    def create_pricing_model(
        self,
        tenant_id: str,
        name: str,
        model_type: str,
        config: dict,
        created_by: str,
        created_by_role: str,
        description: Optional[str] = None,
        is_system: bool = False,
    ) -> PricingModel:
        model_type = parse_enum(ModelType, model_type, 'model type')
        # Fails fast on malformed tiers/components
        build_config(model_type, config or {})
        now = utc_now()

        with self.db.session_scope() as s:
            record = PricingModelRecord(
                id=new_id(),
                tenant_id=tenant_id,
                name=name,
                description=description,
                model_type=model_type.value,
                config=to_jsonable(config or {}),
                is_active=True,
                is_system=is_system,
                created_by=created_by,
                created_by_role=created_by_role,
                created_at=now,
                updated_at=now,
                version=1,
            )
            s.add(record)
            s.flush()
            model = record.to_domain()
            self.audit.log_action(
                tenant_id, ENTITY_TYPE, model.id, "create", created_by, created_by_role,
                new_state=model, reason="Initial creation", session=s,
            )

        logger.info("pricing_model_created", tenant_id=tenant_id, id=model.id, model_type=model.model_type)
        return model

    def get_pricing_model(self, tenant_id: str, id: str) -> PricingModel:
        with self.db.session_scope() as s:
            return self._require(s, tenant_id, id).to_domain()

    def list_pricing_models(
        self,
        tenant_id: str,
        model_type: Optional[str] = None,
        is_active: Optional[bool] = None,
        is_system: Optional[bool] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Page:
        """Models for the tenant, newest first."""
        criteria = [PricingModelRecord.tenant_id == tenant_id]
        if model_type:
            criteria.append(PricingModelRecord.model_type == model_type)
        if is_active is not None:
            criteria.append(PricingModelRecord.is_active.is_(is_active))
        if is_system is not None:
            criteria.append(PricingModelRecord.is_system.is_(is_system))

        with self.db.session_scope() as s:
            total = s.scalar(select(func.count()).select_from(PricingModelRecord).where(*criteria))
            records = s.scalars(
                select(PricingModelRecord)
                .where(*criteria)
                .order_by(PricingModelRecord.created_at.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            return Page(items=[r.to_domain() for r in records], total=total or 0, limit=limit, offset=offset)

    def update_pricing_model(
        self,
        tenant_id: str,
        id: str,
        updates: dict,
        updated_by: str,
        updated_by_role: str,
        reason: Optional[str] = None,
    ) -> PricingModel:
        """
        Apply ``updates`` (name, description, config, is_active).

        A new config replaces the stored one wholesale; every update bumps
        the version.
        """
        unknown = set(updates) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}", code="invalid_update")

        with self.db.session_scope() as s:
            record = self._require(s, tenant_id, id)
            if record.is_system and updated_by_role != ActorRole.SUPER_ADMIN.value:
                raise InvalidStateError(
                    "Only Super Admin can modify system pricing models", code="system_model_protected"
                )
            before = record.to_domain()

            if 'config' in updates:
                build_config(ModelType(record.model_type), updates['config'] or {})
                record.config = to_jsonable(updates['config'] or {})
            for key in ('name', 'description', 'is_active'):
                if key in updates:
                    setattr(record, key, updates[key])
            record.version = record.version + 1
            record.updated_at = utc_now()
            s.flush()
            updated = record.to_domain()

            self.audit.log_action(
                tenant_id, ENTITY_TYPE, id, "update", updated_by, updated_by_role,
                previous_state=before, new_state=updated, reason=reason, session=s,
            )

        logger.info("pricing_model_updated", tenant_id=tenant_id, id=id, version=updated.version)
        return updated

    def delete_pricing_model(
        self,
        tenant_id: str,
        id: str,
        deleted_by: str,
        deleted_by_role: str,
        reason: Optional[str] = None,
    ) -> None:
        with self.db.session_scope() as s:
            record = self._require(s, tenant_id, id)
            if record.is_system:
                raise InvalidStateError("Cannot delete system pricing models", code="system_model_protected")
            before = record.to_domain()
            s.delete(record)
            try:
                s.flush()
            except IntegrityError as e:
                raise InvalidStateError(
                    "Pricing model is referenced by overrides or billing items",
                    code="pricing_model_in_use",
                    details={"pricing_model_id": id},
                ) from e
            self.audit.log_action(
                tenant_id, ENTITY_TYPE, id, "delete", deleted_by, deleted_by_role,
                previous_state=before, reason=reason, session=s,
            )

        logger.info("pricing_model_deleted", tenant_id=tenant_id, id=id)

    def create_rule(
        self,
        tenant_id: str,
        pricing_model_id: str,
        name: str,
        rule_type: str,
        conditions: list,
        actions: list,
        description: Optional[str] = None,
        priority: int = 0,
        effective_from: Optional[datetime] = None,
        effective_to: Optional[datetime] = None,
        is_active: bool = True,
        created_by: str = "system",
        created_by_role: str = ActorRole.SUPER_ADMIN.value,
    ) -> PricingRule:
        """Create a rule; conditions and actions are parsed through the closed enums."""
        parsed_conditions = [
            c if isinstance(c, RuleCondition) else RuleCondition.from_dict(c) for c in conditions or []
        ]
        parsed_actions = [
            a if isinstance(a, RuleAction) else RuleAction.from_dict(a) for a in actions or []
        ]
        if effective_from and effective_to and effective_to < effective_from:
            raise ValidationError("effective_to is before effective_from", code="invalid_effective_window")
        now = utc_now()

        with self.db.session_scope() as s:
            self._require(s, tenant_id, pricing_model_id)
            record = PricingRuleRecord(
                id=new_id(),
                tenant_id=tenant_id,
                pricing_model_id=pricing_model_id,
                name=name,
                description=description,
                rule_type=rule_type,
                conditions=[c.to_dict() for c in parsed_conditions],
                actions=[a.to_dict() for a in parsed_actions],
                priority=priority,
                is_active=is_active,
                effective_from=effective_from,
                effective_to=effective_to,
                created_at=now,
                updated_at=now,
            )
            s.add(record)
            s.flush()
            rule = record.to_domain()
            self.audit.log_action(
                tenant_id, RULE_ENTITY_TYPE, rule.id, "create", created_by, created_by_role,
                new_state=rule, reason=description, session=s,
            )

        logger.info("pricing_rule_created", tenant_id=tenant_id, id=rule.id, pricing_model_id=pricing_model_id)
        return rule

    def list_rules(self, tenant_id: str, pricing_model_id: str, session=None) -> list[PricingRule]:
        """All rules of a model, highest priority first, then oldest first."""
        with self.db.session_scope(session) as s:
            records = s.scalars(
                select(PricingRuleRecord)
                .where(
                    PricingRuleRecord.tenant_id == tenant_id,
                    PricingRuleRecord.pricing_model_id == pricing_model_id,
                )
                .order_by(PricingRuleRecord.priority.desc(), PricingRuleRecord.created_at.asc())
            ).all()
            return [r.to_domain() for r in records]

    @staticmethod
    def _require(s, tenant_id: str, id: str) -> PricingModelRecord:
        record = s.scalar(
            select(PricingModelRecord).where(
                PricingModelRecord.id == id,
                PricingModelRecord.tenant_id == tenant_id,
            )
        )
        if record is None:
            raise NotFoundError("Pricing model not found", code="pricing_model_not_found",
                                details={"pricing_model_id": id})
        return record
