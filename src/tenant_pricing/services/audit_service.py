"""
Audit Service - Append-only audit trail with single-level reversal.

Every mutation in the pricing and billing services records an entry here,
inside the caller's transaction, so a change and its audit row commit or
roll back together.
"""
from typing import Any, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from ..db.models import PricingAuditLogRecord, new_id, utc_now
from ..db.session import Database
from ..engine.models import AuditFilters, AuditLogEntry, Page, ReversalResult, to_jsonable
from ..errors import InvalidStateError, NotFoundError

logger = structlog.get_logger(__name__)

REVERSE_ACTION = "reverse"


def snapshot(state: Any) -> Optional[dict]:
    """JSON-safe copy of an entity state (dataclass, dict or None)."""
    if state is None:
        return None
    data = to_jsonable(state)
    return data if isinstance(data, dict) else {"value": data}


class AuditTrail:
    """Writes and queries the pricing audit log."""

    def __init__(self, db: Database):
        self.db = db

    def log_action(
        self,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        action: str,
        actor_id: str,
        actor_role: str,
        previous_state: Any = None,
        new_state: Any = None,
        reason: Optional[str] = None,
        is_reversible: bool = True,
        session: Optional[Session] = None,
    ) -> AuditLogEntry:
        """Append an audit entry; joins ``session``'s transaction when given."""
        with self.db.session_scope(session) as s:
            record = PricingAuditLogRecord(
                id=new_id(),
                tenant_id=tenant_id,
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                actor_id=actor_id,
                actor_role=actor_role,
                previous_state=snapshot(previous_state),
                new_state=snapshot(new_state),
                reason=reason,
                is_reversible=is_reversible,
                created_at=utc_now(),
            )
            s.add(record)
            s.flush()
            entry = record.to_domain()

        logger.info(
            "audit_logged",
            tenant_id=tenant_id,
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            actor_id=actor_id,
        )
        return entry

    def get_audit_entry(self, tenant_id: str, audit_log_id: str) -> AuditLogEntry:
        with self.db.session_scope() as s:
            return self._require_entry(s, tenant_id, audit_log_id).to_domain()

    def get_audit_history(
        self,
        tenant_id: str,
        entity_type: str,
        entity_id: str,
        limit: int = 50,
        offset: int = 0,
    ) -> Page:
        """All entries for one entity, newest first."""
        criteria = [
            PricingAuditLogRecord.tenant_id == tenant_id,
            PricingAuditLogRecord.entity_type == entity_type,
            PricingAuditLogRecord.entity_id == entity_id,
        ]
        return self._page(criteria, limit, offset)

    def search_audit_logs(
        self,
        tenant_id: str,
        filters: Optional[AuditFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Page:
        filters = filters or AuditFilters()
        criteria = [PricingAuditLogRecord.tenant_id == tenant_id]
        if filters.entity_type:
            criteria.append(PricingAuditLogRecord.entity_type == filters.entity_type)
        if filters.action:
            criteria.append(PricingAuditLogRecord.action == filters.action)
        if filters.actor_id:
            criteria.append(PricingAuditLogRecord.actor_id == filters.actor_id)
        if filters.actor_role:
            criteria.append(PricingAuditLogRecord.actor_role == filters.actor_role)
        if filters.from_date:
            criteria.append(PricingAuditLogRecord.created_at >= filters.from_date)
        if filters.to_date:
            criteria.append(PricingAuditLogRecord.created_at <= filters.to_date)
        return self._page(criteria, limit, offset)

    def _page(self, criteria: list, limit: int, offset: int) -> Page:
        with self.db.session_scope() as s:
            total = s.scalar(select(func.count()).select_from(PricingAuditLogRecord).where(*criteria))
            records = s.scalars(
                select(PricingAuditLogRecord)
                .where(*criteria)
                .order_by(PricingAuditLogRecord.created_at.desc(), PricingAuditLogRecord.id.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            return Page(items=[r.to_domain() for r in records], total=total or 0, limit=limit, offset=offset)

    def reverse_action(
        self,
        tenant_id: str,
        audit_log_id: str,
        reversed_by: str,
        reversed_by_role: str,
    ) -> ReversalResult:
        """
        Mark an entry reversed and append the compensating entry.

        The entry is stamped with a conditional UPDATE so that of two
        concurrent reversals exactly one succeeds. The compensating entry
        swaps previous/new state and is itself not reversible.
        """
        with self.db.session_scope() as s:
            record = self._require_entry(s, tenant_id, audit_log_id)
            if not record.is_reversible:
                raise InvalidStateError("This action is not reversible", code="not_reversible")
            if record.reversed_by:
                raise InvalidStateError("This action has already been reversed", code="already_reversed")
            if record.previous_state is None:
                raise InvalidStateError("No previous state available to restore", code="no_previous_state")

            now = utc_now()
            stamped = s.execute(
                update(PricingAuditLogRecord)
                .where(
                    PricingAuditLogRecord.id == audit_log_id,
                    PricingAuditLogRecord.tenant_id == tenant_id,
                    PricingAuditLogRecord.reversed_by.is_(None),
                )
                .values(reversed_by=reversed_by, reversed_at=now)
                .execution_options(synchronize_session=False)
            )
            if stamped.rowcount != 1:
                raise InvalidStateError("This action has already been reversed", code="already_reversed")

            original = record.to_domain()
            original.reversed_by = reversed_by
            original.reversed_at = now

            compensating = self.log_action(
                tenant_id,
                original.entity_type,
                original.entity_id,
                REVERSE_ACTION,
                reversed_by,
                reversed_by_role,
                previous_state=original.new_state,
                new_state=original.previous_state,
                reason=f"Reversal of action: {original.action}",
                is_reversible=False,
                session=s,
            )

        logger.info(
            "action_reversed",
            tenant_id=tenant_id,
            audit_log_id=audit_log_id,
            entity_type=original.entity_type,
            entity_id=original.entity_id,
        )
        return ReversalResult(
            audit_log=original,
            compensating_entry=compensating,
            restored_state=original.previous_state,
        )

    @staticmethod
    def _require_entry(s, tenant_id: str, audit_log_id: str) -> PricingAuditLogRecord:
        record = s.scalar(
            select(PricingAuditLogRecord).where(
                PricingAuditLogRecord.id == audit_log_id,
                PricingAuditLogRecord.tenant_id == tenant_id,
            )
        )
        if record is None:
            raise NotFoundError("Audit log not found", code="audit_log_not_found",
                                details={"audit_log_id": audit_log_id})
        return record
