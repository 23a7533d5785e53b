"""
Billing Service - Billing cycles and the priced items recorded in them.

Cycle lifecycle:
    active -> closed -> invoiced -> paid | overdue
    overdue -> paid
    any non-terminal state -> cancelled

Items can only be added to an active cycle. The cycle row is locked while
an item is priced and inserted, and closing is a guarded UPDATE, so an
item can never land in a cycle that was closed concurrently.
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional

import pandas as pd
import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from ..config.settings import Settings, get_settings
from ..db.models import BillingCycleRecord, BillingItemRecord, new_id, utc_now
from ..db.session import Database
from ..engine.models import (
    ZERO,
    ActorRole,
    BillingCycle,
    BillingItem,
    CycleStatus,
    CycleSummary,
    CycleType,
    Page,
    PriceRequest,
    ScopeType,
    parse_enum,
    to_decimal,
    to_jsonable,
)
from ..errors import InvalidStateError, NotFoundError, ValidationError
from .audit_service import AuditTrail

logger = structlog.get_logger(__name__)

ENTITY_TYPE = "billing_cycle"
ITEM_ENTITY_TYPE = "billing_item"
UNIT_PRICE_STEP = Decimal("0.000001")

ALLOWED_TRANSITIONS = {
    CycleStatus.ACTIVE: {CycleStatus.CLOSED, CycleStatus.CANCELLED},
    CycleStatus.CLOSED: {CycleStatus.INVOICED, CycleStatus.CANCELLED},
    CycleStatus.INVOICED: {CycleStatus.PAID, CycleStatus.OVERDUE, CycleStatus.CANCELLED},
    CycleStatus.OVERDUE: {CycleStatus.PAID, CycleStatus.CANCELLED},
    CycleStatus.PAID: set(),
    CycleStatus.CANCELLED: set(),
}

ITEM_COLUMNS = [
    'id', 'item_type', 'description', 'quantity', 'unit_price',
    'total_amount', 'currency', 'pricing_model_id', 'created_at',
]


def start_of_day(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def end_of_day(value: datetime) -> datetime:
    """Last representable instant of the day at millisecond precision."""
    return value.replace(hour=23, minute=59, second=59, microsecond=999000)


def calculate_cycle_end_date(start_date: datetime, cycle_type: CycleType) -> datetime:
    """
    End of the cycle beginning at ``start_date``.

    Month arithmetic clamps to the last day of the target month, so a
    monthly cycle starting Jan 31 ends Feb 27 (Feb 28 minus one day).
    """
    start = pd.Timestamp(start_of_day(start_date))
    one_day = pd.Timedelta(days=1)

    if cycle_type is CycleType.DAILY:
        end = start
    elif cycle_type is CycleType.WEEKLY:
        end = start + pd.Timedelta(weeks=1) - one_day
    elif cycle_type is CycleType.MONTHLY:
        end = start + pd.DateOffset(months=1) - one_day
    elif cycle_type is CycleType.QUARTERLY:
        end = start + pd.DateOffset(months=3) - one_day
    elif cycle_type is CycleType.YEARLY:
        end = start + pd.DateOffset(years=1) - one_day
    else:
        raise ValidationError("Custom billing cycles require an explicit end_date", code="end_date_required")
    return end_of_day(end.to_pydatetime())


class BillingEngine:
    """Manages billing cycles and prices items into them."""

    def __init__(
        self,
        db: Database,
        calculator,
        audit: AuditTrail,
        settings: Optional[Settings] = None,
    ):
        self.db = db
        self.calculator = calculator
        self.audit = audit
        self.settings = settings or get_settings()

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def create_billing_cycle(
        self,
        tenant_id: str,
        scope_id: str,
        scope_type: str,
        cycle_type: str,
        start_date: datetime,
        *,
        end_date: Optional[datetime] = None,
        created_by: str = "system",
        created_by_role: str = ActorRole.SUPER_ADMIN.value,
    ) -> BillingCycle:
        """
        Open a new active cycle for a scope.

        The end date is derived from ``cycle_type`` when omitted; custom
        cycles must pass one. Only one active cycle may exist per scope.
        """
        scope_type = parse_enum(ScopeType, scope_type, 'scope type').value
        cycle_type = parse_enum(CycleType, cycle_type, 'cycle type')
        start = start_of_day(start_date)
        end = end_date or calculate_cycle_end_date(start, cycle_type)
        if end < start:
            raise ValidationError("end_date is before start_date", code="invalid_cycle_dates")
        now = utc_now()

        with self.db.session_scope() as s:
            if self._active_cycle(s, tenant_id, scope_id, scope_type) is not None:
                raise InvalidStateError(
                    "An active billing cycle already exists for this scope",
                    code="active_cycle_exists",
                    details={"scope_id": scope_id, "scope_type": scope_type},
                )
            record = BillingCycleRecord(
                id=new_id(),
                tenant_id=tenant_id,
                scope_id=scope_id,
                scope_type=scope_type,
                cycle_type=cycle_type.value,
                start_date=start,
                end_date=end,
                status=CycleStatus.ACTIVE.value,
                created_at=now,
                updated_at=now,
            )
            s.add(record)
            try:
                s.flush()
            except IntegrityError as e:
                # Lost the race against a concurrent create
                raise InvalidStateError(
                    "An active billing cycle already exists for this scope",
                    code="active_cycle_exists",
                    details={"scope_id": scope_id, "scope_type": scope_type},
                ) from e
            cycle = record.to_domain()
            self.audit.log_action(
                tenant_id, ENTITY_TYPE, cycle.id, "create", created_by, created_by_role,
                new_state=cycle, reason="Billing cycle opened", session=s,
            )

        logger.info("billing_cycle_created", tenant_id=tenant_id, id=cycle.id,
                    scope_id=scope_id, cycle_type=cycle.cycle_type, end_date=cycle.end_date.isoformat())
        return cycle

    def get_billing_cycle(self, tenant_id: str, id: str) -> BillingCycle:
        with self.db.session_scope() as s:
            return self._require_cycle(s, tenant_id, id).to_domain()

    def get_active_cycle(self, tenant_id: str, scope_id: str, scope_type: str) -> Optional[BillingCycle]:
        with self.db.session_scope() as s:
            record = self._active_cycle(s, tenant_id, scope_id, scope_type)
            return record.to_domain() if record else None

    def list_billing_cycles(
        self,
        tenant_id: str,
        scope_id: Optional[str] = None,
        scope_type: Optional[str] = None,
        status: Optional[str] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Page:
        """Cycles for the tenant, latest start first."""
        criteria = [BillingCycleRecord.tenant_id == tenant_id]
        if scope_id:
            criteria.append(BillingCycleRecord.scope_id == scope_id)
        if scope_type:
            criteria.append(BillingCycleRecord.scope_type == scope_type)
        if status:
            criteria.append(BillingCycleRecord.status == status)
        if from_date:
            criteria.append(BillingCycleRecord.start_date >= from_date)
        if to_date:
            criteria.append(BillingCycleRecord.end_date <= to_date)

        with self.db.session_scope() as s:
            total = s.scalar(select(func.count()).select_from(BillingCycleRecord).where(*criteria))
            records = s.scalars(
                select(BillingCycleRecord)
                .where(*criteria)
                .order_by(BillingCycleRecord.start_date.desc())
                .limit(limit)
                .offset(offset)
            ).all()
            return Page(items=[r.to_domain() for r in records], total=total or 0, limit=limit, offset=offset)

    def close_billing_cycle(self, tenant_id: str, id: str, closed_by: str, closed_by_role: str) -> BillingCycle:
        """Move an active cycle to closed with a guarded UPDATE."""
        with self.db.session_scope() as s:
            existing = self._require_cycle(s, tenant_id, id).to_domain()
            if existing.status != CycleStatus.ACTIVE.value:
                raise InvalidStateError(
                    f"Cannot close billing cycle with status: {existing.status}",
                    code="cycle_not_active",
                )
            updated = self._guarded_transition(s, tenant_id, id, existing.status, CycleStatus.CLOSED)
            self.audit.log_action(
                tenant_id, ENTITY_TYPE, id, "close", closed_by, closed_by_role,
                previous_state=existing, new_state=updated, reason="Billing cycle closed", session=s,
            )

        logger.info("billing_cycle_closed", tenant_id=tenant_id, id=id)
        return updated

    def update_cycle_status(
        self,
        tenant_id: str,
        id: str,
        new_status: str,
        updated_by: str,
        updated_by_role: str,
    ) -> BillingCycle:
        """Apply a lifecycle transition; illegal transitions raise InvalidStateError."""
        target = parse_enum(CycleStatus, new_status, 'cycle status')
        with self.db.session_scope() as s:
            existing = self._require_cycle(s, tenant_id, id).to_domain()
            current = CycleStatus(existing.status)
            if target not in ALLOWED_TRANSITIONS[current]:
                raise InvalidStateError(
                    f"Cannot change billing cycle status from {current.value} to {target.value}",
                    code="invalid_status_transition",
                    details={"from": current.value, "to": target.value},
                )
            updated = self._guarded_transition(s, tenant_id, id, existing.status, target)
            self.audit.log_action(
                tenant_id, ENTITY_TYPE, id, "status_change", updated_by, updated_by_role,
                previous_state=existing, new_state=updated,
                reason=f"Status changed from {current.value} to {target.value}", session=s,
            )

        logger.info("billing_cycle_status_changed", tenant_id=tenant_id, id=id,
                    old_status=current.value, new_status=target.value)
        return updated

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    def add_billing_item(
        self,
        tenant_id: str,
        billing_cycle_id: str,
        pricing_model_id: str,
        item_type: str,
        quantity,
        scope_type: str,
        scope_id: Optional[str] = None,
        *,
        description: Optional[str] = None,
        metadata: Optional[dict] = None,
        deployment_type: Optional[str] = None,
        evaluated_at: Optional[datetime] = None,
        added_by: str = "system",
        added_by_role: str = ActorRole.SUPER_ADMIN.value,
    ) -> BillingItem:
        """
        Price an item and record it in an active cycle.

        Runs in one transaction holding the cycle row lock. The stored
        unit price is the effective one (final price / quantity).
        """
        quantity = to_decimal(quantity, 'quantity')

        with self.db.session_scope() as s:
            cycle = s.scalar(
                select(BillingCycleRecord)
                .where(BillingCycleRecord.id == billing_cycle_id, BillingCycleRecord.tenant_id == tenant_id)
                .with_for_update()
            )
            if cycle is None:
                raise NotFoundError("Billing cycle not found", code="billing_cycle_not_found",
                                    details={"billing_cycle_id": billing_cycle_id})
            if cycle.status != CycleStatus.ACTIVE.value:
                raise InvalidStateError(
                    f"Cannot add items to billing cycle with status: {cycle.status}",
                    code="cycle_not_active",
                )

            price = self.calculator.calculate_price(
                PriceRequest(
                    tenant_id=tenant_id,
                    scope_type=scope_type,
                    scope_id=scope_id,
                    deployment_type=deployment_type,
                    item_type=item_type,
                    quantity=quantity,
                    pricing_model_id=pricing_model_id,
                    metadata=metadata,
                    evaluated_at=evaluated_at,
                ),
                session=s,
            )

            cycle_currency = s.scalar(
                select(BillingItemRecord.currency)
                .where(BillingItemRecord.billing_cycle_id == billing_cycle_id,
                       BillingItemRecord.tenant_id == tenant_id)
                .limit(1)
            )
            if cycle_currency and cycle_currency != price.currency:
                raise InvalidStateError(
                    f"Billing cycle currency is {cycle_currency}, item is priced in {price.currency}",
                    code="currency_mismatch",
                )

            # Quantized to the Money column scale
            total_amount = price.final_price.quantize(UNIT_PRICE_STEP)
            unit_price = (total_amount / quantity).quantize(UNIT_PRICE_STEP) if quantity else ZERO
            item_metadata = dict(metadata or {})
            item_metadata.update({
                'price_breakdown': to_jsonable(price.breakdown),
                'adjustments': to_jsonable(price.adjustments),
                'applied_rules': list(price.applied_rules),
                'applied_overrides': list(price.applied_overrides),
            })

            record = BillingItemRecord(
                id=new_id(),
                tenant_id=tenant_id,
                billing_cycle_id=billing_cycle_id,
                pricing_model_id=price.pricing_model_id,
                item_type=item_type,
                description=description,
                quantity=quantity,
                unit_price=unit_price,
                total_amount=total_amount,
                currency=price.currency,
                item_metadata=to_jsonable(item_metadata),
                created_at=utc_now(),
            )
            s.add(record)
            s.flush()
            item = record.to_domain()
            self.audit.log_action(
                tenant_id, ITEM_ENTITY_TYPE, item.id, "add_item", added_by, added_by_role,
                new_state=item, reason=f"Item added to billing cycle {billing_cycle_id}", session=s,
            )

        logger.info("billing_item_added", tenant_id=tenant_id, id=item.id,
                    billing_cycle_id=billing_cycle_id, item_type=item_type, total_amount=str(item.total_amount))
        return item

    def list_billing_items(self, tenant_id: str, billing_cycle_id: str) -> list[BillingItem]:
        with self.db.session_scope() as s:
            records = s.scalars(
                select(BillingItemRecord)
                .where(BillingItemRecord.tenant_id == tenant_id,
                       BillingItemRecord.billing_cycle_id == billing_cycle_id)
                .order_by(BillingItemRecord.created_at.asc())
            ).all()
            return [r.to_domain() for r in records]

    def get_cycle_summary(self, tenant_id: str, billing_cycle_id: str) -> CycleSummary:
        cycle = self.get_billing_cycle(tenant_id, billing_cycle_id)
        items = self.list_billing_items(tenant_id, billing_cycle_id)
        subtotal = sum((item.total_amount for item in items), ZERO)
        currency = items[0].currency if items else self.settings.default_currency
        return CycleSummary(
            cycle=cycle,
            items=items,
            subtotal=subtotal,
            total=subtotal,
            currency=currency,
            item_count=len(items),
        )

    def cycle_items_frame(self, tenant_id: str, billing_cycle_id: str) -> pd.DataFrame:
        """Items of a cycle as a DataFrame for reporting/export."""
        self.get_billing_cycle(tenant_id, billing_cycle_id)
        items = self.list_billing_items(tenant_id, billing_cycle_id)
        rows = [{col: getattr(item, col) for col in ITEM_COLUMNS} for item in items]
        return pd.DataFrame(rows, columns=ITEM_COLUMNS)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _require_cycle(s, tenant_id: str, id: str) -> BillingCycleRecord:
        record = s.scalar(
            select(BillingCycleRecord).where(BillingCycleRecord.id == id, BillingCycleRecord.tenant_id == tenant_id)
        )
        if record is None:
            raise NotFoundError("Billing cycle not found", code="billing_cycle_not_found",
                                details={"billing_cycle_id": id})
        return record

    @staticmethod
    def _active_cycle(s, tenant_id: str, scope_id: str, scope_type: str) -> Optional[BillingCycleRecord]:
        return s.scalar(
            select(BillingCycleRecord)
            .where(
                BillingCycleRecord.tenant_id == tenant_id,
                BillingCycleRecord.scope_id == scope_id,
                BillingCycleRecord.scope_type == scope_type,
                BillingCycleRecord.status == CycleStatus.ACTIVE.value,
            )
            .order_by(BillingCycleRecord.start_date.desc())
            .limit(1)
        )

    def _guarded_transition(self, s, tenant_id: str, id: str, expected: str, target: CycleStatus) -> BillingCycle:
        result = s.execute(
            update(BillingCycleRecord)
            .where(
                BillingCycleRecord.id == id,
                BillingCycleRecord.tenant_id == tenant_id,
                BillingCycleRecord.status == expected,
            )
            .values(status=target.value, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidStateError(
                f"Billing cycle status changed concurrently (expected {expected})",
                code="concurrent_status_change",
            )
        record = self._require_cycle(s, tenant_id, id)
        s.refresh(record)
        return record.to_domain()
