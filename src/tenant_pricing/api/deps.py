"""
Request dependencies shared by the API routers.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Annotated, Any

from fastapi import Header, Request
from pydantic import AfterValidator

from ..engine.models import ActorRole, to_jsonable
from ..services.container import PricingServices


def naive_utc(value: datetime) -> datetime:
    """Aware datetimes converted to naive UTC, matching the store."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(naive_utc)]


@dataclass
class Actor:
    """Caller identity taken from the X-User-Id / X-User-Role headers."""
    id: str
    role: str


def get_services(request: Request) -> PricingServices:
    return request.app.state.services


def get_actor(
    x_user_id: str = Header(default="system"),
    x_user_role: str = Header(default=ActorRole.SUPER_ADMIN.value),
) -> Actor:
    return Actor(id=x_user_id, role=x_user_role)


def serialize(value: Any) -> Any:
    """Dataclasses, Decimals and datetimes to JSON-safe values."""
    return to_jsonable(value)


def serialize_page(page, key: str) -> dict:
    return {
        key: serialize(page.items),
        "total": page.total,
        "limit": page.limit,
        "offset": page.offset,
    }
