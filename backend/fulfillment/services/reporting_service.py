# Overview: Read-only order queries for the admin dashboard and order list.

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func

from ..extensions import db
from ..models import Order
from ..time_utils import start_of_day, utcnow
from .order_lifecycle import ORDER_STATUSES, validate_status


def get_order_statistics(now: datetime | None = None) -> dict:
    """
    Dashboard counters: total orders, today's count and revenue, and one
    count per status (zero-filled).
    """
    now = now or utcnow()
    today = start_of_day(now)

    total = db.session.query(func.count(Order.id)).scalar() or 0

    today_count, today_revenue = db.session.query(
        func.count(Order.id),
        func.coalesce(func.sum(Order.total_amount_cents), 0),
    ).filter(Order.created_at >= today).one()

    by_status = {status: 0 for status in ORDER_STATUSES}
    rows = db.session.query(Order.status, func.count(Order.id)).group_by(Order.status).all()
    for status, count in rows:
        by_status[status] = count

    return {
        "total": int(total),
        "today_count": int(today_count or 0),
        "today_revenue_cents": int(today_revenue or 0),
        "by_status": by_status,
        "reconciliation_required": db.session.query(func.count(Order.id))
        .filter(Order.stock_reconciliation_required.is_(True))
        .scalar() or 0,
    }


def list_orders(
    status: str | None = None,
    page: int | None = None,
    per_page: int | None = None,
) -> dict:
    """Orders newest first, optionally filtered by status and paginated."""
    base_query = db.session.query(Order)
    if status is not None:
        validate_status(status)
        base_query = base_query.filter(Order.status == status)
    base_query = base_query.order_by(Order.created_at.desc(), Order.id.desc())

    if page is None:
        orders = base_query.all()
        return {"items": [o.to_dict() for o in orders], "count": len(orders)}

    per_page = min(per_page or 20, 100)
    page = max(page, 1)

    total = base_query.count()
    total_pages = (total + per_page - 1) // per_page if total > 0 else 1
    orders = base_query.offset((page - 1) * per_page).limit(per_page).all()

    return {
        "items": [o.to_dict() for o in orders],
        "count": len(orders),
        "pagination": {
            "page": page,
            "per_page": per_page,
            "total": total,
            "total_pages": total_pages,
            "has_next": page < total_pages,
            "has_prev": page > 1,
        },
    }


def orders_needing_reconciliation() -> list[Order]:
    """Orders whose checkout could not deduct all of their stock."""
    return (
        db.session.query(Order)
        .filter(Order.stock_reconciliation_required.is_(True))
        .order_by(Order.id.asc())
        .all()
    )
