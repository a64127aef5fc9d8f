"""
Tests for dashboard statistics and the order list.
"""

from datetime import timedelta

import pytest

from fulfillment.services import reporting_service
from fulfillment.time_utils import utcnow
from fulfillment.validation import ValidationError


def test_statistics_count_today_and_status(make_product, make_order, db_session):
    product = make_product(price_cents=1000)
    make_order([(product, 1)], status="paid")
    make_order([(product, 2)], status="shipped")
    make_order([(product, 3)], status="cancelled", created_at=utcnow() - timedelta(days=2))

    stats = reporting_service.get_order_statistics()

    assert stats["total"] == 3
    assert stats["today_count"] == 2
    assert stats["today_revenue_cents"] == 3000
    assert stats["by_status"]["paid"] == 1
    assert stats["by_status"]["shipped"] == 1
    assert stats["by_status"]["cancelled"] == 1
    assert stats["by_status"]["delivered"] == 0
    assert stats["reconciliation_required"] == 0


def test_statistics_on_empty_store(db_session):
    stats = reporting_service.get_order_statistics()
    assert stats["total"] == 0
    assert stats["today_revenue_cents"] == 0
    assert set(stats["by_status"]) == {
        "pending", "paid", "in_packing", "packed", "shipped", "delivered", "cancelled",
    }


def test_list_orders_filters_by_status(make_product, make_order):
    product = make_product()
    paid = make_order([(product, 1)], status="paid")
    make_order([(product, 1)], status="packed")

    result = reporting_service.list_orders(status="paid")

    assert result["count"] == 1
    assert result["items"][0]["id"] == paid.id


def test_list_orders_paginates(make_product, make_order):
    product = make_product()
    for _ in range(3):
        make_order([(product, 1)])

    result = reporting_service.list_orders(page=2, per_page=2)

    assert result["count"] == 1
    assert result["pagination"]["total"] == 3
    assert result["pagination"]["total_pages"] == 2
    assert result["pagination"]["has_prev"] is True


def test_list_orders_rejects_unknown_status(db_session):
    with pytest.raises(ValidationError):
        reporting_service.list_orders(status="lost")


def test_orders_needing_reconciliation(make_product, make_order):
    product = make_product()
    flagged = make_order([(product, 1)], stock_reconciliation_required=True)
    make_order([(product, 1)])

    orders = reporting_service.orders_needing_reconciliation()

    assert [o.id for o in orders] == [flagged.id]
