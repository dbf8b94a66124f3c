import pytest

from storefront.models import Order, OrderStatus, OrderStatusHistory, PaymentStatus
from storefront.order_status import (
    PAYMENT_CANCELLED,
    PAYMENT_FAILED,
    PAYMENT_PENDING,
    PAYMENT_SUCCEEDED,
    OrderNotFound,
    StaleOrderError,
    apply_gateway_event,
    event_for_state,
    resolve_transition,
    staff_set_status,
    write_status,
)

from conftest import auth_headers


@pytest.mark.parametrize("current,event,expected", [
    (OrderStatus.pending, PAYMENT_SUCCEEDED, OrderStatus.confirmed),
    (OrderStatus.payment_pending, PAYMENT_SUCCEEDED, OrderStatus.confirmed),
    (OrderStatus.processing, PAYMENT_FAILED, OrderStatus.payment_failed),
    (OrderStatus.pending, PAYMENT_CANCELLED, OrderStatus.cancelled),
    (OrderStatus.pending, PAYMENT_PENDING, OrderStatus.payment_pending),
    # no-ops
    (OrderStatus.confirmed, PAYMENT_SUCCEEDED, None),
    (OrderStatus.confirmed, PAYMENT_FAILED, None),
    (OrderStatus.shipped, PAYMENT_CANCELLED, None),
    (OrderStatus.delivered, PAYMENT_FAILED, None),
    (OrderStatus.cancelled, PAYMENT_SUCCEEDED, None),
    (OrderStatus.payment_pending, PAYMENT_PENDING, None),
    (OrderStatus.pending, "payment.refunded", None),
])
def test_guard_table(current, event, expected):
    assert resolve_transition(current, event) == expected


@pytest.mark.parametrize("state,event", [
    ("captured", PAYMENT_SUCCEEDED),
    ("COMPLETED", PAYMENT_SUCCEEDED),
    ("failed", PAYMENT_FAILED),
    ("cancelled", PAYMENT_CANCELLED),
    ("tracker_started", PAYMENT_PENDING),
    (None, PAYMENT_PENDING),
])
def test_gateway_state_mapping(state, event):
    assert event_for_state(state) == event


def test_gateway_event_sets_payment_status_and_history(db, make_order):
    order = make_order()

    result = apply_gateway_event(db, order.id, PAYMENT_SUCCEEDED, source="webhook")

    assert result.applied
    assert result.status == OrderStatus.confirmed
    assert result.order.payment_status == PaymentStatus.paid
    assert result.order.version == 2
    history = db.query(OrderStatusHistory).one()
    assert (history.old_status, history.new_status, history.source) == ("pending", "confirmed", "webhook")


def test_late_failure_does_not_regress_confirmed_order(db, make_order):
    order = make_order(status=OrderStatus.confirmed)

    result = apply_gateway_event(db, order.id, PAYMENT_FAILED, source="webhook")

    assert not result.applied
    assert result.status == OrderStatus.confirmed
    assert result.order.version == 1


def test_unknown_order_raises(db):
    import uuid
    with pytest.raises(OrderNotFound):
        apply_gateway_event(db, uuid.uuid4(), PAYMENT_SUCCEEDED, source="webhook")


def test_write_with_stale_version_is_rejected(db, make_order):
    order = make_order()
    write_status(db, order, OrderStatus.processing, source="staff")

    with pytest.raises(StaleOrderError):
        write_status(db, order, OrderStatus.shipped, source="staff", expected_version=1)

    assert db.query(Order).one().status == OrderStatus.processing


def test_staff_override_is_unrestricted(db, make_order, admin):
    order = make_order(status=OrderStatus.delivered)

    updated = staff_set_status(db, order.id, OrderStatus.pending, changed_by=admin.id, reason="Reopened")

    assert updated.status == OrderStatus.pending
    history = db.query(OrderStatusHistory).one()
    assert history.changed_by == admin.id
    assert history.reason == "Reopened"


def test_staff_override_retries_on_conflict(db, make_order, monkeypatch):
    from storefront import order_status

    order = make_order()
    real_write = order_status.write_status
    calls = {"n": 0}

    def flaky_write(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            raise StaleOrderError("simulated concurrent write")
        return real_write(*args, **kwargs)

    monkeypatch.setattr(order_status, "write_status", flaky_write)

    updated = staff_set_status(db, order.id, OrderStatus.shipped)

    assert calls["n"] == 2
    assert updated.status == OrderStatus.shipped


# ---------------- HTTP ----------------


def test_admin_status_patch_with_version_check(client, make_order, admin):
    order = make_order()
    url = f"/api/admin/orders/{order.id}/status"

    ok = client.patch(url, json={"status": "processing", "expected_version": 1}, headers=auth_headers(admin))
    assert ok.status_code == 200
    assert ok.json()["order"]["version"] == 2

    stale = client.patch(url, json={"status": "shipped", "expected_version": 1}, headers=auth_headers(admin))
    assert stale.status_code == 409

    history = client.get(f"/api/admin/orders/{order.id}/history", headers=auth_headers(admin)).json()
    assert [h["new_status"] for h in history] == ["processing"]


def test_admin_status_patch_requires_admin(client, make_order, make_user):
    order = make_order()
    response = client.patch(
        f"/api/admin/orders/{order.id}/status",
        json={"status": "shipped"},
        headers=auth_headers(make_user()),
    )
    assert response.status_code == 403
