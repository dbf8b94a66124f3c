import pytest
from sqlalchemy.exc import OperationalError

from storefront import bulk_ops
from storefront.bulk_ops import PartialDeleteError, bulk_delete_orders, bulk_update_status
from storefront.models import Order, OrderItem, OrderStatus, OrderStatusHistory

from conftest import auth_headers


def _three_orders(make_order):
    return [
        make_order(items=(("Kurta", 1000.0, 1), ("Dupatta", 500.0, 1))),
        make_order(items=(("Shawl", 800.0, 1),)),
        make_order(items=(("Scarf", 200.0, 2),)),
    ]


def _fail_order_delete(monkeypatch):
    def boom(db, order_ids):
        raise OperationalError("DELETE FROM orders", {}, Exception("connection lost"))

    monkeypatch.setattr(bulk_ops, "_delete_orders", boom)


def test_bulk_status_returns_count_and_bumps_versions(db, make_order, admin):
    orders = _three_orders(make_order)

    updated = bulk_update_status(db, [o.id for o in orders[:2]], OrderStatus.shipped, changed_by=admin.id)

    assert updated == 2
    db.expire_all()
    statuses = {o.id: (o.status, o.version) for o in db.query(Order).all()}
    assert statuses[orders[0].id] == (OrderStatus.shipped, 2)
    assert statuses[orders[2].id] == (OrderStatus.pending, 1)
    assert db.query(OrderStatusHistory).filter(OrderStatusHistory.source == "bulk").count() == 2


def test_bulk_delete_removes_items_and_orders(db, make_order):
    orders = _three_orders(make_order)

    result = bulk_delete_orders(db, [o.id for o in orders], atomic=True)

    assert result == {"items_deleted": 4, "orders_deleted": 3}
    assert db.query(Order).count() == 0
    assert db.query(OrderItem).count() == 0


def test_atomic_bulk_delete_rolls_back_on_failure(db, make_order, monkeypatch):
    orders = _three_orders(make_order)
    _fail_order_delete(monkeypatch)

    with pytest.raises(OperationalError):
        bulk_delete_orders(db, [o.id for o in orders], atomic=True)

    assert db.query(Order).count() == 3
    assert db.query(OrderItem).count() == 4


def test_best_effort_bulk_delete_leaves_orphaned_orders(db, make_order, monkeypatch):
    orders = _three_orders(make_order)
    _fail_order_delete(monkeypatch)

    with pytest.raises(PartialDeleteError) as exc:
        bulk_delete_orders(db, [o.id for o in orders], atomic=False)

    # known gap of the legacy mode: items gone, orders left behind
    assert exc.value.items_deleted == 4
    assert db.query(OrderItem).count() == 0
    assert db.query(Order).count() == 3


def test_bulk_endpoints(client, db, make_order, admin, make_user):
    orders = _three_orders(make_order)
    ids = [str(o.id) for o in orders]

    denied = client.post("/api/admin/orders/bulk-status", json={"order_ids": ids, "status": "shipped"},
                         headers=auth_headers(make_user()))
    assert denied.status_code == 403

    updated = client.post("/api/admin/orders/bulk-status", json={"order_ids": ids, "status": "shipped"},
                          headers=auth_headers(admin))
    assert updated.json()["updated"] == 3

    deleted = client.post("/api/admin/orders/bulk-delete", json={"order_ids": ids[:2]}, headers=auth_headers(admin))
    assert deleted.status_code == 200
    assert deleted.json()["orders_deleted"] == 2
    assert db.query(Order).count() == 1


def test_bulk_delete_failure_is_500(client, make_order, admin, monkeypatch):
    orders = _three_orders(make_order)
    _fail_order_delete(monkeypatch)

    response = client.post(
        "/api/admin/orders/bulk-delete",
        json={"order_ids": [str(o.id) for o in orders]},
        headers=auth_headers(admin),
    )

    assert response.status_code == 500


def test_single_order_delete_and_listing(client, db, make_order, admin):
    order = make_order(order_number="ALH-42")
    order_id = order.id
    make_order(status=OrderStatus.delivered)

    listed = client.get("/api/admin/orders?search=ALH-42", headers=auth_headers(admin)).json()
    assert listed["total"] == 1
    assert listed["stats"] == {"pending": 1, "delivered": 1}

    detail = client.get(f"/api/admin/orders/{order_id}", headers=auth_headers(admin)).json()
    assert detail["items"][0]["product_name"] == "Lawn Suit"

    assert client.delete(f"/api/admin/orders/{order_id}", headers=auth_headers(admin)).status_code == 200
    assert client.get(f"/api/admin/orders/{order_id}", headers=auth_headers(admin)).status_code == 404
