import os

import pytest

from services.dispatch_store import DispatchStore, TABLES


def test_headers_created_for_every_table(db_path, store):
    for table in TABLES:
        assert os.path.exists(os.path.join(db_path, f"{table}.csv"))
        assert store.read(table) == []


def test_values_round_trip_through_csv(db_path, store):
    route = {"stops": [{"id": "a", "latitude": 1.5}], "optimized": True}
    with store.transaction() as txn:
        batch_id = txn.insert("delivery_batches", {
            "driver_id": "d1", "status": "active", "route_data": route,
            "delivery_count": 2, "total_distance": 12.25,
        })["id"]

    row = DispatchStore(db_path).read("delivery_batches")[0]
    assert row["id"] == batch_id
    assert row["route_data"] == route
    assert row["delivery_count"] == 2
    assert row["total_distance"] == 12.25
    assert row["completed_at"] is None


def test_exception_rolls_back_every_change(store):
    with store.transaction() as txn:
        user_id = txn.insert("users", {"first_name": "Ada", "role": "driver"})["id"]

    with pytest.raises(RuntimeError):
        with store.transaction() as txn:
            txn.update("users", user_id, first_name="Changed")
            txn.insert("farms", {"name": "Ghost Farm"})
            raise RuntimeError("boom")

    assert store.read("users")[0]["first_name"] == "Ada"
    assert store.read("farms") == []


def test_nested_transaction_joins_outer(store):
    with pytest.raises(RuntimeError):
        with store.transaction() as outer:
            outer.insert("farms", {"name": "Outer"})
            with store.transaction() as inner:
                assert inner is outer
                inner.insert("farms", {"name": "Inner"})
            raise RuntimeError("boom")

    assert store.read("farms") == []


def test_find_matches_any_member_of_a_tuple(store):
    with store.transaction() as txn:
        for status in ("pending", "assigned", "in_progress", "completed"):
            txn.insert("deliveries", {"order_id": "o", "status": status, "driver_id": "d"})
        found = txn.find("deliveries", driver_id="d", status=("assigned", "in_progress"))
    assert sorted(d["status"] for d in found) == ["assigned", "in_progress"]


def test_update_rejects_unknown_column(store):
    with store.transaction() as txn:
        farm_id = txn.insert("farms", {"name": "Farm"})["id"]
    with pytest.raises(KeyError):
        with store.transaction() as txn:
            txn.update("farms", farm_id, colour="green")


def test_failed_write_of_later_table_keeps_earlier_tables(monkeypatch, db_path, service, scenario):
    real_write = DispatchStore._write

    def failing_write(self, table, rows):
        if table == "delivery_batches":
            raise OSError("disk full")
        return real_write(self, table, rows)

    monkeypatch.setattr(DispatchStore, "_write", failing_write)
    with pytest.raises(OSError):
        service.create_batch(scenario["principal"], [scenario["delivery_a"]], optimized_route=False)
    monkeypatch.undo()

    store = DispatchStore(db_path)
    delivery = [d for d in store.read("deliveries") if d["id"] == scenario["delivery_a"]][0]
    assert delivery["status"] == "pending"
    assert delivery["batch_id"] is None
    assert store.read("delivery_batches") == []
    assert [f for f in os.listdir(db_path) if f.endswith(".tmp")] == []

    result = service.create_batch(scenario["principal"], [scenario["delivery_a"]], optimized_route=False)
    assert result["batch"]["delivery_count"] == 1
