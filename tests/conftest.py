import uuid

import pytest

from agents.dispatch.errors import ExternalServiceDegraded
from agents.dispatch.route_optimizer import RouteOptimizer
from app import create_app
from services.dispatch_store import DispatchStore
from services.driver_service import DriverService


class FailingRemote(RouteOptimizer):
    """Remote optimizer that always fails, forcing the local fallback."""

    name = "remote"

    def __init__(self):
        self.calls = 0

    def optimize(self, driver_location, points, strategy):
        self.calls += 1
        raise ExternalServiceDegraded("maps service unavailable")


class StaticRemote(RouteOptimizer):
    """Remote optimizer that returns the points reversed with fixed totals."""

    name = "remote"

    def optimize(self, driver_location, points, strategy):
        from agents.dispatch.route_optimizer import to_stop
        return {
            "stops": [to_stop(p) for p in reversed(points)],
            "total_distance_km": 42.0,
            "estimated_duration_min": 55,
            "optimizer": self.name,
        }


class Seeder:
    """Writes collaborator rows (users, farms, orders, deliveries) for tests."""

    def __init__(self, store: DispatchStore):
        self.store = store

    def user(self, role="consumer", lat=None, lng=None, first_name="Test", last_name="User"):
        with self.store.transaction() as txn:
            return txn.insert("users", {
                "id": str(uuid.uuid4()), "first_name": first_name, "last_name": last_name,
                "email": f"{uuid.uuid4().hex[:8]}@example.com", "phone_number": "555-0100",
                "role": role, "latitude": lat, "longitude": lng,
            })["id"]

    def driver(self, lat=0.0, lng=0.0):
        return self.user(role="driver", lat=lat, lng=lng, first_name="Dana", last_name="Driver")

    def farm(self, lat, lng, name="Farm"):
        with self.store.transaction() as txn:
            return txn.insert("farms", {
                "name": name, "address": f"{name} Road", "latitude": lat, "longitude": lng,
            })["id"]

    def delivery(self, farm_ids, dropoff, status="pending", driver_id=None, batch_id=None,
                 consumer_name=("Casey", "Customer")):
        """
        farm_ids : list of farm ids, one order item each (repeats allowed)
        dropoff  : (lat, lng) or None
        """
        consumer_id = self.user(first_name=consumer_name[0], last_name=consumer_name[1])
        with self.store.transaction() as txn:
            order = txn.insert("orders", {
                "order_number": f"FF-{uuid.uuid4().hex[:6].upper()}",
                "consumer_id": consumer_id, "total_amount": 25.5,
            })
            for farm_id in farm_ids:
                txn.insert("order_items", {
                    "order_id": order["id"], "farm_id": farm_id,
                    "product_name": "Tomatoes", "quantity": 2,
                })
            return txn.insert("deliveries", {
                "order_id": order["id"], "driver_id": driver_id, "batch_id": batch_id,
                "status": status,
                "delivery_address": "1 Main St", "delivery_city": "Springfield",
                "delivery_state": "IL", "delivery_zip_code": "62701",
                "delivery_latitude": dropoff[0] if dropoff else None,
                "delivery_longitude": dropoff[1] if dropoff else None,
            })["id"]

    def batch(self, driver_id, status="active", route_data=None):
        with self.store.transaction() as txn:
            return txn.insert("delivery_batches", {
                "driver_id": driver_id, "status": status, "route_data": route_data or {"stops": []},
                "delivery_count": 0, "started_at": "2026-01-01T10:00:00",
                "created_at": "2026-01-01T10:00:00", "updated_at": "2026-01-01T10:00:00",
            })["id"]


def principal_for(user_id, role="driver", permissions=("update_delivery",)):
    return {"user_id": user_id, "role": role, "permissions": list(permissions)}


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "data_base")


@pytest.fixture
def store(db_path):
    return DispatchStore(db_path)


@pytest.fixture
def seed(store):
    return Seeder(store)


@pytest.fixture
def failing_remote():
    return FailingRemote()


@pytest.fixture
def service(db_path, failing_remote):
    return DriverService(db_path=db_path, remote_optimizer=failing_remote)


@pytest.fixture
def scenario(seed):
    """
    Driver at (0,0). Delivery A: farm (0,1) → drop-off (0,2).
    Delivery B: farm (1,0) → drop-off (1,1).
    """
    driver_id = seed.driver(0.0, 0.0)
    farm_a = seed.farm(0.0, 1.0, name="North Farm")
    farm_b = seed.farm(1.0, 0.0, name="East Farm")
    delivery_a = seed.delivery([farm_a], (0.0, 2.0))
    delivery_b = seed.delivery([farm_b], (1.0, 1.0))
    return {
        "driver_id": driver_id,
        "principal": principal_for(driver_id),
        "farm_a": farm_a,
        "farm_b": farm_b,
        "delivery_a": delivery_a,
        "delivery_b": delivery_b,
    }


@pytest.fixture
def app(db_path, failing_remote):
    return create_app(DB_PATH=db_path, REMOTE_OPTIMIZER=failing_remote, TESTING=True)


@pytest.fixture
def client(app):
    return app.test_client()
