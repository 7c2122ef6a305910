"""
driver_service.py — Driver-facing batching and routing operations.

Wires the dispatch agents together and applies the authorization gate.
The principal (user id, role, permissions) comes from the external auth
layer; every operation requires role 'driver' and 'update_delivery'.
"""

import logging
from typing import Optional

from agents.dispatch import inventory_reader
from agents.dispatch.batch_assembler import BatchAssembler
from agents.dispatch.errors import BatchNotFound, Forbidden, InvalidInput
from agents.dispatch.maps_service import RemoteOptimizer
from agents.dispatch.progress_tracker import ProgressTracker
from agents.dispatch.route_optimizer import BatchRouteOptimizer, LocalOptimizer
from execution.optimization_logger import OptimizationLogger
from execution.tracking_logger import TrackingLogger
from services.dispatch_store import DispatchStore

logger = logging.getLogger(__name__)

REQUIRED_ROLE = "driver"
REQUIRED_PERMISSION = "update_delivery"


def _location(lat, lng) -> Optional[dict]:
    if lat is None and lng is None:
        return None
    if lat is None or lng is None:
        raise InvalidInput("Both latitude and longitude are required")
    return {"latitude": lat, "longitude": lng}


class DriverService:

    def __init__(
        self,
        db_path: str = "data_base",
        capacity: int = 3,
        minutes_per_km: float = 2.0,
        maps_api_key: str = "",
        maps_base_url: str = "https://maps.googleapis.com/maps/api/directions/json",
        maps_timeout_s: float = 8.0,
        default_page_size: int = 10,
        max_page_size: int = 100,
        default_strategy: str = "balanced",
        remote_optimizer=None,
    ):
        self.store = DispatchStore(db_path)
        self.default_strategy = default_strategy
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

        self.history_logger = OptimizationLogger(self.store)
        if remote_optimizer is None:
            remote_optimizer = RemoteOptimizer(maps_api_key, maps_base_url, maps_timeout_s)
        self.route_optimizer = BatchRouteOptimizer(
            self.store,
            self.history_logger,
            local=LocalOptimizer(minutes_per_km),
            remote=remote_optimizer,
        )
        self.assembler = BatchAssembler(self.store, capacity, self.route_optimizer)
        self.tracker = ProgressTracker(self.store, TrackingLogger(self.store))
        logger.info(f"[DriverService] Initialized | db_path={db_path} | capacity={capacity}")

    # --------------------------------------------------
    # Authorization
    # --------------------------------------------------

    def _authorize(self, principal: dict) -> str:
        user_id = (principal or {}).get("user_id")
        if not user_id:
            raise Forbidden("Authenticated principal required")
        if principal.get("role") != REQUIRED_ROLE:
            logger.warning(f"[DriverService] user={user_id} role={principal.get('role')} denied")
            raise Forbidden("Only drivers can access this endpoint", user_id=user_id)
        if REQUIRED_PERMISSION not in (principal.get("permissions") or ()):
            logger.warning(f"[DriverService] user={user_id} lacks {REQUIRED_PERMISSION}")
            raise Forbidden(f"Missing permission: {REQUIRED_PERMISSION}", user_id=user_id)
        return user_id

    # --------------------------------------------------
    # Operations
    # --------------------------------------------------

    def list_available(self, principal, lat=None, lng=None, max_distance=None, page=1, page_size=None):
        driver_id = self._authorize(principal)
        with self.store.transaction() as txn:
            location = inventory_reader.resolve_driver_location(txn, driver_id, _location(lat, lng))
        return inventory_reader.list_available(
            self.store,
            location,
            max_distance=max_distance,
            page=page,
            page_size=self.default_page_size if page_size is None else page_size,
            max_page_size=self.max_page_size,
        )

    def create_batch(self, principal, delivery_ids, optimized_route=True):
        driver_id = self._authorize(principal)
        return self.assembler.create_batch(driver_id, delivery_ids, optimized_route=optimized_route)

    def optimize_route(self, principal, batch_id, strategy=None, current_location=None):
        driver_id = self._authorize(principal)
        return self.route_optimizer.optimize(
            batch_id,
            strategy=strategy or self.default_strategy,
            driver_location=current_location or None,
            driver_id=driver_id,
        )

    def list_active_batches(self, principal) -> dict:
        driver_id = self._authorize(principal)
        with self.store.transaction() as txn:
            batches = sorted(
                txn.find("delivery_batches", driver_id=driver_id, status="active"),
                key=lambda b: b.get("created_at") or "",
                reverse=True,
            )
            result = []
            for batch in batches:
                deliveries = []
                for d in txn.find("deliveries", batch_id=batch["id"]):
                    order = txn.get("orders", d["order_id"]) or {}
                    deliveries.append({
                        "id":                      d["id"],
                        "status":                  d["status"],
                        "customer_name":           inventory_reader.customer_name(
                            inventory_reader.consumer_for(txn, d)
                        ),
                        "address":                 inventory_reader.format_address(d),
                        "scheduled_delivery_time": d.get("scheduled_delivery_time"),
                        "order_id":                d["order_id"],
                        "order_number":            order.get("order_number"),
                    })
                result.append({
                    "id":                    batch["id"],
                    "status":                batch["status"],
                    "created_at":            batch["created_at"],
                    "delivery_count":        batch["delivery_count"],
                    "total_distance":        batch.get("total_distance"),
                    "estimated_duration":    batch.get("estimated_duration"),
                    "optimization_strategy": batch.get("optimization_strategy"),
                    "route":                 batch["route_data"],
                    "deliveries":            deliveries,
                })

        if not result:
            return {"message": "No active batches found", "batches": []}
        return {"batches": result}

    def update_batch_progress(self, principal, batch_id, delivery_id, status, current_location=None, notes=None):
        driver_id = self._authorize(principal)
        return self.tracker.update_progress(
            batch_id, delivery_id, status,
            location=current_location or None, notes=notes, driver_id=driver_id,
        )

    def cancel_batch(self, principal, batch_id):
        driver_id = self._authorize(principal)
        return self.tracker.cancel_batch(batch_id, driver_id=driver_id)

    def optimization_history(self, principal, batch_id) -> list:
        driver_id = self._authorize(principal)
        with self.store.transaction() as txn:
            batch = txn.get("delivery_batches", batch_id)
            if batch is None or batch["driver_id"] != driver_id:
                raise BatchNotFound("Batch not found", batch_id=batch_id, driver_id=driver_id)
        return self.history_logger.history_for_batch(batch_id)
