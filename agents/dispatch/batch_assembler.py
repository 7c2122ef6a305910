"""
batch_assembler.py
──────────────────
Claims 1..N pending deliveries for a driver as one batch.

The availability check, the capacity check and every write happen inside a
single store transaction: either all deliveries are assigned and the batch
row exists, or nothing changed. Concurrent calls are serialized by the
store lock, so two requests cannot both pass the capacity check.

Route skeleton (input order, per delivery):
    unique pickup farms → customer drop-off
"""

import logging
from typing import List, Optional

from agents.dispatch.errors import CapacityExceeded, Conflict, InvalidInput
from agents.dispatch.inventory_reader import (
    consumer_for, customer_name, dropoff_point, format_address, pickup_farms,
)
from agents.dispatch.progress_tracker import ACTIVE_STATUSES
from services.dispatch_store import now_iso

logger = logging.getLogger(__name__)


def _validate_ids(delivery_ids, capacity: int) -> List[str]:
    if not isinstance(delivery_ids, (list, tuple)):
        raise InvalidInput("delivery_ids must be a list")
    if not 1 <= len(delivery_ids) <= capacity:
        raise InvalidInput(f"Batch must contain between 1 and {capacity} deliveries")
    if any(not isinstance(d, str) or not d.strip() for d in delivery_ids):
        raise InvalidInput("Invalid delivery ID")
    if len(set(delivery_ids)) != len(delivery_ids):
        raise InvalidInput("Duplicate delivery IDs in batch")
    return list(delivery_ids)


def build_skeleton(txn, driver_id: str, deliveries: list) -> dict:
    """Unoptimized route: each delivery's farms, then its drop-off."""
    stops = []
    for delivery in deliveries:
        order = txn.get("orders", delivery["order_id"]) or {}
        order_number = order.get("order_number")

        for farm in pickup_farms(txn, delivery):
            stops.append({
                "type":         "pickup",
                "farm_id":      farm["id"],
                "farm_name":    farm["name"],
                "latitude":     farm["latitude"],
                "longitude":    farm["longitude"],
                "address":      farm["address"],
                "order_id":     delivery["order_id"],
                "order_number": order_number,
                "delivery_id":  delivery["id"],
            })

        dropoff = dropoff_point(txn, delivery)
        if dropoff is None:
            logger.warning(f"[BatchAssembler] Delivery {delivery['id']} has no drop-off coordinates.")
        consumer = consumer_for(txn, delivery)
        stops.append({
            "type":          "delivery",
            "customer_id":   consumer["id"] if consumer else None,
            "customer_name": customer_name(consumer),
            "latitude":      dropoff["latitude"] if dropoff else None,
            "longitude":     dropoff["longitude"] if dropoff else None,
            "address":       format_address(delivery),
            "order_id":      delivery["order_id"],
            "order_number":  order_number,
            "delivery_id":   delivery["id"],
        })

    return {
        "driver_id":              driver_id,
        "delivery_ids":           [d["id"] for d in deliveries],
        "optimized":              False,
        "created_at":             now_iso(),
        "stops":                  stops,
        "total_distance_km":      None,
        "estimated_duration_min": None,
    }


class BatchAssembler:

    def __init__(self, store, capacity: int = 3, route_optimizer=None):
        self.store = store
        self.capacity = capacity
        self.route_optimizer = route_optimizer

    def current_load(self, txn, driver_id: str) -> int:
        return len(txn.find("deliveries", driver_id=driver_id, status=ACTIVE_STATUSES))

    def create_batch(
        self,
        driver_id: str,
        delivery_ids: list,
        optimized_route: bool = True,
        driver_location: Optional[dict] = None,
    ) -> dict:
        """
        Returns
        -------
        {
            "batch":      batch row (route_data included),
            "deliveries": [ { id, status, order_id, order_number, batch_id }, ... ],
            "route":      batch route_data
        }
        """
        ids = _validate_ids(delivery_ids, self.capacity)

        with self.store.transaction() as txn:
            deliveries, unavailable = [], []
            for delivery_id in ids:
                d = txn.get("deliveries", delivery_id)
                if d is None or d["status"] != "pending" or d.get("driver_id"):
                    unavailable.append(delivery_id)
                else:
                    deliveries.append(d)
            if unavailable:
                logger.warning(
                    f"[BatchAssembler] driver={driver_id} | unavailable deliveries={unavailable}"
                )
                raise Conflict(
                    "One or more deliveries are already assigned or do not exist",
                    ids=unavailable, driver_id=driver_id,
                )

            current = self.current_load(txn, driver_id)
            if current + len(deliveries) > self.capacity:
                logger.warning(
                    f"[BatchAssembler] driver={driver_id} | capacity exceeded: "
                    f"current={current} + requested={len(deliveries)} > {self.capacity}"
                )
                raise CapacityExceeded(
                    f"You can only have a maximum of {self.capacity} active deliveries. "
                    f"You currently have {current}.",
                    current_count=current, capacity=self.capacity, driver_id=driver_id,
                )

            ts = now_iso()
            batch = txn.insert("delivery_batches", {
                "driver_id":             driver_id,
                "status":                "active",
                "route_data":            build_skeleton(txn, driver_id, deliveries),
                "delivery_count":        len(deliveries),
                "started_at":            ts,
                "optimization_strategy": None,
                "created_at":            ts,
                "updated_at":            ts,
            })
            for d in deliveries:
                txn.update(
                    "deliveries", d["id"],
                    driver_id=driver_id, status="assigned", batch_id=batch["id"], updated_at=ts,
                )

            assigned = [
                {
                    "id":           d["id"],
                    "status":       "assigned",
                    "order_id":     d["order_id"],
                    "order_number": (txn.get("orders", d["order_id"]) or {}).get("order_number"),
                    "batch_id":     batch["id"],
                }
                for d in deliveries
            ]

        logger.info(
            f"[BatchAssembler] Batch {batch['id']} created | driver={driver_id} | "
            f"deliveries={ids} | load={current + len(deliveries)}/{self.capacity}"
        )

        if optimized_route and self.route_optimizer is not None:
            try:
                self.route_optimizer.optimize(
                    batch["id"], driver_location=driver_location, driver_id=driver_id,
                )
            except Exception as e:
                logger.warning(
                    f"[BatchAssembler] Batch {batch['id']} kept unoptimized route: "
                    f"{type(e).__name__}: {e}"
                )

        with self.store.transaction() as txn:
            stored = dict(txn.get("delivery_batches", batch["id"]))

        return {"batch": stored, "deliveries": assigned, "route": stored["route_data"]}
