"""
tracking_logger.py
──────────────────
Records driver location pings sent along with status updates.

Appends to delivery_tracking.csv and refreshes the driver's last known
location on their user row.
"""

import logging

from agents.dispatch import distance_engine
from services.dispatch_store import DispatchStore, now_iso

logger = logging.getLogger(__name__)


class TrackingLogger:
    def __init__(self, store: DispatchStore):
        self.store = store

    def record(self, driver_id: str, delivery_id: str, location: dict) -> str:
        lat, lng = distance_engine.validate_point(location)
        ts = now_iso()
        with self.store.transaction() as txn:
            row = txn.insert("delivery_tracking", {
                "delivery_id": delivery_id,
                "driver_id":   driver_id,
                "latitude":    lat,
                "longitude":   lng,
                "timestamp":   ts,
            })
            if txn.get("users", driver_id) is not None:
                txn.update("users", driver_id, latitude=lat, longitude=lng, last_location_update=ts)
            else:
                logger.warning(f"[TrackingLogger] Driver {driver_id} has no user row; location not stored on profile.")

        logger.info(f"[TrackingLogger] driver={driver_id} delivery={delivery_id} @ ({lat}, {lng})")
        return row["id"]
