"""
progress_tracker.py
───────────────────
Advances delivery and batch state machines.

Delivery:
  pending → assigned → in_progress → completed
  pending | assigned | in_progress → cancelled
  in_progress → failed

Batch:
  active → completed   (automatic, once every member delivery is completed)
  active → cancelled   (explicit cancel, or every member terminal but not all completed)

Batch completion is recomputed explicitly after each delivery update, from
the member rows currently in storage.
"""

import logging
from datetime import datetime
from typing import Optional

from agents.dispatch import distance_engine
from agents.dispatch.errors import BatchNotFound, InvalidInput, InvalidTransition, NotFound
from services.dispatch_store import now_iso

logger = logging.getLogger(__name__)

DELIVERY_TRANSITIONS = {
    "pending":     {"assigned", "cancelled"},
    "assigned":    {"in_progress", "cancelled"},
    "in_progress": {"completed", "cancelled", "failed"},
    "completed":   set(),
    "cancelled":   set(),
    "failed":      set(),
}

TERMINAL_STATUSES = frozenset({"completed", "cancelled", "failed"})
ACTIVE_STATUSES = ("assigned", "in_progress")

# Only batch assembly may move a delivery into 'assigned'.
_ASSEMBLY_ONLY = {"assigned"}


def check_transition(current: str, new: str, delivery_id: str = None):
    if new not in DELIVERY_TRANSITIONS:
        raise InvalidInput(f"Unknown delivery status: {new!r}", delivery_id=delivery_id)
    if new not in DELIVERY_TRANSITIONS.get(current, set()):
        raise InvalidTransition(
            f"Cannot move delivery from '{current}' to '{new}'",
            delivery_id=delivery_id, current_status=current, requested_status=new,
        )


def _minutes_since(started_at: Optional[str], ended_at: str) -> Optional[int]:
    if not started_at:
        return None
    delta = datetime.fromisoformat(ended_at) - datetime.fromisoformat(started_at)
    return int(round(delta.total_seconds() / 60.0))


class ProgressTracker:

    def __init__(self, store, tracking_logger=None):
        self.store = store
        self.tracking_logger = tracking_logger

    def _active_batch(self, txn, batch_id: str, driver_id: Optional[str]) -> dict:
        batch = txn.get("delivery_batches", batch_id)
        if batch is None or batch["status"] != "active" or (driver_id and batch["driver_id"] != driver_id):
            raise BatchNotFound("Batch not found or not active", batch_id=batch_id, driver_id=driver_id)
        return batch

    def _recompute_batch_status(self, txn, batch: dict) -> str:
        members = txn.find("deliveries", batch_id=batch["id"])
        statuses = [d["status"] for d in members]
        if not members or not all(s in TERMINAL_STATUSES for s in statuses):
            return batch["status"]

        ts = now_iso()
        new_status = "completed" if all(s == "completed" for s in statuses) else "cancelled"
        txn.update(
            "delivery_batches", batch["id"],
            status=new_status,
            completed_at=ts,
            actual_duration=_minutes_since(batch.get("started_at"), ts),
            updated_at=ts,
        )
        logger.info(f"[ProgressTracker] Batch {batch['id']} → {new_status} ({len(members)} deliveries)")
        return new_status

    def update_progress(
        self,
        batch_id: str,
        delivery_id: str,
        new_status: str,
        location: Optional[dict] = None,
        notes: Optional[str] = None,
        driver_id: Optional[str] = None,
    ) -> dict:
        if new_status not in DELIVERY_TRANSITIONS:
            raise InvalidInput(f"Unknown delivery status: {new_status!r}", delivery_id=delivery_id)
        if location:
            distance_engine.validate_point(location)

        with self.store.transaction() as txn:
            batch = self._active_batch(txn, batch_id, driver_id)

            delivery = txn.get("deliveries", delivery_id)
            if delivery is None or delivery.get("batch_id") != batch_id:
                raise NotFound(
                    "Delivery does not belong to this batch",
                    batch_id=batch_id, delivery_id=delivery_id,
                )
            previous = delivery["status"]
            if new_status in _ASSEMBLY_ONLY:
                raise InvalidTransition(
                    f"Cannot move delivery from '{previous}' to '{new_status}' outside batch assembly",
                    delivery_id=delivery_id, current_status=previous, requested_status=new_status,
                )
            check_transition(previous, new_status, delivery_id)

            ts = now_iso()
            changes = {"status": new_status, "updated_at": ts}
            if new_status == "in_progress":
                changes["actual_pickup_time"] = ts
            if new_status == "completed":
                changes["actual_delivery_time"] = ts
            if notes:
                changes["driver_notes"] = notes
            txn.update("deliveries", delivery_id, **changes)
            logger.info(
                f"[ProgressTracker] Delivery {delivery_id} {previous} → {new_status} "
                f"| batch={batch_id} | driver={batch['driver_id']}"
            )

            if location and self.tracking_logger is not None:
                self.tracking_logger.record(batch["driver_id"], delivery_id, location)

            batch_status = self._recompute_batch_status(txn, batch)

        return {
            "delivery_id":     delivery_id,
            "status":          new_status,
            "batch_id":        batch_id,
            "batch_status":    batch_status,
            "batch_completed": batch_status == "completed",
        }

    def cancel_batch(self, batch_id: str, driver_id: Optional[str] = None) -> dict:
        """Cancel every non-terminal member delivery, then the batch."""
        with self.store.transaction() as txn:
            batch = self._active_batch(txn, batch_id, driver_id)
            ts = now_iso()
            cancelled = []
            for d in txn.find("deliveries", batch_id=batch_id):
                if d["status"] in TERMINAL_STATUSES:
                    continue
                check_transition(d["status"], "cancelled", d["id"])
                txn.update("deliveries", d["id"], status="cancelled", updated_at=ts)
                cancelled.append(d["id"])

            txn.update(
                "delivery_batches", batch_id,
                status="cancelled",
                completed_at=ts,
                actual_duration=_minutes_since(batch.get("started_at"), ts),
                updated_at=ts,
            )

        logger.info(f"[ProgressTracker] Batch {batch_id} cancelled | deliveries={cancelled}")
        return {"batch_id": batch_id, "batch_status": "cancelled", "cancelled_deliveries": cancelled}
