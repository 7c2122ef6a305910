"""
optimization_logger.py
──────────────────────
Appends route optimization events to route_optimization_history.csv.

Rows are never updated or deleted. When called inside an open store
transaction the row joins it, so the history entry and the batch route
update are written together.
"""

import logging

from services.dispatch_store import DispatchStore, now_iso

logger = logging.getLogger(__name__)

_TABLE = "route_optimization_history"


class OptimizationLogger:
    def __init__(self, store: DispatchStore):
        self.store = store

    def log(
        self,
        batch_id: str,
        driver_id: str,
        previous_route: dict,
        optimized_route: dict,
        strategy: str,
        optimizer: str,
        optimization_time_ms: int,
        distance_saved: float,
        time_saved: int,
    ) -> str:
        with self.store.transaction() as txn:
            row = txn.insert(_TABLE, {
                "batch_id":              batch_id,
                "driver_id":             driver_id,
                "previous_route":        previous_route,
                "optimized_route":       optimized_route,
                "optimization_strategy": strategy,
                "optimizer":             optimizer,
                "optimization_time_ms":  optimization_time_ms,
                "distance_saved":        distance_saved,
                "time_saved":            time_saved,
                "created_at":            now_iso(),
            })

        logger.info(
            f"[OptimizationLogger] Written log_id={row['id']} | batch={batch_id} | "
            f"optimizer={optimizer} | saved={distance_saved} km / {time_saved} min"
        )
        return row["id"]

    def history_for_batch(self, batch_id: str) -> list:
        """All history rows for a batch, oldest first."""
        with self.store.transaction() as txn:
            return [dict(r) for r in txn.find(_TABLE, batch_id=batch_id)]
