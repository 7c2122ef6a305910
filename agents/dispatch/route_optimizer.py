"""
route_optimizer.py
──────────────────
Orders a batch's drop-off points into a multi-stop route.

Two strategies share one contract:

  RemoteOptimizer (maps_service.py) : external mapping service, primary
  LocalOptimizer                    : nearest-neighbor greedy, fallback

`plan_route()` is the single decision point: one remote attempt, and on
any failure the local optimizer runs within the same call.

Result contract (both strategies):
{
    "stops":                  [ { id, order_id, delivery_ids, latitude, longitude,
                                  address, customer_name }, ... ],
    "total_distance_km":      float,
    "estimated_duration_min": int,
    "optimizer":              "remote" | "local",
}
"""

import logging
import time

from agents.dispatch import distance_engine
from agents.dispatch.errors import BatchNotFound, EmptyBatch, InvalidInput
from agents.dispatch.inventory_reader import dropoff_point, resolve_driver_location
from agents.dispatch.progress_tracker import TERMINAL_STATUSES
from services.dispatch_store import now_iso

logger = logging.getLogger(__name__)

STRATEGIES = ("fastest", "shortest", "balanced")


def validate_strategy(strategy: str) -> str:
    if strategy not in STRATEGIES:
        raise InvalidInput(
            f"Strategy must be one of {', '.join(STRATEGIES)}; got {strategy!r}"
        )
    return strategy


def to_stop(point: dict) -> dict:
    return {
        "id":            point["id"],
        "order_id":      point.get("order_id"),
        "delivery_ids":  [point["id"]],
        "latitude":      float(point["latitude"]),
        "longitude":     float(point["longitude"]),
        "address":       point.get("address"),
        "customer_name": point.get("customer_name"),
    }


class RouteOptimizer:
    """Strategy interface for route optimizers."""

    name = "base"

    def optimize(self, driver_location: dict, points: list, strategy: str) -> dict:
        raise NotImplementedError


class LocalOptimizer(RouteOptimizer):
    """
    Greedy nearest neighbor on great-circle distance.

    Starting from the driver, repeatedly visits the closest remaining point.
    The total is the running sum of the chosen hops; the route is never
    re-optimized once a hop is picked. Duration is a fixed linear factor of
    distance, not a travel-time model. The strategy does not change the
    greedy order.
    """

    name = "local"

    def __init__(self, minutes_per_km: float = 2.0):
        self.minutes_per_km = minutes_per_km

    def optimize(self, driver_location: dict, points: list, strategy: str = "balanced") -> dict:
        distance_engine.validate_point(driver_location)
        for p in points:
            distance_engine.validate_point(p)

        if not points:
            logger.warning("[LocalOptimizer] No points to route.")

        current   = driver_location
        remaining = list(points)
        route     = []
        total_m   = 0.0

        while remaining:
            nearest = min(remaining, key=lambda p: distance_engine.calculate_distance(current, p))
            total_m += distance_engine.calculate_distance(current, nearest)
            route.append(nearest)
            remaining.remove(nearest)
            current = nearest

        total_km = total_m / 1000.0
        result = {
            "stops":                  [to_stop(p) for p in route],
            "total_distance_km":      round(total_km, 3),
            "estimated_duration_min": int(round(total_km * self.minutes_per_km)),
            "optimizer":              self.name,
        }
        logger.info(
            f"[LocalOptimizer] Routed {len(route)} stops "
            f"({result['total_distance_km']} km, strategy={strategy}): "
            + " → ".join(str(p["id"]) for p in route)
        )
        return result


def plan_route(
    driver_location: dict,
    points: list,
    strategy: str,
    local: LocalOptimizer,
    remote: RouteOptimizer = None,
    batch_id: str = None,
) -> dict:
    """
    Try the remote optimizer once; fall back to the local optimizer on any
    error. Remote failures are logged and never raised.
    """
    if remote is not None:
        try:
            result = remote.optimize(driver_location, points, strategy)
            logger.info(f"[RouteOptimizer] batch={batch_id} optimized by {remote.name}")
            return result
        except Exception as e:
            logger.warning(
                f"[RouteOptimizer] batch={batch_id} remote optimizer failed "
                f"({type(e).__name__}: {e}) — using local fallback."
            )
    return local.optimize(driver_location, points, strategy)


# --------------------------------------------------
# Batch route optimization
# --------------------------------------------------

def _savings(previous_route, new_total, field: str):
    """Previous total minus new total; 0 when the previous route has no total."""
    if not isinstance(previous_route, dict) or previous_route.get(field) is None:
        return 0
    return previous_route[field] - new_total


def _efficiency(driver_location: dict, stops: list, total_km: float) -> float:
    """
    Straight-line distance to the farthest stop over route distance, in (0, 1].
    """
    if not stops or total_km <= 0:
        return 1.0
    farthest = max(distance_engine.distance_km(driver_location, s) for s in stops)
    return round(min(1.0, farthest / total_km), 4)


class BatchRouteOptimizer:
    """
    Optimizes the remaining drop-offs of an active batch and records the run.

    The remote call happens outside any store transaction. The route write
    re-reads the batch, so the recorded previous route is the one stored at
    write time.
    """

    def __init__(self, store, history_logger, local: LocalOptimizer, remote: RouteOptimizer = None):
        self.store = store
        self.history_logger = history_logger
        self.local = local
        self.remote = remote

    def _load(self, batch_id: str, driver_id, driver_location):
        with self.store.transaction() as txn:
            batch = txn.get("delivery_batches", batch_id)
            if batch is None or batch["status"] != "active" or (driver_id and batch["driver_id"] != driver_id):
                raise BatchNotFound("Batch not found or not active", batch_id=batch_id, driver_id=driver_id)

            members = txn.find("deliveries", batch_id=batch_id)
            unresolved = [d for d in members if d["status"] not in TERMINAL_STATUSES]
            if not unresolved:
                raise EmptyBatch("Batch has no deliveries to optimize", batch_id=batch_id)

            location = resolve_driver_location(txn, batch["driver_id"], driver_location)

            points = []
            for d in unresolved:
                point = dropoff_point(txn, d)
                if point is None:
                    logger.warning(
                        f"[RouteOptimizer] batch={batch_id} delivery {d['id']} has no drop-off coordinates — skipped."
                    )
                    continue
                points.append(point)
            if not points:
                raise EmptyBatch("Batch has no locatable deliveries to optimize", batch_id=batch_id)

        return location, points

    def optimize(self, batch_id: str, strategy: str = "balanced", driver_location: dict = None,
                 driver_id: str = None) -> dict:
        validate_strategy(strategy)
        location, points = self._load(batch_id, driver_id, driver_location)

        started = time.perf_counter()
        result = plan_route(location, points, strategy, self.local, self.remote, batch_id=batch_id)
        elapsed_ms = int(round((time.perf_counter() - started) * 1000))

        with self.store.transaction() as txn:
            current = txn.get("delivery_batches", batch_id)
            if current is None or current["status"] != "active":
                raise BatchNotFound("Batch is no longer active", batch_id=batch_id)

            previous_route = current.get("route_data")
            total_km = result["total_distance_km"]
            duration = result["estimated_duration_min"]

            route = {
                **result,
                "driver_location": location,
                "strategy":        strategy,
                "distance_saved":  round(_savings(previous_route, total_km, "total_distance_km"), 3),
                "time_saved":      int(_savings(previous_route, duration, "estimated_duration_min")),
                "optimized_at":    now_iso(),
            }

            optimization_id = self.history_logger.log(
                batch_id=batch_id,
                driver_id=current["driver_id"],
                previous_route=previous_route,
                optimized_route=route,
                strategy=strategy,
                optimizer=route["optimizer"],
                optimization_time_ms=elapsed_ms,
                distance_saved=route["distance_saved"],
                time_saved=route["time_saved"],
            )
            txn.update(
                "delivery_batches", batch_id,
                route_data=route,
                optimization_strategy=strategy,
                total_distance=total_km,
                estimated_duration=duration,
                route_efficiency_score=_efficiency(location, route["stops"], total_km),
                updated_at=route["optimized_at"],
            )

        logger.info(
            f"[RouteOptimizer] batch={batch_id} | optimizer={route['optimizer']} | "
            f"{total_km} km | {duration} min | saved={route['distance_saved']} km | {elapsed_ms} ms"
        )
        return {"batch_id": batch_id, "optimization_id": optimization_id, "route": route}
