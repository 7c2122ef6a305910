"""
maps_service.py
───────────────
Remote route optimizer backed by the Google Directions API.

API Base : https://maps.googleapis.com/maps/api/directions/json
Params   : origin, destination, waypoints=optimize:true|lat,lng|..., key

One request per call, bounded by an explicit timeout. Every failure
(no key, timeout, HTTP error, non-OK status, malformed body) is raised as
ExternalServiceDegraded; route_optimizer.plan_route() turns it into a local
fallback.

Strategy: `shortest` and `fastest` choose among route alternatives, which the
API only returns for a single destination. With waypoints there is one route,
ordered by `optimize:true`; `fastest` still asks for live traffic through
`departure_time=now`.

`requests` is imported lazily (inside the call) so a missing package never
crashes Flask blueprint registration.
"""

import logging

from agents.dispatch.errors import ExternalServiceDegraded
from agents.dispatch.route_optimizer import RouteOptimizer, to_stop

logger = logging.getLogger(__name__)


def _latlng(point: dict) -> str:
    return f"{float(point['latitude'])},{float(point['longitude'])}"


def _pick_route(routes: list, strategy: str) -> dict:
    """
    shortest → least total meters, fastest → least total seconds,
    balanced → the service's first (recommended) route.
    """
    def _total(route, field):
        return sum(leg[field]["value"] for leg in route["legs"])

    if strategy == "shortest":
        return min(routes, key=lambda r: _total(r, "distance"))
    if strategy == "fastest":
        return min(routes, key=lambda r: _total(r, "duration"))
    return routes[0]


class RemoteOptimizer(RouteOptimizer):

    name = "remote"

    def __init__(self, api_key: str, base_url: str, timeout_s: float = 8.0):
        self.api_key   = (api_key or "").strip()
        self.base_url  = base_url
        self.timeout_s = timeout_s

    def _params(self, driver_location: dict, waypoints: list, destination: dict, strategy: str) -> dict:
        params = {
            "origin":      _latlng(driver_location),
            "destination": _latlng(destination),
            "mode":        "driving",
            "units":       "metric",
            "key":         self.api_key,
        }
        if waypoints:
            params["waypoints"] = "optimize:true|" + "|".join(_latlng(w) for w in waypoints)
        # The API returns alternatives only for requests without intermediate waypoints.
        if strategy in ("shortest", "fastest") and not waypoints:
            params["alternatives"] = "true"
        if strategy == "fastest":
            params["departure_time"] = "now"
        return params

    def optimize(self, driver_location: dict, points: list, strategy: str = "balanced") -> dict:
        if not self.api_key:
            raise ExternalServiceDegraded("Maps API key is not configured")
        if not points:
            return {"stops": [], "total_distance_km": 0.0, "estimated_duration_min": 0,
                    "optimizer": self.name}

        waypoints   = list(points[:-1])
        destination = points[-1]

        try:
            import requests  # lazy import

            resp = requests.get(
                self.base_url,
                params=self._params(driver_location, waypoints, destination, strategy),
                timeout=self.timeout_s,
            )
            resp.raise_for_status()
            data = resp.json()
        except Exception as e:
            raise ExternalServiceDegraded(f"Directions request failed: {e}")

        if not isinstance(data, dict) or data.get("status") != "OK":
            status = data.get("status") if isinstance(data, dict) else type(data).__name__
            raise ExternalServiceDegraded(f"Directions API returned status={status}")

        try:
            route = _pick_route(data["routes"], strategy)
            legs  = route["legs"]
            total_m = sum(float(leg["distance"]["value"]) for leg in legs)
            total_s = sum(float(leg["duration"]["value"]) for leg in legs)
            order = list(route.get("waypoint_order") or range(len(waypoints)))
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise ExternalServiceDegraded(f"Malformed Directions response: {e!r}")

        if sorted(order) != list(range(len(waypoints))):
            raise ExternalServiceDegraded(f"Malformed waypoint_order: {order}")

        ordered = [waypoints[i] for i in order] + [destination]
        result = {
            "stops":                  [to_stop(p) for p in ordered],
            "total_distance_km":      round(total_m / 1000.0, 3),
            "estimated_duration_min": int(round(total_s / 60.0)),
            "optimizer":              self.name,
            "route_polyline":         (route.get("overview_polyline") or {}).get("points"),
        }
        logger.info(
            f"[MapsService] Routed {len(ordered)} stops | "
            f"{result['total_distance_km']} km | {result['estimated_duration_min']} min | "
            f"strategy={strategy}"
        )
        return result
