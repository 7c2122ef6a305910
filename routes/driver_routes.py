"""
driver_routes.py — Flask blueprint for /drivers/* endpoints

GET  /drivers/available-deliveries                      → pending deliveries near the driver
POST /drivers/batch-create                              → claim 1..3 deliveries as a batch
POST /drivers/optimize-route                            → (re)optimize a batch route
GET  /drivers/active-batches                            → driver's active batches
PUT  /drivers/update-batch-progress/<batch_id>          → advance one delivery
POST /drivers/batches/<batch_id>/cancel                 → cancel a batch
GET  /drivers/batches/<batch_id>/optimization-history   → optimization audit trail

The auth layer in front of this service passes the principal as
X-User-Id / X-User-Role / X-User-Permissions headers.
"""

import logging

from flask import Blueprint, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from agents.dispatch.errors import DispatchError, InvalidInput

logger = logging.getLogger(__name__)

drivers_bp = Blueprint("drivers", __name__, url_prefix="/drivers")


def _get_service():
    return current_app.extensions["driver_service"]


def _principal() -> dict:
    permissions = request.headers.get("X-User-Permissions", "")
    return {
        "user_id":     request.headers.get("X-User-Id"),
        "role":        request.headers.get("X-User-Role"),
        "permissions": [p.strip() for p in permissions.split(",") if p.strip()],
    }


def _body() -> dict:
    body = request.get_json(silent=True)
    if body is None:
        return {}
    if not isinstance(body, dict):
        raise InvalidInput("Request body must be a JSON object")
    return body


def _arg(name, cast, default=None):
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise InvalidInput(f"Query parameter '{name}' is not a valid {cast.__name__}")


def _current_location(body: dict):
    loc = body.get("current_location")
    if loc is None:
        return None
    if not isinstance(loc, dict):
        raise InvalidInput("current_location must be an object")
    return loc


# ──────────────────────────────────────────────────────
# ERROR MAPPING
# ──────────────────────────────────────────────────────

@drivers_bp.errorhandler(DispatchError)
def dispatch_error(e):
    logger.warning(f"[DriverRoutes] {request.method} {request.path} → {e.status_code}: {e.to_dict()}")
    return jsonify(e.to_dict()), e.status_code


@drivers_bp.errorhandler(Exception)
def unexpected_error(e):
    if isinstance(e, HTTPException):
        return e
    logger.exception(f"[DriverRoutes] {request.method} {request.path} failed")
    return jsonify({"error": "Internal Server Error", "message": str(e)}), 500


# ──────────────────────────────────────────────────────
# ENDPOINTS
# ──────────────────────────────────────────────────────

@drivers_bp.route("/available-deliveries", methods=["GET"])
def available_deliveries():
    result = _get_service().list_available(
        _principal(),
        lat=_arg("lat", float),
        lng=_arg("lng", float),
        max_distance=_arg("maxDistance", float),
        page=_arg("page", int, 1),
        page_size=_arg("limit", int),
    )
    return jsonify(result), 200


@drivers_bp.route("/batch-create", methods=["POST"])
def batch_create():
    body = _body()
    optimized_route = body.get("optimized_route", True)
    if not isinstance(optimized_route, bool):
        raise InvalidInput("optimized_route must be a boolean")

    result = _get_service().create_batch(
        _principal(),
        body.get("delivery_ids"),
        optimized_route=optimized_route,
    )
    return jsonify({"message": "Batch created successfully", **result}), 201


@drivers_bp.route("/optimize-route", methods=["POST"])
def optimize_route():
    body = _body()
    if not body.get("batch_id"):
        raise InvalidInput("Valid batch ID is required")

    result = _get_service().optimize_route(
        _principal(),
        body["batch_id"],
        strategy=body.get("strategy"),
        current_location=_current_location(body),
    )
    return jsonify({"message": "Route optimized successfully", **result}), 200


@drivers_bp.route("/active-batches", methods=["GET"])
def active_batches():
    return jsonify(_get_service().list_active_batches(_principal())), 200


@drivers_bp.route("/update-batch-progress/<batch_id>", methods=["PUT"])
def update_batch_progress(batch_id):
    body = _body()
    if not body.get("delivery_id"):
        raise InvalidInput("Invalid delivery ID")
    if not body.get("status"):
        raise InvalidInput("Invalid status")
    notes = body.get("notes")
    if notes is not None and not isinstance(notes, str):
        raise InvalidInput("Notes must be a string")

    result = _get_service().update_batch_progress(
        _principal(),
        batch_id,
        body["delivery_id"],
        body["status"],
        current_location=_current_location(body),
        notes=notes,
    )
    return jsonify({"message": f"Delivery status updated to {body['status']}", **result}), 200


@drivers_bp.route("/batches/<batch_id>/cancel", methods=["POST"])
def cancel_batch(batch_id):
    return jsonify(_get_service().cancel_batch(_principal(), batch_id)), 200


@drivers_bp.route("/batches/<batch_id>/optimization-history", methods=["GET"])
def optimization_history(batch_id):
    history = _get_service().optimization_history(_principal(), batch_id)
    return jsonify({"batch_id": batch_id, "history": history}), 200
