"""
inventory_reader.py
───────────────────
Read-only queries over deliveries, orders, farms and users.

Produces unassigned deliveries enriched with pickup (farm) and drop-off
(customer) coordinates, and the helpers the batch assembler and route
optimizer use to build stops from the same records.
"""

import logging
import math
from typing import List, Optional

import pandas as pd

from agents.dispatch import distance_engine
from agents.dispatch.errors import InvalidInput

logger = logging.getLogger(__name__)


# --------------------------------------------------
# Record helpers
# --------------------------------------------------

def format_address(delivery: dict) -> str:
    city_line = " ".join(
        p for p in (delivery.get("delivery_state"), delivery.get("delivery_zip_code")) if p
    )
    parts = [delivery.get("delivery_address"), delivery.get("delivery_city"), city_line]
    return ", ".join(p for p in parts if p)


def _has_coords(lat, lng) -> bool:
    return lat is not None and lng is not None


def consumer_for(txn, delivery: dict) -> Optional[dict]:
    order = txn.get("orders", delivery["order_id"])
    if order is None or not order.get("consumer_id"):
        return None
    return txn.get("users", order["consumer_id"])


def customer_name(consumer: Optional[dict]) -> str:
    if not consumer:
        return "Unknown"
    name = f"{consumer.get('first_name') or ''} {consumer.get('last_name') or ''}".strip()
    return name or "Unknown"


def pickup_farms(txn, delivery: dict) -> List[dict]:
    """
    Unique farms supplying the delivery's order, first-seen order.
    Farms without coordinates are left out.
    """
    farms = {}
    for item in txn.find("order_items", order_id=delivery["order_id"]):
        farm_id = item.get("farm_id")
        if not farm_id or farm_id in farms:
            continue
        farm = txn.get("farms", farm_id)
        if farm is None:
            logger.warning(f"[InventoryReader] Farm {farm_id} for order {delivery['order_id']} not found.")
            continue
        farms[farm_id] = farm

    located = []
    for farm in farms.values():
        if not _has_coords(farm.get("latitude"), farm.get("longitude")):
            logger.warning(f"[InventoryReader] Farm {farm['id']} has no coordinates — skipped.")
            continue
        located.append({
            "id":        farm["id"],
            "name":      farm.get("name"),
            "address":   farm.get("address"),
            "latitude":  farm["latitude"],
            "longitude": farm["longitude"],
        })
    return located


def dropoff_point(txn, delivery: dict) -> Optional[dict]:
    """
    Customer drop-off for a delivery: the delivery's own coordinates,
    falling back to the consumer's profile location. None if neither.
    """
    consumer = consumer_for(txn, delivery)
    lat, lng = delivery.get("delivery_latitude"), delivery.get("delivery_longitude")
    if not _has_coords(lat, lng) and consumer:
        lat, lng = consumer.get("latitude"), consumer.get("longitude")
    if not _has_coords(lat, lng):
        return None
    return {
        "id":            delivery["id"],
        "order_id":      delivery["order_id"],
        "status":        delivery.get("status"),
        "latitude":      lat,
        "longitude":     lng,
        "address":       format_address(delivery),
        "customer_id":   consumer["id"] if consumer else None,
        "customer_name": customer_name(consumer),
    }


def resolve_driver_location(txn, driver_id: str, explicit: Optional[dict] = None) -> dict:
    """
    Explicit location wins; otherwise the driver's stored profile location.
    Raises InvalidInput if neither is available.
    """
    if explicit:
        lat, lng = distance_engine.validate_point(explicit)
        return {"latitude": lat, "longitude": lng}

    driver = txn.get("users", driver_id) if driver_id else None
    if driver and _has_coords(driver.get("latitude"), driver.get("longitude")):
        lat, lng = distance_engine.validate_point(driver)
        return {"latitude": lat, "longitude": lng}

    raise InvalidInput(
        "Driver location not available. Update the profile or provide lat/lng.",
        driver_id=driver_id,
    )


# --------------------------------------------------
# Available deliveries
# --------------------------------------------------

def _describe(txn, delivery: dict, driver_location: dict) -> Optional[dict]:
    dropoff = dropoff_point(txn, delivery)
    if dropoff is None:
        logger.warning(f"[InventoryReader] Delivery {delivery['id']} has no drop-off coordinates — excluded.")
        return None

    farms = pickup_farms(txn, delivery)
    route_points = (
        [{**driver_location, "type": "driver", "name": "Your Location"}]
        + [{"latitude": f["latitude"], "longitude": f["longitude"], "type": "farm",
            "name": f["name"], "id": f["id"]} for f in farms]
        + [{"latitude": dropoff["latitude"], "longitude": dropoff["longitude"], "type": "customer",
            "name": dropoff["customer_name"], "id": dropoff["customer_id"]}]
    )
    total_km = distance_engine.path_distance_m(route_points) / 1000.0

    order = txn.get("orders", delivery["order_id"]) or {}
    consumer = consumer_for(txn, delivery) or {}
    return {
        "delivery": {
            "id":                      delivery["id"],
            "status":                  delivery["status"],
            "scheduled_delivery_time": delivery.get("scheduled_delivery_time"),
            "scheduled_pickup_time":   delivery.get("scheduled_pickup_time"),
            "delivery_address":        dropoff["address"],
        },
        "order": {
            "id":           delivery["order_id"],
            "order_number": order.get("order_number"),
            "total_amount": order.get("total_amount"),
            "items":        len(txn.find("order_items", order_id=delivery["order_id"])),
        },
        "customer": {
            "name":         dropoff["customer_name"],
            "phone_number": consumer.get("phone_number"),
        },
        "farms": farms,
        "distance_details": {
            "total_distance_km": round(total_km, 3),
            "route_points":      route_points,
        },
    }


def list_available(
    store,
    driver_location: dict,
    max_distance: Optional[float] = None,
    page: int = 1,
    page_size: int = 10,
    max_page_size: int = 100,
) -> dict:
    """
    Pending, unassigned deliveries sorted by approximate route length
    (driver → farms → customer, great-circle hops).

    Sorting is stable: equal distances keep storage order.
    """
    if page < 1:
        raise InvalidInput("Page must be a positive integer")
    if not 1 <= page_size <= max_page_size:
        raise InvalidInput(f"Limit must be between 1 and {max_page_size}")
    if max_distance is not None and (math.isnan(max_distance) or max_distance < 0):
        raise InvalidInput("Max distance must be a positive number")
    distance_engine.validate_point(driver_location)

    with store.transaction() as txn:
        entries = []
        for delivery in txn.find("deliveries", status="pending", driver_id=None):
            entry = _describe(txn, delivery, driver_location)
            if entry is not None:
                entries.append(entry)

    df = pd.DataFrame({
        "entry":    entries,
        "distance": [e["distance_details"]["total_distance_km"] for e in entries],
    })
    if max_distance is not None and not df.empty:
        df = df[df["distance"] <= max_distance]
    df = df.sort_values("distance", kind="mergesort")

    total = len(df)
    offset = (page - 1) * page_size
    paged = df.iloc[offset:offset + page_size]["entry"].tolist()

    logger.info(
        f"[InventoryReader] available={total} | page={page} | returned={len(paged)} "
        f"| max_distance={max_distance}"
    )
    return {
        "available_deliveries": paged,
        "total_count":          total,
        "total_pages":          math.ceil(total / page_size),
        "current_page":         page,
    }
