import threading

import pytest

from agents.dispatch.batch_assembler import BatchAssembler
from agents.dispatch.errors import CapacityExceeded, Conflict, Forbidden, InvalidInput
from conftest import principal_for


def _deliveries(store, ids):
    with store.transaction() as txn:
        return [dict(txn.get("deliveries", i)) for i in ids]


def test_create_batch_assigns_every_delivery(service, store, scenario):
    ids = [scenario["delivery_a"], scenario["delivery_b"]]

    result = service.create_batch(scenario["principal"], ids, optimized_route=False)

    batch = result["batch"]
    assert batch["delivery_count"] == 2
    assert batch["status"] == "active"
    assert batch["driver_id"] == scenario["driver_id"]
    for d in _deliveries(store, ids):
        assert d["status"] == "assigned"
        assert d["driver_id"] == scenario["driver_id"]
        assert d["batch_id"] == batch["id"]
    assert {d["id"] for d in result["deliveries"]} == set(ids)


def test_skeleton_lists_farms_then_dropoff_per_delivery(service, scenario):
    ids = [scenario["delivery_a"], scenario["delivery_b"]]
    route = service.create_batch(scenario["principal"], ids, optimized_route=False)["route"]

    assert route["optimized"] is False
    assert route["total_distance_km"] is None
    kinds = [(s["type"], s["delivery_id"]) for s in route["stops"]]
    assert kinds == [
        ("pickup", ids[0]), ("delivery", ids[0]),
        ("pickup", ids[1]), ("delivery", ids[1]),
    ]
    assert route["stops"][0]["farm_id"] == scenario["farm_a"]
    assert (route["stops"][1]["latitude"], route["stops"][1]["longitude"]) == (0.0, 2.0)
    assert route["stops"][1]["customer_name"] == "Casey Customer"


def test_pickup_farms_are_deduplicated(service, seed):
    driver_id = seed.driver()
    farm_a = seed.farm(0.0, 1.0)
    farm_b = seed.farm(1.0, 0.0)
    delivery = seed.delivery([farm_a, farm_a, farm_b], (2.0, 2.0))

    route = service.create_batch(principal_for(driver_id), [delivery], optimized_route=False)["route"]

    pickups = [s["farm_id"] for s in route["stops"] if s["type"] == "pickup"]
    assert pickups == [farm_a, farm_b]


def test_already_assigned_delivery_conflicts_and_nothing_changes(service, store, seed, scenario):
    other_driver = seed.driver()
    taken = seed.delivery([scenario["farm_a"]], (0.0, 3.0), status="assigned", driver_id=other_driver)

    with pytest.raises(Conflict) as exc:
        service.create_batch(scenario["principal"], [scenario["delivery_a"], taken], optimized_route=False)

    assert exc.value.ids == [taken]
    untouched = _deliveries(store, [scenario["delivery_a"]])[0]
    assert untouched["status"] == "pending"
    assert untouched["driver_id"] is None
    assert untouched["batch_id"] is None
    assert store.read("delivery_batches") == []


def test_unknown_delivery_conflicts(service, scenario):
    with pytest.raises(Conflict) as exc:
        service.create_batch(scenario["principal"], [scenario["delivery_a"], "missing-id"], optimized_route=False)
    assert exc.value.ids == ["missing-id"]


def test_capacity_counts_existing_active_deliveries(service, seed, scenario):
    driver_id = scenario["driver_id"]
    seed.delivery([scenario["farm_a"]], (0.0, 3.0), status="assigned", driver_id=driver_id)
    seed.delivery([scenario["farm_a"]], (0.0, 4.0), status="in_progress", driver_id=driver_id)
    seed.delivery([scenario["farm_a"]], (0.0, 5.0), status="completed", driver_id=driver_id)

    with pytest.raises(CapacityExceeded) as exc:
        service.create_batch(scenario["principal"], [scenario["delivery_a"], scenario["delivery_b"]],
                             optimized_route=False)
    assert exc.value.current_count == 2
    assert exc.value.capacity == 3

    # One more still fits.
    result = service.create_batch(scenario["principal"], [scenario["delivery_a"]], optimized_route=False)
    assert result["batch"]["delivery_count"] == 1


@pytest.mark.parametrize("ids", [[], ["a", "b", "c", "d"], ["a", "a"], "abc", [""], None])
def test_invalid_id_lists(service, scenario, ids):
    with pytest.raises(InvalidInput):
        service.create_batch(scenario["principal"], ids, optimized_route=False)


def test_non_driver_is_forbidden(service, seed, scenario):
    farmer = seed.user(role="farmer")
    with pytest.raises(Forbidden):
        service.create_batch(principal_for(farmer, role="farmer"), [scenario["delivery_a"]])
    with pytest.raises(Forbidden):
        service.create_batch(principal_for(scenario["driver_id"], permissions=()), [scenario["delivery_a"]])


def test_optimized_route_runs_local_fallback(service, store, scenario, failing_remote):
    ids = [scenario["delivery_a"], scenario["delivery_b"]]

    result = service.create_batch(scenario["principal"], ids, optimized_route=True)

    route = result["route"]
    assert route["optimizer"] == "local"
    assert failing_remote.calls == 1
    assert [s["id"] for s in route["stops"]] == [scenario["delivery_b"], scenario["delivery_a"]]
    assert len(store.read("route_optimization_history")) == 1


def test_optimizer_failure_keeps_skeleton(service, seed):
    # Driver has no stored location, so optimization cannot start.
    driver_id = seed.user(role="driver")
    farm = seed.farm(0.0, 1.0)
    delivery = seed.delivery([farm], (0.0, 2.0))

    result = service.create_batch(principal_for(driver_id), [delivery], optimized_route=True)

    assert result["batch"]["status"] == "active"
    assert result["route"]["optimized"] is False
    assert result["batch"]["delivery_count"] == 1


def test_concurrent_batches_never_exceed_capacity(store, seed):
    driver_id = seed.driver()
    farm = seed.farm(0.0, 1.0)
    delivery_ids = [seed.delivery([farm], (0.0, 1.0 + i / 10)) for i in range(6)]
    assembler = BatchAssembler(store, capacity=3)

    barrier = threading.Barrier(len(delivery_ids))
    outcomes = []
    lock = threading.Lock()

    def claim(delivery_id):
        barrier.wait()
        try:
            assembler.create_batch(driver_id, [delivery_id], optimized_route=False)
            outcome = "ok"
        except CapacityExceeded:
            outcome = "full"
        with lock:
            outcomes.append(outcome)

    threads = [threading.Thread(target=claim, args=(d,)) for d in delivery_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count("ok") == 3
    assert outcomes.count("full") == 3
    active = [d for d in store.read("deliveries") if d["driver_id"] == driver_id
              and d["status"] in ("assigned", "in_progress")]
    assert len(active) == 3
    assert len(store.read("delivery_batches")) == 3


def test_concurrent_claims_of_same_delivery_assign_it_once(store, seed):
    drivers = [seed.driver() for _ in range(4)]
    farm = seed.farm(0.0, 1.0)
    delivery_id = seed.delivery([farm], (0.0, 2.0))
    assembler = BatchAssembler(store, capacity=3)

    barrier = threading.Barrier(len(drivers))
    winners = []

    def claim(driver_id):
        barrier.wait()
        try:
            assembler.create_batch(driver_id, [delivery_id], optimized_route=False)
            winners.append(driver_id)
        except Conflict:
            pass

    threads = [threading.Thread(target=claim, args=(d,)) for d in drivers]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(winners) == 1
    row = [d for d in store.read("deliveries") if d["id"] == delivery_id][0]
    assert row["driver_id"] == winners[0]
