from harvester_provider.metrics import RECONCILE_COUNTERS, Metrics, metrics


def test_known_counters_start_at_zero():
    snapshot = Metrics(RECONCILE_COUNTERS).snapshot()
    assert set(snapshot) == set(RECONCILE_COUNTERS)
    assert all(value == 0 for value in snapshot.values())


def test_inc_and_reset():
    metrics.inc("reconciles_total")
    metrics.inc("reconciles_total", 2)
    assert metrics.get("reconciles_total") == 3

    metrics.reset()
    assert metrics.get("reconciles_total") == 0
