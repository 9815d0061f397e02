from cpr.failure_domains import FailureDomainStats, stats_for


def test_select_on_empty_stats_returns_empty():
    assert FailureDomainStats().select() == ""


def test_select_prefers_least_used_domain():
    stats = FailureDomainStats(["a", "b", "c"])
    stats.add("a")
    stats.add("b")
    assert stats.select() == "c"


def test_ties_go_to_first_inserted_domain():
    stats = FailureDomainStats()
    stats.add("zone-b")
    stats.add("zone-a")
    assert [stats.select() for _ in range(3)] == ["zone-b"] * 3
    # select only reads; order and usage stay as they were.
    assert stats.list == ["zone-b", "zone-a"]
    assert stats.usage == {"zone-b": 1, "zone-a": 1}


def test_add_registers_unseen_domain_with_usage_one():
    stats = FailureDomainStats(["a"])
    stats.add("b")
    assert stats.usage == {"a": 0, "b": 1}


def test_stats_for_skips_replicas_without_domain():
    stats = stats_for(["a", "b"], ["a", None, "a", ""])
    assert stats.usage == {"a": 2, "b": 0}
    assert stats.select() == "b"
