import pytest

from conftest import RULE_NAME, make_ranges
from ipv6block.errors import (
    FailurePolicy,
    InvalidArgument,
    PermissionDenied,
    RuleCreationError,
    RuleStoreError,
)
from ipv6block.firewall_manager import BATCHED_PATH, SINGLE_PATH, FirewallManager


def test_empty_ranges_rejected_without_store_call(manager, store):
    with pytest.raises(InvalidArgument):
        manager.enable_blocking([])
    assert store.calls == []


def test_only_invalid_ranges_rejected_without_store_call(manager, store):
    with pytest.raises(InvalidArgument):
        manager.enable_blocking(["not-an-ip/32", "192.0.2.0/24"])
    assert store.calls == []


def test_single_path_creates_one_bare_rule(manager, store):
    ranges = make_ranges(10)
    result = manager.enable_blocking(ranges)

    assert result.path == SINGLE_PATH
    assert result.rule_names == [RULE_NAME]
    assert store.rules == {RULE_NAME: ranges}
    assert result.attempts[-1].outcome == "succeeded"


def test_invalid_and_duplicate_entries_filtered(manager, store):
    manager.enable_blocking(["2001:4860::/32", "bogus", "2001:4860::/32", "2404:6800::/32"])
    assert store.rules == {RULE_NAME: ["2001:4860::/32", "2404:6800::/32"]}


def test_existing_rules_removed_before_recreate(manager, store, sleeps):
    store.rules = {RULE_NAME + "_1": ["2001:db8:dead::/48"], RULE_NAME + "_2": ["2001:db8:beef::/48"]}

    manager.enable_blocking(["2001:4860::/32"])

    assert store.rules == {RULE_NAME: ["2001:4860::/32"]}
    deletes = [call for call in store.calls if call[0] == "delete"]
    assert {call[1] for call in deletes} == {RULE_NAME + "_1", RULE_NAME + "_2"}
    assert sleeps == [manager.settle_delay]


def test_enable_twice_matches_enable_once(store, sleeps):
    ranges = make_ranges(7)

    once = FirewallManager(store, rule_name=RULE_NAME)
    once.enable_blocking(ranges)
    state_after_once = dict(store.rules)

    once.enable_blocking(ranges)
    assert store.rules == state_after_once


def test_oversized_command_routed_to_batches(store, sleeps):
    manager = FirewallManager(store, rule_name=RULE_NAME, command_length_limit=1000, batch_delay=0.25)
    ranges = make_ranges(60)
    assert store.command_length(RULE_NAME, ranges) > 1000

    result = manager.enable_blocking(ranges)

    assert result.path == BATCHED_PATH
    assert result.attempts[0].path == SINGLE_PATH
    assert result.attempts[0].outcome == "skipped"
    assert RULE_NAME not in store.created_names()

    size = manager.effective_batch_size()
    assert size < 60
    expected_names = [f"{RULE_NAME}_{i}" for i in range(1, len(result.rule_names) + 1)]
    assert result.rule_names == expected_names

    batched = [address for name in result.rule_names for address in store.rules[name]]
    assert batched == ranges
    assert all(len(store.rules[name]) <= size for name in result.rule_names)
    for name in result.rule_names:
        assert store.command_length(name, store.rules[name]) <= 1000

    assert sleeps == [0.25] * (len(result.rule_names) - 1)


def test_single_path_failure_falls_back_to_batches(store, sleeps):
    manager = FirewallManager(store, rule_name=RULE_NAME, batch_size=2)
    store.fail_names = {RULE_NAME}
    ranges = make_ranges(5)

    result = manager.enable_blocking(ranges)

    assert result.path == BATCHED_PATH
    assert [attempt.outcome for attempt in result.attempts] == ["failed", "succeeded"]
    assert result.rule_names == [f"{RULE_NAME}_1", f"{RULE_NAME}_2", f"{RULE_NAME}_3"]
    assert store.rules == {
        f"{RULE_NAME}_1": ranges[0:2],
        f"{RULE_NAME}_2": ranges[2:4],
        f"{RULE_NAME}_3": ranges[4:5],
    }


def test_incomplete_single_rule_cleaned_before_batching(store, sleeps):
    manager = FirewallManager(store, rule_name=RULE_NAME, batch_size=3)
    store.fail_names = {RULE_NAME}
    store.leave_partial_rule = True

    manager.enable_blocking(make_ranges(6))

    assert RULE_NAME not in store.rules
    assert sorted(store.rules) == [f"{RULE_NAME}_1", f"{RULE_NAME}_2"]


def test_single_batch_uses_bare_name(store, sleeps):
    manager = FirewallManager(store, rule_name=RULE_NAME)
    store.fail_next_creates = 1
    ranges = make_ranges(3)

    result = manager.enable_blocking(ranges)

    assert result.path == BATCHED_PATH
    assert result.rule_names == [RULE_NAME]
    assert store.rules == {RULE_NAME: ranges}


def test_batch_failure_rolls_back_and_raises(store, sleeps):
    manager = FirewallManager(store, rule_name=RULE_NAME, batch_size=2)
    store.fail_names = {RULE_NAME, f"{RULE_NAME}_3"}

    with pytest.raises(RuleCreationError) as excinfo:
        manager.enable_blocking(make_ranges(6))

    assert store.rules == {}
    error = excinfo.value
    assert isinstance(error.cause, RuleStoreError)
    assert [(a.path, a.outcome) for a in error.attempts] == [(SINGLE_PATH, "failed"), (BATCHED_PATH, "failed")]
    # creation stopped at the failing batch
    assert f"{RULE_NAME}_3" == store.created_names()[-1]


def test_failed_enable_does_not_restore_previous_block(store, sleeps):
    manager = FirewallManager(store, rule_name=RULE_NAME)
    store.rules = {RULE_NAME: ["2001:db8:dead::/48"]}
    store.fail_names = {RULE_NAME}

    with pytest.raises(RuleCreationError):
        manager.enable_blocking(make_ranges(2))

    assert store.rules == {}
    assert manager.rule_exists() is False


def test_permission_denied_is_not_conflated(store, sleeps):
    manager = FirewallManager(store, rule_name=RULE_NAME, batch_size=2)
    store.fail_names = {RULE_NAME}
    store.create_error = PermissionDenied("elevation declined")

    with pytest.raises(PermissionDenied):
        manager.enable_blocking(make_ranges(5))

    assert store.created_names() == [RULE_NAME]
    assert store.rules == {}


def test_rule_exists_matches_base_and_batch_names(manager, store):
    assert manager.rule_exists() is False

    store.rules = {RULE_NAME + "_2": ["2001:db8::/32"]}
    assert manager.rule_exists() is True


def test_rule_exists_ignores_foreign_rules(manager, store):
    store.rules = {
        RULE_NAME + " (old)": ["2001:db8::/32"],
        RULE_NAME + "_backup": ["2001:db8::/32"],
        RULE_NAME + "_0": ["2001:db8::/32"],
    }
    assert manager.rule_exists() is False


def test_rule_query_failure_fails_open_by_default(manager, store):
    store.rules = {RULE_NAME: ["2001:db8::/32"]}
    store.list_error = RuleStoreError("query failed")
    assert manager.rule_exists() is False


def test_rule_query_failure_can_fail_closed(store, sleeps):
    manager = FirewallManager(store, rule_name=RULE_NAME, query_failure_policy=FailurePolicy.CLOSED)
    store.list_error = RuleStoreError("query failed")
    assert manager.rule_exists() is True


def test_disable_removes_all_variants_and_is_idempotent(manager, store):
    store.rules = {
        RULE_NAME: ["2001:db8:1::/48"],
        RULE_NAME + "_1": ["2001:db8:2::/48"],
        RULE_NAME + "_12": ["2001:db8:3::/48"],
        "Unrelated rule": ["2001:db8:4::/48"],
    }

    assert manager.disable_blocking() == 3
    assert store.rules == {"Unrelated rule": ["2001:db8:4::/48"]}

    assert manager.disable_blocking() == 0


def test_disable_propagates_removal_error(manager, store):
    store.rules = {RULE_NAME: ["2001:db8::/32"]}
    store.delete_error = RuleStoreError("remove failed")

    with pytest.raises(RuleStoreError):
        manager.disable_blocking()


def test_get_blocked_ranges_reads_all_rules(manager, store):
    store.rules = {
        RULE_NAME + "_1": ["2001:4860::/32", "2404:6800::/32"],
        RULE_NAME + "_2": ["2a00:1450::/32"],
    }
    assert manager.get_blocked_ranges() == ["2001:4860::/32", "2404:6800::/32", "2a00:1450::/32"]

    store.list_error = RuleStoreError("query failed")
    assert manager.get_blocked_ranges() == []


def test_effective_batch_size_capped_by_limit(store):
    assert FirewallManager(store, batch_size=100, command_length_limit=7000).effective_batch_size() == 100
    assert FirewallManager(store, batch_size=100, command_length_limit=500).effective_batch_size() < 100
    assert FirewallManager(store, batch_size=100, command_length_limit=10).effective_batch_size() == 1


def test_batch_size_must_be_positive(store):
    with pytest.raises(InvalidArgument):
        FirewallManager(store, batch_size=0)


def test_unlistable_existing_block_aborts_enable(manager, store):
    store.rules = {RULE_NAME + "_1": ["2001:db8:1::/48"], RULE_NAME + "_2": ["2001:db8:2::/48"]}
    store.list_error = RuleStoreError("query failed")

    with pytest.raises(RuleStoreError):
        manager.enable_blocking(["2001:4860::/32"])

    assert store.mutating_calls() == []
    assert sorted(store.rules) == [RULE_NAME + "_1", RULE_NAME + "_2"]


def test_batches_fit_limit_when_index_gains_digits(store, sleeps):
    manager = FirewallManager(store, rule_name=RULE_NAME, batch_size=5, command_length_limit=495)
    ranges = [f"ffff:ffff:ffff:ffff:ffff:ffff:ffff:{i:04x}/128" for i in range(60)]

    result = manager.enable_blocking(ranges)

    assert result.path == BATCHED_PATH
    assert len(result.rule_names) >= 10
    for name in result.rule_names:
        assert store.command_length(name, store.rules[name]) <= 495
    assert [address for name in result.rule_names for address in store.rules[name]] == ranges
