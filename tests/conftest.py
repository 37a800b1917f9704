import fnmatch
from typing import Dict, List, Optional, Sequence, Set

import pytest

from ipv6block import firewall_manager as firewall_manager_module
from ipv6block.errors import RuleStoreError
from ipv6block.rule_store import RuleStore

RULE_NAME = "Google IPv6 Block For VRChat"


class FakeRuleStore(RuleStore):
    """In-memory rule store that records every call."""

    def __init__(self):
        self.rules: Dict[str, List[str]] = {}
        self.calls: List[tuple] = []
        self.fail_names: Set[str] = set()
        self.fail_next_creates = 0
        self.create_error: Optional[Exception] = None
        self.leave_partial_rule = False
        self.list_error: Optional[Exception] = None
        self.delete_error: Optional[Exception] = None

    def list_rules(self, pattern: str) -> List[str]:
        self.calls.append(("list", pattern))
        if self.list_error is not None:
            raise self.list_error
        return [name for name in self.rules if fnmatch.fnmatchcase(name, pattern)]

    def get_remote_addresses(self, name: str) -> List[str]:
        self.calls.append(("addresses", name))
        return list(self.rules.get(name, []))

    def create_rule(self, name: str, addresses: Sequence[str]) -> None:
        self.calls.append(("create", name, list(addresses)))
        should_fail = name in self.fail_names or self.fail_next_creates > 0
        if should_fail:
            if self.fail_next_creates > 0:
                self.fail_next_creates -= 1
            if self.leave_partial_rule:
                self.rules[name] = list(addresses)[:1]
            raise self.create_error or RuleStoreError(f"create {name} failed", returncode=1)
        self.rules[name] = list(addresses)

    def delete_rules(self, name: str) -> None:
        self.calls.append(("delete", name))
        if self.delete_error is not None:
            raise self.delete_error
        self.rules.pop(name, None)

    def created_names(self) -> List[str]:
        return [call[1] for call in self.calls if call[0] == "create"]

    def mutating_calls(self) -> List[tuple]:
        return [call for call in self.calls if call[0] in ("create", "delete")]


def make_ranges(count: int) -> List[str]:
    return [f"2001:db8:{index:x}::/48" for index in range(count)]


@pytest.fixture
def store():
    return FakeRuleStore()


@pytest.fixture
def sleeps(monkeypatch):
    """Record pauses taken by the firewall manager instead of sleeping."""
    recorded: List[float] = []
    monkeypatch.setattr(firewall_manager_module, "sleep", recorded.append)
    return recorded


@pytest.fixture
def manager(store, sleeps):
    return firewall_manager_module.FirewallManager(store, rule_name=RULE_NAME)
