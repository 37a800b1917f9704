"""
Orchestrator - the enable / disable / verify workflow.

Two logical states, Unblocked and Blocked, are always read from the rule
store; nothing is remembered between operations. One lock serializes every
operation because the rule store has no transactional isolation.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from .connection_tester import ConnectionTester, ProbeResult
from .errors import PermissionDenied, RuleStoreError
from .firewall_manager import EnableResult, FirewallManager
from .ip_ranges import RangeProvider
from .rule_store import PowerShellRuleStore, PowerShellRunner, RuleStore
from .time_utils import now_iso
from .utils import checkPrivileges

logger = logging.getLogger("blocker")


@dataclass
class BlockStatus:
    blocking: bool
    rule_names: List[str] = field(default_factory=list)
    admin_privileges: bool = False
    error: Optional[str] = None
    checked_at: str = ""


class IPv6Blocker:
    def __init__(self, range_provider: RangeProvider, firewall_manager: FirewallManager,
                 connection_tester: ConnectionTester):
        self.range_provider = range_provider
        self.firewall_manager = firewall_manager
        self.connection_tester = connection_tester
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Dict, rule_store: Optional[RuleStore] = None) -> "IPv6Blocker":
        """Build the full component graph from a configuration dictionary."""
        if rule_store is None:
            runner = PowerShellRunner(timeout=config["firewall"]["command_timeout"])
            rule_store = PowerShellRuleStore(runner)

        firewall_manager = FirewallManager.from_config(config, rule_store)
        return cls(
            RangeProvider.from_config(config),
            firewall_manager,
            ConnectionTester.from_config(config, firewall_manager),
        )

    def is_blocking(self) -> bool:
        with self._lock:
            return self.firewall_manager.rule_exists()

    def enable(self) -> EnableResult:
        """Fetch a fresh range set and install the block (Unblocked -> Blocked)."""
        with self._lock:
            ranges = self.range_provider.fetch_ranges()
            return self.firewall_manager.enable_blocking(ranges)

    def disable(self) -> int:
        """Remove the block (Blocked -> Unblocked). Returns the number of rules removed."""
        with self._lock:
            return self.firewall_manager.disable_blocking()

    def toggle(self) -> Union[EnableResult, int]:
        """Disable when a block is active, enable otherwise."""
        with self._lock:
            if self.firewall_manager.rule_exists():
                return self.firewall_manager.disable_blocking()
            ranges = self.range_provider.fetch_ranges()
            return self.firewall_manager.enable_blocking(ranges)

    def verify(self) -> ProbeResult:
        with self._lock:
            return self.connection_tester.verify_blocking()

    def status(self) -> BlockStatus:
        with self._lock:
            status = BlockStatus(
                blocking=False,
                admin_privileges=checkPrivileges(),
                checked_at=now_iso(),
            )
            try:
                status.rule_names = self.firewall_manager.list_rule_names()
                status.blocking = bool(status.rule_names)
            except (RuleStoreError, PermissionDenied) as e:
                logger.error(f"Error reading rule state: {e}")
                status.error = str(e)
                status.blocking = self.firewall_manager.rule_exists()
            return status
