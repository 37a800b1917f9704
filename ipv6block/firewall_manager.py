import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from .cidr import is_valid_ipv6_cidr
from .errors import (
    FailurePolicy,
    InvalidArgument,
    PermissionDenied,
    RuleCreationError,
    RuleStoreError,
)
from .rule_store import RuleStore
from .time_utils import elapsed, now, sleep

logger = logging.getLogger("firewall_manager")

DEFAULT_RULE_NAME = "Google IPv6 Block For VRChat"
DEFAULT_COMMAND_LENGTH_LIMIT = 7000
DEFAULT_BATCH_SIZE = 100

# Existence query failure is reported as "no rule" unless told otherwise
RULE_QUERY_FAILURE_POLICY = FailurePolicy.OPEN

# Longest possible IPv6 CIDR text, used to size batches
WORST_CASE_RANGE = "ffff:ffff:ffff:ffff:ffff:ffff:ffff:ffff/128"

SINGLE_PATH = "single"
BATCHED_PATH = "batched"


@dataclass
class PathAttempt:
    path: str
    outcome: str  # "skipped", "failed" or "succeeded"
    reason: str = ""


@dataclass
class EnableResult:
    path: str
    rule_names: List[str]
    range_count: int
    attempts: List[PathAttempt] = field(default_factory=list)
    duration: float = 0.0


class FirewallManager:
    """
    Materializes a set of IPv6 ranges as outbound block rules.

    An existing block is never updated in place: enabling always removes
    every rule this tool owns and creates the new set from scratch. Creation
    first tries one rule for every range, then falls back to one rule per
    batch named ``<rule_name>_<n>``.
    """

    def __init__(self, rule_store: RuleStore, rule_name: str = DEFAULT_RULE_NAME,
                 command_length_limit: int = DEFAULT_COMMAND_LENGTH_LIMIT,
                 batch_size: int = DEFAULT_BATCH_SIZE, batch_delay: float = 1.0,
                 settle_delay: float = 1.0,
                 query_failure_policy: FailurePolicy = RULE_QUERY_FAILURE_POLICY):
        """
        Args:
            rule_store: Capability used to read and change firewall rules
            rule_name: Reserved display name; batch rules append ``_<n>``
            command_length_limit: Longest rule creation command the store accepts
            batch_size: Ranges per rule in batched mode (capped by the limit)
            batch_delay: Seconds to wait between batch rule creations
            settle_delay: Seconds to wait after removing an existing block
            query_failure_policy: Answer to give when the existence query fails
        """
        if batch_size < 1:
            raise InvalidArgument(f"batch_size must be at least 1, got {batch_size}")

        self.rule_store = rule_store
        self.rule_name = rule_name
        self.command_length_limit = command_length_limit
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self.settle_delay = settle_delay
        self.query_failure_policy = FailurePolicy.parse(query_failure_policy)

        self._own_rule_pattern = re.compile(re.escape(rule_name) + r"(_[1-9][0-9]*)?")

    @classmethod
    def from_config(cls, config: Dict, rule_store: RuleStore) -> "FirewallManager":
        section = config["firewall"]
        return cls(
            rule_store,
            rule_name=section["rule_name"],
            command_length_limit=section["command_length_limit"],
            batch_size=section["batch_size"],
            batch_delay=section["batch_delay"],
            settle_delay=section["settle_delay"],
            query_failure_policy=FailurePolicy.parse(section["query_failure_policy"]),
        )

    # ========================================
    # RULE STATE QUERIES
    # ========================================

    def list_rule_names(self) -> List[str]:
        """
        Names of every rule owned by this tool.

        Raises:
            RuleStoreError: if the store could not be queried
        """
        names = self.rule_store.list_rules(f"{self.rule_name}*")
        return [name for name in names if self._own_rule_pattern.fullmatch(name)]

    def rule_exists(self) -> bool:
        """Check whether any rule owned by this tool is present"""
        logger.debug(f"Checking for firewall rule '{self.rule_name}'")
        try:
            exists = bool(self.list_rule_names())
        except (RuleStoreError, PermissionDenied) as e:
            exists = self.query_failure_policy is FailurePolicy.CLOSED
            logger.error(f"Error checking firewall rule, assuming {'present' if exists else 'absent'}: {e}")
            return exists

        logger.debug(f"Rule check complete: {'present' if exists else 'absent'}")
        return exists

    def get_blocked_ranges(self) -> List[str]:
        """Remote addresses of every owned rule, in rule order; empty on query failure"""
        try:
            ranges: List[str] = []
            for name in self.list_rule_names():
                for address in self.rule_store.get_remote_addresses(name):
                    if address not in ranges:
                        ranges.append(address)
            return ranges
        except (RuleStoreError, PermissionDenied) as e:
            logger.warning(f"Could not read blocked ranges: {e}")
            return []

    # ========================================
    # ENABLE / DISABLE
    # ========================================

    def enable_blocking(self, ranges: Sequence[str]) -> EnableResult:
        """
        Replace whatever block is active with one covering ``ranges``.

        Raises:
            InvalidArgument: ``ranges`` is empty or holds no valid IPv6 CIDR
            PermissionDenied: the store refused a privileged operation
            RuleStoreError: the existing block could not be listed or removed
            RuleCreationError: neither creation path succeeded
        """
        ranges = list(ranges or [])
        if not ranges:
            raise InvalidArgument("No IPv6 ranges supplied")

        start_time = now()
        logger.info(f"🚀 Enabling IPv6 block: {len(ranges)} ranges")

        valid_ranges = self._filter_ranges(ranges)
        if not valid_ranges:
            raise InvalidArgument("No valid IPv6 ranges supplied")

        # Query errors propagate so nothing is created next to rules that could not be listed
        if self.list_rule_names():
            logger.info("Existing block found, removing it before recreating")
            self.disable_blocking()
            sleep(self.settle_delay)

        attempts: List[PathAttempt] = []

        single_length = self.rule_store.command_length(self.rule_name, valid_ranges)
        if single_length > self.command_length_limit:
            reason = f"command length {single_length} exceeds limit {self.command_length_limit}"
            logger.info(f"Single-rule path skipped: {reason}")
            attempts.append(PathAttempt(SINGLE_PATH, "skipped", reason))
        else:
            try:
                self._create_single_rule(valid_ranges)
                attempts.append(PathAttempt(SINGLE_PATH, "succeeded"))
                return self._finish(SINGLE_PATH, [self.rule_name], valid_ranges, attempts, start_time)
            except PermissionDenied:
                self._rollback([self.rule_name])
                raise
            except RuleStoreError as e:
                logger.warning(f"Single-rule path failed, falling back to batches: {e}")
                attempts.append(PathAttempt(SINGLE_PATH, "failed", str(e)))
                self._rollback([self.rule_name])

        try:
            names = self._create_batched_rules(valid_ranges)
        except RuleStoreError as e:
            attempts.append(PathAttempt(BATCHED_PATH, "failed", str(e)))
            logger.error(f"❌ Batched path failed, no block is active: {e}")
            raise RuleCreationError("Failed to create IPv6 block rules", cause=e, attempts=attempts) from e

        attempts.append(PathAttempt(BATCHED_PATH, "succeeded"))
        return self._finish(BATCHED_PATH, names, valid_ranges, attempts, start_time)

    def disable_blocking(self) -> int:
        """
        Remove every rule owned by this tool.

        Returns:
            int: Number of rules removed; 0 when nothing was active

        Raises:
            RuleStoreError, PermissionDenied: if listing or removal failed
        """
        logger.info("🗑️ Disabling IPv6 block")
        names = self.list_rule_names()

        if not names:
            logger.info("No block rules to remove")
            return 0

        first_error: Optional[Exception] = None
        removed = 0
        for name in names:
            try:
                self.rule_store.delete_rules(name)
                removed += 1
                logger.debug(f"Removed rule: {name}")
            except (RuleStoreError, PermissionDenied) as e:
                logger.error(f"Failed to remove rule {name}: {e}")
                if first_error is None:
                    first_error = e

        if first_error is not None:
            raise first_error

        logger.info(f"IPv6 block disabled: {removed} rules removed")
        return removed

    # ========================================
    # CREATION PATHS
    # ========================================

    def _create_single_rule(self, ranges: List[str]) -> None:
        logger.info(f"Creating single rule '{self.rule_name}' for {len(ranges)} ranges")
        self.rule_store.create_rule(self.rule_name, ranges)

    def _create_batched_rules(self, ranges: List[str]) -> List[str]:
        """Create one rule per batch, sequentially; all-or-nothing."""
        batches = self.split_batches(ranges)
        names = self.batch_rule_names(len(batches))
        logger.info(f"Creating {len(batches)} batch rules ({len(batches[0])} ranges per batch)")

        created: List[str] = []
        for index, (name, batch) in enumerate(zip(names, batches)):
            if index > 0:
                sleep(self.batch_delay)
            try:
                self.rule_store.create_rule(name, batch)
            except (RuleStoreError, PermissionDenied) as e:
                logger.error(f"Batch {index + 1}/{len(batches)} ('{name}') failed: {e}")
                self._rollback(created + [name])
                raise
            created.append(name)
            logger.debug(f"Batch {index + 1}/{len(batches)} created: {name} ({len(batch)} ranges)")

        return created

    def effective_batch_size(self, range_count: Optional[int] = None) -> int:
        """
        Configured batch size, reduced until a worst-case batch fits the length limit.

        With ``range_count`` the size is measured against the longest batch rule
        name those ranges actually produce, whose index can have more digits
        than ``batch_size``.
        """
        size = self._fit_batch(f"{self.rule_name}_{self.batch_size}")
        if not range_count:
            return size

        while True:
            batch_count = -(-range_count // size)
            fitted = self._fit_batch(f"{self.rule_name}_{batch_count}")
            if fitted >= size:
                return size
            size = fitted

    def _fit_batch(self, name: str) -> int:
        base_length = self.rule_store.command_length(name, [])
        per_range = self.rule_store.command_length(name, [WORST_CASE_RANGE]) - base_length
        if per_range <= 0:
            return self.batch_size
        fits = (self.command_length_limit - base_length) // per_range
        return max(1, min(self.batch_size, fits))

    def split_batches(self, ranges: Sequence[str]) -> List[List[str]]:
        size = self.effective_batch_size(len(ranges))
        return [list(ranges[i:i + size]) for i in range(0, len(ranges), size)]

    def batch_rule_names(self, count: int) -> List[str]:
        if count == 1:
            return [self.rule_name]
        return [f"{self.rule_name}_{i}" for i in range(1, count + 1)]

    # ========================================
    # UTILITY METHODS
    # ========================================

    def _rollback(self, names: List[str]) -> None:
        """Best-effort removal of rules created by the failed call"""
        for name in names:
            try:
                self.rule_store.delete_rules(name)
                logger.info(f"Rolled back rule: {name}")
            except (RuleStoreError, PermissionDenied) as e:
                logger.warning(f"Rollback of rule {name} failed: {e}")

    def _filter_ranges(self, ranges: List[str]) -> List[str]:
        valid: List[str] = []
        for cidr in ranges:
            if not is_valid_ipv6_cidr(cidr):
                logger.warning(f"Ignoring invalid IPv6 range: {cidr!r}")
                continue
            cidr = cidr.strip()
            if cidr not in valid:
                valid.append(cidr)
        logger.info(f"📊 Valid ranges: {len(valid)}")
        return valid

    def _finish(self, path: str, names: List[str], ranges: List[str],
                attempts: List[PathAttempt], start_time: float) -> EnableResult:
        duration = elapsed(start_time)
        logger.info(f"🎉 IPv6 block enabled via {path} path: {len(names)} rules, "
                    f"{len(ranges)} ranges in {duration:.1f}s")
        return EnableResult(path, names, len(ranges), attempts, duration)
