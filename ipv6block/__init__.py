"""Outbound block of a provider's published IPv6 ranges."""

from .blocker import BlockStatus, IPv6Blocker
from .cidr import in_range, is_valid_ipv6_cidr
from .connection_tester import ConnectionTester, ProbeResult, ProbeStatus
from .errors import (
    EmptyResultError,
    FailurePolicy,
    FormatError,
    InvalidArgument,
    IPv6BlockError,
    NetworkError,
    PermissionDenied,
    ResolutionError,
    RuleCreationError,
    RuleStoreError,
)
from .firewall_manager import EnableResult, FirewallManager
from .ip_ranges import RangeProvider
from .rule_store import PowerShellRuleStore, PowerShellRunner, RuleStore

__version__ = "1.0.0"
