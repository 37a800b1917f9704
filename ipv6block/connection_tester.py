"""
Enforcement Verifier - checks that the block actually stops traffic.

A verification run asks the rule store whether a block exists, resolves the
probe host to IPv6, attempts a TCP connection on port 80 and, as an advisory
check, looks the probed address up in the blocked ranges.

Outcome classification:
- no rule present            -> NOT_BLOCKED (no network activity at all)
- connect timed out          -> BLOCKED
- connect raised OSError     -> BLOCKED
- connect succeeded          -> NOT_BLOCKED
- anything else unexpected   -> decided by the ambiguity policy
"""

import asyncio
import logging
import socket
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

import dns.exception
import dns.resolver

from .cidr import find_matching_range
from .errors import FailurePolicy, ResolutionError
from .firewall_manager import FirewallManager

logger = logging.getLogger("connection_tester")

DEFAULT_PROBE_HOST = "google.com"
DEFAULT_PROBE_PORT = 80
DEFAULT_PROBE_TIMEOUT = 3.0
DEFAULT_CROSS_CHECK_LIMIT = 5

# Unclassified probe failures count as proof of blocking unless told otherwise
PROBE_AMBIGUITY_POLICY = FailurePolicy.CLOSED


class ProbeStatus(Enum):
    BLOCKED = "blocked"
    NOT_BLOCKED = "not_blocked"
    INCONCLUSIVE = "inconclusive"


@dataclass
class ProbeResult:
    status: ProbeStatus
    reason: str = ""
    address: Optional[str] = None
    matched_range: Optional[str] = None
    range_checked: bool = False
    advisories: List[str] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return self.status is ProbeStatus.BLOCKED

    def to_dict(self) -> Dict:
        return {
            "status": self.status.value,
            "reason": self.reason,
            "address": self.address,
            "matched_range": self.matched_range,
            "range_checked": self.range_checked,
            "advisories": list(self.advisories),
        }


def resolve_ipv6(host: str, timeout: float = 5.0) -> List[str]:
    """
    Resolve AAAA records for ``host``.

    dnspython is tried first; resolver errors fall back to the system
    resolver. An empty list means the host has no IPv6 address.
    """
    try:
        resolver = dns.resolver.Resolver()
        resolver.timeout = timeout
        resolver.lifetime = timeout * 2
        answers = resolver.resolve(host, "AAAA")
        addresses = [str(rdata) for rdata in answers]
        if addresses:
            return addresses
    except dns.exception.DNSException as e:
        logger.debug(f"dnspython lookup failed for {host}: {e}")

    try:
        results = socket.getaddrinfo(host, None, socket.AF_INET6, socket.SOCK_STREAM)
    except socket.gaierror as e:
        logger.debug(f"System resolver failed for {host}: {e}")
        return []

    addresses: List[str] = []
    for result in results:
        address = result[4][0]
        if address not in addresses:
            addresses.append(address)
    return addresses


async def probe_connection(address: str, port: int, timeout: float) -> ProbeStatus:
    """
    Race a TCP connect against a timer.

    Whichever finishes first decides; the connect is cancelled if the timer
    wins, and an established connection is always closed.
    """
    writer = None
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(address, port), timeout=timeout)
        logger.debug(f"Connected to [{address}]:{port}")
        return ProbeStatus.NOT_BLOCKED
    except asyncio.TimeoutError:
        logger.debug(f"Connection to [{address}]:{port} timed out after {timeout}s")
        return ProbeStatus.BLOCKED
    except OSError as e:
        logger.debug(f"Connection to [{address}]:{port} failed: {e}")
        return ProbeStatus.BLOCKED
    finally:
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass


class ConnectionTester:
    """Verifies enforcement of the IPv6 block with a live probe."""

    def __init__(self, firewall_manager: FirewallManager, host: str = DEFAULT_PROBE_HOST,
                 port: int = DEFAULT_PROBE_PORT, timeout: float = DEFAULT_PROBE_TIMEOUT,
                 cross_check_limit: int = DEFAULT_CROSS_CHECK_LIMIT,
                 ambiguity_policy: FailurePolicy = PROBE_AMBIGUITY_POLICY,
                 resolver: Optional[Callable[[str], List[str]]] = None):
        self.firewall_manager = firewall_manager
        self.host = host
        self.port = port
        self.timeout = timeout
        self.cross_check_limit = cross_check_limit
        self.ambiguity_policy = FailurePolicy.parse(ambiguity_policy)
        self.resolver = resolver or resolve_ipv6

    @classmethod
    def from_config(cls, config: Dict, firewall_manager: FirewallManager) -> "ConnectionTester":
        section = config["verify"]
        return cls(
            firewall_manager,
            host=section["host"],
            port=section["port"],
            timeout=section["timeout"],
            cross_check_limit=section["cross_check_limit"],
            ambiguity_policy=FailurePolicy.parse(section["ambiguity_policy"]),
        )

    def verify_blocking(self, ranges: Optional[Sequence[str]] = None) -> ProbeResult:
        """
        Check that the block is in effect.

        Args:
            ranges: Ranges to cross-check the probed address against; read
                back from the rule store when omitted

        Raises:
            ResolutionError: the probe host has no IPv6 address
        """
        logger.info("IPv6 block verification started")

        if not self.firewall_manager.rule_exists():
            logger.info("No block rule present, skipping connection probe")
            return ProbeResult(ProbeStatus.NOT_BLOCKED, reason="no block rule present")

        try:
            addresses = self.resolver(self.host)
        except ResolutionError:
            raise
        except Exception as e:
            return self._ambiguous(None, e)

        if not addresses:
            logger.error(f"No IPv6 address found for {self.host}")
            raise ResolutionError(self.host)

        target = addresses[0]
        logger.info(f"Probing [{target}]:{self.port} ({len(addresses)} IPv6 addresses resolved)")

        try:
            status = asyncio.run(probe_connection(target, self.port, self.timeout))
        except Exception as e:
            return self._ambiguous(target, e)

        result = ProbeResult(status, address=target)
        if status is ProbeStatus.BLOCKED:
            result.reason = "connection did not complete"
            logger.info("IPv6 connection is blocked")
        else:
            result.reason = "connection succeeded"
            logger.warning("IPv6 connection is NOT blocked")

        self._cross_check(result, ranges)
        return result

    def _cross_check(self, result: ProbeResult, ranges: Optional[Sequence[str]]) -> None:
        """Advisory only: never changes the verdict."""
        try:
            if ranges is None:
                ranges = self.firewall_manager.get_blocked_ranges()
            checked = list(ranges)[:self.cross_check_limit]
            if not checked:
                result.advisories.append("no configured ranges available for cross-check")
                return

            result.range_checked = True
            result.matched_range = find_matching_range(result.address, checked)
            if result.matched_range:
                logger.info(f"Probed address is inside {result.matched_range}")
            else:
                note = (f"{result.address} is not inside the first {len(checked)} "
                        f"configured ranges")
                result.advisories.append(note)
                logger.warning(f"Cross-check: {note}")
        except Exception as e:
            logger.warning(f"Cross-check failed: {e}")
            result.advisories.append(f"cross-check failed: {e}")

    def _ambiguous(self, target: Optional[str], error: Exception) -> ProbeResult:
        reason = f"probe error: {error}"
        if self.ambiguity_policy is FailurePolicy.CLOSED:
            logger.warning(f"Treating unexpected probe error as blocked: {error}")
            return ProbeResult(ProbeStatus.BLOCKED, reason=reason, address=target)
        logger.warning(f"Probe inconclusive: {error}")
        return ProbeResult(ProbeStatus.INCONCLUSIVE, reason=reason, address=target)
