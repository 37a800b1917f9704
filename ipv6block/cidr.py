"""
IPv6 CIDR helpers.

in_range() does the containment test byte by byte on the packed 16-byte
form: whole bytes of the prefix must be equal, and a partial trailing byte
is compared under a mask of its top bits.
"""

import ipaddress
import logging
import re
from typing import Iterable, Optional, Tuple, Union

logger = logging.getLogger("cidr")

MAX_PREFIX_LENGTH = 128

AddressLike = Union[str, ipaddress.IPv6Address]


def parse_cidr(cidr: str) -> Tuple[ipaddress.IPv6Address, int]:
    """
    Split an IPv6 CIDR string into its address and prefix length.

    Raises:
        ValueError: if the text is not ``<ipv6 literal>/<0..128>``
    """
    if not isinstance(cidr, str) or cidr.count("/") != 1:
        raise ValueError(f"Not a CIDR: {cidr!r}")

    address_part, prefix_part = cidr.strip().split("/")
    address = ipaddress.IPv6Address(address_part.strip())

    prefix_part = prefix_part.strip()
    if not re.fullmatch(r"[0-9]{1,3}", prefix_part):
        raise ValueError(f"Invalid prefix length in {cidr!r}")
    prefix_length = int(prefix_part)
    if prefix_length > MAX_PREFIX_LENGTH:
        raise ValueError(f"Prefix length out of range in {cidr!r}")

    return address, prefix_length


def is_valid_ipv6_cidr(cidr) -> bool:
    """Check that a value is an IPv6 literal with a prefix length in [0, 128]"""
    try:
        parse_cidr(cidr)
        return True
    except ValueError:
        return False


def _to_address(address: AddressLike) -> ipaddress.IPv6Address:
    if isinstance(address, ipaddress.IPv6Address):
        return address
    return ipaddress.IPv6Address(str(address).strip())


def in_range(address: AddressLike, cidr: str) -> bool:
    """
    Return True when ``address`` lies inside ``cidr``.

    Malformed input of either kind is a containment failure, never an error.
    """
    try:
        target = _to_address(address)
        network, prefix_length = parse_cidr(cidr)
    except (ValueError, TypeError):
        return False

    target_bytes = target.packed
    network_bytes = network.packed

    full_bytes = prefix_length // 8
    remainder = prefix_length % 8

    if target_bytes[:full_bytes] != network_bytes[:full_bytes]:
        return False

    if remainder:
        mask = (0xFF << (8 - remainder)) & 0xFF
        if (target_bytes[full_bytes] & mask) != (network_bytes[full_bytes] & mask):
            return False

    return True


def find_matching_range(address: AddressLike, ranges: Iterable[str],
                        limit: Optional[int] = None) -> Optional[str]:
    """Return the first range containing ``address``, checking at most ``limit`` ranges"""
    for index, cidr in enumerate(ranges):
        if limit is not None and index >= limit:
            break
        if in_range(address, cidr):
            logger.debug(f"{address} matched {cidr}")
            return cidr
    return None
