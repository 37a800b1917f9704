"""
Range Provider - fetches the provider's published IPv6 ranges.

The feed is a JSON document of the form::

    {"prefixes": [{"ipv6Prefix": "2001:4860::/32"}, {"ipv4Prefix": "..."}, ...]}

Only ``ipv6Prefix`` values are used. Invalid values are dropped without
aborting the scan; an empty result is an error, never "nothing to block".
"""

import logging
from typing import Any, Dict, List

import requests

from .cidr import is_valid_ipv6_cidr
from .errors import EmptyResultError, FormatError, NetworkError
from .time_utils import elapsed, now

logger = logging.getLogger("ip_ranges")

DEFAULT_RANGES_URL = "https://www.gstatic.com/ipranges/goog.json"


def parse_ranges(document: Any) -> List[str]:
    """
    Extract the valid, unique IPv6 CIDRs from a decoded feed document.

    Args:
        document: Decoded JSON payload

    Returns:
        List[str]: Ranges in feed order, possibly empty

    Raises:
        FormatError: if the document is not an object with a ``prefixes`` list
    """
    if not isinstance(document, dict):
        raise FormatError(f"Expected a JSON object, got {type(document).__name__}")

    prefixes = document.get("prefixes")
    if not isinstance(prefixes, list):
        raise FormatError("Expected a 'prefixes' array in the range feed")

    ranges: List[str] = []
    seen = set()
    skipped = 0

    for entry in prefixes:
        if not isinstance(entry, dict) or "ipv6Prefix" not in entry:
            continue

        value = entry["ipv6Prefix"]
        if not isinstance(value, str) or not is_valid_ipv6_cidr(value):
            skipped += 1
            logger.debug(f"Skipping invalid ipv6Prefix: {value!r}")
            continue

        value = value.strip()
        if value in seen:
            continue

        seen.add(value)
        ranges.append(value)
        logger.debug(f"IPv6 range added: {value}")

    if skipped:
        logger.info(f"Skipped {skipped} invalid ipv6Prefix entries")

    return ranges


class RangeProvider:
    """Fetches the range feed; every call goes to the network."""

    def __init__(self, url: str = DEFAULT_RANGES_URL, connect_timeout: float = 10,
                 read_timeout: float = 30, user_agent: str = "IPv6Block/1.0"):
        self.url = url
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.user_agent = user_agent

    @classmethod
    def from_config(cls, config: Dict) -> "RangeProvider":
        section = config["ranges"]
        return cls(
            url=section["url"],
            connect_timeout=section["connect_timeout"],
            read_timeout=section["read_timeout"],
            user_agent=section["user_agent"],
        )

    def fetch_ranges(self) -> List[str]:
        """
        Download and validate the range feed.

        Returns:
            List[str]: Non-empty list of unique IPv6 CIDRs in feed order

        Raises:
            NetworkError: the request failed or returned a non-success status
            FormatError: the payload is not the expected JSON schema
            EmptyResultError: no valid IPv6 range remained after filtering
        """
        start_time = now()
        logger.info(f"Fetching IPv6 ranges from {self.url}")

        document = self._download()
        ranges = parse_ranges(document)

        if not ranges:
            logger.error("Range feed contained no valid IPv6 ranges")
            raise EmptyResultError(f"No valid IPv6 ranges found at {self.url}")

        logger.info(f"Fetched {len(ranges)} IPv6 ranges in {elapsed(start_time):.2f}s")
        return ranges

    def _download(self) -> Any:
        try:
            response = requests.get(
                self.url,
                timeout=(self.connect_timeout, self.read_timeout),
                headers={"User-Agent": self.user_agent, "Accept": "application/json"},
            )
        except requests.RequestException as e:
            logger.error(f"Network error fetching ranges: {e}")
            raise NetworkError(self.url, str(e)) from e

        if not 200 <= response.status_code < 300:
            logger.error(f"Range feed returned HTTP {response.status_code}")
            raise NetworkError(self.url, f"HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            logger.error(f"Range feed is not valid JSON: {e}")
            raise FormatError(f"Range feed is not valid JSON: {e}") from e
