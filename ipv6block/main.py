"""
IPv6 Block - command line entry point.

    ipv6-block enable     fetch the provider's ranges and install the block
    ipv6-block disable    remove the block
    ipv6-block toggle     disable when active, enable otherwise
    ipv6-block verify     probe the provider over IPv6 and report
    ipv6-block status     show rule state and privileges
    ipv6-block ranges     print the ranges the feed currently publishes
"""

import argparse
import json
import logging
import sys
from typing import Dict, List, Optional

from .blocker import IPv6Blocker
from .config import get_config
from .connection_tester import ProbeStatus
from .errors import (
    EmptyResultError,
    FormatError,
    InvalidArgument,
    IPv6BlockError,
    NetworkError,
    PermissionDenied,
    ResolutionError,
    RuleCreationError,
    RuleStoreError,
)
from .firewall_manager import EnableResult

logger = logging.getLogger("main")

EXIT_OK = 0
EXIT_NOT_BLOCKED = 1

# Exit code and remediation message per error type, most specific first
ERROR_HANDLING = [
    (NetworkError, 10, "Check the internet connection and try again."),
    (FormatError, 11, "The range feed changed format; update the tool."),
    (EmptyResultError, 12, "The range feed published no IPv6 ranges; try again later."),
    (InvalidArgument, 13, "No usable IPv6 ranges were supplied."),
    (RuleCreationError, 14, "No block is active. Re-run 'enable'; see the log for the failing command."),
    (ResolutionError, 15, "The probe host has no IPv6 address; IPv6 may be unavailable on this network."),
    (PermissionDenied, 16, "Run this command from an elevated (administrator) prompt."),
    (RuleStoreError, 17, "The firewall could not be queried or changed; see the log for details."),
    (IPv6BlockError, 19, "Unexpected failure; see the log for details."),
]


def setup_logging(config: Dict, verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else getattr(logging, config["logging"]["level"], logging.INFO)
    logging.basicConfig(level=level, format=config["logging"]["format"])


def error_exit_code(error: IPv6BlockError) -> int:
    for error_type, code, remediation in ERROR_HANDLING:
        if isinstance(error, error_type):
            print(f"Error: {error}", file=sys.stderr)
            print(remediation, file=sys.stderr)
            return code
    return 19


def _print_enable_result(result: EnableResult) -> None:
    print(f"IPv6 block enabled: {result.range_count} ranges in {len(result.rule_names)} rule(s) "
          f"via the {result.path} path")
    for attempt in result.attempts:
        line = f"  {attempt.path}: {attempt.outcome}"
        if attempt.reason:
            line += f" ({attempt.reason})"
        print(line)


def cmd_enable(blocker: IPv6Blocker, args) -> int:
    _print_enable_result(blocker.enable())
    return EXIT_OK


def cmd_disable(blocker: IPv6Blocker, args) -> int:
    removed = blocker.disable()
    if removed:
        print(f"IPv6 block disabled: {removed} rule(s) removed")
    else:
        print("IPv6 block was not active")
    return EXIT_OK


def cmd_toggle(blocker: IPv6Blocker, args) -> int:
    result = blocker.toggle()
    if isinstance(result, EnableResult):
        _print_enable_result(result)
    else:
        print(f"IPv6 block disabled: {result} rule(s) removed")
    return EXIT_OK


def cmd_verify(blocker: IPv6Blocker, args) -> int:
    result = blocker.verify()
    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    elif result.status is ProbeStatus.BLOCKED:
        print(f"✓ IPv6 block is working ({result.reason})")
    elif result.status is ProbeStatus.NOT_BLOCKED:
        print(f"⚠ IPv6 block is NOT working ({result.reason})")
    else:
        print(f"? IPv6 block could not be verified ({result.reason})")

    if not args.json:
        if result.matched_range:
            print(f"  probed {result.address}, inside {result.matched_range}")
        for advisory in result.advisories:
            print(f"  note: {advisory}")

    return EXIT_OK if result.blocked else EXIT_NOT_BLOCKED


def cmd_status(blocker: IPv6Blocker, args) -> int:
    status = blocker.status()
    print(f"IPv6 block: {'enabled' if status.blocking else 'disabled'}")
    for name in status.rule_names:
        print(f"  rule: {name}")
    print(f"Administrator privileges: {'yes' if status.admin_privileges else 'no'}")
    if status.error:
        print(f"Rule query error: {status.error}")
    return EXIT_OK


def cmd_ranges(blocker: IPv6Blocker, args) -> int:
    ranges = blocker.range_provider.fetch_ranges()
    for cidr in ranges:
        print(cidr)
    logger.info(f"{len(ranges)} ranges")
    return EXIT_OK


COMMANDS = {
    "enable": cmd_enable,
    "disable": cmd_disable,
    "toggle": cmd_toggle,
    "verify": cmd_verify,
    "status": cmd_status,
    "ranges": cmd_ranges,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ipv6-block",
        description="Block outbound traffic to Google's published IPv6 ranges",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  IPV6_BLOCK_CONFIG                     Path to a JSON configuration file
  IPV6_BLOCK_<SECTION>__<KEY>           Override one setting, e.g.
                                          IPV6_BLOCK_FIREWALL__BATCH_SIZE=50
                                          IPV6_BLOCK_VERIFY__HOST=google.com
        """
    )
    parser.add_argument(
        "command",
        choices=sorted(COMMANDS),
        help="Operation to perform"
    )
    parser.add_argument(
        "-c", "--config",
        help="Path to a JSON configuration file"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the verification result as JSON (verify only)"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging"
    )
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    config = get_config(args.config)
    setup_logging(config, args.verbose)

    blocker = IPv6Blocker.from_config(config)

    try:
        return COMMANDS[args.command](blocker, args)
    except IPv6BlockError as e:
        logger.error(f"{args.command} failed: {e}")
        return error_exit_code(e)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
