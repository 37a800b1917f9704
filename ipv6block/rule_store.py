"""
Rule Store - the external system that holds firewall rule state.

RuleStore is the capability the firewall manager talks to. PowerShellRuleStore
implements it with the Windows NetSecurity cmdlets, running every script
through a PowerShellRunner handed in by the caller; the runner is the only
object that knows about elevation.
"""

import logging
import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, List, Sequence

from .errors import PermissionDenied, RuleStoreError
from .time_utils import elapsed, now
from .utils import checkPrivileges, formatAddressList, formatCommand, quotePowerShell

logger = logging.getLogger("rule_store")


class RuleStore(ABC):
    """Abstract rule store: list, read, create and delete outbound block rules."""

    @abstractmethod
    def list_rules(self, pattern: str) -> List[str]:
        """Return the names of rules matching ``pattern`` (``*`` is a wildcard)."""

    @abstractmethod
    def get_remote_addresses(self, name: str) -> List[str]:
        """Return the remote addresses blocked by the rule called ``name``."""

    @abstractmethod
    def create_rule(self, name: str, addresses: Sequence[str]) -> None:
        """Create an enabled outbound, any-protocol block rule."""

    @abstractmethod
    def delete_rules(self, name: str) -> None:
        """Delete rules called ``name``. A missing rule is not an error."""

    def command_length(self, name: str, addresses: Sequence[str]) -> int:
        """Length of the command that would create this rule."""
        return 200 + 2 * len(name) + sum(len(address) + 4 for address in addresses)


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str
    duration: float

    def lines(self) -> List[str]:
        return [line.strip() for line in self.stdout.splitlines() if line.strip()]


class PowerShellRunner:
    """
    Runs PowerShell scripts.

    Scripts that mutate firewall state are run with ``elevated=True``; those
    require the current process to hold administrator rights, otherwise
    PermissionDenied is raised before anything is executed.
    """

    ACCESS_DENIED_MARKERS = (
        "access is denied",
        "accessdenied",
        "permissiondenied",
        "0x80070005",
    )

    def __init__(self, timeout: float = 60,
                 privilege_check: Callable[[], bool] = checkPrivileges):
        self.timeout = timeout
        self.privilege_check = privilege_check

    def run(self, script: str, elevated: bool = False) -> CommandResult:
        if elevated and not self.privilege_check():
            logger.error("Administrator privileges required to modify firewall rules")
            raise PermissionDenied("Administrator privileges are required to modify firewall rules")

        kwargs = {}
        if os.name == "nt":
            kwargs["creationflags"] = subprocess.CREATE_NO_WINDOW

        process_type = "elevated" if elevated else "standard"
        logger.debug(f"⚡ Running PowerShell ({process_type}, {len(script)} chars)")

        start_time = now()
        try:
            result = subprocess.run(
                formatCommand(script),
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=self.timeout,
                **kwargs
            )
        except subprocess.TimeoutExpired as e:
            logger.error(f"PowerShell timed out after {self.timeout}s")
            raise RuleStoreError(f"PowerShell timed out after {self.timeout}s") from e
        except OSError as e:
            logger.error(f"Could not start PowerShell: {e}")
            raise RuleStoreError(f"Could not start PowerShell: {e}") from e

        duration = elapsed(start_time)
        stderr = (result.stderr or "").strip()
        logger.debug(f"PowerShell finished: exit code={result.returncode}, time={duration:.1f}s")

        if result.returncode != 0:
            if any(marker in stderr.lower() for marker in self.ACCESS_DENIED_MARKERS):
                logger.error(f"PowerShell access denied: {stderr}")
                raise PermissionDenied(f"Access denied: {stderr}")
            logger.error(f"PowerShell failed (exit code {result.returncode}): {stderr}")
            raise RuleStoreError(
                f"PowerShell failed with exit code {result.returncode}",
                returncode=result.returncode,
                stderr=stderr,
            )

        if stderr:
            logger.warning(f"PowerShell stderr: {stderr}")

        return CommandResult(result.returncode, result.stdout or "", stderr, duration)


class PowerShellRuleStore(RuleStore):
    """Windows Defender Firewall rules via New/Get/Remove-NetFirewallRule."""

    def __init__(self, runner: PowerShellRunner):
        self.runner = runner

    def list_rules(self, pattern: str) -> List[str]:
        script = (
            f"Get-NetFirewallRule -DisplayName {quotePowerShell(pattern)} -ErrorAction SilentlyContinue"
            " | ForEach-Object { $_.DisplayName }"
        )
        return self.runner.run(script).lines()

    def get_remote_addresses(self, name: str) -> List[str]:
        script = (
            f"Get-NetFirewallRule -DisplayName {quotePowerShell(name)} -ErrorAction SilentlyContinue"
            " | Get-NetFirewallAddressFilter"
            " | ForEach-Object { $_.RemoteAddress }"
        )
        return self.runner.run(script).lines()

    def build_create_script(self, name: str, addresses: Sequence[str]) -> str:
        quoted_name = quotePowerShell(name)
        return (
            "try {\n"
            f"    $addresses = {formatAddressList(addresses)}\n"
            f"    New-NetFirewallRule -Name {quoted_name} -DisplayName {quoted_name}"
            " -Direction Outbound -Protocol Any -RemoteAddress $addresses"
            " -Action Block -Enabled True -ErrorAction Stop | Out-Null\n"
            "    Write-Output 'SUCCESS'\n"
            "} catch {\n"
            "    [Console]::Error.WriteLine($_.Exception.Message)\n"
            "    exit 1\n"
            "}"
        )

    def create_rule(self, name: str, addresses: Sequence[str]) -> None:
        result = self.runner.run(self.build_create_script(name, addresses), elevated=True)
        if "SUCCESS" not in result.stdout:
            raise RuleStoreError(f"Rule '{name}' was not confirmed by PowerShell", stderr=result.stderr)

    def delete_rules(self, name: str) -> None:
        script = (
            f"Get-NetFirewallRule -DisplayName {quotePowerShell(name)} -ErrorAction SilentlyContinue"
            " | Remove-NetFirewallRule"
        )
        self.runner.run(script, elevated=True)

    def command_length(self, name: str, addresses: Sequence[str]) -> int:
        return len(self.build_create_script(name, addresses))
