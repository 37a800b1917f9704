import os
import logging
import ctypes
from typing import Iterable, List

logger = logging.getLogger('utils')

def checkPrivileges() -> bool:
    """
    Check if the application is running with administrator privileges.

    Returns:
        bool: True if running with admin privileges, False otherwise
    """
    try:
        # Windows-specific check for admin rights
        if os.name == 'nt':
            return ctypes.windll.shell32.IsUserAnAdmin() != 0
        else:
            # For non-Windows systems, check if running as root (uid 0)
            return os.geteuid() == 0
    except Exception as e:
        logger.error(f"Error checking privileges: {str(e)}")
        return False

def quotePowerShell(value: str) -> str:
    """
    Quote a value as a PowerShell single-quoted string literal.

    Single quotes are escaped by doubling them; nothing else is special
    inside a single-quoted PowerShell string.
    """
    return "'" + str(value).replace("'", "''") + "'"

def formatAddressList(addresses: Iterable[str]) -> str:
    """
    Format addresses as a PowerShell array expression.

    Returns:
        str: ``@('a', 'b', ...)``
    """
    return "@(" + ", ".join(quotePowerShell(address) for address in addresses) + ")"

def formatCommand(script: str) -> List[str]:
    """
    Build the argument vector that runs a PowerShell script.

    Args:
        script: PowerShell script text

    Returns:
        Argument list suitable for subprocess.run without a shell
    """
    executable = "powershell.exe" if os.name == 'nt' else "pwsh"
    return [executable, "-NoProfile", "-NonInteractive", "-ExecutionPolicy", "Bypass",
            "-Command", script]
