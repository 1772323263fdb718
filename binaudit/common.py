"""
Common utilities shared across binaudit modules.
"""

from __future__ import annotations

import os
import platform


def vlog(msg: str, verbose: bool = False) -> None:
    """
    Log a verbose-only progress message.

    Args:
        msg: Message to log
        verbose: Whether verbose mode is enabled
    """
    if verbose:
        from .logging_config import get_logger
        get_logger().info(msg)


def subprocess_env() -> dict[str, str]:
    """Environment for probed executables: inherit, but disable colour output."""
    return {**os.environ, "TERM": "dumb", "NO_COLOR": "1"}


def current_platform() -> tuple[str, str]:
    """
    Get normalized (os, arch) of the running machine.

    Returns:
        Tuple like ("linux", "x86_64"), ("darwin", "aarch64") or ("windows", "x86_64")
    """
    system = platform.system().lower()
    machine = platform.machine().lower()

    if machine in ("amd64", "x64", "x86-64"):
        machine = "x86_64"
    elif machine in ("arm64", "armv8", "armv8l"):
        machine = "aarch64"
    elif machine in ("i386", "i686", "x86"):
        machine = "i686"

    return system, machine
