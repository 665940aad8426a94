"""Shared async command utilities for network modules."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from isoflow.config import settings

logger = logging.getLogger(__name__)

CommandRunner = Callable[[list[str]], Awaitable[tuple[int, str, str]]]

TIMEOUT_RC = 124
NOT_FOUND_RC = 127


async def run_cmd(cmd: list[str], timeout: float | None = None) -> tuple[int, str, str]:
    """Run a command asynchronously.

    Args:
        cmd: Command and arguments as list
        timeout: Seconds before the process is killed (settings.command_timeout by default)

    Returns:
        Tuple of (return_code, stdout, stderr). A timeout returns 124 and a
        missing binary 127, so callers only ever inspect the return code.
    """
    limit = settings.command_timeout if timeout is None else timeout
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as e:
        logger.error(f"Command not found: {cmd[0]}")
        return NOT_FOUND_RC, "", str(e)

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=limit)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        logger.error(f"Command timed out after {limit}s: {' '.join(cmd)}")
        return TIMEOUT_RC, "", "Command timed out"

    return (
        process.returncode or 0,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


async def ovs_vsctl(*args: str, run: CommandRunner | None = None) -> tuple[int, str, str]:
    """Run ovs-vsctl command."""
    return await (run or run_cmd)(["ovs-vsctl", *args])


async def ovs_ofctl(*args: str, run: CommandRunner | None = None) -> tuple[int, str, str]:
    """Run ovs-ofctl command."""
    return await (run or run_cmd)(["ovs-ofctl", *args])


async def ip_link_exists(name: str, run: CommandRunner | None = None) -> bool:
    """Check if a network interface exists."""
    code, _, _ = await (run or run_cmd)(["ip", "link", "show", name])
    return code == 0
