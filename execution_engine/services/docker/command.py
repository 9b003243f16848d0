"""
Helpers for driving the docker CLI.
"""
import asyncio
import logging
import re
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

_SIZE_UNITS = {
    "b": 1,
    "kb": 1000, "mb": 1000 ** 2, "gb": 1000 ** 3, "tb": 1000 ** 4,
    "kib": 1024, "mib": 1024 ** 2, "gib": 1024 ** 3, "tib": 1024 ** 4,
    "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3,
}


async def run_docker_command(
    cmd: List[str],
    timeout: int = 30,
) -> Tuple[int, str, str]:
    """
    Run a docker command via subprocess.

    Args:
        cmd: Command arguments
        timeout: Timeout in seconds

    Returns:
        Tuple of (return_code, stdout, stderr)
    """
    logger.debug(f"Running Docker command: {' '.join(cmd)}")

    process = None
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        stdout, stderr = await asyncio.wait_for(
            process.communicate(),
            timeout=timeout,
        )

        return (
            process.returncode,
            stdout.decode().strip() if stdout else "",
            stderr.decode().strip() if stderr else "",
        )
    except asyncio.TimeoutError:
        logger.error(f"Docker command timed out: {' '.join(cmd)}")
        if process is not None and process.returncode is None:
            process.kill()
        return -1, "", "Command timed out"
    except FileNotFoundError:
        logger.error("Docker CLI not found")
        return -1, "", "Docker CLI not found"
    except Exception as e:
        logger.error(f"Docker command failed: {e}")
        return -1, "", str(e)


def parse_size(value: str) -> int:
    """
    Parse a docker size string ("12.5MiB", "1.2GB", "512m") into bytes.

    Unparseable values count as 0.
    """
    match = re.match(r"^\s*([\d.]+)\s*([a-zA-Z]*)\s*$", value or "")
    if not match:
        return 0
    number, unit = match.groups()
    try:
        return int(float(number) * _SIZE_UNITS.get(unit.lower() or "b", 1))
    except ValueError:
        return 0


def parse_percent(value: str) -> float:
    try:
        return max(float((value or "").strip().rstrip("%")), 0.0)
    except ValueError:
        return 0.0


def parse_pair(value: str) -> Tuple[int, int]:
    """Parse "used / limit" pairs from docker stats (MemUsage, NetIO, BlockIO)."""
    parts = (value or "").split("/")
    if len(parts) != 2:
        return 0, 0
    return parse_size(parts[0]), parse_size(parts[1])


def sanitize_name(value: str, prefix: Optional[str] = None) -> str:
    """Make a string usable as a container or image name."""
    name = re.sub(r"[^a-z0-9_.-]", "-", value.lower()).strip("-.")
    if prefix:
        name = f"{prefix}-{name}"
    return name[:120] or "app"
