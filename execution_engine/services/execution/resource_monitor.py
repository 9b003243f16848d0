"""
Resource accounting for sandboxed process trees.

Samples a process and its descendants with psutil and reports the first
ceiling a run breaches. Output size is accounted by the sandbox's stream
readers, not here.
"""
import asyncio
import logging
import os
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import psutil

from execution_engine.core.config import settings
from execution_engine.schemas.execution import ProjectResourceLimits, ProjectResourceUsage

logger = logging.getLogger(__name__)

MB = 1024 * 1024

# Walking the working directory is the expensive part of a sample
DISK_SAMPLE_EVERY = 5


@dataclass
class LimitBreach:
    """A ceiling that was exceeded."""
    resource: str  # memory, cpu, disk, processes, output
    limit: float
    observed: float
    unit: str = ""

    def describe(self) -> str:
        return (
            f"Resource limit exceeded: {self.resource} "
            f"{self.observed:g}{self.unit} > {self.limit:g}{self.unit}"
        )


def directory_size(path: str) -> int:
    """Total size in bytes of the files under path. Missing entries are skipped."""
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += os.lstat(os.path.join(root, name)).st_size
            except OSError:
                continue
    return total


class ResourceMonitor:
    """
    Periodic sampler for one sandboxed process tree.

    CPU percentage is measured against total host capacity and only counts
    as a breach after ``cpu_breach_samples`` consecutive samples over the
    ceiling, so short bursts (interpreter start-up, JIT warm-up) survive.
    Disk is the growth of the working directory over baseline_disk_bytes,
    its size before the process started.
    """

    def __init__(
        self,
        pid: int,
        limits: ProjectResourceLimits,
        working_directory: Optional[str] = None,
        interval: float = None,
        cpu_breach_samples: int = None,
        baseline_disk_bytes: Optional[int] = None,
    ):
        self.pid = pid
        self.limits = limits
        self.working_directory = working_directory
        self.interval = interval or settings.EXECUTION_MONITOR_INTERVAL_SECONDS
        self.cpu_breach_samples = cpu_breach_samples or settings.EXECUTION_CPU_BREACH_SAMPLES
        self.cpu_count = psutil.cpu_count() or 1

        self._cpu_by_pid: Dict[int, float] = {}
        self._last_cpu_total = 0.0
        self._last_sample_at = time.monotonic()
        self._started_at = self._last_sample_at
        self._cpu_over_count = 0
        self._samples = 0
        # Measured on the first sample when not given, so never on the event loop
        self._baseline_disk = baseline_disk_bytes

        self.peak_memory_bytes = 0
        self.peak_process_count = 0
        self.peak_cpu_percentage = 0.0
        self.disk_usage_bytes = 0

    def _tree(self) -> List[psutil.Process]:
        try:
            root = psutil.Process(self.pid)
            return [root] + root.children(recursive=True)
        except (psutil.NoSuchProcess, psutil.ZombieProcess):
            return []
        except psutil.AccessDenied as e:
            logger.debug(f"Cannot inspect process {self.pid}: {e}")
            return []

    def sample(self) -> Optional[LimitBreach]:
        """Take one sample and return the breached ceiling, if any."""
        self._samples += 1
        now = time.monotonic()
        memory = 0
        live = 0
        for proc in self._tree():
            try:
                with proc.oneshot():
                    if proc.status() == psutil.STATUS_ZOMBIE:
                        continue
                    times = proc.cpu_times()
                    memory += proc.memory_info().rss
                    self._cpu_by_pid[proc.pid] = times.user + times.system
                    live += 1
            except (psutil.NoSuchProcess, psutil.ZombieProcess, psutil.AccessDenied):
                continue

        self.peak_memory_bytes = max(self.peak_memory_bytes, memory)
        self.peak_process_count = max(self.peak_process_count, live)

        cpu_total = self.cpu_time_seconds
        elapsed = now - self._last_sample_at
        if elapsed > 0:
            cpu_percent = (cpu_total - self._last_cpu_total) / elapsed / self.cpu_count * 100.0
            self.peak_cpu_percentage = max(self.peak_cpu_percentage, cpu_percent)
        else:
            cpu_percent = 0.0
        self._last_cpu_total = cpu_total
        self._last_sample_at = now

        if self.working_directory and self._baseline_disk is None:
            self._baseline_disk = directory_size(self.working_directory)
        if self.working_directory and self._samples % DISK_SAMPLE_EVERY == 1:
            grown = directory_size(self.working_directory) - self._baseline_disk
            self.disk_usage_bytes = max(self.disk_usage_bytes, grown, 0)

        limits = self.limits
        if memory > limits.max_memory_mb * MB:
            return LimitBreach("memory", limits.max_memory_mb, round(memory / MB, 1), "MB")
        if live > limits.max_processes:
            return LimitBreach("processes", limits.max_processes, live)
        if self.disk_usage_bytes > limits.max_disk_mb * MB:
            return LimitBreach("disk", limits.max_disk_mb, round(self.disk_usage_bytes / MB, 1), "MB")

        if cpu_percent > limits.max_cpu_percentage:
            self._cpu_over_count += 1
            if self._cpu_over_count >= self.cpu_breach_samples:
                return LimitBreach("cpu", limits.max_cpu_percentage, round(cpu_percent, 1), "%")
        else:
            self._cpu_over_count = 0
        return None

    async def watch(self, on_breach: Callable[[LimitBreach], None]) -> None:
        """Sample until cancelled or until the first breach is reported."""
        loop = asyncio.get_running_loop()
        while True:
            breach = await loop.run_in_executor(None, self.sample)
            if breach is not None:
                logger.warning(f"Process {self.pid}: {breach.describe()}")
                on_breach(breach)
                return
            await asyncio.sleep(self.interval)

    @property
    def cpu_time_seconds(self) -> float:
        return sum(self._cpu_by_pid.values())

    def usage(self, output_size_bytes: int = 0) -> ProjectResourceUsage:
        wall = max(time.monotonic() - self._started_at, 1e-6)
        return ProjectResourceUsage(
            cpu_time_seconds=round(self.cpu_time_seconds, 3),
            cpu_percentage=round(self.cpu_time_seconds / wall / self.cpu_count * 100.0, 2),
            peak_memory_bytes=self.peak_memory_bytes,
            disk_usage_bytes=self.disk_usage_bytes,
            peak_process_count=self.peak_process_count,
            output_size_bytes=output_size_bytes,
            additional_metrics={
                "peak_cpu_percentage": round(self.peak_cpu_percentage, 2),
                "samples": float(self._samples),
            },
        )
