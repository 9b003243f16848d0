"""
Sandboxed process execution.

ProcessSandbox runs a command as its own session on the host, caps each
process with setrlimit and enforces ProjectResourceLimits tree-wide with a
ResourceMonitor. DockerSandbox wraps the same
command in ``docker run`` against the per-language runtime image, letting
the container runtime enforce memory/CPU/pid ceilings as well.
"""
import asyncio
import logging
import os
import re
import resource
import signal
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import psutil

from execution_engine.core.config import settings
from execution_engine.core.exceptions import SandboxUnavailableError
from execution_engine.schemas.execution import ProjectResourceLimits, ProjectResourceUsage
from execution_engine.services.docker.command import run_docker_command
from execution_engine.services.execution.resource_monitor import MB, LimitBreach, ResourceMonitor, directory_size

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024

# pids cgroups and RLIMIT_NPROC count threads, not processes
TASKS_PER_PROCESS = 32

# stderr markers of a process that hit its setrlimit ceiling
TASK_LIMIT_MARKERS = ("Resource temporarily unavailable", "unable to create native thread", "fork: retry")
OUT_OF_MEMORY_MARKERS = (
    "MemoryError",
    "Cannot allocate memory",
    "java.lang.OutOfMemoryError",
    "JavaScript heap out of memory",
    "System.OutOfMemoryException",
)

# Host variables a toolchain needs; everything else stays out of the sandbox
PASSTHROUGH_VARIABLES = (
    "PATH", "HOME", "LANG", "LC_ALL", "TMPDIR", "TZ",
    "JAVA_HOME", "DOTNET_ROOT", "MAVEN_HOME", "GRADLE_HOME", "NODE_PATH",
    "SYSTEMROOT", "COMSPEC",
)


def base_environment() -> Dict[str, str]:
    """The lowest environment layer: whitelisted host variables."""
    return {key: os.environ[key] for key in PASSTHROUGH_VARIABLES if key in os.environ}


def layer_environment(*layers: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Merge environment layers; later layers win on key collisions."""
    merged: Dict[str, str] = {}
    for layer in layers:
        if layer:
            merged.update({str(k): str(v) for k, v in layer.items()})
    return merged


@dataclass
class ProcessControl:
    """How one sandboxed process is run and supervised."""
    environment: Dict[str, str]
    limits: ProjectResourceLimits = field(default_factory=ProjectResourceLimits)
    cancel_event: Optional[asyncio.Event] = None
    deadline: Optional[float] = None  # event-loop time
    on_output: Optional[Callable[[str], None]] = None
    on_error: Optional[Callable[[str], None]] = None
    label: str = "sandbox"
    language: Optional[str] = None
    output_dir: Optional[str] = None
    cache_dir: Optional[str] = None
    cache_volume: Optional[str] = None
    allow_network: bool = False
    cap_memory: bool = True  # False for runtimes that commit their heap from host RAM

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - asyncio.get_running_loop().time()


@dataclass
class ProcessResult:
    """Outcome of one sandboxed process."""
    command: List[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0
    usage: ProjectResourceUsage = field(default_factory=ProjectResourceUsage)
    cancelled: bool = False
    timed_out: bool = False
    breach: Optional[LimitBreach] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not (self.cancelled or self.timed_out or self.breach)


def _user_task_count() -> int:
    """Threads owned by the current user, which is what RLIMIT_NPROC is checked against."""
    uid = os.getuid()
    total = 0
    for proc in psutil.process_iter(["uids", "num_threads"]):
        uids = proc.info["uids"]
        if uids is not None and uids.real == uid:
            total += proc.info["num_threads"] or 0
    return total


def process_rlimits(control: ProcessControl) -> Dict[int, int]:
    """
    Per-process ceilings for a host sandbox.

    RLIMIT_DATA caps each process at the tree's memory ceiling, so a burst
    allocation fails inside the child even between monitor samples.
    RLIMIT_NPROC counts every task of the user, so the allowance is added to
    what the user already runs. The kernel does not apply it to root.
    """
    limits = control.limits
    caps = {}
    if control.cap_memory:
        caps[resource.RLIMIT_DATA] = limits.max_memory_mb * MB
    if os.getuid() != 0:
        caps[resource.RLIMIT_NPROC] = _user_task_count() + limits.max_processes * TASKS_PER_PROCESS
    return caps


def _limit_child(caps: Dict[int, int]) -> Callable[[], None]:
    def preexec():
        for which, value in caps.items():
            _soft, hard = resource.getrlimit(which)
            if hard != resource.RLIM_INFINITY:
                value = min(value, hard)
            resource.setrlimit(which, (value, value))
    return preexec


class _StreamState:
    def __init__(self, limit: int, on_breach: Callable[[LimitBreach], None]):
        self.limit = limit
        self.on_breach = on_breach
        self.total = 0


def _emit(callback: Optional[Callable[[str], None]], line: bytes) -> None:
    if callback is None:
        return
    try:
        callback(line.decode("utf-8", errors="replace").rstrip("\r"))
    except Exception as e:
        logger.warning(f"Output callback failed: {e}")


async def _pump(stream, chunks: List[bytes], callback, state: _StreamState) -> None:
    """Read a pipe incrementally, forwarding complete lines to the callback."""
    pending = b""
    while True:
        chunk = await stream.read(CHUNK_SIZE)
        if not chunk:
            break
        state.total += len(chunk)
        if state.total > state.limit:
            keep = len(chunk) - (state.total - state.limit)
            chunks.append(chunk[:max(keep, 0)])
            state.on_breach(LimitBreach("output", state.limit, state.total, " bytes"))
            return
        chunks.append(chunk)
        pending += chunk
        *lines, pending = pending.split(b"\n")
        for line in lines:
            _emit(callback, line)
    if pending:
        _emit(callback, pending)


class ProcessSandbox:
    """
    Runs commands as isolated host processes.

    Each command gets its own session so the whole tree can be signalled.
    Network isolation is not available in this mode; use DockerSandbox
    where untrusted code must not reach the network.
    """

    uses_containers = False

    def __init__(self, kill_grace_seconds: float = None, monitor_interval: float = None, hard_limits: bool = None):
        self.kill_grace_seconds = (
            settings.EXECUTION_KILL_GRACE_SECONDS if kill_grace_seconds is None else kill_grace_seconds
        )
        self.monitor_interval = monitor_interval or settings.EXECUTION_MONITOR_INTERVAL_SECONDS
        self.hard_limits = settings.EXECUTION_HARD_LIMITS if hard_limits is None else hard_limits

    async def prepare_cache(self, volume_name: str) -> Dict[str, Optional[str]]:
        """
        Make the named package cache available.

        Returns:
            Dict with ``cache_dir`` (path processes should use) and
            ``cache_volume`` (name to mount, docker mode only)
        """
        path = os.path.abspath(os.path.join(settings.EXECUTION_PACKAGE_CACHE_DIR, volume_name))
        os.makedirs(path, exist_ok=True)
        return {"cache_dir": path, "cache_volume": None}

    async def release_cache(self, volume_name: str) -> None:
        """Host caches are kept for the next build of the same program."""
        return None

    def _process_environment(self, control: ProcessControl) -> Dict[str, str]:
        env = dict(control.environment)
        if control.output_dir:
            env["OUTPUT_DIR"] = control.output_dir
        return env

    async def _spawn(self, command: List[str], cwd: str, control: ProcessControl):
        caps = {}
        if self.hard_limits:
            caps = await asyncio.get_running_loop().run_in_executor(None, process_rlimits, control)
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                env=self._process_environment(control),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
                preexec_fn=_limit_child(caps) if caps else None,
            )
        except FileNotFoundError:
            raise SandboxUnavailableError(command[0], "Executable not found")
        except PermissionError:
            raise SandboxUnavailableError(command[0], "Executable is not permitted")

    def _monitor_for(self, process, cwd: str, control: ProcessControl, baseline_disk: int) -> ResourceMonitor:
        return ResourceMonitor(
            process.pid,
            control.limits,
            working_directory=cwd,
            interval=self.monitor_interval,
            baseline_disk_bytes=baseline_disk,
        )

    async def run(self, command: List[str], cwd: str, control: ProcessControl) -> ProcessResult:
        """
        Run a command to completion under the control's limits.

        Cancellation, deadline expiry and limit breaches all terminate the
        process tree and are reported on the result, never raised. If the
        awaiting task itself is cancelled the tree is killed before the
        CancelledError propagates.

        Raises:
            SandboxUnavailableError: If the executable or runtime is missing
        """
        remaining = control.remaining()
        if remaining is not None and remaining <= 0:
            return ProcessResult(command=command, exit_code=-1, timed_out=True)
        if control.cancel_event is not None and control.cancel_event.is_set():
            return ProcessResult(command=command, exit_code=-1, cancelled=True)

        logger.info(f"[{control.label}] Running: {' '.join(command)}")
        baseline_disk = await asyncio.get_running_loop().run_in_executor(None, directory_size, cwd)
        started = time.monotonic()
        process = await self._spawn(command, cwd, control)

        breach_event = asyncio.Event()
        breaches: List[LimitBreach] = []

        def on_breach(breach: LimitBreach):
            if not breaches:
                breaches.append(breach)
                breach_event.set()

        stream_state = _StreamState(control.limits.max_output_size_bytes, on_breach)
        stdout_chunks: List[bytes] = []
        stderr_chunks: List[bytes] = []
        monitor = self._monitor_for(process, cwd, control, baseline_disk)

        readers = [
            asyncio.create_task(_pump(process.stdout, stdout_chunks, control.on_output, stream_state)),
            asyncio.create_task(_pump(process.stderr, stderr_chunks, control.on_error, stream_state)),
        ]
        watcher = asyncio.create_task(monitor.watch(on_breach))
        waiter = asyncio.create_task(process.wait())
        guards = [asyncio.create_task(breach_event.wait())]
        if control.cancel_event is not None:
            guards.append(asyncio.create_task(control.cancel_event.wait()))

        cancelled = timed_out = False
        try:
            done, _ = await asyncio.wait(
                [waiter, *guards],
                timeout=remaining,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if waiter not in done:
                if breaches:
                    await self._terminate(process, control, grace=0)
                elif control.cancel_event is not None and control.cancel_event.is_set():
                    cancelled = True
                    logger.info(f"[{control.label}] Cancellation requested, terminating")
                    await self._terminate(process, control, grace=self.kill_grace_seconds)
                else:
                    timed_out = True
                    logger.warning(f"[{control.label}] Deadline reached, terminating")
                    await self._terminate(process, control, grace=self.kill_grace_seconds)
            else:
                # Descendants outliving the main process would hold the pipes open
                await self._terminate(process, control, grace=0)
            await self._drain(readers)
        except asyncio.CancelledError:
            await self._terminate(process, control, grace=0)
            raise
        finally:
            for task in [watcher, *guards, waiter, *readers]:
                if not task.done():
                    task.cancel()
            await asyncio.gather(watcher, *guards, return_exceptions=True)

        result = ProcessResult(
            command=command,
            exit_code=process.returncode if process.returncode is not None else -1,
            stdout=b"".join(stdout_chunks).decode("utf-8", errors="replace"),
            stderr=b"".join(stderr_chunks).decode("utf-8", errors="replace"),
            duration_seconds=round(time.monotonic() - started, 3),
            usage=monitor.usage(stream_state.total),
            cancelled=cancelled,
            timed_out=timed_out,
            breach=breaches[0] if breaches else None,
        )
        await self._after_run(result, control)
        logger.info(
            f"[{control.label}] Finished with exit code {result.exit_code} "
            f"in {result.duration_seconds}s"
        )
        return result

    async def _after_run(self, result: ProcessResult, control: ProcessControl) -> None:
        # A child stopped by its own setrlimit ceiling exits before any sample sees it
        if not self.hard_limits or result.exit_code == 0:
            return
        if result.cancelled or result.timed_out or result.breach:
            return
        limits = control.limits
        if os.getuid() != 0 and any(marker in result.stderr for marker in TASK_LIMIT_MARKERS):
            result.breach = LimitBreach("processes", limits.max_processes, limits.max_processes)
        elif control.cap_memory and any(marker in result.stderr for marker in OUT_OF_MEMORY_MARKERS):
            result.breach = LimitBreach("memory", limits.max_memory_mb, limits.max_memory_mb, "MB")

    async def _drain(self, readers: List[asyncio.Task]) -> None:
        done, pending = await asyncio.wait(readers, timeout=max(self.kill_grace_seconds, 1.0))
        for task in pending:
            task.cancel()
        for task in done:
            if task.exception() is not None:
                logger.warning(f"Stream reader failed: {task.exception()}")

    async def _terminate(self, process, control: ProcessControl, grace: float) -> None:
        """Terminate the whole process group: SIGTERM, grace period, SIGKILL."""
        pid = process.pid
        try:
            tree = psutil.Process(pid).children(recursive=True)
        except psutil.Error:
            tree = []

        if grace > 0 and process.returncode is None:
            self._signal_group(pid, signal.SIGTERM)
            try:
                await asyncio.wait_for(process.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning(f"[{control.label}] Process {pid} ignored SIGTERM, killing")

        self._signal_group(pid, signal.SIGKILL)
        for child in tree:
            try:
                child.kill()
            except psutil.Error:
                continue
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
        await process.wait()

    @staticmethod
    def _signal_group(pid: int, sig: int) -> None:
        try:
            os.killpg(pid, sig)
        except (ProcessLookupError, PermissionError):
            pass


def container_name_for(label: str) -> str:
    return "sandbox-" + re.sub(r"[^a-zA-Z0-9_.-]", "-", label)[:60]


class DockerSandbox(ProcessSandbox):
    """
    Runs commands inside the per-language runtime image.

    The project is mounted at /app, outputs at /output and /tmp is a tmpfs;
    the root filesystem is read-only and the process runs as a non-root user.
    """

    uses_containers = True

    def __init__(
        self,
        images: Dict[str, str] = None,
        user: str = None,
        allow_network: bool = None,
        build_network: str = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.images = images or settings.EXECUTION_DOCKER_IMAGES
        self.user = user or settings.EXECUTION_DOCKER_USER
        self.allow_network = settings.EXECUTION_DOCKER_ALLOW_NETWORK if allow_network is None else allow_network
        self.build_network = build_network or settings.EXECUTION_BUILD_NETWORK

    async def prepare_cache(self, volume_name: str) -> Dict[str, Optional[str]]:
        return_code, _, stderr = await run_docker_command(["docker", "volume", "create", volume_name])
        if return_code != 0:
            raise SandboxUnavailableError("docker", f"Cannot create volume {volume_name}: {stderr}")
        return {"cache_dir": "/cache", "cache_volume": volume_name}

    async def release_cache(self, volume_name: str) -> None:
        return_code, _, stderr = await run_docker_command(["docker", "volume", "rm", "-f", volume_name])
        if return_code != 0:
            logger.warning(f"Failed to remove volume {volume_name}: {stderr}")

    def image_for(self, language: Optional[str]) -> str:
        image = self.images.get(language or "")
        if not image:
            raise SandboxUnavailableError("docker", f"No runtime image configured for {language}")
        return image

    def build_run_command(self, command: List[str], cwd: str, control: ProcessControl) -> List[str]:
        limits = control.limits
        cpus = max(limits.max_cpu_percentage / 100.0 * (psutil.cpu_count() or 1), 0.1)
        cmd = [
            "docker", "run",
            "--rm",
            "--name", container_name_for(control.label),
            "--user", self.user,
            "--read-only",
            "--memory", f"{limits.max_memory_mb}m",
            "--memory-swap", f"{limits.max_memory_mb}m",
            "--cpus", f"{cpus:.2f}",
            "--pids-limit", str(limits.max_processes * TASKS_PER_PROCESS),
            "--tmpfs", f"/tmp:rw,size={settings.EXECUTION_TMPFS_SIZE_MB}m",
            "-v", f"{os.path.abspath(cwd)}:/app",
            "-w", "/app",
        ]
        if control.allow_network:
            cmd.extend(["--network", self.build_network])
        elif not self.allow_network:
            cmd.extend(["--network", "none"])
        if control.output_dir:
            cmd.extend(["-v", f"{os.path.abspath(control.output_dir)}:/output"])
        if control.cache_volume:
            cmd.extend(["-v", f"{control.cache_volume}:/cache"])

        for key, value in control.environment.items():
            if key in ("PATH", "HOME", "JAVA_HOME", "DOTNET_ROOT"):
                continue  # image provides its own toolchain paths
            cmd.extend(["-e", f"{key}={value}"])
        cmd.extend(["-e", "HOME=/tmp"])
        if control.output_dir:
            cmd.extend(["-e", "OUTPUT_DIR=/output"])

        cmd.append(self.image_for(control.language))
        cmd.extend(command)
        return cmd

    async def _spawn(self, command: List[str], cwd: str, control: ProcessControl):
        docker_cmd = self.build_run_command(command, cwd, control)
        try:
            return await asyncio.create_subprocess_exec(
                *docker_cmd,
                cwd=cwd,
                env=base_environment(),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError:
            raise SandboxUnavailableError("docker", "Docker CLI not found")

    def _monitor_for(self, process, cwd: str, control: ProcessControl, baseline_disk: int) -> ResourceMonitor:
        # Memory, CPU and pids are enforced by the container runtime; the host
        # side only watches disk growth of the mounted directories.
        host_limits = control.limits.model_copy(update={
            "max_memory_mb": 1024 * 1024,
            "max_cpu_percentage": 1e9,
            "max_processes": 1024,
        })
        return ResourceMonitor(
            process.pid, host_limits, working_directory=cwd, interval=self.monitor_interval,
            baseline_disk_bytes=baseline_disk,
        )

    async def _terminate(self, process, control: ProcessControl, grace: float) -> None:
        # Killing the client does not stop the container
        name = container_name_for(control.label)
        if grace > 0:
            await run_docker_command(["docker", "stop", "-t", str(int(grace)), name], timeout=int(grace) + 10)
        await run_docker_command(["docker", "rm", "-f", name])
        await super()._terminate(process, control, grace=0)

    async def _after_run(self, result: ProcessResult, control: ProcessControl) -> None:
        # 137 = SIGKILL inside the container; with --rm the OOM flag is gone,
        # so a kill nobody on the host requested is attributed to the memory cgroup
        if result.exit_code == 137 and not (result.cancelled or result.timed_out or result.breach):
            result.breach = LimitBreach(
                "memory", control.limits.max_memory_mb, control.limits.max_memory_mb, "MB"
            )
