"""
Deployment strategy contract and the shared served-directory implementation.

Every lifecycle call is keyed by program id and runs under the registry's
per-program lock, so start/stop/restart/undeploy for one program never
interleave.
"""
import asyncio
import logging
import os
import shutil
import signal
import subprocess
import sys
import tempfile
import time
import uuid
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx
import psutil

from execution_engine.core.config import settings
from execution_engine.core.events import (
    DeploymentCreatedEvent,
    DeploymentRemovedEvent,
    DeploymentStatusChangedEvent,
    EventDispatcher,
    event_dispatcher,
)
from execution_engine.core.exceptions import (
    DeploymentExecutionError,
    DomainException,
    DuplicateInstanceError,
    InstanceNotFoundError,
    InvalidPathError,
)
from execution_engine.core.paths import child_directory
from execution_engine.schemas.deployment import (
    AppDeploymentRequest,
    AppDeploymentType,
    ApplicationHealth,
    ApplicationMetrics,
    DeploymentResult,
    DeploymentValidationResult,
    HealthCheckResult,
    HealthStatus,
    InstanceStatus,
    ProgramFile,
)
from execution_engine.services.analysis.project_analyzer import ProjectStructureAnalyzer
from execution_engine.services.deployment.instance_registry import AppInstance, InstanceRegistry
from execution_engine.services.deployment.site_server import HEALTH_PATH, SiteConfig
from execution_engine.services.execution.resource_monitor import directory_size
from execution_engine.services.execution.sandbox import base_environment

logger = logging.getLogger(__name__)

SITE_DIRECTORY = "site"
LOG_DIRECTORY = "logs"
SERVER_LOG = "server.log"
SERVER_CONFIG = "server.json"
SERVER_MODULE = "execution_engine.services.deployment.site_server"

# Directory that holds the execution_engine package, put on the server's PYTHONPATH
PACKAGE_PARENT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))


def write_program_files(files: List[ProgramFile], destination: str) -> List[str]:
    """
    Write submitted files under destination.

    Raises:
        InvalidPathError: If a file path escapes the destination
    """
    root = os.path.realpath(destination)
    written = []
    for program_file in files:
        relative = program_file.path.replace("\\", "/").lstrip("/")
        target = os.path.realpath(os.path.join(root, relative))
        if not relative or not target.startswith(root + os.sep):
            raise InvalidPathError(program_file.path, "File path escapes the deployment directory")
        os.makedirs(os.path.dirname(target), exist_ok=True)
        with open(target, "wb") as f:
            f.write(program_file.content)
        written.append(relative)
    return written


def process_alive(pid: Optional[int]) -> bool:
    if not pid:
        return False
    try:
        process = psutil.Process(pid)
        return process.is_running() and process.status() != psutil.STATUS_ZOMBIE
    except psutil.Error:
        return False


class DeploymentStrategy(ABC):
    """
    Base class for deployment strategies.

    Implementations must provide:
    - deploy / undeploy
    - start / stop / restart
    - health, logs and metrics
    - side-effect free validation
    """

    deployment_type: AppDeploymentType

    def __init__(
        self,
        registry: InstanceRegistry = None,
        dispatcher: EventDispatcher = None,
        analyzer: ProjectStructureAnalyzer = None,
        deployment_path: str = None,
        host: str = None,
    ):
        self.registry = registry or InstanceRegistry()
        self.dispatcher = dispatcher or event_dispatcher
        self.analyzer = analyzer or ProjectStructureAnalyzer()
        self.deployment_path = os.path.abspath(deployment_path or settings.DEPLOYMENT_PATH)
        self.host = host or settings.DEPLOYMENT_HOST

    @abstractmethod
    async def deploy(
        self,
        program_id: str,
        request: AppDeploymentRequest,
        files: List[ProgramFile],
    ) -> DeploymentResult:
        """
        Deploy a program and register its instance.

        Args:
            program_id: Program identifier
            request: Deployment options
            files: Submitted files, paths relative to the deployment root

        Returns:
            DeploymentResult; a second deploy without undeploy fails
            with a duplicate-instance message
        """
        pass

    @abstractmethod
    async def start(self, program_id: str) -> bool:
        pass

    @abstractmethod
    async def stop(self, program_id: str) -> bool:
        pass

    @abstractmethod
    async def restart(self, program_id: str) -> bool:
        pass

    @abstractmethod
    async def get_health(self, program_id: str) -> ApplicationHealth:
        pass

    @abstractmethod
    async def get_logs(self, program_id: str, lines: int = None) -> List[str]:
        pass

    @abstractmethod
    async def get_metrics(self, program_id: str) -> ApplicationMetrics:
        pass

    @abstractmethod
    async def undeploy(self, program_id: str) -> bool:
        """
        Stop the program and remove its instance and files.

        Undeploying a program that is not deployed is a no-op returning True.
        """
        pass

    @abstractmethod
    async def validate(
        self,
        program_id: str,
        request: AppDeploymentRequest,
        files: Optional[List[ProgramFile]] = None,
    ) -> DeploymentValidationResult:
        """Check a deployment request without changing any state."""
        pass

    # -------------------------------------------------------------------------
    # Shared helpers
    # -------------------------------------------------------------------------

    def get_deployment_dir(self, program_id: str) -> str:
        return child_directory(
            os.path.join(self.deployment_path, self.deployment_type.value), program_id, "Invalid program id"
        )

    def application_url(self, port: int, request: AppDeploymentRequest) -> str:
        base = request.base_href.rstrip("/")
        if request.domain_name:
            return f"https://{request.domain_name}{base}/"
        return f"http://{self.host}:{port}{base}/"

    async def _set_status(self, program_id: str, status: InstanceStatus, **changes) -> AppInstance:
        previous = await self.registry.require(program_id)
        instance = await self.registry.update(program_id, status=status, **changes)
        if previous.status != status:
            self.dispatcher.dispatch(DeploymentStatusChangedEvent(
                program_id=program_id,
                old_status=previous.status.value,
                new_status=status.value,
            ))
        return instance

    def _created(self, instance: AppInstance) -> None:
        self.dispatcher.dispatch(DeploymentCreatedEvent(
            program_id=instance.program_id,
            deployment_type=self.deployment_type.value,
            application_url=instance.application_url,
        ))

    def _removed(self, program_id: str) -> None:
        self.dispatcher.dispatch(DeploymentRemovedEvent(program_id=program_id))

    @staticmethod
    def failed(message: str) -> DeploymentResult:
        return DeploymentResult(success=False, error_message=message, logs=[f"Deployment failed: {message}"])

    async def validate_files(self, files: List[ProgramFile], result: DeploymentValidationResult) -> Optional[str]:
        """
        Run structural analysis over the submitted files in a scratch directory.

        Returns:
            The detected language, or None when the files could not be analyzed
        """
        scratch = tempfile.mkdtemp(prefix="validate-")
        try:
            write_program_files(files, scratch)
            loop = asyncio.get_running_loop()
            validation = await loop.run_in_executor(None, self.analyzer.validate, scratch)
            if not validation.is_valid:
                result.is_valid = False
            result.errors.extend(validation.errors)
            result.warnings.extend(validation.warnings)
            result.recommendations.extend(validation.suggestions)
            if validation.is_valid:
                analysis = await loop.run_in_executor(None, self.analyzer.analyze, scratch)
                return analysis.language
            return None
        except InvalidPathError as e:
            result.is_valid = False
            result.errors.append(e.message)
            return None
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def validate_port(self, port: Optional[int], result: DeploymentValidationResult) -> None:
        if port is None:
            return
        if port < 1024 or port > 65535:
            result.is_valid = False
            result.errors.append("Port must be between 1024 and 65535")
        elif self.registry.is_port_bound(port):
            result.is_valid = False
            result.errors.append(f"Port {port} is already in use")


class ServedDirectoryStrategy(DeploymentStrategy):
    """
    Serves a directory of files with the bundled site server process.

    Layout under the deployment directory::

        site/         submitted files
        logs/         server.log
        server.json   SiteConfig for the server process
    """

    def __init__(self, *args, kill_grace_seconds: float = None, startup_timeout: float = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.kill_grace_seconds = (
            settings.EXECUTION_KILL_GRACE_SECONDS if kill_grace_seconds is None else kill_grace_seconds
        )
        self.startup_timeout = startup_timeout or settings.DEPLOYMENT_STARTUP_TIMEOUT
        self._processes: Dict[int, subprocess.Popen] = {}

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    def find_entry_point(self, site_dir: str, request: AppDeploymentRequest) -> Optional[str]:
        """Relative path of the configured entry point, falling back to index.html."""
        candidates = [request.entry_point, request.configuration.get("entryPoint"), "index.html"]
        for candidate in candidates:
            if isinstance(candidate, str) and candidate and os.path.isfile(os.path.join(site_dir, candidate)):
                return candidate
        return None

    def prepare_site(self, program_id: str, site_dir: str, entry_point: str, request: AppDeploymentRequest) -> None:
        """Adjust the written files before the server starts."""
        return None

    def build_site_config(
        self,
        program_id: str,
        site_dir: str,
        port: int,
        entry_point: str,
        request: AppDeploymentRequest,
    ) -> SiteConfig:
        return SiteConfig(
            program_id=program_id,
            root=site_dir,
            host=self.registry.bind_address,
            port=port,
            entry_point=entry_point,
            base_href=request.base_href,
            spa_routing=request.spa_routing,
            log_file=os.path.join(os.path.dirname(site_dir), LOG_DIRECTORY, SERVER_LOG),
        )

    # -------------------------------------------------------------------------
    # Site config
    # -------------------------------------------------------------------------

    def _config_path(self, deployment_dir: str) -> str:
        return os.path.join(deployment_dir, SERVER_CONFIG)

    def read_site_config(self, deployment_dir: str) -> SiteConfig:
        with open(self._config_path(deployment_dir), "r", encoding="utf-8") as f:
            return SiteConfig.model_validate_json(f.read())

    def write_site_config(self, deployment_dir: str, config: SiteConfig) -> None:
        with open(self._config_path(deployment_dir), "w", encoding="utf-8") as f:
            f.write(config.model_dump_json(indent=2))

    async def update_site_config(self, program_id: str, changes: Callable[[SiteConfig], Dict[str, Any]]) -> bool:
        """
        Persist config changes; a running server is restarted to apply them.

        Args:
            program_id: Program identifier
            changes: Maps the current config to the fields to replace

        Returns:
            False if the program is not deployed
        """
        async with self.registry.exclusive(program_id):
            instance = await self.registry.get(program_id)
            if instance is None:
                logger.warning(f"No instance found for program {program_id}")
                return False
            config = self.read_site_config(instance.deployment_path)
            self.write_site_config(instance.deployment_path, config.model_copy(update=changes(config)))
            if instance.status == InstanceStatus.ACTIVE:
                await self._stop_locked(program_id)
                return await self._start_locked(program_id)
            return True

    # -------------------------------------------------------------------------
    # Deploy
    # -------------------------------------------------------------------------

    async def deploy(
        self,
        program_id: str,
        request: AppDeploymentRequest,
        files: List[ProgramFile],
    ) -> DeploymentResult:
        logger.info(f"Deploying {self.deployment_type.value} for program {program_id}")
        async with self.registry.exclusive(program_id):
            port = None
            deployment_dir = None
            try:
                deployment_dir = self.get_deployment_dir(program_id)
                if await self.registry.get(program_id) is not None:
                    raise DuplicateInstanceError(program_id)

                port = await self.registry.allocate_port(request.port)
                site_dir = os.path.join(deployment_dir, SITE_DIRECTORY)
                shutil.rmtree(deployment_dir, ignore_errors=True)
                os.makedirs(os.path.join(deployment_dir, LOG_DIRECTORY))
                write_program_files(files, site_dir)

                entry_point = self.find_entry_point(site_dir, request)
                if entry_point is None:
                    raise DeploymentExecutionError(program_id, "No entry point (index.html) found in deployment files")
                self.prepare_site(program_id, site_dir, entry_point, request)
                self.write_site_config(
                    deployment_dir, self.build_site_config(program_id, site_dir, port, entry_point, request)
                )

                instance = await self.registry.register(AppInstance(
                    program_id=program_id,
                    deployment_type=self.deployment_type,
                    port=port,
                    deployment_path=deployment_dir,
                    application_url=self.application_url(port, request),
                    status=InstanceStatus.INACTIVE,
                    deployment_id=str(uuid.uuid4()),
                    configuration=dict(request.configuration),
                ))
            except DuplicateInstanceError as e:
                logger.warning(e.message)
                return self.failed(e.message)
            except (DomainException, OSError) as e:
                await self.registry.release_port(port)
                if deployment_dir is not None:
                    shutil.rmtree(deployment_dir, ignore_errors=True)
                message = e.message if isinstance(e, DomainException) else str(e)
                logger.error(f"Failed to deploy program {program_id}: {message}")
                return self.failed(message)

            logs = [
                f"Deployed {len(files)} file(s) to {deployment_dir}",
                f"Entry point: {entry_point}",
            ]
            if request.auto_start:
                if not await self._start_locked(program_id):
                    tail = self._tail(os.path.join(deployment_dir, LOG_DIRECTORY, SERVER_LOG), 20)
                    await self._remove_locked(program_id)
                    result = self.failed("Site server did not become ready")
                    result.logs.extend(tail)
                    return result
                logs.append(f"Application URL: {instance.application_url}")

        self._created(instance)
        return DeploymentResult(
            success=True,
            application_url=instance.application_url,
            deployment_id=instance.deployment_id,
            metadata={
                "deployment_path": deployment_dir,
                "entry_point": entry_point,
                "port": port,
                "auto_started": request.auto_start,
            },
            logs=logs,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, program_id: str) -> bool:
        async with self.registry.exclusive(program_id):
            try:
                return await self._start_locked(program_id)
            except InstanceNotFoundError:
                logger.warning(f"No instance found for program {program_id}")
                return False

    async def stop(self, program_id: str) -> bool:
        async with self.registry.exclusive(program_id):
            try:
                return await self._stop_locked(program_id)
            except InstanceNotFoundError:
                logger.warning(f"No instance found for program {program_id}")
                return False

    async def restart(self, program_id: str) -> bool:
        async with self.registry.exclusive(program_id):
            try:
                if not await self._stop_locked(program_id):
                    return False
                return await self._start_locked(program_id)
            except InstanceNotFoundError:
                logger.warning(f"No instance found for program {program_id}")
                return False

    async def undeploy(self, program_id: str) -> bool:
        async with self.registry.exclusive(program_id):
            if await self.registry.get(program_id) is None:
                logger.info(f"Program {program_id} is not deployed, nothing to undeploy")
                return True
            try:
                await self._remove_locked(program_id)
            except OSError as e:
                logger.error(f"Failed to undeploy program {program_id}: {e}")
                return False
        self._removed(program_id)
        logger.info(f"Undeployed program {program_id}")
        return True

    async def _remove_locked(self, program_id: str) -> None:
        instance = await self.registry.require(program_id)
        await self._stop_locked(program_id)
        await self.registry.remove(program_id)
        if instance.deployment_path and os.path.isdir(instance.deployment_path):
            shutil.rmtree(instance.deployment_path)

    async def _start_locked(self, program_id: str) -> bool:
        instance = await self.registry.require(program_id)
        if instance.status == InstanceStatus.ACTIVE and process_alive(instance.process_id):
            return True

        await self._set_status(program_id, InstanceStatus.STARTING)
        config_path = self._config_path(instance.deployment_path)
        log_path = os.path.join(instance.deployment_path, LOG_DIRECTORY, SERVER_LOG)
        os.makedirs(os.path.dirname(log_path), exist_ok=True)
        env = base_environment()
        env["PYTHONPATH"] = os.pathsep.join(p for p in (PACKAGE_PARENT, os.environ.get("PYTHONPATH")) if p)

        with open(log_path, "ab") as log:
            process = subprocess.Popen(
                [sys.executable, "-m", SERVER_MODULE, "--config", config_path],
                cwd=instance.deployment_path,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        self._processes[process.pid] = process
        logger.info(f"Started site server for {program_id} (pid {process.pid}, port {instance.port})")

        if await self._wait_ready(process, instance.port):
            await self._set_status(
                program_id, InstanceStatus.ACTIVE, process_id=process.pid, started_at=datetime.utcnow()
            )
            return True

        logger.error(f"Site server for {program_id} did not become ready within {self.startup_timeout}s")
        await self._kill(process.pid)
        await self._set_status(program_id, InstanceStatus.FAILED, process_id=None)
        return False

    async def _stop_locked(self, program_id: str) -> bool:
        instance = await self.registry.require(program_id)
        if instance.process_id is None:
            if instance.status != InstanceStatus.INACTIVE:
                await self._set_status(program_id, InstanceStatus.INACTIVE)
            return True
        await self._set_status(program_id, InstanceStatus.STOPPING)
        await self._kill(instance.process_id)
        await self._set_status(program_id, InstanceStatus.INACTIVE, process_id=None, stopped_at=datetime.utcnow())
        logger.info(f"Stopped site server for {program_id}")
        return True

    async def _wait_ready(self, process: subprocess.Popen, port: int) -> bool:
        url = f"http://{self.registry.bind_address}:{port}{HEALTH_PATH}"
        deadline = time.monotonic() + self.startup_timeout
        async with httpx.AsyncClient() as client:
            while time.monotonic() < deadline:
                if process.poll() is not None:
                    return False
                try:
                    response = await client.get(url, timeout=1.0)
                    if response.status_code == 200:
                        return True
                except httpx.HTTPError:
                    pass
                await asyncio.sleep(0.2)
        return False

    async def _kill(self, pid: int) -> None:
        """SIGTERM the server's process group, SIGKILL after the grace period."""
        loop = asyncio.get_running_loop()
        try:
            os.killpg(pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError):
            pass
        try:
            process = psutil.Process(pid)
            _, alive = await loop.run_in_executor(
                None, lambda: psutil.wait_procs([process], timeout=self.kill_grace_seconds)
            )
            if alive:
                logger.warning(f"Site server {pid} ignored SIGTERM, killing")
                os.killpg(pid, signal.SIGKILL)
        except (psutil.Error, ProcessLookupError, PermissionError):
            pass
        popen = self._processes.pop(pid, None)
        if popen is not None:
            await loop.run_in_executor(None, self._reap, popen)

    def _reap(self, popen: subprocess.Popen) -> None:
        try:
            popen.wait(timeout=self.kill_grace_seconds)
        except subprocess.TimeoutExpired:
            popen.kill()
            popen.wait()

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    async def _http_check(self, instance: AppInstance) -> HealthCheckResult:
        url = f"http://{self.registry.bind_address}:{instance.port}{HEALTH_PATH}"
        started = time.monotonic()
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(url, timeout=settings.DEPLOYMENT_HEALTH_CHECK_TIMEOUT)
            healthy = response.status_code == 200
            message = "Application responding" if healthy else f"HTTP {response.status_code}"
        except httpx.HTTPError as e:
            healthy = False
            message = f"Application not responding: {e}"
        return HealthCheckResult(
            name="http",
            status=HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY,
            duration_ms=round((time.monotonic() - started) * 1000, 2),
            message=message,
        )

    async def get_health(self, program_id: str) -> ApplicationHealth:
        instance = await self.registry.get(program_id)
        if instance is None:
            return ApplicationHealth(status=HealthStatus.UNKNOWN, error_message="Instance not found")

        details = {
            "status": instance.status.value,
            "started_at": instance.started_at.isoformat() if instance.started_at else None,
            "url": instance.application_url,
        }
        if instance.status == InstanceStatus.STARTING:
            return ApplicationHealth(status=HealthStatus.STARTING, details=details)

        alive = process_alive(instance.process_id)
        checks = [HealthCheckResult(
            name="process",
            status=HealthStatus.HEALTHY if alive else HealthStatus.UNHEALTHY,
            message=f"pid {instance.process_id}" if alive else "Server process is not running",
        )]
        if alive:
            checks.append(await self._http_check(instance))

        healthy = all(check.status == HealthStatus.HEALTHY for check in checks)
        return ApplicationHealth(
            status=HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY,
            response_time_ms=checks[-1].duration_ms if alive else None,
            error_message=None if healthy else checks[-1].message,
            details=details,
            checks=checks,
        )

    @staticmethod
    def _tail(path: str, lines: int) -> List[str]:
        if not os.path.isfile(path):
            return []
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            return [line.rstrip("\n") for line in deque(f, maxlen=lines)]

    async def get_logs(self, program_id: str, lines: int = None) -> List[str]:
        instance = await self.registry.get(program_id)
        if instance is None:
            return [f"Instance not found: {program_id}"]
        lines = lines or settings.DEPLOYMENT_LOG_TAIL
        log_path = os.path.join(instance.deployment_path, LOG_DIRECTORY, SERVER_LOG)
        return self._tail(log_path, lines)

    @staticmethod
    def _count_recent_requests(log_path: str, window_seconds: int = 60) -> int:
        """Access-log lines written within the window."""
        if not os.path.isfile(log_path):
            return 0
        cutoff = datetime.now().timestamp() - window_seconds
        count = 0
        with open(log_path, "r", encoding="utf-8", errors="replace") as f:
            for line in f:
                if "uvicorn.access" not in line:
                    continue
                try:
                    logged = datetime.strptime(line[:19], "%Y-%m-%d %H:%M:%S").timestamp()
                except ValueError:
                    continue
                if logged >= cutoff:
                    count += 1
        return count

    def _process_usage(self, pid: int) -> Dict[str, Any]:
        process = psutil.Process(pid)
        with process.oneshot():
            memory = process.memory_info().rss
            connections = process.net_connections(kind="inet")
        cpu = process.cpu_percent(interval=0.1)
        return {
            "cpu_usage_percent": cpu,
            "memory_usage_bytes": memory,
            "active_connections": sum(1 for c in connections if c.status == psutil.CONN_ESTABLISHED),
        }

    async def get_metrics(self, program_id: str) -> ApplicationMetrics:
        instance = await self.registry.get(program_id)
        if instance is None:
            return ApplicationMetrics(program_id=program_id, active_instances=0)

        loop = asyncio.get_running_loop()
        site_dir = os.path.join(instance.deployment_path, SITE_DIRECTORY)
        disk = await loop.run_in_executor(None, directory_size, site_dir)
        log_path = os.path.join(instance.deployment_path, LOG_DIRECTORY, SERVER_LOG)
        recent = await loop.run_in_executor(None, self._count_recent_requests, log_path)
        active = instance.status == InstanceStatus.ACTIVE and process_alive(instance.process_id)

        usage: Dict[str, Any] = {"cpu_usage_percent": 0.0, "memory_usage_bytes": 0, "active_connections": 0}
        estimated_fields: List[str] = []
        if active:
            try:
                usage = await loop.run_in_executor(None, self._process_usage, instance.process_id)
            except psutil.Error as e:
                logger.warning(f"Cannot inspect site server for {program_id}: {e}")
                estimated_fields = list(usage)

        response_time = 0.0
        if active:
            response_time = (await self._http_check(instance)).duration_ms

        uptime_hours = 0.0
        if active and instance.started_at:
            uptime_hours = (datetime.utcnow() - instance.started_at).total_seconds() / 3600
        return ApplicationMetrics(
            program_id=program_id,
            disk_usage_bytes=disk,
            requests_per_second=round(recent / 60, 3),
            average_response_time_ms=response_time,
            active_instances=1 if active else 0,
            custom_metrics={
                "uptime_hours": round(uptime_hours, 4),
                "deployment_size_mb": round(disk / (1024 * 1024), 3),
                "port": instance.port,
            },
            estimated=bool(estimated_fields),
            estimated_fields=estimated_fields,
            **usage,
        )

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    async def validate(
        self,
        program_id: str,
        request: AppDeploymentRequest,
        files: Optional[List[ProgramFile]] = None,
    ) -> DeploymentValidationResult:
        result = DeploymentValidationResult()
        if not request.base_href.startswith("/"):
            result.warnings.append("base_href should start with '/' for proper routing")
        self.validate_port(request.port, result)
        if await self.registry.get(program_id) is not None:
            result.is_valid = False
            result.errors.append(f"Application is already deployed: {program_id}")

        if files is not None:
            paths = {f.path.replace("\\", "/").lstrip("/") for f in files}
            entry = request.entry_point or "index.html"
            if entry not in paths and "index.html" not in paths:
                result.is_valid = False
                result.errors.append(f"No entry point ({entry}) found in deployment files")
            await self.validate_files(files, result)

        if request.spa_routing:
            result.recommendations.append(
                "SPA routing is enabled; unknown paths without an extension serve the entry point"
            )
        result.validated_configuration = {
            "deployment_type": self.deployment_type.value,
            "spa_routing": request.spa_routing,
            "api_integration": request.api_integration,
            "authentication_mode": request.authentication_mode,
            "base_href": request.base_href,
            "port": request.port,
        }
        return result
