"""
Deployment of applications that ship their own Dockerfile.

Each replica is one container publishing the application port on a host
port taken from the instance registry's range.
"""
import json
import logging
import os
import shutil
import time
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import httpx

from execution_engine.core.config import settings
from execution_engine.core.exceptions import (
    BuildError,
    DeploymentExecutionError,
    DomainException,
    DuplicateInstanceError,
    InstanceNotFoundError,
)
from execution_engine.schemas.deployment import (
    AppDeploymentRequest,
    AppDeploymentType,
    ApplicationHealth,
    ApplicationMetrics,
    ContainerDeploymentRequest,
    ContainerInstance,
    ContainerResourceLimits,
    ContainerResourceUsage,
    DeploymentResult,
    DeploymentValidationResult,
    HealthCheckResult,
    HealthStatus,
    InstanceStatus,
    ProgramFile,
)
from execution_engine.services.deployment.instance_registry import AppInstance
from execution_engine.services.deployment.strategy_base import DeploymentStrategy, write_program_files
from execution_engine.services.docker.command import (
    parse_pair,
    parse_percent,
    parse_size,
    run_docker_command,
    sanitize_name,
)

logger = logging.getLogger(__name__)

CONTEXT_DIRECTORY = "context"


def parse_docker_time(value: Optional[str]) -> Optional[datetime]:
    """Parse docker's RFC3339 timestamps; the zero time means never."""
    if not value or value.startswith("0001-"):
        return None
    try:
        # Docker reports nanoseconds, fromisoformat handles at most microseconds
        return datetime.fromisoformat(value.split(".")[0].replace("Z", "") + "+00:00")
    except ValueError:
        return None


class ContainerDeploymentStrategy(DeploymentStrategy):
    """
    Builds an image from the submitted files and runs it as containers.

    Responsibilities:
    - docker build of the submitted context
    - one container per replica, scaled up or down in place
    - health via docker inspect plus an HTTP check
    - logs via docker logs and metrics via docker stats
    """

    deployment_type = AppDeploymentType.DOCKER_CONTAINER

    def __init__(
        self,
        *args,
        container_prefix: str = None,
        container_port: int = None,
        build_timeout_minutes: int = None,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.container_prefix = container_prefix or settings.DEPLOYMENT_CONTAINER_PREFIX
        self.container_port = container_port or settings.DEPLOYMENT_CONTAINER_PORT
        self.build_timeout_minutes = build_timeout_minutes or settings.DEPLOYMENT_BUILD_TIMEOUT_MINUTES
        self._requests: Dict[str, ContainerDeploymentRequest] = {}

    @staticmethod
    def _as_container_request(request: AppDeploymentRequest) -> ContainerDeploymentRequest:
        if isinstance(request, ContainerDeploymentRequest):
            return request
        return ContainerDeploymentRequest(**request.model_dump(exclude={"deployment_type"}))

    def _container_name(self, program_id: str, index: int) -> str:
        return sanitize_name(f"{program_id}-{index}", self.container_prefix)

    def _image_tag(self, program_id: str, request: ContainerDeploymentRequest) -> str:
        name = request.image_name or sanitize_name(program_id, self.container_prefix)
        return f"{name}:{request.image_tag}"

    def _app_port(self, request: ContainerDeploymentRequest) -> int:
        if request.port_mappings:
            return request.port_mappings[0].container_port
        return self.container_port

    # -------------------------------------------------------------------------
    # Image
    # -------------------------------------------------------------------------

    async def build_image(self, program_id: str, context_dir: str, request: ContainerDeploymentRequest) -> str:
        """
        Build the program's image from context_dir.

        Returns:
            The image id

        Raises:
            BuildError: If docker build fails or times out
        """
        tag = self._image_tag(program_id, request)
        cmd = [
            "docker", "build",
            "--tag", tag,
            "--file", os.path.join(context_dir, request.dockerfile_path),
            "--label", f"program_id={program_id}",
        ]
        for key, value in request.build_args.items():
            cmd.extend(["--build-arg", f"{key}={value}"])
        cmd.append(context_dir)

        logger.info(f"Building image {tag} for program {program_id}")
        return_code, stdout, stderr = await run_docker_command(cmd, timeout=self.build_timeout_minutes * 60)
        if return_code != 0:
            raise BuildError(tag, stderr or stdout or "docker build failed")

        return_code, stdout, stderr = await run_docker_command(
            ["docker", "image", "inspect", "--format", "{{.Id}}", tag], timeout=10
        )
        if return_code != 0 or not stdout:
            raise BuildError(tag, stderr or "Built image not found")
        logger.info(f"Built image {tag} ({stdout[:19]})")
        return stdout

    # -------------------------------------------------------------------------
    # Containers
    # -------------------------------------------------------------------------

    def _build_container_command(
        self,
        program_id: str,
        index: int,
        image: str,
        host_port: int,
        request: ContainerDeploymentRequest,
        detach: bool = True,
    ) -> List[str]:
        """docker run -d (or docker create) for one replica."""
        cmd = ["docker", "run", "-d"] if detach else ["docker", "create"]
        cmd.extend([
            "--name", self._container_name(program_id, index),
            "--label", f"program_id={program_id}",
            "--restart", "unless-stopped",
            "-p", f"{self.registry.bind_address}:{host_port}:{self._app_port(request)}",
        ])
        for mapping in request.port_mappings[1:]:
            cmd.extend(["-p", f"{mapping.container_port}/{mapping.protocol}"])

        for key, value in request.environment.items():
            cmd.extend(["-e", f"{key}={value}"])
        cmd.extend(["-e", f"PORT={self._app_port(request)}"])

        for mount in request.volume_mounts:
            suffix = ":ro" if mount.read_only else ""
            cmd.extend(["-v", f"{mount.host_path}:{mount.container_path}{suffix}"])

        limits = request.resource_limits or ContainerResourceLimits()
        cmd.extend(["--memory", limits.memory_limit or settings.DEPLOYMENT_DEFAULT_MEMORY_LIMIT])
        if limits.cpu_limit:
            cmd.extend(["--cpus", str(limits.cpu_limit)])
        if limits.memory_request:
            cmd.extend(["--memory-reservation", limits.memory_request])
        if limits.cpu_request:
            cmd.extend(["--cpu-shares", str(int(limits.cpu_request * 1024))])

        cmd.append(image)
        return cmd

    async def _cleanup_container(self, name_or_id: str) -> None:
        return_code, _, stderr = await run_docker_command(["docker", "rm", "-f", name_or_id], timeout=30)
        if return_code != 0 and "No such container" not in stderr:
            logger.warning(f"Failed to remove container {name_or_id}: {stderr}")

    async def _create_replica(
        self,
        program_id: str,
        index: int,
        image: str,
        request: ContainerDeploymentRequest,
        detach: bool,
    ) -> Tuple[str, int]:
        """
        Returns:
            Tuple of (container_id, host_port)

        Raises:
            DeploymentExecutionError: If the container could not be created
        """
        port = await self.registry.allocate_port(request.port if index == 0 else None)
        cmd = self._build_container_command(program_id, index, image, port, request, detach=detach)
        return_code, stdout, stderr = await run_docker_command(cmd, timeout=60)
        if return_code != 0:
            await self.registry.release_port(port)
            await self._cleanup_container(self._container_name(program_id, index))
            raise DeploymentExecutionError(program_id, stderr or "docker run failed")
        logger.info(f"Created container {stdout[:12]} for {program_id} replica {index} on port {port}")
        return stdout[:64], port

    async def _remove_replicas(self, container_ids: List[str]) -> None:
        for container_id in container_ids:
            await self._cleanup_container(container_id)

    async def _remove_image(self, program_id: str, image: str) -> None:
        return_code, _, stderr = await run_docker_command(["docker", "rmi", image], timeout=60)
        if return_code != 0:
            logger.warning(f"Failed to remove image for program {program_id}: {stderr}")

    # -------------------------------------------------------------------------
    # Deploy
    # -------------------------------------------------------------------------

    async def deploy(
        self,
        program_id: str,
        request: AppDeploymentRequest,
        files: List[ProgramFile],
    ) -> DeploymentResult:
        request = self._as_container_request(request)
        logger.info(f"Deploying container for program {program_id} ({request.replicas} replica(s))")
        async with self.registry.exclusive(program_id):
            container_ids: List[str] = []
            ports: List[int] = []
            deployment_dir = None
            image_id = None
            try:
                deployment_dir = self.get_deployment_dir(program_id)
                if await self.registry.get(program_id) is not None:
                    raise DuplicateInstanceError(program_id)

                context_dir = os.path.join(deployment_dir, CONTEXT_DIRECTORY)
                shutil.rmtree(deployment_dir, ignore_errors=True)
                os.makedirs(context_dir)
                write_program_files(files, context_dir)
                if not os.path.isfile(os.path.join(context_dir, request.dockerfile_path)):
                    raise DeploymentExecutionError(program_id, f"{request.dockerfile_path} not found in deployment files")

                image = self._image_tag(program_id, request)
                image_id = await self.build_image(program_id, context_dir, request)
                for index in range(request.replicas):
                    container_id, port = await self._create_replica(
                        program_id, index, image, request, detach=request.auto_start
                    )
                    container_ids.append(container_id)
                    ports.append(port)

                now = datetime.utcnow()
                instance = await self.registry.register(AppInstance(
                    program_id=program_id,
                    deployment_type=self.deployment_type,
                    port=ports[0],
                    deployment_path=deployment_dir,
                    application_url=self.application_url(ports[0], request),
                    status=InstanceStatus.ACTIVE if request.auto_start else InstanceStatus.INACTIVE,
                    started_at=now if request.auto_start else None,
                    deployment_id=str(uuid.uuid4()),
                    image_id=image_id,
                    container_ids=container_ids,
                    replica_ports=ports,
                    configuration=dict(request.configuration),
                ))
                self._requests[program_id] = request
            except DuplicateInstanceError as e:
                logger.warning(e.message)
                return self.failed(e.message)
            except (DomainException, OSError) as e:
                await self._remove_replicas(container_ids)
                for port in ports:
                    await self.registry.release_port(port)
                if image_id is not None:
                    await self._remove_image(program_id, image)
                if deployment_dir is not None:
                    shutil.rmtree(deployment_dir, ignore_errors=True)
                message = e.message if isinstance(e, DomainException) else str(e)
                logger.error(f"Failed to deploy program {program_id}: {message}")
                return self.failed(message)

        self._created(instance)
        return DeploymentResult(
            success=True,
            application_url=instance.application_url,
            deployment_id=instance.deployment_id,
            metadata={
                "image": image,
                "image_id": image_id,
                "container_ids": container_ids,
                "ports": ports,
                "replicas": request.replicas,
            },
            logs=[
                f"Built image {image}",
                *(f"Replica {i}: container {cid[:12]} on port {p}" for i, (cid, p) in enumerate(zip(container_ids, ports))),
            ],
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def _docker_lifecycle(self, program_id: str, verb: str, status: InstanceStatus, **changes) -> bool:
        async with self.registry.exclusive(program_id):
            try:
                instance = await self.registry.require(program_id)
            except InstanceNotFoundError:
                logger.warning(f"No instance found for program {program_id}")
                return False
            if not instance.container_ids:
                return False
            return_code, _, stderr = await run_docker_command(
                ["docker", verb, *instance.container_ids], timeout=60
            )
            if return_code != 0:
                logger.error(f"docker {verb} failed for program {program_id}: {stderr}")
                await self._set_status(program_id, InstanceStatus.FAILED)
                return False
            await self._set_status(program_id, status, **changes)
            logger.info(f"docker {verb} succeeded for program {program_id}")
            return True

    async def start(self, program_id: str) -> bool:
        return await self._docker_lifecycle(
            program_id, "start", InstanceStatus.ACTIVE, started_at=datetime.utcnow()
        )

    async def stop(self, program_id: str) -> bool:
        return await self._docker_lifecycle(
            program_id, "stop", InstanceStatus.INACTIVE, stopped_at=datetime.utcnow()
        )

    async def restart(self, program_id: str) -> bool:
        return await self._docker_lifecycle(
            program_id, "restart", InstanceStatus.ACTIVE, started_at=datetime.utcnow()
        )

    async def scale(self, program_id: str, replicas: int) -> bool:
        """
        Run or remove containers until the program has `replicas` of them.

        Returns:
            False if the program is not deployed or a new replica failed
        """
        if replicas < 1:
            raise ValueError("replicas must be at least 1")
        async with self.registry.exclusive(program_id):
            instance = await self.registry.get(program_id)
            request = self._requests.get(program_id)
            if instance is None or request is None:
                logger.warning(f"No instance found for program {program_id}")
                return False

            container_ids = list(instance.container_ids)
            ports = list(instance.replica_ports)
            current = len(container_ids)
            image = self._image_tag(program_id, request)
            try:
                # Indexes stay unique while replicas are only added at the end
                for index in range(current, replicas):
                    container_id, port = await self._create_replica(
                        program_id, index, image, request, detach=instance.status == InstanceStatus.ACTIVE
                    )
                    container_ids.append(container_id)
                    ports.append(port)
            except DomainException as e:
                logger.error(f"Failed to scale program {program_id}: {e.message}")
                await self._remove_replicas(container_ids[current:])
                for port in ports[current:]:
                    await self.registry.release_port(port)
                return False

            if replicas < current:
                await self._remove_replicas(container_ids[replicas:])
                container_ids, ports = container_ids[:replicas], ports[:replicas]

            await self.registry.update(program_id, container_ids=container_ids, replica_ports=ports)
            self._requests[program_id] = request.model_copy(update={"replicas": replicas})
            logger.info(f"Scaled program {program_id} from {current} to {replicas} replica(s)")
            return True

    async def update_resource_limits(self, program_id: str, limits: ContainerResourceLimits) -> bool:
        """Apply new limits to the running containers with docker update."""
        async with self.registry.exclusive(program_id):
            instance = await self.registry.get(program_id)
            if instance is None or not instance.container_ids:
                logger.warning(f"No instance found for program {program_id}")
                return False

            cmd = ["docker", "update"]
            if limits.cpu_limit:
                cmd.extend(["--cpus", str(limits.cpu_limit)])
            if limits.memory_limit:
                cmd.extend(["--memory", limits.memory_limit, "--memory-swap", limits.memory_limit])
            if limits.memory_request:
                cmd.extend(["--memory-reservation", limits.memory_request])
            if limits.cpu_request:
                cmd.extend(["--cpu-shares", str(int(limits.cpu_request * 1024))])
            if len(cmd) == 2:
                return True
            cmd.extend(instance.container_ids)

            return_code, _, stderr = await run_docker_command(cmd, timeout=30)
            if return_code != 0:
                logger.error(f"Failed to update resource limits for program {program_id}: {stderr}")
                return False
            request = self._requests.get(program_id)
            if request is not None:
                self._requests[program_id] = request.model_copy(update={"resource_limits": limits})
            logger.info(f"Updated resource limits for program {program_id}")
            return True

    async def undeploy(self, program_id: str) -> bool:
        async with self.registry.exclusive(program_id):
            instance = await self.registry.get(program_id)
            if instance is None:
                logger.info(f"Program {program_id} is not deployed, nothing to undeploy")
                return True

            await self._remove_replicas(instance.container_ids)
            request = self._requests.pop(program_id, None)
            if request is not None:
                await self._remove_image(program_id, self._image_tag(program_id, request))
            await self.registry.remove(program_id)
            if instance.deployment_path:
                shutil.rmtree(instance.deployment_path, ignore_errors=True)

        self._removed(program_id)
        logger.info(f"Undeployed program {program_id}")
        return True

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    async def _inspect(self, container_ids: List[str]) -> List[dict]:
        if not container_ids:
            return []
        return_code, stdout, stderr = await run_docker_command(["docker", "inspect", *container_ids], timeout=10)
        if return_code != 0:
            logger.warning(f"docker inspect failed: {stderr}")
            return []
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse docker inspect output: {e}")
            return []

    async def get_instances(self, program_id: str) -> List[ContainerInstance]:
        instance = await self.registry.get(program_id)
        if instance is None:
            return []
        containers = []
        for data in await self._inspect(instance.container_ids):
            state = data.get("State", {})
            containers.append(ContainerInstance(
                id=data.get("Id", ""),
                name=data.get("Name", "").lstrip("/"),
                status=state.get("Status", "unknown"),
                created_at=parse_docker_time(data.get("Created")),
                started_at=parse_docker_time(state.get("StartedAt")),
                image_id=data.get("Image", ""),
                ports=(data.get("NetworkSettings") or {}).get("Ports") or {},
            ))
        return containers

    async def get_health(self, program_id: str) -> ApplicationHealth:
        instance = await self.registry.get(program_id)
        if instance is None:
            return ApplicationHealth(status=HealthStatus.UNKNOWN, error_message="Instance not found")

        details = {
            "status": instance.status.value,
            "replicas": len(instance.container_ids),
            "url": instance.application_url,
        }
        if instance.status == InstanceStatus.STARTING:
            return ApplicationHealth(status=HealthStatus.STARTING, details=details)

        inspected = await self._inspect(instance.container_ids)
        running = sum(1 for data in inspected if data.get("State", {}).get("Running"))
        checks = [HealthCheckResult(
            name="containers",
            status=HealthStatus.HEALTHY if running and running == len(instance.container_ids) else HealthStatus.UNHEALTHY,
            message=f"{running}/{len(instance.container_ids)} container(s) running",
        )]

        request = self._requests.get(program_id)
        if running and request is not None and request.health_check is not None:
            checks.append(await self._http_check(instance.port, request))

        healthy = all(check.status == HealthStatus.HEALTHY for check in checks)
        return ApplicationHealth(
            status=HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY,
            response_time_ms=checks[-1].duration_ms if len(checks) > 1 else None,
            error_message=None if healthy else next(c.message for c in checks if c.status != HealthStatus.HEALTHY),
            details=details,
            checks=checks,
        )

    async def _http_check(self, port: int, request: ContainerDeploymentRequest) -> HealthCheckResult:
        url = f"http://{self.registry.bind_address}:{port}{request.health_check.path}"
        started = time.monotonic()
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(url, timeout=request.health_check.timeout_seconds)
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

    async def get_logs(self, program_id: str, lines: int = None) -> List[str]:
        instance = await self.registry.get(program_id)
        if instance is None:
            return [f"Instance not found: {program_id}"]
        lines = lines or settings.DEPLOYMENT_LOG_TAIL

        collected: List[str] = []
        for index, container_id in enumerate(instance.container_ids):
            return_code, stdout, stderr = await run_docker_command(
                ["docker", "logs", "--tail", str(lines), container_id], timeout=30
            )
            if return_code != 0:
                collected.append(f"Error getting logs for {container_id[:12]}: {stderr}")
                continue
            # Containers write to either stream
            text = "\n".join(part for part in (stdout, stderr) if part)
            prefix = f"[replica {index}] " if len(instance.container_ids) > 1 else ""
            collected.extend(f"{prefix}{line}" for line in text.splitlines())
        return collected

    async def get_metrics(self, program_id: str) -> ApplicationMetrics:
        instance = await self.registry.get(program_id)
        if instance is None:
            return ApplicationMetrics(program_id=program_id, active_instances=0)

        usage = ContainerResourceUsage()
        running = 0
        estimated_fields: List[str] = []
        if instance.container_ids:
            return_code, stdout, stderr = await run_docker_command(
                ["docker", "stats", "--no-stream", "--format", "{{json .}}", *instance.container_ids], timeout=30
            )
            if return_code != 0:
                logger.warning(f"docker stats failed for program {program_id}: {stderr}")
                estimated_fields = ["cpu_usage_percent", "memory_usage_bytes", "disk_usage_bytes"]
            for line in stdout.splitlines() if return_code == 0 else []:
                try:
                    stats = json.loads(line)
                except json.JSONDecodeError:
                    continue
                running += 1
                memory_used, memory_limit = parse_pair(stats.get("MemUsage", ""))
                rx, tx = parse_pair(stats.get("NetIO", ""))
                _, block_written = parse_pair(stats.get("BlockIO", ""))
                usage.cpu_percent += parse_percent(stats.get("CPUPerc", ""))
                usage.memory_usage_bytes += memory_used
                usage.memory_limit_bytes += memory_limit
                usage.network_rx_bytes += rx
                usage.network_tx_bytes += tx
                usage.disk_usage_bytes += block_written

        active = instance.status == InstanceStatus.ACTIVE
        uptime_hours = 0.0
        if active and instance.started_at:
            uptime_hours = (datetime.utcnow() - instance.started_at).total_seconds() / 3600
        return ApplicationMetrics(
            program_id=program_id,
            cpu_usage_percent=usage.cpu_percent,
            memory_usage_bytes=usage.memory_usage_bytes,
            disk_usage_bytes=usage.disk_usage_bytes,
            active_instances=running if active else 0,
            custom_metrics={
                "replicas": len(instance.container_ids),
                "memory_limit_bytes": usage.memory_limit_bytes,
                "network_rx_bytes": usage.network_rx_bytes,
                "network_tx_bytes": usage.network_tx_bytes,
                "uptime_hours": round(uptime_hours, 4),
            },
            estimated=bool(estimated_fields),
            estimated_fields=estimated_fields,
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
        request = self._as_container_request(request)
        result = DeploymentValidationResult()
        self.validate_port(request.port, result)
        if await self.registry.get(program_id) is not None:
            result.is_valid = False
            result.errors.append(f"Application is already deployed: {program_id}")

        limits = request.resource_limits
        for value in (limits.memory_limit, limits.memory_request) if limits else ():
            if value and parse_size(value) == 0:
                result.is_valid = False
                result.errors.append(f"Invalid memory size: {value}")
        if limits and limits.memory_limit and limits.memory_request:
            if parse_size(limits.memory_request) > parse_size(limits.memory_limit):
                result.warnings.append("memory_request exceeds memory_limit")

        span = self.registry.port_range_end - self.registry.port_range_start + 1
        if request.replicas > span:
            result.is_valid = False
            result.errors.append(f"{request.replicas} replicas exceed the {span} ports available")
        if request.replicas > 1 and request.health_check is None:
            result.recommendations.append("Configure a health check when running more than one replica")

        if files is not None:
            paths = {f.path.replace("\\", "/").lstrip("/") for f in files}
            if request.dockerfile_path.lstrip("/") not in paths:
                result.is_valid = False
                result.errors.append(f"{request.dockerfile_path} not found in deployment files")
            await self.validate_files(files, result)

        result.validated_configuration = {
            "deployment_type": self.deployment_type.value,
            "image": self._image_tag(program_id, request),
            "replicas": request.replicas,
            "container_port": self._app_port(request),
            "port": request.port,
        }
        return result
