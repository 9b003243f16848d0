"""
Tests for the container deployment strategy.

The docker CLI is replaced by FakeDocker, which answers each verb with
canned output and records every command.

Tests cover:
- Image build and replica containers (run vs create)
- Failure cleanup (missing Dockerfile, build failure, run failure)
- Duplicate deployment and idempotent undeploy
- Lifecycle, scaling and resource limit updates
- Health, logs and metrics from docker inspect / logs / stats
- Request validation

Run with: pytest tests/test_container_strategy.py -v
"""
import json
from unittest.mock import patch

import pytest


DOCKER_PATCH = "execution_engine.services.deployment.container_strategy.run_docker_command"


class FakeDocker:
    """Stands in for run_docker_command."""

    def __init__(self, fail=None, running=True, stats_ok=True):
        self.commands = []
        self.fail = dict(fail or {})
        self.running = running
        self.stats_ok = stats_ok
        self._containers = 0

    def verbs(self):
        return [cmd[1] for cmd in self.commands]

    def find(self, verb):
        return [cmd for cmd in self.commands if cmd[1] == verb]

    async def __call__(self, cmd, timeout=30):
        self.commands.append(list(cmd))
        verb = cmd[1]
        if verb in self.fail:
            return 1, "", self.fail[verb]
        if verb == "image":
            return 0, "sha256:" + "ab" * 32, ""
        if verb in ("run", "create"):
            self._containers += 1
            return 0, f"{self._containers:064d}", ""
        if verb == "inspect":
            return 0, json.dumps([
                {
                    "Id": container_id,
                    "Name": f"/app-web-{index}",
                    "Created": "2024-05-01T10:00:00.123456789Z",
                    "Image": "sha256:image",
                    "State": {"Running": self.running, "Status": "running" if self.running else "exited",
                              "StartedAt": "2024-05-01T10:00:01.5Z"},
                    "NetworkSettings": {"Ports": {"8080/tcp": [{"HostPort": "47600"}]}},
                }
                for index, container_id in enumerate(cmd[2:])
            ]), ""
        if verb == "logs":
            return 0, "listening on 8080", "warning: debug mode"
        if verb == "stats":
            if not self.stats_ok:
                return 1, "", "Cannot connect to the Docker daemon"
            line = json.dumps({
                "CPUPerc": "12.5%",
                "MemUsage": "10MiB / 512MiB",
                "NetIO": "1kB / 2kB",
                "BlockIO": "0B / 4kB",
            })
            return 0, "\n".join(line for _ in cmd[5:]), ""
        return 0, "", ""


FILES = {
    "Dockerfile": b"FROM python:3.12-slim\nCOPY . /app\nCMD [\"python\", \"/app/main.py\"]\n",
    "main.py": b"print('serving')\n",
}


def _files(**overrides):
    from execution_engine.schemas.deployment import ProgramFile
    files = {**FILES, **overrides}
    return [ProgramFile(path=path, content=content) for path, content in files.items() if content is not None]


def _strategy(tmp_path, dispatcher):
    from execution_engine.services.deployment.container_strategy import ContainerDeploymentStrategy
    from execution_engine.services.deployment.instance_registry import InstanceRegistry
    return ContainerDeploymentStrategy(
        registry=InstanceRegistry(port_range_start=47600, port_range_end=47699, bind_address="127.0.0.1"),
        dispatcher=dispatcher,
        deployment_path=str(tmp_path / "deployments"),
        host="127.0.0.1",
        container_prefix="app",
        container_port=8080,
    )


def _request(**kwargs):
    from execution_engine.schemas.deployment import ContainerDeploymentRequest
    return ContainerDeploymentRequest(**kwargs)


class TestDeploy:
    """Tests for ContainerDeploymentStrategy.deploy."""

    @pytest.mark.asyncio
    async def test_deploy_replicas(self, tmp_path, dispatcher):
        """Test the image is built and every replica gets its own host port."""
        from execution_engine.core.events import DeploymentCreatedEvent
        from execution_engine.schemas.deployment import ContainerResourceLimits, InstanceStatus

        strategy = _strategy(tmp_path, dispatcher)
        docker = FakeDocker()
        created = []
        dispatcher.register(DeploymentCreatedEvent, created.append)
        request = _request(
            replicas=2,
            environment={"MODE": "prod"},
            build_args={"VERSION": "1"},
            resource_limits=ContainerResourceLimits(cpu_limit=1.5, memory_limit="256m"),
        )

        with patch(DOCKER_PATCH, new=docker):
            result = await strategy.deploy("web", request, _files())

        assert result.success is True, result.error_message
        assert result.metadata["image"] == "app-web:latest"
        assert result.metadata["replicas"] == 2
        ports = result.metadata["ports"]
        assert len(set(ports)) == 2
        assert result.application_url == f"http://127.0.0.1:{ports[0]}/"
        assert created[0].deployment_type == "docker_container"

        build = docker.find("build")[0]
        assert "--build-arg" in build and "VERSION=1" in build
        runs = docker.find("run")
        assert len(runs) == 2
        assert runs[0][:3] == ["docker", "run", "-d"]
        assert "app-web-0" in runs[0] and "app-web-1" in runs[1]
        assert f"127.0.0.1:{ports[1]}:8080" in runs[1]
        assert "MODE=prod" in runs[0] and "PORT=8080" in runs[0]
        assert runs[0][runs[0].index("--memory") + 1] == "256m"
        assert runs[0][runs[0].index("--cpus") + 1] == "1.5"

        instance = await strategy.registry.get("web")
        assert instance.status == InstanceStatus.ACTIVE
        assert instance.replica_ports == ports
        assert len(instance.container_ids) == 2

    @pytest.mark.asyncio
    async def test_deploy_without_auto_start_creates(self, tmp_path, dispatcher):
        """Test auto_start=False creates containers without starting them."""
        from execution_engine.schemas.deployment import InstanceStatus

        strategy = _strategy(tmp_path, dispatcher)
        docker = FakeDocker()

        with patch(DOCKER_PATCH, new=docker):
            result = await strategy.deploy("web", _request(auto_start=False), _files())

        assert result.success is True
        assert "run" not in docker.verbs()
        assert docker.find("create")[0][:2] == ["docker", "create"]
        assert (await strategy.registry.get("web")).status == InstanceStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_missing_dockerfile(self, tmp_path, dispatcher):
        """Test a deployment without its Dockerfile fails before building."""
        strategy = _strategy(tmp_path, dispatcher)
        docker = FakeDocker()

        with patch(DOCKER_PATCH, new=docker):
            result = await strategy.deploy("web", _request(), _files(Dockerfile=None))

        assert result.success is False
        assert "Dockerfile not found" in result.error_message
        assert docker.commands == []

    @pytest.mark.asyncio
    async def test_second_deploy_is_a_duplicate(self, tmp_path, dispatcher):
        """Test deploying twice fails the second time without touching docker."""
        strategy = _strategy(tmp_path, dispatcher)
        docker = FakeDocker()

        with patch(DOCKER_PATCH, new=docker):
            await strategy.deploy("web", _request(), _files())
            issued = len(docker.commands)
            second = await strategy.deploy("web", _request(), _files())

        assert second.success is False
        assert "already deployed" in second.error_message
        assert len(docker.commands) == issued

    @pytest.mark.asyncio
    async def test_build_failure(self, tmp_path, dispatcher):
        """Test a failed docker build fails the deployment, registers nothing and leaves no files."""
        strategy = _strategy(tmp_path, dispatcher)
        docker = FakeDocker(fail={"build": "step 2/3 failed"})

        with patch(DOCKER_PATCH, new=docker):
            result = await strategy.deploy("web", _request(), _files())

        assert result.success is False
        assert "step 2/3 failed" in result.error_message
        assert await strategy.registry.get("web") is None
        assert docker.find("rmi") == []
        assert not (tmp_path / "deployments" / "docker_container" / "web").exists()

    @pytest.mark.asyncio
    async def test_run_failure_cleans_up(self, tmp_path, dispatcher):
        """Test a failed replica removes its containers, the built image and the files, and frees ports."""
        strategy = _strategy(tmp_path, dispatcher)
        docker = FakeDocker(fail={"run": "port is already allocated"})

        with patch(DOCKER_PATCH, new=docker):
            result = await strategy.deploy("web", _request(port=47650), _files())

        assert result.success is False
        assert "port is already allocated" in result.error_message
        assert ["docker", "rm", "-f", "app-web-0"] in docker.commands
        assert await strategy.registry.allocate_port(preferred=47650) == 47650
        assert docker.find("rmi") == [["docker", "rmi", "app-web:latest"]]
        assert not (tmp_path / "deployments" / "docker_container" / "web").exists()


class TestLifecycle:
    """Tests for start / stop / restart, scale, limits and undeploy."""

    @pytest.mark.asyncio
    async def test_stop_and_start(self, tmp_path, dispatcher):
        """Test lifecycle calls address every replica and update the status."""
        from execution_engine.schemas.deployment import InstanceStatus

        strategy = _strategy(tmp_path, dispatcher)
        docker = FakeDocker()

        with patch(DOCKER_PATCH, new=docker):
            await strategy.deploy("web", _request(replicas=2), _files())
            assert await strategy.stop("web") is True
            stopped = await strategy.registry.get("web")
            assert await strategy.start("web") is True
            assert await strategy.restart("web") is True

        assert stopped.status == InstanceStatus.INACTIVE
        assert docker.find("stop")[0][2:] == stopped.container_ids
        assert (await strategy.registry.get("web")).status == InstanceStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_failed_lifecycle_call(self, tmp_path, dispatcher):
        """Test a failing docker command marks the instance FAILED."""
        from execution_engine.schemas.deployment import InstanceStatus

        strategy = _strategy(tmp_path, dispatcher)

        with patch(DOCKER_PATCH, new=FakeDocker()):
            await strategy.deploy("web", _request(), _files())
        with patch(DOCKER_PATCH, new=FakeDocker(fail={"start": "no such container"})):
            assert await strategy.start("web") is False

        assert (await strategy.registry.get("web")).status == InstanceStatus.FAILED

    @pytest.mark.asyncio
    async def test_unknown_program(self, tmp_path, dispatcher):
        """Test calls on an unknown program report absence."""
        from execution_engine.schemas.deployment import ContainerResourceLimits, HealthStatus

        strategy = _strategy(tmp_path, dispatcher)

        with patch(DOCKER_PATCH, new=FakeDocker()) as docker:
            assert await strategy.start("ghost") is False
            assert await strategy.scale("ghost", 2) is False
            assert await strategy.update_resource_limits("ghost", ContainerResourceLimits(cpu_limit=1)) is False
            assert await strategy.get_instances("ghost") == []
            assert (await strategy.get_health("ghost")).status == HealthStatus.UNKNOWN
            assert await strategy.get_logs("ghost") == ["Instance not found: ghost"]
            assert (await strategy.get_metrics("ghost")).active_instances == 0

        assert docker.commands == []

    @pytest.mark.asyncio
    async def test_scale_up_and_down(self, tmp_path, dispatcher):
        """Test scaling adds replicas at the end and removes from the end."""
        strategy = _strategy(tmp_path, dispatcher)
        docker = FakeDocker()

        with patch(DOCKER_PATCH, new=docker):
            await strategy.deploy("web", _request(), _files())
            assert await strategy.scale("web", 3) is True
            scaled = await strategy.registry.get("web")
            assert await strategy.scale("web", 1) is True

        assert len(scaled.container_ids) == 3
        assert len(set(scaled.replica_ports)) == 3
        assert "app-web-2" in docker.find("run")[-1]
        removed = [cmd[3] for cmd in docker.find("rm")]
        assert removed == scaled.container_ids[1:]

        final = await strategy.registry.get("web")
        assert final.container_ids == scaled.container_ids[:1]
        assert final.replica_ports == scaled.replica_ports[:1]

        with pytest.raises(ValueError):
            await strategy.scale("web", 0)

    @pytest.mark.asyncio
    async def test_update_resource_limits(self, tmp_path, dispatcher):
        """Test limits are applied with docker update."""
        from execution_engine.schemas.deployment import ContainerResourceLimits

        strategy = _strategy(tmp_path, dispatcher)
        docker = FakeDocker()

        with patch(DOCKER_PATCH, new=docker):
            await strategy.deploy("web", _request(), _files())
            assert await strategy.update_resource_limits(
                "web", ContainerResourceLimits(cpu_limit=2, memory_limit="1g"),
            ) is True
            assert await strategy.update_resource_limits("web", ContainerResourceLimits()) is True

        updates = docker.find("update")
        assert len(updates) == 1
        assert updates[0][2:8] == ["--cpus", "2.0", "--memory", "1g", "--memory-swap", "1g"]

    @pytest.mark.asyncio
    async def test_undeploy_is_idempotent(self, tmp_path, dispatcher):
        """Test undeploy removes containers and image once, then is a no-op."""
        from execution_engine.core.events import DeploymentRemovedEvent

        strategy = _strategy(tmp_path, dispatcher)
        docker = FakeDocker()
        removed = []
        dispatcher.register(DeploymentRemovedEvent, removed.append)

        with patch(DOCKER_PATCH, new=docker):
            await strategy.deploy("web", _request(replicas=2), _files())
            assert await strategy.undeploy("web") is True
            assert await strategy.undeploy("web") is True

        assert len(docker.find("rm")) == 2
        assert docker.find("rmi") == [["docker", "rmi", "app-web:latest"]]
        assert len(removed) == 1
        assert await strategy.registry.get("web") is None
        assert not (tmp_path / "deployments" / "docker_container" / "web").exists()


class TestObservability:
    """Tests for health, logs, metrics and container details."""

    @pytest.mark.asyncio
    async def test_health(self, tmp_path, dispatcher):
        """Test health counts running containers."""
        from execution_engine.schemas.deployment import HealthStatus

        strategy = _strategy(tmp_path, dispatcher)

        with patch(DOCKER_PATCH, new=FakeDocker()):
            await strategy.deploy("web", _request(replicas=2), _files())
            healthy = await strategy.get_health("web")
        with patch(DOCKER_PATCH, new=FakeDocker(running=False)):
            unhealthy = await strategy.get_health("web")

        assert healthy.status == HealthStatus.HEALTHY
        assert healthy.checks[0].message == "2/2 container(s) running"
        assert unhealthy.status == HealthStatus.UNHEALTHY
        assert unhealthy.error_message == "0/2 container(s) running"

    @pytest.mark.asyncio
    async def test_health_check_failure(self, tmp_path, dispatcher):
        """Test a configured HTTP health check that gets no answer is unhealthy."""
        from execution_engine.schemas.deployment import ContainerHealthCheck, HealthStatus

        strategy = _strategy(tmp_path, dispatcher)

        with patch(DOCKER_PATCH, new=FakeDocker()):
            await strategy.deploy("web", _request(health_check=ContainerHealthCheck(timeout_seconds=1)), _files())
            health = await strategy.get_health("web")

        # Nothing listens on the allocated port
        assert health.status == HealthStatus.UNHEALTHY
        assert [c.name for c in health.checks] == ["containers", "http"]
        assert "not responding" in health.error_message

    @pytest.mark.asyncio
    async def test_logs_are_prefixed_per_replica(self, tmp_path, dispatcher):
        """Test multi-replica logs carry the replica index."""
        strategy = _strategy(tmp_path, dispatcher)

        with patch(DOCKER_PATCH, new=FakeDocker()):
            await strategy.deploy("web", _request(replicas=2), _files())
            logs = await strategy.get_logs("web", lines=10)

        assert logs == [
            "[replica 0] listening on 8080",
            "[replica 0] warning: debug mode",
            "[replica 1] listening on 8080",
            "[replica 1] warning: debug mode",
        ]

    @pytest.mark.asyncio
    async def test_metrics(self, tmp_path, dispatcher):
        """Test docker stats are summed across replicas."""
        strategy = _strategy(tmp_path, dispatcher)

        with patch(DOCKER_PATCH, new=FakeDocker()):
            await strategy.deploy("web", _request(replicas=2), _files())
            metrics = await strategy.get_metrics("web")

        assert metrics.active_instances == 2
        assert metrics.cpu_usage_percent == 25.0
        assert metrics.memory_usage_bytes == 20 * 1024 * 1024
        assert metrics.disk_usage_bytes == 8000
        assert metrics.custom_metrics["memory_limit_bytes"] == 1024 * 1024 * 1024
        assert metrics.custom_metrics["network_rx_bytes"] == 2000
        assert metrics.estimated is False

    @pytest.mark.asyncio
    async def test_metrics_without_stats(self, tmp_path, dispatcher):
        """Test unavailable stats are flagged as estimated."""
        strategy = _strategy(tmp_path, dispatcher)

        with patch(DOCKER_PATCH, new=FakeDocker()):
            await strategy.deploy("web", _request(), _files())
        with patch(DOCKER_PATCH, new=FakeDocker(stats_ok=False)):
            metrics = await strategy.get_metrics("web")

        assert metrics.estimated is True
        assert "memory_usage_bytes" in metrics.estimated_fields
        assert metrics.memory_usage_bytes == 0

    @pytest.mark.asyncio
    async def test_get_instances(self, tmp_path, dispatcher):
        """Test docker inspect output is mapped to ContainerInstance."""
        from datetime import datetime, timezone

        strategy = _strategy(tmp_path, dispatcher)

        with patch(DOCKER_PATCH, new=FakeDocker()):
            await strategy.deploy("web", _request(), _files())
            instances = await strategy.get_instances("web")

        assert len(instances) == 1
        assert instances[0].name == "app-web-0"
        assert instances[0].status == "running"
        assert instances[0].created_at == datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)
        assert "8080/tcp" in instances[0].ports

    def test_parse_docker_time(self):
        """Test nanosecond timestamps parse and the zero time is None."""
        from datetime import datetime, timezone

        from execution_engine.services.deployment.container_strategy import parse_docker_time

        assert parse_docker_time("2024-05-01T10:00:01.123456789Z") == datetime(2024, 5, 1, 10, 0, 1, tzinfo=timezone.utc)
        assert parse_docker_time("0001-01-01T00:00:00Z") is None
        assert parse_docker_time("") is None
        assert parse_docker_time("yesterday") is None


class TestValidate:
    """Tests for validate."""

    @pytest.mark.asyncio
    async def test_valid_request(self, tmp_path, dispatcher):
        """Test a complete request validates and reports the image."""
        result = await _strategy(tmp_path, dispatcher).validate("web", _request(), _files())

        assert result.is_valid is True, result.errors
        assert result.validated_configuration["image"] == "app-web:latest"
        assert result.validated_configuration["container_port"] == 8080

    @pytest.mark.asyncio
    async def test_invalid_request(self, tmp_path, dispatcher):
        """Test limit, replica and Dockerfile problems are all reported."""
        from execution_engine.schemas.deployment import ContainerResourceLimits

        request = _request(
            replicas=200,
            resource_limits=ContainerResourceLimits(memory_limit="lots", memory_request="1g"),
        )

        result = await _strategy(tmp_path, dispatcher).validate("web", request, _files(Dockerfile=None))

        assert result.is_valid is False
        assert "Invalid memory size: lots" in result.errors
        assert "200 replicas exceed the 100 ports available" in result.errors
        assert "Dockerfile not found in deployment files" in result.errors
        assert any("health check" in r for r in result.recommendations)

    @pytest.mark.asyncio
    async def test_memory_request_above_limit(self, tmp_path, dispatcher):
        """Test a reservation above the limit is a warning only."""
        from execution_engine.schemas.deployment import ContainerResourceLimits

        request = _request(resource_limits=ContainerResourceLimits(memory_limit="256m", memory_request="1g"))

        result = await _strategy(tmp_path, dispatcher).validate("web", request)

        assert result.is_valid is True
        assert "memory_request exceeds memory_limit" in result.warnings
