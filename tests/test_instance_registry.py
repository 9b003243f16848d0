"""
Tests for the instance registry and port allocator.

Tests cover:
- Register / get / update / remove returning copies
- Duplicate registration and port clashes
- Port allocation (preferred, range, exhaustion, host-bound ports)
- Concurrent allocation never handing out the same port
- Per-program serialization

Run with: pytest tests/test_instance_registry.py -v
"""
import asyncio
import socket

import pytest


def _registry(start=47100, end=47199):
    from execution_engine.services.deployment.instance_registry import InstanceRegistry
    return InstanceRegistry(port_range_start=start, port_range_end=end, bind_address="127.0.0.1")


def _instance(program_id="app", port=None, **kwargs):
    from execution_engine.schemas.deployment import AppDeploymentType
    from execution_engine.services.deployment.instance_registry import AppInstance
    return AppInstance(program_id=program_id, deployment_type=AppDeploymentType.STATIC_SITE, port=port, **kwargs)


class TestInstances:
    """Tests for instance bookkeeping."""

    @pytest.mark.asyncio
    async def test_callers_receive_copies(self):
        """Test mutating a returned instance does not change the registry."""
        registry = _registry()
        await registry.register(_instance(configuration={"a": 1}))

        snapshot = await registry.get("app")
        snapshot.configuration["a"] = 2
        snapshot.container_ids.append("x")

        stored = await registry.get("app")
        assert stored.configuration == {"a": 1}
        assert stored.container_ids == []

    @pytest.mark.asyncio
    async def test_duplicate_registration(self):
        """Test a program can only be registered once."""
        from execution_engine.core.exceptions import DuplicateInstanceError

        registry = _registry()
        await registry.register(_instance())

        with pytest.raises(DuplicateInstanceError) as exc_info:
            await registry.register(_instance())
        assert "already deployed" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_register_port_clash(self):
        """Test two instances cannot hold the same port."""
        from execution_engine.core.exceptions import InvalidConfigurationError

        registry = _registry()
        await registry.register(_instance("a", port=47150))

        with pytest.raises(InvalidConfigurationError):
            await registry.register(_instance("b", replica_ports=[47151, 47150]))

    @pytest.mark.asyncio
    async def test_update(self):
        """Test updates apply and clash checks exclude the instance itself."""
        from execution_engine.core.exceptions import InvalidConfigurationError
        from execution_engine.schemas.deployment import InstanceStatus

        registry = _registry()
        await registry.register(_instance("a", port=47150))
        await registry.register(_instance("b", port=47160))

        updated = await registry.update("a", status=InstanceStatus.ACTIVE, port=47150)
        assert updated.status == InstanceStatus.ACTIVE

        with pytest.raises(InvalidConfigurationError):
            await registry.update("a", replica_ports=[47160])

    @pytest.mark.asyncio
    async def test_update_unknown_field(self):
        """Test unknown fields are rejected."""
        from execution_engine.core.exceptions import InvalidConfigurationError

        registry = _registry()
        await registry.register(_instance())

        with pytest.raises(InvalidConfigurationError):
            await registry.update("app", colour="blue")

    @pytest.mark.asyncio
    async def test_missing_instance(self):
        """Test require and update raise for unknown programs, remove does not."""
        from execution_engine.core.exceptions import InstanceNotFoundError

        registry = _registry()

        with pytest.raises(InstanceNotFoundError):
            await registry.require("ghost")
        with pytest.raises(InstanceNotFoundError):
            await registry.update("ghost", port=47101)
        assert await registry.remove("ghost") is None

    @pytest.mark.asyncio
    async def test_remove_frees_ports(self):
        """Test a removed instance's ports can be allocated again."""
        registry = _registry(47120, 47120)
        port = await registry.allocate_port()
        await registry.register(_instance(port=port))

        removed = await registry.remove("app")

        assert removed.program_id == "app"
        assert await registry.list_instances() == []
        assert await registry.allocate_port() == port


class TestPorts:
    """Tests for port allocation."""

    @pytest.mark.asyncio
    async def test_concurrent_allocations_are_distinct(self):
        """Test parallel allocations never hand out the same port."""
        registry = _registry(47200, 47219)

        ports = await asyncio.gather(*(registry.allocate_port() for _ in range(10)))

        assert len(set(ports)) == 10
        assert all(47200 <= p <= 47219 for p in ports)

    @pytest.mark.asyncio
    async def test_preferred_port(self):
        """Test a free preferred port is honoured and cannot be taken twice."""
        from execution_engine.core.exceptions import InvalidConfigurationError

        registry = _registry()

        assert await registry.allocate_port(preferred=47300) == 47300
        with pytest.raises(InvalidConfigurationError):
            await registry.allocate_port(preferred=47300)

    @pytest.mark.asyncio
    async def test_preferred_port_out_of_range(self):
        """Test privileged and invalid ports are rejected."""
        from execution_engine.core.exceptions import InvalidConfigurationError

        registry = _registry()

        with pytest.raises(InvalidConfigurationError):
            await registry.allocate_port(preferred=80)
        with pytest.raises(InvalidConfigurationError):
            await registry.allocate_port(preferred=70000)

    @pytest.mark.asyncio
    async def test_exhaustion(self):
        """Test an exhausted range raises PortAllocationError."""
        from execution_engine.core.exceptions import PortAllocationError

        registry = _registry(47400, 47401)
        await registry.allocate_port()
        await registry.allocate_port()

        with pytest.raises(PortAllocationError):
            await registry.allocate_port()

    @pytest.mark.asyncio
    async def test_release(self):
        """Test a released reservation can be allocated again."""
        registry = _registry(47410, 47410)
        port = await registry.allocate_port()

        await registry.release_port(port)
        await registry.release_port(None)

        assert await registry.allocate_port() == port

    @pytest.mark.asyncio
    async def test_skips_host_bound_ports(self):
        """Test a port something else listens on is skipped."""
        registry = _registry(47420, 47421)
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.bind(("127.0.0.1", 47420))
            sock.listen(1)

            assert registry.is_port_bound(47420) is True
            assert await registry.allocate_port() == 47421


class TestExclusive:
    """Tests for per-program serialization."""

    @pytest.mark.asyncio
    async def test_operations_on_one_program_do_not_interleave(self):
        """Test a second operation waits for the first to finish."""
        registry = _registry()
        events = []

        async def operation(name):
            async with registry.exclusive("app"):
                events.append(f"{name}-start")
                await asyncio.sleep(0.05)
                events.append(f"{name}-end")

        await asyncio.gather(operation("first"), operation("second"))

        assert events == ["first-start", "first-end", "second-start", "second-end"]
        assert registry._program_locks == {}

    @pytest.mark.asyncio
    async def test_different_programs_run_concurrently(self):
        """Test operations on different programs overlap."""
        registry = _registry()
        events = []

        async def operation(program_id):
            async with registry.exclusive(program_id):
                events.append(f"{program_id}-start")
                await asyncio.sleep(0.05)
                events.append(f"{program_id}-end")

        await asyncio.gather(operation("a"), operation("b"))

        assert events[:2] == ["a-start", "b-start"]

    @pytest.mark.asyncio
    async def test_program_locks_are_dropped(self):
        """Test locks do not outlive their holders, including after a failed operation."""
        registry = _registry()

        for index in range(5):
            async with registry.exclusive(f"app-{index}"):
                pass
        with pytest.raises(RuntimeError):
            async with registry.exclusive("broken"):
                raise RuntimeError("boom")

        assert registry._program_locks == {}
        assert registry._lock_users == {}
