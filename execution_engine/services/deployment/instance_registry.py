"""
Process-wide table of deployed instances and the port range they share.

All mutations go through the registry under one asyncio lock; callers only
ever receive copies of the stored instances.
"""
import asyncio
import copy
import logging
import socket
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from execution_engine.core.config import settings
from execution_engine.core.exceptions import (
    DuplicateInstanceError,
    InstanceNotFoundError,
    InvalidConfigurationError,
    PortAllocationError,
)
from execution_engine.schemas.deployment import AppDeploymentType, InstanceStatus

logger = logging.getLogger(__name__)


@dataclass
class AppInstance:
    """A deployed program, owned by the InstanceRegistry."""

    program_id: str
    deployment_type: AppDeploymentType
    port: Optional[int] = None
    deployment_path: Optional[str] = None
    application_url: Optional[str] = None
    status: InstanceStatus = InstanceStatus.STARTING
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    stopped_at: Optional[datetime] = None
    deployment_id: Optional[str] = None
    image_id: Optional[str] = None
    container_ids: List[str] = field(default_factory=list)
    replica_ports: List[int] = field(default_factory=list)
    process_id: Optional[int] = None
    configuration: Dict[str, Any] = field(default_factory=dict)
    resource_usage: Dict[str, Any] = field(default_factory=dict)

    def ports(self) -> Set[int]:
        held = set(self.replica_ports)
        if self.port is not None:
            held.add(self.port)
        return held


class InstanceRegistry:
    """
    Registry of deployed instances plus port allocation.

    Port allocation skips ports held by registered instances, ports
    reserved by allocations that have not been registered yet and ports
    already bound on the host.
    """

    def __init__(
        self,
        port_range_start: int = None,
        port_range_end: int = None,
        bind_address: str = None,
    ):
        self.port_range_start = port_range_start or settings.DEPLOYMENT_PORT_RANGE_START
        self.port_range_end = port_range_end or settings.DEPLOYMENT_PORT_RANGE_END
        self.bind_address = bind_address or settings.DEPLOYMENT_BIND_ADDRESS
        self._instances: Dict[str, AppInstance] = {}
        self._reserved: Set[int] = set()
        self._lock = asyncio.Lock()
        self._program_locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    async def register(self, instance: AppInstance) -> AppInstance:
        """
        Register a new instance.

        Raises:
            DuplicateInstanceError: If the program already has an instance
            InvalidConfigurationError: If one of its ports is held by another instance
        """
        async with self._lock:
            if instance.program_id in self._instances:
                raise DuplicateInstanceError(instance.program_id)
            held = self._held_ports()
            for port in instance.ports():
                if port in held:
                    raise InvalidConfigurationError("port", f"Port {port} is already held by another instance")
            stored = copy.deepcopy(instance)
            self._instances[instance.program_id] = stored
            self._reserved.difference_update(stored.ports())
            logger.info(f"Registered instance {instance.program_id} on ports {sorted(stored.ports())}")
            return copy.deepcopy(stored)

    async def get(self, program_id: str) -> Optional[AppInstance]:
        """Snapshot of the instance, or None."""
        async with self._lock:
            instance = self._instances.get(program_id)
            return copy.deepcopy(instance) if instance else None

    async def require(self, program_id: str) -> AppInstance:
        """
        Raises:
            InstanceNotFoundError: If no instance is registered
        """
        instance = await self.get(program_id)
        if instance is None:
            raise InstanceNotFoundError(program_id)
        return instance

    async def update(self, program_id: str, **changes) -> AppInstance:
        """
        Apply field changes to a registered instance.

        Port changes are checked against every other instance.

        Raises:
            InstanceNotFoundError: If no instance is registered
            InvalidConfigurationError: If a new port is held elsewhere
        """
        async with self._lock:
            instance = self._instances.get(program_id)
            if instance is None:
                raise InstanceNotFoundError(program_id)

            if "port" in changes or "replica_ports" in changes:
                held = self._held_ports(exclude=program_id)
                new_ports = set(changes.get("replica_ports", instance.replica_ports))
                port = changes.get("port", instance.port)
                if port is not None:
                    new_ports.add(port)
                clash = new_ports & held
                if clash:
                    raise InvalidConfigurationError("port", f"Ports {sorted(clash)} are held by another instance")
                self._reserved.difference_update(new_ports)

            for key, value in changes.items():
                if not hasattr(instance, key):
                    raise InvalidConfigurationError(key, "Unknown instance field")
                setattr(instance, key, copy.deepcopy(value))
            return copy.deepcopy(instance)

    async def remove(self, program_id: str) -> Optional[AppInstance]:
        """Remove and return the instance; None when it was not registered."""
        async with self._lock:
            instance = self._instances.pop(program_id, None)
            if instance is not None:
                logger.info(f"Removed instance {program_id}")
            return instance

    async def list_instances(self) -> List[AppInstance]:
        async with self._lock:
            return [copy.deepcopy(i) for i in self._instances.values()]

    # -------------------------------------------------------------------------
    # Ports
    # -------------------------------------------------------------------------

    def _held_ports(self, exclude: Optional[str] = None) -> Set[int]:
        held: Set[int] = set()
        for program_id, instance in self._instances.items():
            if program_id != exclude:
                held |= instance.ports()
        return held

    def is_port_bound(self, port: int) -> bool:
        """True if something on the host is already listening on the port."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((self.bind_address, port))
            except OSError:
                return True
        return False

    async def allocate_port(self, preferred: Optional[int] = None) -> int:
        """
        Reserve a free port until it is registered or released.

        Args:
            preferred: Port to use when it is free; must be 1024-65535

        Raises:
            InvalidConfigurationError: If the preferred port is out of range or taken
            PortAllocationError: If the range is exhausted
        """
        async with self._lock:
            unavailable = self._held_ports() | self._reserved
            if preferred is not None:
                if preferred < 1024 or preferred > 65535:
                    raise InvalidConfigurationError("port", "Port must be between 1024 and 65535")
                if preferred in unavailable or self.is_port_bound(preferred):
                    raise InvalidConfigurationError("port", f"Port {preferred} is already in use")
                self._reserved.add(preferred)
                return preferred

            for port in range(self.port_range_start, self.port_range_end + 1):
                if port in unavailable or self.is_port_bound(port):
                    continue
                self._reserved.add(port)
                logger.info(f"Allocated port {port}")
                return port

        raise PortAllocationError(self.port_range_start, self.port_range_end)

    async def release_port(self, port: Optional[int]) -> None:
        """Drop a reservation that never made it into a registered instance."""
        if port is None:
            return
        async with self._lock:
            self._reserved.discard(port)

    # -------------------------------------------------------------------------
    # Per-program serialization
    # -------------------------------------------------------------------------

    @asynccontextmanager
    async def exclusive(self, program_id: str) -> AsyncIterator[None]:
        """
        Serialize lifecycle operations for one program.

        The lock is dropped once its last holder or waiter leaves.
        """
        lock = self._program_locks.setdefault(program_id, asyncio.Lock())
        self._lock_users[program_id] = self._lock_users.get(program_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[program_id] -= 1
            if not self._lock_users[program_id]:
                del self._lock_users[program_id]
                del self._program_locks[program_id]
