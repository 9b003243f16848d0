"""
Deployment orchestration service.

Coordinates between:
- DeploymentStrategyRegistry for picking the strategy of a request
- InstanceRegistry for finding the strategy that owns a deployed program
"""
import logging
from typing import Dict, Iterable, List, Optional

from execution_engine.core.events import EventDispatcher
from execution_engine.core.exceptions import InvalidPathError, UnsupportedDeploymentTypeError
from execution_engine.core.paths import require_segment
from execution_engine.schemas.deployment import (
    AppDeploymentRequest,
    AppDeploymentType,
    ApplicationHealth,
    ApplicationMetrics,
    DeploymentResult,
    DeploymentValidationResult,
    HealthStatus,
    ProgramFile,
)
from execution_engine.services.deployment.container_strategy import ContainerDeploymentStrategy
from execution_engine.services.deployment.instance_registry import AppInstance, InstanceRegistry
from execution_engine.services.deployment.prebuilt_strategy import PreBuiltAppDeploymentStrategy
from execution_engine.services.deployment.static_site_strategy import StaticSiteDeploymentStrategy
from execution_engine.services.deployment.strategy_base import DeploymentStrategy

logger = logging.getLogger(__name__)


class DeploymentStrategyRegistry:
    """Strategies keyed by the deployment type they handle."""

    def __init__(self, strategies: Iterable[DeploymentStrategy]):
        self._strategies: Dict[AppDeploymentType, DeploymentStrategy] = {}
        for strategy in strategies:
            self._strategies[strategy.deployment_type] = strategy

    def get(self, deployment_type: AppDeploymentType) -> DeploymentStrategy:
        """
        Raises:
            UnsupportedDeploymentTypeError: If no strategy handles the type
        """
        strategy = self._strategies.get(deployment_type)
        if strategy is None:
            raise UnsupportedDeploymentTypeError(getattr(deployment_type, "value", str(deployment_type)))
        return strategy

    def supported_types(self) -> List[AppDeploymentType]:
        return list(self._strategies)


def build_default_strategies(
    registry: InstanceRegistry = None,
    dispatcher: EventDispatcher = None,
) -> DeploymentStrategyRegistry:
    """The three built-in strategies sharing one instance registry."""
    registry = registry or InstanceRegistry()
    return DeploymentStrategyRegistry([
        PreBuiltAppDeploymentStrategy(registry=registry, dispatcher=dispatcher),
        StaticSiteDeploymentStrategy(registry=registry, dispatcher=dispatcher),
        ContainerDeploymentStrategy(registry=registry, dispatcher=dispatcher),
    ])


class DeploymentService:
    """
    Orchestration service for deployments.

    Requests are routed by their deployment_type; calls for an already
    deployed program go to the strategy recorded on its instance.
    """

    def __init__(self, strategies: DeploymentStrategyRegistry = None, registry: InstanceRegistry = None):
        if strategies is None:
            registry = registry or InstanceRegistry()
            strategies = build_default_strategies(registry)
        self.strategies = strategies
        self.registry = registry or self.strategies.get(self.strategies.supported_types()[0]).registry

    async def _strategy_for(self, program_id: str) -> Optional[DeploymentStrategy]:
        instance = await self.registry.get(program_id)
        if instance is None:
            logger.warning(f"No instance found for program {program_id}")
            return None
        return self.strategies.get(instance.deployment_type)

    async def deploy(
        self,
        program_id: str,
        request: AppDeploymentRequest,
        files: List[ProgramFile],
    ) -> DeploymentResult:
        try:
            require_segment(program_id, "Invalid program id")
            strategy = self.strategies.get(request.deployment_type)
        except (InvalidPathError, UnsupportedDeploymentTypeError) as e:
            logger.warning(e.message)
            return DeploymentResult(success=False, error_message=e.message)
        return await strategy.deploy(program_id, request, files)

    async def validate(
        self,
        program_id: str,
        request: AppDeploymentRequest,
        files: Optional[List[ProgramFile]] = None,
    ) -> DeploymentValidationResult:
        try:
            require_segment(program_id, "Invalid program id")
            strategy = self.strategies.get(request.deployment_type)
        except (InvalidPathError, UnsupportedDeploymentTypeError) as e:
            return DeploymentValidationResult(is_valid=False, errors=[e.message])
        return await strategy.validate(program_id, request, files)

    async def start(self, program_id: str) -> bool:
        strategy = await self._strategy_for(program_id)
        return await strategy.start(program_id) if strategy else False

    async def stop(self, program_id: str) -> bool:
        strategy = await self._strategy_for(program_id)
        return await strategy.stop(program_id) if strategy else False

    async def restart(self, program_id: str) -> bool:
        strategy = await self._strategy_for(program_id)
        return await strategy.restart(program_id) if strategy else False

    async def undeploy(self, program_id: str) -> bool:
        strategy = await self._strategy_for(program_id)
        # Not deployed: nothing to do
        return await strategy.undeploy(program_id) if strategy else True

    async def get_health(self, program_id: str) -> ApplicationHealth:
        strategy = await self._strategy_for(program_id)
        if strategy is None:
            return ApplicationHealth(status=HealthStatus.UNKNOWN, error_message="Instance not found")
        return await strategy.get_health(program_id)

    async def get_logs(self, program_id: str, lines: int = None) -> List[str]:
        strategy = await self._strategy_for(program_id)
        if strategy is None:
            return [f"Instance not found: {program_id}"]
        return await strategy.get_logs(program_id, lines)

    async def get_metrics(self, program_id: str) -> ApplicationMetrics:
        strategy = await self._strategy_for(program_id)
        if strategy is None:
            return ApplicationMetrics(program_id=program_id, active_instances=0)
        return await strategy.get_metrics(program_id)

    async def list_instances(self) -> List[AppInstance]:
        return await self.registry.list_instances()
