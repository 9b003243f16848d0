"""
Tests for DeploymentService routing.

Tests cover:
- Requests routed by deployment_type
- Lifecycle calls routed to the strategy that owns the instance
- One program id per registry across all strategies
- Unsupported types, unsafe program ids and not-found fallbacks

Run with: pytest tests/test_deployment_service.py -v
"""
import pytest


def _files():
    from execution_engine.schemas.deployment import ProgramFile
    return [ProgramFile(path="index.html", content=b"<html><head></head><body>ok</body></html>")]


def _service(tmp_path, dispatcher, only_static=False):
    from execution_engine.services.deployment.deployment_service import (
        DeploymentService,
        DeploymentStrategyRegistry,
    )
    from execution_engine.services.deployment.instance_registry import InstanceRegistry
    from execution_engine.services.deployment.prebuilt_strategy import PreBuiltAppDeploymentStrategy
    from execution_engine.services.deployment.static_site_strategy import StaticSiteDeploymentStrategy

    registry = InstanceRegistry(port_range_start=47700, port_range_end=47799, bind_address="127.0.0.1")
    options = dict(registry=registry, dispatcher=dispatcher, deployment_path=str(tmp_path / "deployments"))
    strategies = [StaticSiteDeploymentStrategy(**options)]
    if not only_static:
        strategies.append(PreBuiltAppDeploymentStrategy(**options))
    return DeploymentService(DeploymentStrategyRegistry(strategies), registry)


class TestRouting:
    """Tests for request and lifecycle routing."""

    @pytest.mark.asyncio
    async def test_requests_go_to_their_strategy(self, tmp_path, dispatcher):
        """Test each deployment type lands in its own directory tree."""
        from execution_engine.schemas.deployment import (
            AppDeploymentRequest,
            AppDeploymentType,
            StaticSiteDeploymentRequest,
        )

        service = _service(tmp_path, dispatcher)

        site = await service.deploy("site", StaticSiteDeploymentRequest(auto_start=False), _files())
        app = await service.deploy("app", AppDeploymentRequest(auto_start=False), _files())

        assert site.success and app.success
        assert "/static_site/site" in site.metadata["deployment_path"]
        assert "/pre_built_web_app/app" in app.metadata["deployment_path"]
        instances = {i.program_id: i.deployment_type for i in await service.list_instances()}
        assert instances == {"site": AppDeploymentType.STATIC_SITE, "app": AppDeploymentType.PRE_BUILT_WEB_APP}

    @pytest.mark.asyncio
    async def test_program_id_is_unique_across_types(self, tmp_path, dispatcher):
        """Test a program deployed by one strategy cannot be deployed by another."""
        from execution_engine.schemas.deployment import AppDeploymentRequest, StaticSiteDeploymentRequest

        service = _service(tmp_path, dispatcher)

        await service.deploy("shared", StaticSiteDeploymentRequest(auto_start=False), _files())
        second = await service.deploy("shared", AppDeploymentRequest(auto_start=False), _files())

        assert second.success is False
        assert second.error_message == "Application is already deployed: shared"

    @pytest.mark.asyncio
    async def test_lifecycle_follows_the_instance(self, tmp_path, dispatcher):
        """Test stop and undeploy reach the owning strategy."""
        from execution_engine.schemas.deployment import AppDeploymentRequest, InstanceStatus

        service = _service(tmp_path, dispatcher)
        await service.deploy("app", AppDeploymentRequest(auto_start=False), _files())

        assert await service.stop("app") is True
        assert (await service.registry.get("app")).status == InstanceStatus.INACTIVE
        assert await service.get_logs("app") == []

        assert await service.undeploy("app") is True
        assert await service.undeploy("app") is True
        assert await service.list_instances() == []

    @pytest.mark.asyncio
    async def test_unsupported_type(self, tmp_path, dispatcher):
        """Test a type without a strategy fails deploy and validate."""
        from execution_engine.schemas.deployment import ContainerDeploymentRequest

        service = _service(tmp_path, dispatcher, only_static=True)

        result = await service.deploy("box", ContainerDeploymentRequest(), _files())
        validation = await service.validate("box", ContainerDeploymentRequest())

        assert result.success is False
        assert result.error_message == "Unsupported deployment type: docker_container"
        assert validation.is_valid is False
        assert validation.errors == ["Unsupported deployment type: docker_container"]

    @pytest.mark.asyncio
    async def test_validate_routes_by_type(self, tmp_path, dispatcher):
        """Test validation is answered by the request's strategy."""
        from execution_engine.schemas.deployment import StaticSiteDeploymentRequest

        service = _service(tmp_path, dispatcher)

        result = await service.validate("site", StaticSiteDeploymentRequest(), _files())

        assert result.is_valid is True
        assert result.validated_configuration["deployment_type"] == "static_site"


    @pytest.mark.asyncio
    async def test_rejects_unsafe_program_id(self, tmp_path, dispatcher):
        """Test deploy and validate refuse ids that are not a single path segment."""
        from execution_engine.schemas.deployment import StaticSiteDeploymentRequest

        service = _service(tmp_path, dispatcher)

        result = await service.deploy(".", StaticSiteDeploymentRequest(auto_start=False), _files())
        validation = await service.validate("..", StaticSiteDeploymentRequest(), _files())

        assert result.success is False
        assert result.error_message == "Invalid program id: ."
        assert validation.is_valid is False
        assert validation.errors == ["Invalid program id: .."]
        assert await service.list_instances() == []

class TestNotDeployed:
    """Tests for calls on programs that are not deployed."""

    @pytest.mark.asyncio
    async def test_fallbacks(self, tmp_path, dispatcher):
        """Test every call reports absence without raising."""
        from execution_engine.schemas.deployment import HealthStatus

        service = _service(tmp_path, dispatcher)

        assert await service.start("ghost") is False
        assert await service.stop("ghost") is False
        assert await service.restart("ghost") is False
        assert await service.undeploy("ghost") is True
        assert (await service.get_health("ghost")).status == HealthStatus.UNKNOWN
        assert await service.get_logs("ghost") == ["Instance not found: ghost"]
        assert (await service.get_metrics("ghost")).active_instances == 0

    def test_default_strategies_share_one_registry(self):
        """Test the built-in strategies are wired to the service's registry."""
        from execution_engine.schemas.deployment import AppDeploymentType
        from execution_engine.services.deployment.deployment_service import DeploymentService

        service = DeploymentService()

        assert set(service.strategies.supported_types()) == set(AppDeploymentType)
        for deployment_type in AppDeploymentType:
            assert service.strategies.get(deployment_type).registry is service.registry
