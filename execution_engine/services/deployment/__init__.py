"""
Application deployment services.

This package provides the deployment strategies (pre-built web app, static
site, container) and the instance registry they share.
"""
from execution_engine.services.deployment.container_strategy import ContainerDeploymentStrategy
from execution_engine.services.deployment.deployment_service import (
    DeploymentService,
    DeploymentStrategyRegistry,
    build_default_strategies,
)
from execution_engine.services.deployment.instance_registry import AppInstance, InstanceRegistry
from execution_engine.services.deployment.prebuilt_strategy import PreBuiltAppDeploymentStrategy
from execution_engine.services.deployment.static_site_strategy import StaticSiteDeploymentStrategy
from execution_engine.services.deployment.strategy_base import DeploymentStrategy, ServedDirectoryStrategy

__all__ = [
    "AppInstance",
    "ContainerDeploymentStrategy",
    "DeploymentService",
    "DeploymentStrategy",
    "DeploymentStrategyRegistry",
    "InstanceRegistry",
    "PreBuiltAppDeploymentStrategy",
    "ServedDirectoryStrategy",
    "StaticSiteDeploymentStrategy",
    "build_default_strategies",
]
