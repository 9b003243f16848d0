"""
Pydantic schemas for application deployment.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class AppDeploymentType(str, Enum):
    """Kind of deployment a strategy handles."""
    PRE_BUILT_WEB_APP = "pre_built_web_app"
    STATIC_SITE = "static_site"
    DOCKER_CONTAINER = "docker_container"


class InstanceStatus(str, Enum):
    """Lifecycle status of a registered instance."""
    STARTING = "starting"
    ACTIVE = "active"
    STOPPING = "stopping"
    INACTIVE = "inactive"
    FAILED = "failed"


class HealthStatus(str, Enum):
    """Health status of a deployed application."""
    UNKNOWN = "unknown"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class ProgramFile(BaseModel):
    """One submitted file, path relative to the deployment root."""
    path: str = Field(..., min_length=1)
    content: bytes
    content_type: str = "application/octet-stream"


# =============================================================================
# Requests
# =============================================================================

class AppDeploymentRequest(BaseModel):
    """Options shared by every deployment kind."""
    deployment_type: AppDeploymentType = AppDeploymentType.PRE_BUILT_WEB_APP
    configuration: Dict[str, Any] = Field(default_factory=dict)
    environment: Dict[str, str] = Field(default_factory=dict)
    supported_features: List[str] = Field(default_factory=list)
    auto_start: bool = True
    domain_name: Optional[str] = None
    port: Optional[int] = None  # Preferred port, allocated from the range when omitted
    base_href: str = "/"
    spa_routing: bool = False
    api_integration: bool = False
    authentication_mode: str = "jwt_injection"
    entry_point: Optional[str] = None


class StaticSiteDeploymentRequest(AppDeploymentRequest):
    deployment_type: AppDeploymentType = AppDeploymentType.STATIC_SITE
    entry_point: Optional[str] = "index.html"
    caching_strategy: str = "aggressive"
    cdn_enabled: bool = False
    headers: Dict[str, str] = Field(default_factory=dict)


class ContainerResourceLimits(BaseModel):
    cpu_limit: Optional[float] = Field(default=None, gt=0)  # CPUs, e.g. 1.5
    memory_limit: Optional[str] = None  # e.g. "512m", "2g"
    cpu_request: Optional[float] = Field(default=None, gt=0)
    memory_request: Optional[str] = None


class ContainerPortMapping(BaseModel):
    container_port: int = Field(..., ge=1, le=65535)
    host_port: Optional[int] = Field(default=None, ge=1, le=65535)
    protocol: str = "tcp"


class ContainerVolumeMount(BaseModel):
    host_path: str
    container_path: str
    read_only: bool = False


class ContainerHealthCheck(BaseModel):
    path: str = "/health"
    interval_seconds: int = Field(default=30, gt=0)
    timeout_seconds: int = Field(default=5, gt=0)
    retries: int = Field(default=3, ge=0)


class ContainerDeploymentRequest(AppDeploymentRequest):
    deployment_type: AppDeploymentType = AppDeploymentType.DOCKER_CONTAINER
    dockerfile_path: str = "Dockerfile"
    image_name: Optional[str] = None
    image_tag: str = "latest"
    build_args: Dict[str, str] = Field(default_factory=dict)
    port_mappings: List[ContainerPortMapping] = Field(default_factory=list)
    volume_mounts: List[ContainerVolumeMount] = Field(default_factory=list)
    resource_limits: Optional[ContainerResourceLimits] = None
    replicas: int = Field(default=1, ge=1)
    health_check: Optional[ContainerHealthCheck] = None


# =============================================================================
# Results
# =============================================================================

class DeploymentResult(BaseModel):
    """Outcome of a deploy call. Returned to the caller, never retained."""
    success: bool
    error_message: Optional[str] = None
    application_url: Optional[str] = None
    deployment_id: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    deployed_at: datetime = Field(default_factory=datetime.utcnow)
    logs: List[str] = Field(default_factory=list)


class HealthCheckResult(BaseModel):
    name: str
    status: HealthStatus
    checked_at: datetime = Field(default_factory=datetime.utcnow)
    duration_ms: float = Field(default=0.0, ge=0)
    message: Optional[str] = None


class ApplicationHealth(BaseModel):
    status: HealthStatus = HealthStatus.UNKNOWN
    last_check: datetime = Field(default_factory=datetime.utcnow)
    response_time_ms: Optional[float] = None
    error_message: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    checks: List[HealthCheckResult] = Field(default_factory=list)


class ApplicationMetrics(BaseModel):
    """
    Resource usage of a deployed application.

    When ``estimated`` is True the fields named in ``estimated_fields``
    are approximations, not measurements.
    """
    program_id: str
    collected_at: datetime = Field(default_factory=datetime.utcnow)
    cpu_usage_percent: float = Field(default=0.0, ge=0)
    memory_usage_bytes: int = Field(default=0, ge=0)
    disk_usage_bytes: int = Field(default=0, ge=0)
    active_connections: int = Field(default=0, ge=0)
    requests_per_second: float = Field(default=0.0, ge=0)
    average_response_time_ms: float = Field(default=0.0, ge=0)
    active_instances: int = Field(default=0, ge=0)
    custom_metrics: Dict[str, Any] = Field(default_factory=dict)
    estimated: bool = False
    estimated_fields: List[str] = Field(default_factory=list)


class DeploymentValidationResult(BaseModel):
    is_valid: bool = True
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    validated_configuration: Dict[str, Any] = Field(default_factory=dict)


class ContainerResourceUsage(BaseModel):
    cpu_percent: float = Field(default=0.0, ge=0)
    memory_usage_bytes: int = Field(default=0, ge=0)
    memory_limit_bytes: int = Field(default=0, ge=0)
    network_rx_bytes: int = Field(default=0, ge=0)
    network_tx_bytes: int = Field(default=0, ge=0)
    disk_usage_bytes: int = Field(default=0, ge=0)


class ContainerInstance(BaseModel):
    id: str
    name: str
    status: str
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    image_id: str = ""
    ports: Dict[str, Any] = Field(default_factory=dict)
    resource_usage: ContainerResourceUsage = Field(default_factory=ContainerResourceUsage)
