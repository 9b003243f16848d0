"""
Pydantic schemas for project analysis, build and execution.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ErrorKind(str, Enum):
    """Why a build or execution did not succeed."""
    ANALYSIS_ERROR = "analysis_error"
    UNSUPPORTED_LANGUAGE = "unsupported_language"
    VALIDATION_FAILURE = "validation_failure"
    BUILD_TIMEOUT = "build_timeout"
    BUILD_FAILURE = "build_failure"
    RESOURCE_LIMIT_EXCEEDED = "resource_limit_exceeded"
    EXECUTION_FAILURE = "execution_failure"
    EXECUTION_TIMEOUT = "execution_timeout"
    CANCELLED = "cancelled"
    INFRASTRUCTURE_ERROR = "infrastructure_error"  # Retryable, not a project defect


class ComplexityLevel(str, Enum):
    SIMPLE = "Simple"
    MODERATE = "Moderate"
    COMPLEX = "Complex"
    VERY_COMPLEX = "Very Complex"


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# =============================================================================
# Limits and build arguments
# =============================================================================

class ProjectResourceLimits(BaseModel):
    """Ceilings enforced while a build or execution runs."""
    max_cpu_percentage: float = Field(default=80.0, gt=0)
    max_memory_mb: int = Field(default=1024, gt=0)
    max_disk_mb: int = Field(default=2048, gt=0)
    max_processes: int = Field(default=10, gt=0)
    max_output_size_bytes: int = Field(default=100 * 1024 * 1024, gt=0)


class ProjectBuildArgs(BaseModel):
    """Build options for a single build."""
    configuration: str = "Release"
    additional_args: List[str] = Field(default_factory=list)
    build_environment: Dict[str, str] = Field(default_factory=dict)
    skip_build: bool = False
    restore_dependencies: bool = True
    build_timeout_minutes: float = Field(default=15, gt=0)
    package_volume_name: Optional[str] = None


class ProjectExecutionRequest(BaseModel):
    """A caller's request to run one version of a program."""
    program_id: str
    version_id: Optional[str] = None
    user_id: str
    parameters: Any = None
    environment: Dict[str, str] = Field(default_factory=dict)
    resource_limits: Optional[ProjectResourceLimits] = None
    build_args: Optional[ProjectBuildArgs] = None
    execution_name: Optional[str] = None
    cleanup_on_completion: bool = True
    save_results: bool = True
    timeout_seconds: Optional[float] = Field(default=None, gt=0)


# =============================================================================
# Structure analysis
# =============================================================================

class ProjectFile(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: str
    type: str
    size: int = Field(ge=0)
    extension: str = ""
    line_count: int = Field(default=0, ge=0)
    is_entry_point: bool = False


class ProjectComplexity(BaseModel):
    model_config = ConfigDict(frozen=True)

    total_files: int = 0
    total_lines: int = 0
    dependencies: int = 0
    complexity_score: float = 0.0
    complexity_level: ComplexityLevel = ComplexityLevel.SIMPLE


class SecurityIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    description: str
    severity: IssueSeverity
    file: str
    line: Optional[int] = None


class ProjectSecurityScan(BaseModel):
    model_config = ConfigDict(frozen=True)

    issues: List[SecurityIssue] = Field(default_factory=list)
    suspicious_patterns: List[str] = Field(default_factory=list)
    risk_level: int = Field(default=1, ge=1, le=5)

    @property
    def has_security_issues(self) -> bool:
        return bool(self.issues)


class ProjectStructureAnalysis(BaseModel):
    """Result of one analyzer pass. Immutable once produced."""
    model_config = ConfigDict(frozen=True)

    language: str = "Unknown"
    project_type: str = "Unknown"
    entry_points: List[str] = Field(default_factory=list)
    main_entry_point: Optional[str] = None
    config_files: List[str] = Field(default_factory=list)
    source_files: List[str] = Field(default_factory=list)
    binary_files: List[str] = Field(default_factory=list)
    files: List[ProjectFile] = Field(default_factory=list)
    dependencies: List[str] = Field(default_factory=list)
    has_build_file: bool = False
    metadata: Dict[str, Any] = Field(default_factory=dict)
    complexity: ProjectComplexity = Field(default_factory=ProjectComplexity)
    security_scan: ProjectSecurityScan = Field(default_factory=ProjectSecurityScan)
    analyzed_at: datetime = Field(default_factory=datetime.utcnow)


class ProjectValidationResult(BaseModel):
    is_valid: bool = True
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    security_scan: Optional[ProjectSecurityScan] = None
    complexity: Optional[ProjectComplexity] = None


# =============================================================================
# Results
# =============================================================================

class ProjectResourceUsage(BaseModel):
    """Measured usage. Every field is non-negative."""
    cpu_time_seconds: float = Field(default=0.0, ge=0)
    cpu_percentage: float = Field(default=0.0, ge=0)
    peak_memory_bytes: int = Field(default=0, ge=0)
    disk_usage_bytes: int = Field(default=0, ge=0)
    peak_process_count: int = Field(default=0, ge=0)
    output_size_bytes: int = Field(default=0, ge=0)
    additional_metrics: Dict[str, float] = Field(default_factory=dict)


class ProjectWarning(BaseModel):
    message: str
    file: Optional[str] = None
    line: Optional[int] = None
    code: Optional[str] = None


class ProjectBuildResult(BaseModel):
    success: bool
    output: str = ""
    error_output: str = ""
    duration_seconds: float = Field(default=0.0, ge=0)
    generated_files: List[str] = Field(default_factory=list)
    warnings: List[ProjectWarning] = Field(default_factory=list)
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    exit_code: Optional[int] = None
    resource_usage: ProjectResourceUsage = Field(default_factory=ProjectResourceUsage)


class ProjectExecutionResult(BaseModel):
    execution_id: str
    success: bool
    exit_code: int = -1
    output: str = ""
    error_output: str = ""
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    duration_seconds: float = Field(default=0.0, ge=0)
    output_files: List[str] = Field(default_factory=list)
    warnings: List[ProjectWarning] = Field(default_factory=list)
    error_message: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    cancelled: bool = False
    retryable: bool = False
    build_result: Optional[ProjectBuildResult] = None
    resource_usage: ProjectResourceUsage = Field(default_factory=ProjectResourceUsage)
    metadata: Dict[str, Any] = Field(default_factory=dict)
