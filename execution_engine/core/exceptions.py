"""
Custom exception hierarchy for domain-specific errors.

Services raise domain exceptions; the execution engine and deployment
strategies convert them into failed results at their public boundary.
"""
from typing import Optional, Dict, Any


class DomainException(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# =============================================================================
# Not Found Errors
# =============================================================================

class NotFoundError(DomainException):
    """Base class for resource not found errors."""
    pass


class ProgramNotFoundError(NotFoundError):
    """Program sources do not exist."""

    def __init__(self, identifier: str):
        super().__init__(f"Program not found: {identifier}", {"identifier": identifier})


class VersionNotFoundError(NotFoundError):
    """Version does not exist."""

    def __init__(self, identifier: str):
        super().__init__(f"Version not found: {identifier}", {"identifier": identifier})


class InstanceNotFoundError(NotFoundError):
    """No deployed instance is registered for the program."""

    def __init__(self, program_id: str):
        super().__init__(f"Instance not found: {program_id}", {"program_id": program_id})


class ExecutionNotFoundError(NotFoundError):
    """Execution does not exist."""

    def __init__(self, execution_id: str):
        super().__init__(f"Execution not found: {execution_id}", {"execution_id": execution_id})


# =============================================================================
# Conflict Errors
# =============================================================================

class AlreadyExistsError(DomainException):
    """Base class for resource already exists errors."""
    pass


class DuplicateInstanceError(AlreadyExistsError):
    """An instance is already registered for the program."""

    def __init__(self, program_id: str):
        super().__init__(
            f"Application is already deployed: {program_id}",
            {"program_id": program_id},
        )


# =============================================================================
# Validation Errors
# =============================================================================

class ValidationError(DomainException):
    """Base class for validation errors."""
    pass


class AnalysisError(ValidationError):
    """Project tree cannot be analyzed."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot analyze project at {path}: {reason}", {"path": path, "reason": reason})


class UnsupportedLanguageError(ValidationError):
    """No registered runner can handle the project."""

    def __init__(self, language: str, path: Optional[str] = None):
        details = {"language": language}
        if path:
            details["path"] = path
        super().__init__(f"No runner available for language: {language}", details)


class UnsupportedDeploymentTypeError(ValidationError):
    """No strategy is registered for the deployment type."""

    def __init__(self, deployment_type: str):
        super().__init__(
            f"Unsupported deployment type: {deployment_type}",
            {"deployment_type": deployment_type},
        )


class InvalidPathError(ValidationError):
    """File path is invalid or not allowed."""

    def __init__(self, path: str, reason: str = "Invalid path"):
        super().__init__(f"{reason}: {path}", {"path": path, "reason": reason})


class InvalidConfigurationError(ValidationError):
    """Configuration is invalid."""

    def __init__(self, field: str, reason: str):
        super().__init__(f"Invalid configuration for {field}: {reason}", {"field": field, "reason": reason})


# =============================================================================
# Operation Errors
# =============================================================================

class OperationError(DomainException):
    """Base class for operation failures."""
    pass


class BuildError(OperationError):
    """Build operation failed."""

    def __init__(self, build_id: str, reason: str):
        super().__init__(f"Build failed ({build_id}): {reason}", {"build_id": build_id, "reason": reason})


class DeploymentExecutionError(OperationError):
    """Deployment execution failed."""

    def __init__(self, program_id: str, reason: str):
        super().__init__(
            f"Deployment execution failed ({program_id}): {reason}",
            {"program_id": program_id, "reason": reason}
        )


class PortAllocationError(OperationError):
    """No available ports in range."""

    def __init__(self, port_range_start: int, port_range_end: int):
        super().__init__(
            f"No available ports in range {port_range_start}-{port_range_end}",
            {"port_range_start": port_range_start, "port_range_end": port_range_end}
        )


# =============================================================================
# Service Unavailable
# =============================================================================

class ServiceUnavailableError(DomainException):
    """External service is unavailable."""

    def __init__(self, service: str, reason: str = "Service unavailable"):
        super().__init__(f"{service}: {reason}", {"service": service, "reason": reason})


class SandboxUnavailableError(ServiceUnavailableError):
    """Toolchain or container runtime needed to run a process is missing."""

    def __init__(self, executable: str, reason: str = "Executable not found"):
        super().__init__(executable, reason)
