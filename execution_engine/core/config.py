"""
Application configuration using Pydantic Settings.
"""
from typing import Dict, List
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings."""

    # Application
    APP_NAME: str = "Project Execution Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "info"

    # Storage
    EXECUTION_WORKING_DIRECTORY: str = "./storage/executions"
    EXECUTION_SOURCE_ROOT: str = "./storage/projects"
    EXECUTION_RESULTS_DIR: str = "./storage/execution_results"
    EXECUTION_PACKAGE_CACHE_DIR: str = "./storage/package_cache"

    # Execution
    EXECUTION_MAX_CONCURRENT: int = 5
    EXECUTION_DEFAULT_TIMEOUT_MINUTES: int = 2880  # 48 hours
    EXECUTION_MAX_PROJECT_FILES: int = 10000
    EXECUTION_MAX_PROJECT_SIZE_BYTES: int = 524288000  # 500MB
    EXECUTION_MAX_SCAN_FILE_BYTES: int = 1048576  # Larger files are not line-counted or scanned
    EXECUTION_BLOCKED_EXTENSIONS: List[str] = [".exe", ".bat", ".cmd", ".ps1", ".sh", ".scr", ".vbs"]
    EXECUTION_ENABLE_SECURITY_SCAN: bool = True
    EXECUTION_MONITOR_INTERVAL_SECONDS: float = 0.2
    EXECUTION_CPU_BREACH_SAMPLES: int = 5  # Consecutive samples over the CPU ceiling before killing
    EXECUTION_KILL_GRACE_SECONDS: float = 5.0
    EXECUTION_HARD_LIMITS: bool = True  # setrlimit data and task ceilings on host processes
    PYTHON_EXECUTABLE: str = "python3"

    # Sandbox (docker mode)
    EXECUTION_USE_DOCKER: bool = False
    EXECUTION_DOCKER_IMAGES: Dict[str, str] = {
        "Python": "python-executor:latest",
        "JavaScript": "nodejs-executor:latest",
        "TypeScript": "nodejs-executor:latest",
        "Java": "java-executor:latest",
        "C#": "dotnet-executor:latest",
    }
    EXECUTION_DOCKER_USER: str = "1000:1000"
    EXECUTION_DOCKER_ALLOW_NETWORK: bool = False
    EXECUTION_BUILD_NETWORK: str = "bridge"
    EXECUTION_TMPFS_SIZE_MB: int = 256

    # Deployment
    DEPLOYMENT_PATH: str = "./storage/deployments"
    DEPLOYMENT_HOST: str = "localhost"
    DEPLOYMENT_BIND_ADDRESS: str = "127.0.0.1"
    DEPLOYMENT_PORT_RANGE_START: int = 9000
    DEPLOYMENT_PORT_RANGE_END: int = 9999
    DEPLOYMENT_HEALTH_CHECK_TIMEOUT: int = 5    # seconds to wait for health check response
    DEPLOYMENT_STARTUP_TIMEOUT: int = 15        # seconds to wait for a served app to answer
    DEPLOYMENT_CONTAINER_PREFIX: str = "app"
    DEPLOYMENT_CONTAINER_PORT: int = 8080  # Default port inside container
    DEPLOYMENT_DEFAULT_MEMORY_LIMIT: str = "512m"
    DEPLOYMENT_BUILD_TIMEOUT_MINUTES: int = 30
    DEPLOYMENT_LOG_TAIL: int = 100
    DEPLOYMENT_API_BASE_URL: str = "http://localhost:8000"  # Injected into served apps as apiBaseUrl

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore"
    )

    def get_log_level(self) -> str:
        """Return LOG_LEVEL in the form the logging module expects."""
        return self.LOG_LEVEL.upper()


settings = Settings()
