"""
Persistence of execution results and logs.
"""
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from execution_engine.core.config import settings
from execution_engine.core.exceptions import ExecutionNotFoundError
from execution_engine.core.paths import require_segment
from execution_engine.schemas.execution import ProjectExecutionResult

logger = logging.getLogger(__name__)

RESULT_FILE = "execution-result.json"
OUTPUT_LOG = "output.log"
ERROR_LOG = "error.log"


class ExecutionResultStore(ABC):

    @abstractmethod
    async def save(self, result: ProjectExecutionResult) -> str:
        """Persist a result; returns where it was stored."""
        pass

    @abstractmethod
    async def get(self, execution_id: str) -> ProjectExecutionResult:
        """
        Raises:
            ExecutionNotFoundError: If nothing was stored for the id
        """
        pass


class FileSystemResultStore(ExecutionResultStore):
    """One directory per execution holding the result and both log streams."""

    def __init__(self, base_dir: str = None):
        self.base_dir = Path(base_dir or settings.EXECUTION_RESULTS_DIR)

    def get_execution_path(self, execution_id: str) -> Path:
        return self.base_dir / require_segment(execution_id, "Invalid execution id")

    async def save(self, result: ProjectExecutionResult) -> str:
        path = self.get_execution_path(result.execution_id)
        path.mkdir(parents=True, exist_ok=True)
        (path / RESULT_FILE).write_text(result.model_dump_json(indent=2), encoding="utf-8")
        (path / OUTPUT_LOG).write_text(result.output, encoding="utf-8")
        (path / ERROR_LOG).write_text(result.error_output, encoding="utf-8")
        logger.info(f"Saved execution result {result.execution_id} to {path}")
        return str(path)

    async def get(self, execution_id: str) -> ProjectExecutionResult:
        result_file = self.get_execution_path(execution_id) / RESULT_FILE
        if not result_file.is_file():
            raise ExecutionNotFoundError(execution_id)
        return ProjectExecutionResult.model_validate_json(result_file.read_text(encoding="utf-8"))

    def get_log(self, execution_id: str, error: bool = False) -> Optional[str]:
        log_file = self.get_execution_path(execution_id) / (ERROR_LOG if error else OUTPUT_LOG)
        if not log_file.is_file():
            return None
        return log_file.read_text(encoding="utf-8")
