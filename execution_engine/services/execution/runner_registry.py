"""
Runner selection.
"""
import logging
from typing import List, Optional

from execution_engine.core.exceptions import UnsupportedLanguageError
from execution_engine.schemas.execution import ProjectStructureAnalysis
from execution_engine.services.execution.csharp_runner import CSharpProjectRunner
from execution_engine.services.execution.java_runner import JavaProjectRunner
from execution_engine.services.execution.nodejs_runner import NodeJsProjectRunner
from execution_engine.services.execution.python_runner import PythonProjectRunner
from execution_engine.services.execution.runner_base import ProjectLanguageRunner
from execution_engine.services.execution.sandbox import ProcessSandbox

logger = logging.getLogger(__name__)


class RunnerRegistry:
    """
    Holds the registered runners ordered by descending priority.

    Runners with equal priority keep their registration order.
    """

    def __init__(self, runners: List[ProjectLanguageRunner]):
        self._runners = sorted(runners, key=lambda r: -r.priority)

    @property
    def runners(self) -> List[ProjectLanguageRunner]:
        return list(self._runners)

    async def select(self, project_directory: str, analysis: ProjectStructureAnalysis) -> ProjectLanguageRunner:
        """
        Pick the highest-priority runner that claims the project.

        A runner whose detection raises is treated as not claiming it.

        Raises:
            UnsupportedLanguageError: If no runner claims the project
        """
        for runner in self._runners:
            try:
                claimed = await runner.can_handle_project(project_directory, analysis)
            except Exception as e:
                logger.warning(f"{runner.language} runner detection failed for {project_directory}: {e}")
                continue
            if claimed:
                logger.info(f"Selected {runner.language} runner for {project_directory}")
                return runner
        raise UnsupportedLanguageError(analysis.language, project_directory)

    def get(self, language: str) -> Optional[ProjectLanguageRunner]:
        for runner in self._runners:
            if runner.language.lower() == (language or "").lower():
                return runner
        return None

    def supported_languages(self) -> List[str]:
        languages: List[str] = []
        for runner in self._runners:
            if runner.language not in languages:
                languages.append(runner.language)
            if runner.language == "JavaScript" and "TypeScript" not in languages:
                languages.append("TypeScript")
        return languages


def build_default_runners(sandbox: ProcessSandbox = None) -> List[ProjectLanguageRunner]:
    sandbox = sandbox or ProcessSandbox()
    return [
        NodeJsProjectRunner(sandbox),
        JavaProjectRunner(sandbox),
        PythonProjectRunner(sandbox),
        CSharpProjectRunner(sandbox),
    ]
