"""
Abstract base class for language runners.

A runner knows how to recognise, refine, build, validate and execute a
project written in one language. Build and execute never raise: every
fault is folded into a failed result so one misbehaving runner cannot
take the orchestration down.
"""
import asyncio
import base64
import binascii
import json
import logging
import os
import shutil
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Pattern

from execution_engine.core.exceptions import (
    DomainException,
    InvalidPathError,
    SandboxUnavailableError,
)
from execution_engine.schemas.execution import (
    ErrorKind,
    ProjectBuildArgs,
    ProjectBuildResult,
    ProjectExecutionResult,
    ProjectResourceLimits,
    ProjectResourceUsage,
    ProjectStructureAnalysis,
    ProjectValidationResult,
    ProjectWarning,
)
from execution_engine.services.execution.sandbox import ProcessControl, ProcessResult, ProcessSandbox

logger = logging.getLogger(__name__)

INPUT_DIRECTORY = "input"


@dataclass
class ProjectExecutionContext:
    """Everything one run needs. Owned by the execution stage for that run only."""
    execution_id: str
    project_directory: str
    user_id: str
    analysis: ProjectStructureAnalysis
    parameters: Any = None
    environment: Dict[str, str] = field(default_factory=dict)
    resource_limits: ProjectResourceLimits = field(default_factory=ProjectResourceLimits)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    output_callback: Optional[Callable[[str], None]] = None
    error_callback: Optional[Callable[[str], None]] = None
    working_directory: Optional[str] = None
    output_directory: Optional[str] = None
    package_volume_name: Optional[str] = None
    timeout_seconds: Optional[float] = None
    build_args: Optional[ProjectBuildArgs] = None


@dataclass
class BuildStep:
    """One toolchain invocation of a build."""
    name: str
    command: List[str]
    restore: bool = False  # Dependency restore; skipped when restore_dependencies is False


def merge_usage(usages: List[ProjectResourceUsage]) -> ProjectResourceUsage:
    if not usages:
        return ProjectResourceUsage()
    return ProjectResourceUsage(
        cpu_time_seconds=sum(u.cpu_time_seconds for u in usages),
        cpu_percentage=max(u.cpu_percentage for u in usages),
        peak_memory_bytes=max(u.peak_memory_bytes for u in usages),
        disk_usage_bytes=max(u.disk_usage_bytes for u in usages),
        peak_process_count=max(u.peak_process_count for u in usages),
        output_size_bytes=sum(u.output_size_bytes for u in usages),
    )


class ProjectLanguageRunner(ABC):
    """
    Base class for language runners.

    Subclasses provide:
    - a cheap ``can_handle_project`` check
    - ``build_steps`` and ``get_run_command`` for the toolchain
    - optionally ``analyze_project`` / ``validate_project`` refinements
    """

    language: str = "Unknown"
    priority: int = 100
    toolchain: List[str] = []
    # Runtime sizes and commits its heap from host RAM; no per-process data ceiling
    reserves_heap: bool = False

    # Regexes with named groups file, line, message and optionally code
    diagnostic_patterns: List[Pattern] = []

    def __init__(self, sandbox: ProcessSandbox = None):
        self.sandbox = sandbox or ProcessSandbox()

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    @abstractmethod
    async def can_handle_project(
        self,
        project_directory: str,
        analysis: ProjectStructureAnalysis,
    ) -> bool:
        """
        Decide whether this runner claims the project.

        Must be fast and must not build anything.
        """
        pass

    @abstractmethod
    def build_steps(self, project_directory: str, build_args: ProjectBuildArgs) -> List[BuildStep]:
        """Toolchain invocations that build the project, in order."""
        pass

    @abstractmethod
    def get_run_command(self, context: ProjectExecutionContext) -> List[str]:
        """
        Command that runs the built project.

        Raises:
            ValidationError: If the project has nothing runnable
        """
        pass

    async def analyze_project(
        self,
        project_directory: str,
        analysis: ProjectStructureAnalysis,
    ) -> ProjectStructureAnalysis:
        """Language-specific refinement of the generic analysis."""
        return analysis

    async def validate_project(self, project_directory: str) -> ProjectValidationResult:
        """Cheap static validation; never builds or runs anything."""
        result = ProjectValidationResult()
        if not self.sandbox.uses_containers and self.toolchain:
            if not any(shutil.which(tool) for tool in self.toolchain):
                result.is_valid = False
                result.errors.append(
                    f"{self.language} toolchain not found (looked for: {', '.join(self.toolchain)})"
                )
        return result

    def build_environment(self, project_directory: str, control: ProcessControl) -> Dict[str, str]:
        """Variables the toolchain needs on top of the layered environment."""
        return {}

    def run_environment(self, context: ProjectExecutionContext) -> Dict[str, str]:
        return {}

    # -------------------------------------------------------------------------
    # Build
    # -------------------------------------------------------------------------

    async def build_project(
        self,
        project_directory: str,
        build_args: ProjectBuildArgs,
        control: ProcessControl,
    ) -> ProjectBuildResult:
        """
        Run the build steps in order, stopping at the first failure.

        Args:
            project_directory: Root of the project
            build_args: Build options
            control: Environment, deadline, limits and cancellation for the build

        Returns:
            ProjectBuildResult; never raises
        """
        started = time.monotonic()
        outputs: List[str] = []
        errors: List[str] = []
        usages: List[ProjectResourceUsage] = []

        def finish(success: bool, **kwargs) -> ProjectBuildResult:
            error_output = "\n".join(e for e in errors if e)
            return ProjectBuildResult(
                success=success,
                output="\n".join(o for o in outputs if o),
                error_output=error_output,
                duration_seconds=round(time.monotonic() - started, 3),
                warnings=self.parse_diagnostics("\n".join(outputs + errors), project_directory),
                resource_usage=merge_usage(usages),
                **kwargs,
            )

        try:
            steps = self.build_steps(project_directory, build_args)
            if not build_args.restore_dependencies:
                steps = [step for step in steps if not step.restore]
            if not steps:
                return finish(True, exit_code=0)

            step_control = replace(control, environment={
                **control.environment,
                **self.build_environment(project_directory, control),
            })

            for step in steps:
                result = await self.sandbox.run(step.command, project_directory, step_control)
                outputs.append(result.stdout)
                errors.append(result.stderr)
                usages.append(result.usage)
                if not result.succeeded:
                    kind, message = self._classify(result, step.name, building=True)
                    return finish(False, exit_code=result.exit_code, error_kind=kind, error_message=message)

            generated = self.generated_files(project_directory)
            result = finish(True, exit_code=0)
            result.generated_files = generated
            return result
        except SandboxUnavailableError as e:
            return finish(False, error_kind=ErrorKind.INFRASTRUCTURE_ERROR, error_message=e.message)
        except DomainException as e:
            return finish(False, error_kind=ErrorKind.BUILD_FAILURE, error_message=e.message)
        except Exception as e:
            logger.exception(f"{self.language} build crashed for {project_directory}")
            return finish(False, error_kind=ErrorKind.BUILD_FAILURE, error_message=f"Build error: {e}")

    def generated_files(self, project_directory: str) -> List[str]:
        """Build outputs worth reporting; runners override per toolchain."""
        return []

    # -------------------------------------------------------------------------
    # Execute
    # -------------------------------------------------------------------------

    async def execute(self, context: ProjectExecutionContext) -> ProjectExecutionResult:
        """
        Run the project inside the sandbox.

        Returns:
            ProjectExecutionResult; never raises except for CancelledError
        """
        started_at = datetime.utcnow()
        started = time.monotonic()

        def failed(kind: ErrorKind, message: str, retryable: bool = False) -> ProjectExecutionResult:
            return ProjectExecutionResult(
                execution_id=context.execution_id,
                success=False,
                started_at=started_at,
                completed_at=datetime.utcnow(),
                duration_seconds=round(time.monotonic() - started, 3),
                error_kind=kind,
                error_message=message,
                retryable=retryable,
            )

        try:
            parameters = self.prepare_inputs(context)
            command = self.get_run_command(context)
            if parameters is not None:
                command = self.append_parameters(command, json.dumps(parameters, separators=(",", ":")))

            loop = asyncio.get_running_loop()
            control = ProcessControl(
                environment={**context.environment, **self.run_environment(context)},
                limits=context.resource_limits,
                cancel_event=context.cancel_event,
                deadline=loop.time() + context.timeout_seconds if context.timeout_seconds else None,
                on_output=context.output_callback,
                on_error=context.error_callback,
                label=context.execution_id,
                language=self.language,
                output_dir=context.output_directory,
                cap_memory=not self.reserves_heap,
            )
            cwd = context.working_directory or context.project_directory
            result = await self.sandbox.run(command, cwd, control)
        except SandboxUnavailableError as e:
            return failed(ErrorKind.INFRASTRUCTURE_ERROR, e.message, retryable=True)
        except DomainException as e:
            return failed(ErrorKind.EXECUTION_FAILURE, e.message)
        except Exception as e:
            logger.exception(f"{self.language} execution crashed for {context.execution_id}")
            return failed(ErrorKind.EXECUTION_FAILURE, f"Execution error: {e}")

        execution = ProjectExecutionResult(
            execution_id=context.execution_id,
            success=result.succeeded,
            exit_code=result.exit_code,
            output=result.stdout,
            error_output=result.stderr,
            started_at=started_at,
            completed_at=datetime.utcnow(),
            duration_seconds=result.duration_seconds,
            resource_usage=result.usage,
            cancelled=result.cancelled,
            metadata={"command": result.command[:-1] if parameters is not None else result.command},
        )
        if not result.succeeded:
            execution.error_kind, execution.error_message = self._classify(result, "run", building=False)
            execution.warnings = self.parse_diagnostics(result.stderr, context.project_directory)
        return execution

    def append_parameters(self, command: List[str], encoded: str) -> List[str]:
        """Pass the JSON-encoded parameters as the last program argument."""
        return command + [encoded]

    def prepare_inputs(self, context: ProjectExecutionContext) -> Any:
        """
        Materialize base64 ``input_files`` from the parameters under input/.

        Returns:
            Parameters to pass to the program, with file contents replaced
            by the written relative paths
        """
        parameters = context.parameters
        if not isinstance(parameters, dict):
            return parameters
        key = "input_files" if "input_files" in parameters else "inputFiles" if "inputFiles" in parameters else None
        if key is None:
            return parameters

        entries = parameters[key]
        if isinstance(entries, dict):
            entries = [{"name": name, "content": content} for name, content in entries.items()]

        input_dir = os.path.join(context.project_directory, INPUT_DIRECTORY)
        os.makedirs(input_dir, exist_ok=True)
        written = []
        for entry in entries or []:
            name = str(entry.get("name") or entry.get("path") or "")
            target = os.path.realpath(os.path.join(input_dir, name))
            if not name or not target.startswith(os.path.realpath(input_dir) + os.sep):
                raise InvalidPathError(name, "Input file escapes the input directory")
            try:
                data = base64.b64decode(entry.get("content") or "", validate=True)
            except (binascii.Error, ValueError):
                raise InvalidPathError(name, "Input file content is not valid base64")
            os.makedirs(os.path.dirname(target), exist_ok=True)
            with open(target, "wb") as f:
                f.write(data)
            written.append(f"{INPUT_DIRECTORY}/{name}")

        logger.info(f"[{context.execution_id}] Wrote {len(written)} input file(s)")
        return {**{k: v for k, v in parameters.items() if k != key}, "input_files": written}

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _classify(self, result: ProcessResult, step: str, building: bool):
        if result.cancelled:
            return ErrorKind.CANCELLED, f"{'Build' if building else 'Execution'} was cancelled"
        if result.breach is not None:
            return ErrorKind.RESOURCE_LIMIT_EXCEEDED, result.breach.describe()
        if result.timed_out:
            if building:
                return ErrorKind.BUILD_TIMEOUT, f"Build step '{step}' exceeded the build timeout"
            return ErrorKind.EXECUTION_TIMEOUT, "Execution exceeded its deadline"
        if building:
            return ErrorKind.BUILD_FAILURE, f"Build step '{step}' failed with exit code {result.exit_code}"
        return ErrorKind.EXECUTION_FAILURE, f"Process exited with code {result.exit_code}"

    def parse_diagnostics(self, text: str, project_directory: str = None) -> List[ProjectWarning]:
        """Extract file/line diagnostics from toolchain output."""
        warnings: List[ProjectWarning] = []
        seen = set()
        for pattern in self.diagnostic_patterns:
            for match in pattern.finditer(text or ""):
                groups = match.groupdict()
                file = groups.get("file")
                if file and project_directory:
                    abs_root = os.path.abspath(project_directory)
                    if os.path.isabs(file) and file.startswith(abs_root):
                        file = os.path.relpath(file, abs_root)
                    elif file.startswith("/app/"):
                        file = file[len("/app/"):]
                line = int(groups["line"]) if groups.get("line") else None
                message = (groups.get("message") or match.group(0)).strip()
                key = (file, line, message)
                if key in seen:
                    continue
                seen.add(key)
                warnings.append(ProjectWarning(message=message, file=file, line=line, code=groups.get("code")))
        return warnings

    @staticmethod
    def read_json(path: str) -> Dict:
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError):
            return {}
        return data if isinstance(data, dict) else {}

    @staticmethod
    def read_text(path: str) -> str:
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                return f.read()
        except OSError:
            return ""
