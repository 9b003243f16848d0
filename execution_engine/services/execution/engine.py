"""
Project execution engine.

Orchestrates one run end to end: resolve the version, materialize the
sources, analyze, pick a runner, validate, build, execute, collect outputs
and store the result. Every fault is reported on the returned
ProjectExecutionResult; ``execute_project`` only raises CancelledError.
"""
import asyncio
import logging
import os
import shutil
import tempfile
import time
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from execution_engine.core.config import settings
from execution_engine.core.events import (
    EventDispatcher,
    ExecutionCancelledEvent,
    ExecutionCompletedEvent,
    ExecutionOutputEvent,
    ExecutionStartedEvent,
    event_dispatcher,
)
from execution_engine.core.exceptions import (
    AnalysisError,
    DomainException,
    InvalidPathError,
    NotFoundError,
    SandboxUnavailableError,
    UnsupportedLanguageError,
    ValidationError,
)
from execution_engine.core.paths import child_directory
from execution_engine.schemas.execution import (
    ErrorKind,
    ProjectBuildArgs,
    ProjectBuildResult,
    ProjectExecutionRequest,
    ProjectExecutionResult,
    ProjectResourceLimits,
    ProjectStructureAnalysis,
    ProjectValidationResult,
)
from execution_engine.services.analysis.project_analyzer import ProjectStructureAnalyzer
from execution_engine.services.execution.build_stage import BuildStage, package_volume_for
from execution_engine.services.execution.result_store import ExecutionResultStore, FileSystemResultStore
from execution_engine.services.execution.runner_base import (
    INPUT_DIRECTORY,
    ProjectExecutionContext,
    ProjectLanguageRunner,
)
from execution_engine.services.execution.runner_registry import RunnerRegistry, build_default_runners
from execution_engine.services.execution.sandbox import (
    DockerSandbox,
    ProcessSandbox,
    layer_environment,
)
from execution_engine.services.execution.source_provider import LocalSourceProvider, ProjectSourceProvider

logger = logging.getLogger(__name__)

PROJECT_DIRECTORY = "project"
OUTPUT_DIRECTORY = "outputs"

# Files under these folders are always reported as outputs
OUTPUT_FOLDERS = {"dist", "build", "target", "out", "output"}
EXCLUDED_FOLDERS = {"__pycache__", ".git", "node_modules", "bin", "obj", ".packages", INPUT_DIRECTORY}

Snapshot = Dict[str, Tuple[float, int]]


def snapshot_tree(directory: str) -> Snapshot:
    """Relative path -> (mtime, size) for every file under directory."""
    snapshot: Snapshot = {}
    for root, _, files in os.walk(directory):
        for name in files:
            path = os.path.join(root, name)
            try:
                stat = os.stat(path)
            except OSError:
                continue
            rel = os.path.relpath(path, directory).replace(os.sep, "/")
            snapshot[rel] = (stat.st_mtime, stat.st_size)
    return snapshot


def collect_output_files(project_directory: str, output_directory: str, before: Snapshot) -> List[str]:
    """
    Copy produced files into the output directory.

    A file counts as produced when it did not exist (or changed) since the
    snapshot, or when it lives under a conventional build output folder.
    Files the program wrote to OUTPUT_DIR are already in place.

    Returns:
        Sorted paths relative to the output directory
    """
    os.makedirs(output_directory, exist_ok=True)
    for root, dirs, files in os.walk(project_directory):
        dirs[:] = [d for d in dirs if d not in EXCLUDED_FOLDERS]
        for name in files:
            path = os.path.join(root, name)
            rel = os.path.relpath(path, project_directory).replace(os.sep, "/")
            in_output_folder = rel.split("/", 1)[0] in OUTPUT_FOLDERS
            try:
                stat = os.stat(path)
            except OSError:
                continue
            changed = before.get(rel) != (stat.st_mtime, stat.st_size)
            if not (changed or in_output_folder) or name.startswith("."):
                continue
            target = os.path.join(output_directory, rel)
            os.makedirs(os.path.dirname(target), exist_ok=True)
            shutil.copy2(path, target)

    return sorted(snapshot_tree(output_directory))


class ProjectExecutionEngine:
    """Runs program versions with bounded concurrency and per-run cancellation."""

    def __init__(
        self,
        source_provider: ProjectSourceProvider = None,
        result_store: ExecutionResultStore = None,
        analyzer: ProjectStructureAnalyzer = None,
        registry: RunnerRegistry = None,
        build_stage: BuildStage = None,
        sandbox: ProcessSandbox = None,
        dispatcher: EventDispatcher = None,
        working_directory: str = None,
        max_concurrent: int = None,
        default_timeout_minutes: float = None,
    ):
        if sandbox is None:
            sandbox = DockerSandbox() if settings.EXECUTION_USE_DOCKER else ProcessSandbox()
        self.sandbox = sandbox
        self.source_provider = source_provider or LocalSourceProvider()
        self.result_store = result_store or FileSystemResultStore()
        self.analyzer = analyzer or ProjectStructureAnalyzer()
        self.registry = registry or RunnerRegistry(build_default_runners(sandbox))
        self.build_stage = build_stage or BuildStage(sandbox)
        self.dispatcher = dispatcher or event_dispatcher
        self.working_directory = os.path.abspath(working_directory or settings.EXECUTION_WORKING_DIRECTORY)
        self.default_timeout_minutes = default_timeout_minutes or settings.EXECUTION_DEFAULT_TIMEOUT_MINUTES
        self._semaphore = asyncio.Semaphore(max_concurrent or settings.EXECUTION_MAX_CONCURRENT)
        self._sessions: Dict[str, asyncio.Event] = {}

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------

    async def execute_project(
        self,
        request: ProjectExecutionRequest,
        execution_id: str = None,
        output_callback: Optional[Callable[[str], None]] = None,
        error_callback: Optional[Callable[[str], None]] = None,
    ) -> ProjectExecutionResult:
        """
        Execute one version of a program.

        Args:
            request: What to run and how
            execution_id: Caller-chosen id; generated when omitted
            output_callback: Receives stdout lines as they are produced
            error_callback: Receives stderr lines as they are produced

        Returns:
            ProjectExecutionResult describing success or the failure kind
        """
        execution_id = execution_id or str(uuid.uuid4())
        try:
            execution_dir = self._execution_dir(execution_id)
        except InvalidPathError as e:
            return self._failed(execution_id, ErrorKind.VALIDATION_FAILURE, e.message)
        if execution_id in self._sessions:
            return self._failed(
                execution_id, ErrorKind.VALIDATION_FAILURE, f"Execution {execution_id} is already running"
            )

        cancel_event = asyncio.Event()
        self._sessions[execution_id] = cancel_event
        project_dir = os.path.join(execution_dir, PROJECT_DIRECTORY)

        self.dispatcher.dispatch(ExecutionStartedEvent(
            execution_id=execution_id,
            program_id=request.program_id,
            version_id=request.version_id,
            user_id=request.user_id,
        ))

        try:
            async with self._semaphore:
                result = await self._run(request, execution_id, cancel_event, output_callback, error_callback)
        finally:
            self._sessions.pop(execution_id, None)
            if request.cleanup_on_completion:
                await asyncio.get_running_loop().run_in_executor(
                    None, lambda: shutil.rmtree(project_dir, ignore_errors=True)
                )

        if request.save_results:
            try:
                result.metadata["result_path"] = await self.result_store.save(result)
            except Exception as e:
                logger.error(f"Failed to save result for execution {execution_id}: {e}")

        if result.cancelled:
            self.dispatcher.dispatch(ExecutionCancelledEvent(execution_id=execution_id))
        self.dispatcher.dispatch(ExecutionCompletedEvent(
            execution_id=execution_id,
            success=result.success,
            exit_code=result.exit_code,
            error_kind=result.error_kind.value if result.error_kind else None,
            duration_seconds=result.duration_seconds,
        ))
        logger.info(
            f"Execution {execution_id} finished: success={result.success}, "
            f"error_kind={result.error_kind.value if result.error_kind else None}"
        )
        return result

    async def _run(
        self,
        request: ProjectExecutionRequest,
        execution_id: str,
        cancel_event: asyncio.Event,
        output_callback: Optional[Callable[[str], None]],
        error_callback: Optional[Callable[[str], None]],
    ) -> ProjectExecutionResult:
        started_at = datetime.utcnow()
        started = time.monotonic()
        execution_dir = self._execution_dir(execution_id)
        project_dir = os.path.join(execution_dir, PROJECT_DIRECTORY)
        output_dir = os.path.join(execution_dir, OUTPUT_DIRECTORY)
        build_result: Optional[ProjectBuildResult] = None

        def failed(kind: ErrorKind, message: str, retryable: bool = False) -> ProjectExecutionResult:
            result = self._failed(execution_id, kind, message, retryable)
            result.started_at = started_at
            result.duration_seconds = round(time.monotonic() - started, 3)
            result.build_result = build_result
            result.cancelled = kind == ErrorKind.CANCELLED
            return result

        if cancel_event.is_set():
            return failed(ErrorKind.CANCELLED, "Execution was cancelled before it started")

        try:
            version_id = await self.source_provider.resolve_version(request.program_id, request.version_id)
            await self.source_provider.materialize(request.program_id, version_id, project_dir)
            os.makedirs(output_dir, exist_ok=True)
            loop = asyncio.get_running_loop()
            before = await loop.run_in_executor(None, snapshot_tree, project_dir)

            analysis, runner, validation = await self._inspect(project_dir)
            if not validation.is_valid:
                return failed(ErrorKind.VALIDATION_FAILURE, "; ".join(validation.errors))
            if cancel_event.is_set():
                return failed(ErrorKind.CANCELLED, "Execution was cancelled")

            build_args = request.build_args or ProjectBuildArgs()
            limits = request.resource_limits or ProjectResourceLimits()
            if analysis.has_build_file and not build_args.skip_build:
                build_result = await self.build_stage.build(
                    runner,
                    project_dir,
                    build_args,
                    request_environment=request.environment,
                    cancel_event=cancel_event,
                    limits=limits,
                    program_id=request.program_id,
                    on_output=self._forward(execution_id, output_callback, is_error=False),
                )
                if not build_result.success:
                    kind = build_result.error_kind or ErrorKind.BUILD_FAILURE
                    result = failed(
                        kind,
                        build_result.error_message or "Build failed",
                        retryable=kind == ErrorKind.INFRASTRUCTURE_ERROR,
                    )
                    result.output = build_result.output
                    result.error_output = build_result.error_output
                    result.warnings = build_result.warnings
                    return result

            context = ProjectExecutionContext(
                execution_id=execution_id,
                project_directory=project_dir,
                user_id=request.user_id,
                analysis=analysis,
                parameters=request.parameters,
                environment=layer_environment(self.build_stage.base_env, request.environment),
                resource_limits=limits,
                cancel_event=cancel_event,
                output_callback=self._forward(execution_id, output_callback, is_error=False),
                error_callback=self._forward(execution_id, error_callback, is_error=True),
                output_directory=output_dir,
                package_volume_name=package_volume_for(request.program_id, build_args),
                timeout_seconds=request.timeout_seconds or self.default_timeout_minutes * 60,
                build_args=build_args,
            )
            result = await runner.execute(context)
            result.started_at = started_at
            result.build_result = build_result
            result.output_files = await loop.run_in_executor(
                None, collect_output_files, project_dir, output_dir, before
            )
            result.metadata.update({
                "program_id": request.program_id,
                "version_id": version_id,
                "execution_name": request.execution_name,
                "language": analysis.language,
                "project_type": analysis.project_type,
                "runner": runner.language,
                "output_directory": output_dir,
            })
            return result
        except AnalysisError as e:
            return failed(ErrorKind.ANALYSIS_ERROR, e.message)
        except UnsupportedLanguageError as e:
            return failed(ErrorKind.UNSUPPORTED_LANGUAGE, e.message)
        except (NotFoundError, ValidationError) as e:
            return failed(ErrorKind.VALIDATION_FAILURE, e.message)
        except SandboxUnavailableError as e:
            return failed(ErrorKind.INFRASTRUCTURE_ERROR, e.message, retryable=True)
        except DomainException as e:
            return failed(ErrorKind.INFRASTRUCTURE_ERROR, e.message)
        except Exception as e:
            logger.exception(f"Execution {execution_id} crashed")
            return failed(ErrorKind.INFRASTRUCTURE_ERROR, f"Unexpected error: {e}", retryable=True)

    async def _inspect(
        self,
        project_dir: str,
    ) -> Tuple[ProjectStructureAnalysis, ProjectLanguageRunner, ProjectValidationResult]:
        """Analyze, select a runner, refine and validate a materialized project."""
        loop = asyncio.get_running_loop()
        analysis = await loop.run_in_executor(None, self.analyzer.analyze, project_dir)
        runner = await self.registry.select(project_dir, analysis)
        analysis = await runner.analyze_project(project_dir, analysis)

        validation = await loop.run_in_executor(
            None, lambda: self.analyzer.validate(project_dir, analysis=analysis)
        )
        runner_validation = await runner.validate_project(project_dir)
        validation.is_valid = validation.is_valid and runner_validation.is_valid
        validation.errors.extend(runner_validation.errors)
        validation.warnings.extend(runner_validation.warnings)
        validation.suggestions.extend(runner_validation.suggestions)
        return analysis, runner, validation

    def _forward(
        self,
        execution_id: str,
        callback: Optional[Callable[[str], None]],
        is_error: bool,
    ) -> Callable[[str], None]:
        def forward(line: str):
            if callback is not None:
                callback(line)
            self.dispatcher.dispatch(ExecutionOutputEvent(execution_id=execution_id, line=line, is_error=is_error))
        return forward

    def _execution_dir(self, execution_id: str) -> str:
        return child_directory(self.working_directory, execution_id, "Invalid execution id")

    @staticmethod
    def _failed(
        execution_id: str,
        kind: ErrorKind,
        message: str,
        retryable: bool = False,
    ) -> ProjectExecutionResult:
        return ProjectExecutionResult(
            execution_id=execution_id,
            success=False,
            completed_at=datetime.utcnow(),
            error_kind=kind,
            error_message=message,
            retryable=retryable,
        )

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    async def validate_project(self, program_id: str, version_id: str = None) -> ProjectValidationResult:
        """Validate a version without building or running it."""
        scratch = self._scratch_directory()
        try:
            resolved = await self.source_provider.resolve_version(program_id, version_id)
            await self.source_provider.materialize(program_id, resolved, scratch)
            _, _, validation = await self._inspect(scratch)
            return validation
        except DomainException as e:
            return ProjectValidationResult(is_valid=False, errors=[e.message])
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    async def analyze_project_structure(self, program_id: str, version_id: str = None) -> ProjectStructureAnalysis:
        """
        Analyze a version and refine it with the runner that would execute it.

        When no runner claims the project the generic analysis is returned.

        Raises:
            NotFoundError: If the program or version does not exist
            AnalysisError: If the tree cannot be analyzed
        """
        scratch = self._scratch_directory()
        try:
            resolved = await self.source_provider.resolve_version(program_id, version_id)
            await self.source_provider.materialize(program_id, resolved, scratch)
            loop = asyncio.get_running_loop()
            analysis = await loop.run_in_executor(None, self.analyzer.analyze, scratch)
            try:
                runner = await self.registry.select(scratch, analysis)
            except UnsupportedLanguageError:
                return analysis
            return await runner.analyze_project(scratch, analysis)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def _scratch_directory(self) -> str:
        os.makedirs(self.working_directory, exist_ok=True)
        return tempfile.mkdtemp(prefix="inspect-", dir=self.working_directory)

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    async def cancel_execution(self, execution_id: str) -> bool:
        """
        Request cancellation of a running execution.

        Returns:
            True if the execution was running, False otherwise
        """
        cancel_event = self._sessions.get(execution_id)
        if cancel_event is None:
            return False
        logger.info(f"Cancelling execution {execution_id}")
        cancel_event.set()
        return True

    def get_supported_languages(self) -> List[str]:
        return self.registry.supported_languages()

    def get_active_executions(self) -> List[str]:
        return list(self._sessions)
