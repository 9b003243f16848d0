"""
Build stage: wraps a runner's build with a deadline, a package cache and
the layered environment.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional

from execution_engine.core.exceptions import SandboxUnavailableError
from execution_engine.schemas.execution import (
    ErrorKind,
    ProjectBuildArgs,
    ProjectBuildResult,
    ProjectResourceLimits,
)
from execution_engine.services.execution.runner_base import ProjectLanguageRunner
from execution_engine.services.execution.sandbox import (
    ProcessControl,
    ProcessSandbox,
    base_environment,
    layer_environment,
)

logger = logging.getLogger(__name__)


def package_volume_for(program_id: str, build_args: ProjectBuildArgs) -> str:
    return build_args.package_volume_name or f"pkg-cache-{program_id}"


class BuildStage:
    """
    Runs one build at a time per call; safe to share between executions.

    Environment layers, lowest first: whitelisted host variables, the
    request's environment, then ``build_args.build_environment``.
    """

    def __init__(self, sandbox: ProcessSandbox = None, base_env: Dict[str, str] = None):
        self.sandbox = sandbox or ProcessSandbox()
        self.base_env = base_env if base_env is not None else base_environment()

    async def build(
        self,
        runner: ProjectLanguageRunner,
        project_directory: str,
        build_args: ProjectBuildArgs,
        request_environment: Optional[Dict[str, str]] = None,
        cancel_event: Optional[asyncio.Event] = None,
        limits: Optional[ProjectResourceLimits] = None,
        program_id: str = "default",
        on_output: Optional[Callable[[str], None]] = None,
    ) -> ProjectBuildResult:
        """
        Build the project with a hard wall-clock deadline.

        Args:
            runner: Runner selected for the project
            project_directory: Root of the materialized project
            build_args: Build options
            request_environment: Caller-supplied environment variables
            cancel_event: Set to cancel the build
            limits: Resource ceilings for the build processes
            program_id: Owner of the package cache
            on_output: Receives every output line as it is produced

        Returns:
            ProjectBuildResult; never raises
        """
        if build_args.skip_build:
            logger.info(f"Build skipped for {project_directory}")
            return ProjectBuildResult(success=True, output="Build skipped", exit_code=0)

        timeout = build_args.build_timeout_minutes * 60
        environment = layer_environment(self.base_env, request_environment, build_args.build_environment)
        volume = package_volume_for(program_id, build_args)
        partial: List[str] = []

        def collect(line: str):
            partial.append(line)
            if on_output is not None:
                on_output(line)

        try:
            cache = await self.sandbox.prepare_cache(volume)
        except SandboxUnavailableError as e:
            return ProjectBuildResult(
                success=False,
                error_kind=ErrorKind.INFRASTRUCTURE_ERROR,
                error_message=e.message,
            )

        loop = asyncio.get_running_loop()
        control = ProcessControl(
            environment=environment,
            limits=limits or ProjectResourceLimits(),
            cancel_event=cancel_event,
            deadline=loop.time() + timeout,
            on_output=collect,
            on_error=collect,
            label=f"build-{program_id}",
            language=runner.language,
            cache_dir=cache["cache_dir"],
            cache_volume=cache["cache_volume"],
            allow_network=True,
            cap_memory=not runner.reserves_heap,
        )

        logger.info(f"Building {project_directory} with {runner.language} runner (timeout {timeout:.0f}s)")
        backstop = timeout + self.sandbox.kill_grace_seconds + 1
        try:
            result = await asyncio.wait_for(
                runner.build_project(project_directory, build_args, control),
                timeout=backstop,
            )
        except asyncio.TimeoutError:
            logger.error(f"Build of {project_directory} did not stop after its deadline")
            return ProjectBuildResult(
                success=False,
                output="\n".join(partial),
                duration_seconds=round(backstop, 3),
                error_kind=ErrorKind.BUILD_TIMEOUT,
                error_message=f"Build exceeded {build_args.build_timeout_minutes} minute timeout",
            )

        if result.error_kind == ErrorKind.BUILD_TIMEOUT:
            result.error_message = f"Build exceeded {build_args.build_timeout_minutes} minute timeout"
            if not result.output and partial:
                result.output = "\n".join(partial)
        if result.success:
            logger.info(f"Build of {project_directory} succeeded in {result.duration_seconds}s")
        else:
            logger.warning(f"Build of {project_directory} failed: {result.error_message}")
        return result
