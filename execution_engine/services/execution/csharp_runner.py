"""
C# project runner using the dotnet CLI.
"""
import glob
import logging
import os
import re
from typing import Dict, List, Optional

from execution_engine.core.exceptions import ValidationError
from execution_engine.schemas.execution import (
    ProjectBuildArgs,
    ProjectStructureAnalysis,
    ProjectValidationResult,
)
from execution_engine.services.execution.runner_base import (
    BuildStep,
    ProjectExecutionContext,
    ProjectLanguageRunner,
)
from execution_engine.services.execution.sandbox import ProcessControl

logger = logging.getLogger(__name__)

_MSBUILD = re.compile(
    r"^\s*(?P<file>[^\s(][^(]*?\.cs)\((?P<line>\d+),\d+\): (?:error|warning) (?P<code>CS\d+): (?P<message>[^\[\n]+)",
    re.M,
)
_SDK = re.compile(r'<Project\s+Sdk="([^"]+)"')
_OUTPUT_TYPE = re.compile(r"<OutputType>\s*(\w+)\s*</OutputType>", re.I)
_PACKAGE_REFERENCE = re.compile(r'<PackageReference\s+Include="([^"]+)"', re.I)


class CSharpProjectRunner(ProjectLanguageRunner):
    """Runs .NET projects with dotnet restore/build/run."""

    language = "C#"
    priority = 10
    toolchain = ["dotnet"]
    reserves_heap = True
    diagnostic_patterns = [_MSBUILD]

    async def can_handle_project(self, project_directory: str, analysis: ProjectStructureAnalysis) -> bool:
        if self._project_file(project_directory) or self._solution_file(project_directory):
            return True
        return analysis.language == "C#"

    def _project_file(self, project_directory: str) -> Optional[str]:
        """Shallowest .csproj, relative to the project root."""
        matches = glob.glob(os.path.join(project_directory, "*.csproj")) + glob.glob(
            os.path.join(project_directory, "*", "*.csproj")
        )
        if not matches:
            return None
        matches.sort(key=lambda p: (p.count(os.sep), p))
        return os.path.relpath(matches[0], project_directory).replace(os.sep, "/")

    def _solution_file(self, project_directory: str) -> Optional[str]:
        matches = sorted(glob.glob(os.path.join(project_directory, "*.sln")))
        return os.path.basename(matches[0]) if matches else None

    def _build_target(self, project_directory: str) -> List[str]:
        target = self._solution_file(project_directory) or self._project_file(project_directory)
        return [target] if target else []

    async def analyze_project(self, project_directory: str, analysis: ProjectStructureAnalysis) -> ProjectStructureAnalysis:
        project_file = self._project_file(project_directory)
        manifest = self.read_text(os.path.join(project_directory, project_file)) if project_file else ""

        sdk_match = _SDK.search(manifest)
        sdk = sdk_match.group(1) if sdk_match else ""
        output_type = _OUTPUT_TYPE.search(manifest)
        if sdk.endswith(".Web"):
            project_type = "ASP.NET Core"
        elif sdk.endswith(".Worker"):
            project_type = "Worker Service"
        elif output_type and output_type.group(1).lower() == "exe":
            project_type = "Console Application"
        elif output_type and output_type.group(1).lower() == "library":
            project_type = "Class Library"
        else:
            project_type = ".NET Project"

        packages = _PACKAGE_REFERENCE.findall(manifest)
        return analysis.model_copy(update={
            "language": self.language,
            "project_type": project_type,
            "dependencies": packages or list(analysis.dependencies),
            "has_build_file": bool(project_file) or analysis.has_build_file,
            "metadata": {
                **analysis.metadata,
                "runner": self.language,
                "project_file": project_file,
                "solution_file": self._solution_file(project_directory),
                "sdk": sdk or None,
            },
        })

    def build_steps(self, project_directory: str, build_args: ProjectBuildArgs) -> List[BuildStep]:
        target = self._build_target(project_directory)
        if not target:
            return []
        return [
            BuildStep("dotnet restore", ["dotnet", "restore", *target], restore=True),
            BuildStep("dotnet build", [
                "dotnet", "build", *target,
                "-c", build_args.configuration,
                "--no-restore", "-nologo",
                *build_args.additional_args,
            ]),
        ]

    def build_environment(self, project_directory: str, control: ProcessControl) -> Dict[str, str]:
        env = {"DOTNET_CLI_TELEMETRY_OPTOUT": "1", "DOTNET_NOLOGO": "1", "DOTNET_SKIP_FIRST_TIME_EXPERIENCE": "1"}
        if control.cache_dir:
            env["NUGET_PACKAGES"] = os.path.join(control.cache_dir, "nuget")
        return env

    def run_environment(self, context: ProjectExecutionContext) -> Dict[str, str]:
        return {"DOTNET_CLI_TELEMETRY_OPTOUT": "1", "DOTNET_NOLOGO": "1"}

    def generated_files(self, project_directory: str) -> List[str]:
        found = []
        for path in glob.glob(os.path.join(project_directory, "**", "bin", "**", "*.dll"), recursive=True):
            found.append(os.path.relpath(path, project_directory).replace(os.sep, "/"))
        return sorted(found)

    def get_run_command(self, context: ProjectExecutionContext) -> List[str]:
        project_file = context.analysis.metadata.get("project_file") or self._project_file(context.project_directory)
        if not project_file:
            raise ValidationError("No .csproj file found")
        configuration = context.build_args.configuration if context.build_args else "Release"
        return ["dotnet", "run", "-c", configuration, "--no-build", "--project", project_file, "--"]

    async def validate_project(self, project_directory: str) -> ProjectValidationResult:
        result = await super().validate_project(project_directory)
        project_file = self._project_file(project_directory)
        if not project_file:
            result.is_valid = False
            result.errors.append("No .csproj file found")
            return result
        manifest = self.read_text(os.path.join(project_directory, project_file))
        if "<Project" not in manifest:
            result.is_valid = False
            result.errors.append(f"{project_file} is not an MSBuild project")
        if not glob.glob(os.path.join(project_directory, "**", "*.cs"), recursive=True):
            result.is_valid = False
            result.errors.append("No C# source files found")
        output_type = _OUTPUT_TYPE.search(manifest)
        if output_type and output_type.group(1).lower() == "library":
            result.warnings.append("Class libraries cannot be executed directly")
        return result
