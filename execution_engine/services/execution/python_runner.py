"""
Python project runner.

Dependencies are installed into a project-local ``.packages`` directory
that is put on PYTHONPATH for the run, so builds never touch the host
interpreter's site-packages.
"""
import ast
import logging
import os
import re
from typing import Dict, List

from execution_engine.core.config import settings
from execution_engine.core.exceptions import ValidationError
from execution_engine.schemas.execution import (
    ProjectBuildArgs,
    ProjectStructureAnalysis,
    ProjectValidationResult,
)
from execution_engine.services.analysis.project_analyzer import parse_requirements
from execution_engine.services.execution.runner_base import (
    BuildStep,
    ProjectExecutionContext,
    ProjectLanguageRunner,
)
from execution_engine.services.execution.sandbox import ProcessControl, ProcessSandbox

logger = logging.getLogger(__name__)

PACKAGES_DIR = ".packages"
MANIFESTS = ("requirements.txt", "setup.py", "pyproject.toml", "Pipfile")
ENTRY_POINTS = ("main.py", "__main__.py", "app.py", "run.py", "start.py")

FRAMEWORKS = [
    ("django", "Django"),
    ("flask", "Flask"),
    ("fastapi", "FastAPI"),
]

_TRACEBACK = re.compile(r'File "(?P<file>[^"]+)", line (?P<line>\d+)(?:, in \S+)?\n\s*(?P<message>.*)')
_COMPILEALL = re.compile(r'\*\*\* Error compiling [\'"]?(?P<file>[^\'"\n]+)[\'"]?\.\.\.\n.*?line (?P<line>\d+)\n?(?P<message>.*)?')


def _requirement_name(requirement: str) -> str:
    return re.split(r"[<>=!~\[; ]", requirement, 1)[0].strip().lower()


class PythonProjectRunner(ProjectLanguageRunner):
    """Runs Python projects with pip-installed dependencies."""

    language = "Python"
    priority = 20
    diagnostic_patterns = [_TRACEBACK, _COMPILEALL]

    def __init__(self, sandbox: ProcessSandbox = None, python_executable: str = None):
        super().__init__(sandbox)
        self.python_executable = python_executable or settings.PYTHON_EXECUTABLE
        self.toolchain = [self.python_executable]

    async def can_handle_project(self, project_directory: str, analysis: ProjectStructureAnalysis) -> bool:
        if any(os.path.isfile(os.path.join(project_directory, m)) for m in MANIFESTS):
            return True
        return analysis.language == "Python"

    def _dependencies(self, project_directory: str) -> List[str]:
        deps: List[str] = []
        requirements = self.read_text(os.path.join(project_directory, "requirements.txt"))
        if requirements:
            deps.extend(parse_requirements(requirements))

        setup_py = self.read_text(os.path.join(project_directory, "setup.py"))
        match = re.search(r"install_requires\s*=\s*\[(.*?)\]", setup_py, re.S)
        if match:
            deps.extend(re.findall(r"""['"]([^'"]+)['"]""", match.group(1)))

        pyproject = self.read_text(os.path.join(project_directory, "pyproject.toml"))
        match = re.search(r"^dependencies\s*=\s*\[(.*?)\]", pyproject, re.S | re.M)
        if match:
            deps.extend(re.findall(r"""['"]([^'"]+)['"]""", match.group(1)))

        unique = []
        for dep in deps:
            if dep not in unique:
                unique.append(dep)
        return unique

    def _main_entry_point(self, project_directory: str, analysis: ProjectStructureAnalysis):
        for name in ENTRY_POINTS:
            if os.path.isfile(os.path.join(project_directory, name)):
                return name
        for entry in analysis.entry_points:
            if entry.endswith(".py"):
                return entry
        return None

    async def analyze_project(self, project_directory: str, analysis: ProjectStructureAnalysis) -> ProjectStructureAnalysis:
        deps = self._dependencies(project_directory)
        names = {_requirement_name(d) for d in deps}

        project_type = "Python Application"
        if os.path.isfile(os.path.join(project_directory, "manage.py")) or "django" in names:
            project_type = "Django"
        else:
            for package, label in FRAMEWORKS[1:]:
                if package in names:
                    project_type = label
                    break
            else:
                if any(os.path.isfile(os.path.join(project_directory, m)) for m in ("setup.py", "pyproject.toml")):
                    project_type = "Python Package"

        entry_points = [e for e in analysis.entry_points if e.endswith(".py")] or list(analysis.entry_points)
        main_entry = self._main_entry_point(project_directory, analysis)
        return analysis.model_copy(update={
            "language": self.language,
            "project_type": project_type,
            "dependencies": deps or list(analysis.dependencies),
            "entry_points": entry_points,
            "main_entry_point": main_entry,
            "metadata": {**analysis.metadata, "runner": self.language},
        })

    def _pip_install(self, args: List[str], build_args: ProjectBuildArgs) -> List[str]:
        return [
            self.python_executable, "-m", "pip", "install",
            "--disable-pip-version-check", "--no-input",
            "--target", PACKAGES_DIR,
            *args,
            *build_args.additional_args,
        ]

    def build_steps(self, project_directory: str, build_args: ProjectBuildArgs) -> List[BuildStep]:
        steps = []
        if os.path.isfile(os.path.join(project_directory, "requirements.txt")):
            steps.append(BuildStep("pip install", self._pip_install(["-r", "requirements.txt"], build_args), restore=True))
        if any(os.path.isfile(os.path.join(project_directory, m)) for m in ("setup.py", "pyproject.toml")):
            steps.append(BuildStep("pip install project", self._pip_install(["."], build_args), restore=True))
        steps.append(BuildStep(
            "compile",
            [self.python_executable, "-m", "compileall", "-q", "-x", r"[/\\]\.packages[/\\]", "."],
        ))
        return steps

    def build_environment(self, project_directory: str, control: ProcessControl) -> Dict[str, str]:
        env = {"PYTHONDONTWRITEBYTECODE": "1", "PIP_NO_WARN_SCRIPT_LOCATION": "1"}
        if control.cache_dir:
            env["PIP_CACHE_DIR"] = os.path.join(control.cache_dir, "pip")
        return env

    def run_environment(self, context: ProjectExecutionContext) -> Dict[str, str]:
        python_path = PACKAGES_DIR
        if context.environment.get("PYTHONPATH"):
            python_path = f"{PACKAGES_DIR}{os.pathsep}{context.environment['PYTHONPATH']}"
        return {
            "PYTHONPATH": python_path,
            "PYTHONUNBUFFERED": "1",
            "PYTHONDONTWRITEBYTECODE": "1",
        }

    def get_run_command(self, context: ProjectExecutionContext) -> List[str]:
        entry = context.analysis.main_entry_point
        if not entry or not entry.endswith(".py"):
            entry = self._main_entry_point(context.project_directory, context.analysis)
        if not entry:
            raise ValidationError("No Python entry point found (expected main.py, app.py, run.py or a __main__ guard)")
        return [self.python_executable, "-u", entry]

    async def validate_project(self, project_directory: str) -> ProjectValidationResult:
        result = await super().validate_project(project_directory)

        has_entry = any(os.path.isfile(os.path.join(project_directory, e)) for e in ENTRY_POINTS)
        for root, dirs, files in os.walk(project_directory):
            dirs[:] = [d for d in dirs if d not in (PACKAGES_DIR, "__pycache__", ".git", "venv", ".venv")]
            for name in files:
                if not name.endswith(".py"):
                    continue
                path = os.path.join(root, name)
                rel = os.path.relpath(path, project_directory).replace(os.sep, "/")
                source = self.read_text(path)
                try:
                    tree = ast.parse(source, filename=rel)
                except SyntaxError as e:
                    result.is_valid = False
                    result.errors.append(f"Syntax error in {rel} line {e.lineno}: {e.msg}")
                    continue
                if not has_entry and "__main__" in source and any(
                    isinstance(node, ast.If) for node in tree.body
                ):
                    has_entry = True

        if not has_entry:
            result.is_valid = False
            result.errors.append("No Python entry point found")
            result.suggestions.append("Add main.py or an `if __name__ == \"__main__\":` block")
        if not os.path.isfile(os.path.join(project_directory, "requirements.txt")):
            result.suggestions.append("Add requirements.txt to pin third-party dependencies")
        return result
