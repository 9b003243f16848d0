"""
Node.js project runner (JavaScript and TypeScript).
"""
import json
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

ENTRY_POINTS = ("index.js", "app.js", "server.js", "main.js", "start.js")
TS_ENTRY_POINTS = ("index.ts", "main.ts", "app.ts", "server.ts")
BUILD_OUTPUTS = ("dist", "build", "out")

FRAMEWORKS = [
    ("next", "Next.js"),
    ("@angular/core", "Angular"),
    ("react", "React"),
    ("vue", "Vue"),
    ("express", "Express"),
]

_TSC = re.compile(r"^(?P<file>[^\s(:]+\.tsx?)\((?P<line>\d+),\d+\): (?:error|warning) (?P<code>TS\d+): (?P<message>.+)$", re.M)
_STACK = re.compile(r"^\s+at .*?\(?(?P<file>[^\s():]+\.[cm]?[jt]sx?):(?P<line>\d+):\d+\)?$", re.M)
_SYNTAX = re.compile(r"^(?P<file>[^\s:]+\.[cm]?js):(?P<line>\d+)\n(?:.*\n){0,3}?(?P<message>SyntaxError: .+)$", re.M)


def _object(package: Dict, key: str) -> Dict:
    """package.json section that must be an object; anything else counts as empty."""
    value = package.get(key)
    return value if isinstance(value, dict) else {}


class NodeJsProjectRunner(ProjectLanguageRunner):
    """Runs Node.js projects via npm or yarn."""

    language = "JavaScript"
    priority = 40
    toolchain = ["node"]
    diagnostic_patterns = [_TSC, _SYNTAX, _STACK]

    async def can_handle_project(self, project_directory: str, analysis: ProjectStructureAnalysis) -> bool:
        if os.path.isfile(os.path.join(project_directory, "package.json")):
            return True
        return analysis.language in ("JavaScript", "TypeScript")

    def _package(self, project_directory: str) -> Dict:
        return self.read_json(os.path.join(project_directory, "package.json"))

    def _package_manager(self, project_directory: str) -> str:
        return "yarn" if os.path.isfile(os.path.join(project_directory, "yarn.lock")) else "npm"

    def _is_typescript(self, project_directory: str, package: Dict) -> bool:
        deps = {**_object(package, "dependencies"), **_object(package, "devDependencies")}
        return os.path.isfile(os.path.join(project_directory, "tsconfig.json")) or "typescript" in deps

    def _entry_point(self, project_directory: str, package: Dict) -> Optional[str]:
        main = package.get("main")
        if isinstance(main, str) and os.path.isfile(os.path.join(project_directory, main)):
            return main[2:] if main.startswith("./") else main
        for name in ENTRY_POINTS:
            if os.path.isfile(os.path.join(project_directory, name)):
                return name
        for folder in BUILD_OUTPUTS:
            for name in ENTRY_POINTS:
                candidate = f"{folder}/{name}"
                if os.path.isfile(os.path.join(project_directory, candidate)):
                    return candidate
        for name in TS_ENTRY_POINTS:
            for candidate in (name, f"src/{name}"):
                if os.path.isfile(os.path.join(project_directory, candidate)):
                    return candidate
        return None

    async def analyze_project(self, project_directory: str, analysis: ProjectStructureAnalysis) -> ProjectStructureAnalysis:
        package = self._package(project_directory)
        deps = {**_object(package, "dependencies"), **_object(package, "devDependencies")}
        typescript = self._is_typescript(project_directory, package)

        project_type = "Node.js Application"
        for dependency, label in FRAMEWORKS:
            if dependency in deps:
                project_type = label
                break

        entry = self._entry_point(project_directory, package)
        entry_points = list(analysis.entry_points)
        if entry and entry not in entry_points:
            entry_points.insert(0, entry)
        return analysis.model_copy(update={
            "language": "TypeScript" if typescript else "JavaScript",
            "project_type": project_type,
            "dependencies": sorted(deps) or list(analysis.dependencies),
            "entry_points": entry_points,
            "main_entry_point": entry or analysis.main_entry_point,
            "metadata": {
                **analysis.metadata,
                "runner": self.language,
                "package_manager": self._package_manager(project_directory),
                "scripts": sorted(_object(package, "scripts").keys()),
                "typescript": typescript,
            },
        })

    def build_steps(self, project_directory: str, build_args: ProjectBuildArgs) -> List[BuildStep]:
        if not os.path.isfile(os.path.join(project_directory, "package.json")):
            return []
        package = self._package(project_directory)
        manager = self._package_manager(project_directory)
        steps = []
        if manager == "yarn":
            steps.append(BuildStep("yarn install", ["yarn", "install", "--non-interactive", *build_args.additional_args], restore=True))
        elif os.path.isfile(os.path.join(project_directory, "package-lock.json")):
            steps.append(BuildStep("npm ci", ["npm", "ci", "--no-audit", "--no-fund", *build_args.additional_args], restore=True))
        else:
            steps.append(BuildStep("npm install", ["npm", "install", "--no-audit", "--no-fund", *build_args.additional_args], restore=True))

        if "build" in _object(package, "scripts"):
            steps.append(BuildStep("build script", [manager, "run", "build"]))
        return steps

    def build_environment(self, project_directory: str, control: ProcessControl) -> Dict[str, str]:
        env = {"CI": "true", "NPM_CONFIG_UPDATE_NOTIFIER": "false"}
        if control.cache_dir:
            env["npm_config_cache"] = os.path.join(control.cache_dir, "npm")
            env["YARN_CACHE_FOLDER"] = os.path.join(control.cache_dir, "yarn")
        return env

    def run_environment(self, context: ProjectExecutionContext) -> Dict[str, str]:
        return {"NODE_ENV": context.environment.get("NODE_ENV", "production")}

    def get_run_command(self, context: ProjectExecutionContext) -> List[str]:
        package = self._package(context.project_directory)
        entry = self._entry_point(context.project_directory, package)
        if entry and entry.endswith(".ts"):
            return ["npx", "--no-install", "ts-node", entry]
        if entry:
            return ["node", entry]
        if "start" in _object(package, "scripts"):
            return [self._package_manager(context.project_directory), "run", "start", "--"]
        raise ValidationError("No Node.js entry point found (package.json main, index.js or a start script)")

    async def validate_project(self, project_directory: str) -> ProjectValidationResult:
        result = await super().validate_project(project_directory)
        package_path = os.path.join(project_directory, "package.json")
        package = {}
        if os.path.isfile(package_path):
            try:
                package = json.loads(self.read_text(package_path))
            except json.JSONDecodeError:
                package = None
            if not isinstance(package, dict):
                result.is_valid = False
                result.errors.append("package.json is not valid JSON")
                return result
        else:
            result.suggestions.append("Add package.json to declare dependencies and scripts")

        if not self._entry_point(project_directory, package) and "start" not in _object(package, "scripts"):
            if "build" not in _object(package, "scripts"):
                result.is_valid = False
                result.errors.append("No Node.js entry point found")
            else:
                result.warnings.append("Entry point is expected to be produced by the build script")
        for key in ("dependencies", "devDependencies", "scripts"):
            if key in package and not isinstance(package[key], dict):
                result.warnings.append(f"package.json \"{key}\" is not an object and is ignored")
        if package and "engines" not in package:
            result.suggestions.append("Declare the supported Node.js version under \"engines\"")
        return result
