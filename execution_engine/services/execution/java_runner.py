"""
Java project runner (Maven, Gradle or plain javac).
"""
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
from execution_engine.services.analysis.project_analyzer import MAIN_GUARDS
from execution_engine.services.execution.runner_base import (
    BuildStep,
    ProjectExecutionContext,
    ProjectLanguageRunner,
)
from execution_engine.services.execution.sandbox import ProcessControl

logger = logging.getLogger(__name__)

CLASSPATH_FILE = ".classpath"
JAVAC_OUTPUT = "bin"
SKIP_DIRECTORIES = {"target", "build", JAVAC_OUTPUT, ".git", ".gradle", "node_modules"}

_JAVAC = re.compile(r"^(?P<file>[^\s:]+\.java):(?P<line>\d+): (?:error|warning): (?P<message>.+)$", re.M)
_MAVEN = re.compile(
    r"^\[(?:ERROR|WARNING)\] (?P<file>[^\s:]+\.java):\[(?P<line>\d+),\d+\] (?P<message>.+)$", re.M
)
_STACK = re.compile(r"^\s+at [\w.$]+\((?P<file>\w+\.java):(?P<line>\d+)\)$", re.M)
_PACKAGE = re.compile(r"^\s*package\s+([\w.]+)\s*;", re.M)


class JavaProjectRunner(ProjectLanguageRunner):
    """Runs Java projects through their build tool."""

    language = "Java"
    priority = 30
    toolchain = ["java"]
    reserves_heap = True
    diagnostic_patterns = [_JAVAC, _MAVEN, _STACK]

    async def can_handle_project(self, project_directory: str, analysis: ProjectStructureAnalysis) -> bool:
        if self._build_tool(project_directory) != "javac":
            return True
        return analysis.language == "Java"

    def _build_tool(self, project_directory: str) -> str:
        if os.path.isfile(os.path.join(project_directory, "pom.xml")):
            return "maven"
        for name in ("build.gradle", "build.gradle.kts"):
            if os.path.isfile(os.path.join(project_directory, name)):
                return "gradle"
        return "javac"

    def _java_sources(self, project_directory: str) -> List[str]:
        sources = []
        for root, dirs, files in os.walk(project_directory):
            dirs[:] = sorted(d for d in dirs if d not in SKIP_DIRECTORIES)
            for name in sorted(files):
                if name.endswith(".java"):
                    rel = os.path.relpath(os.path.join(root, name), project_directory)
                    sources.append(rel.replace(os.sep, "/"))
        return sources

    def _main_class(self, project_directory: str) -> Optional[str]:
        """Fully qualified name of the first class declaring ``main(String[])``."""
        candidates = []
        for rel in self._java_sources(project_directory):
            text = self.read_text(os.path.join(project_directory, rel))
            if not MAIN_GUARDS["Java"].search(text):
                continue
            name = os.path.splitext(os.path.basename(rel))[0]
            package = _PACKAGE.search(text)
            qualified = f"{package.group(1)}.{name}" if package else name
            candidates.append((name != "Main", rel.count("/"), qualified))
        if not candidates:
            return None
        return sorted(candidates)[0][2]

    def _uses_wrapper(self, project_directory: str) -> bool:
        return os.path.isfile(os.path.join(project_directory, "gradlew"))

    async def analyze_project(self, project_directory: str, analysis: ProjectStructureAnalysis) -> ProjectStructureAnalysis:
        tool = self._build_tool(project_directory)
        manifest = ""
        if tool == "maven":
            manifest = self.read_text(os.path.join(project_directory, "pom.xml"))
        elif tool == "gradle":
            manifest = self.read_text(os.path.join(project_directory, "build.gradle")) or self.read_text(
                os.path.join(project_directory, "build.gradle.kts")
            )

        if "spring-boot" in manifest:
            project_type = "Spring Boot"
        elif tool == "maven":
            project_type = "Maven Project"
        elif tool == "gradle":
            project_type = "Gradle Project"
        else:
            project_type = "Java Application"

        dependencies = list(analysis.dependencies)
        if tool == "maven":
            dependencies = re.findall(
                r"<dependency>\s*<groupId>([^<]+)</groupId>\s*<artifactId>([^<]+)</artifactId>", manifest
            )
            dependencies = [f"{group}:{artifact}" for group, artifact in dependencies] or list(analysis.dependencies)

        main_class = self._main_class(project_directory)
        return analysis.model_copy(update={
            "language": self.language,
            "project_type": project_type,
            "dependencies": dependencies,
            "has_build_file": True,
            "metadata": {**analysis.metadata, "runner": self.language, "build_tool": tool, "main_class": main_class},
        })

    def build_steps(self, project_directory: str, build_args: ProjectBuildArgs) -> List[BuildStep]:
        tool = self._build_tool(project_directory)
        extra = list(build_args.additional_args)
        if tool == "maven":
            offline = [] if build_args.restore_dependencies else ["-o"]
            return [
                BuildStep("maven compile", ["mvn", "-B", "-q", *offline, "compile", *extra]),
                BuildStep("maven classpath", [
                    "mvn", "-B", "-q", *offline, "dependency:build-classpath",
                    f"-Dmdep.outputFile={CLASSPATH_FILE}",
                ]),
            ]
        if tool == "gradle":
            gradle = ["sh", "gradlew"] if self._uses_wrapper(project_directory) else ["gradle"]
            offline = [] if build_args.restore_dependencies else ["--offline"]
            return [BuildStep("gradle build", [*gradle, "build", "-x", "test", "--no-daemon", *offline, *extra])]

        sources = self._java_sources(project_directory)
        if not sources:
            return []
        return [BuildStep("javac", ["javac", "-d", JAVAC_OUTPUT, *extra, *sources])]

    def build_environment(self, project_directory: str, control: ProcessControl) -> Dict[str, str]:
        if not control.cache_dir:
            return {}
        return {
            "MAVEN_OPTS": f"-Dmaven.repo.local={os.path.join(control.cache_dir, 'm2')}",
            "GRADLE_USER_HOME": os.path.join(control.cache_dir, "gradle"),
        }

    def generated_files(self, project_directory: str) -> List[str]:
        found = []
        for folder in ("target", "build/libs", JAVAC_OUTPUT):
            base = os.path.join(project_directory, folder)
            if not os.path.isdir(base):
                continue
            for root, _, files in os.walk(base):
                for name in files:
                    if name.endswith((".jar", ".class", ".war")):
                        rel = os.path.relpath(os.path.join(root, name), project_directory)
                        found.append(rel.replace(os.sep, "/"))
        return sorted(found)

    def get_run_command(self, context: ProjectExecutionContext) -> List[str]:
        project_directory = context.project_directory
        tool = self._build_tool(project_directory)
        if tool == "gradle":
            gradle = ["sh", "gradlew"] if self._uses_wrapper(project_directory) else ["gradle"]
            # Gradle takes program arguments through --args only
            return [*gradle, "run", "-q", "--no-daemon"]

        main_class = context.analysis.metadata.get("main_class") or self._main_class(project_directory)
        if not main_class:
            raise ValidationError("No Java class with a main(String[]) method found")

        if tool == "maven":
            classpath = ["target/classes"]
            extra = self.read_text(os.path.join(project_directory, CLASSPATH_FILE)).strip()
            if extra:
                classpath.append(extra)
            return ["java", "-cp", os.pathsep.join(classpath), main_class]
        return ["java", "-cp", JAVAC_OUTPUT, main_class]

    def append_parameters(self, command: List[str], encoded: str) -> List[str]:
        if "run" in command and ("gradle" in command or "gradlew" in command):
            return command + [f"--args={encoded}"]
        return super().append_parameters(command, encoded)

    async def validate_project(self, project_directory: str) -> ProjectValidationResult:
        result = await super().validate_project(project_directory)
        if not self._java_sources(project_directory):
            result.is_valid = False
            result.errors.append("No Java source files found")
            return result
        if self._build_tool(project_directory) != "gradle" and not self._main_class(project_directory):
            result.is_valid = False
            result.errors.append("No Java class with a main(String[]) method found")
        if self._build_tool(project_directory) == "javac":
            result.suggestions.append("Add pom.xml or build.gradle to manage dependencies")
        return result
