"""
Project structure analysis.

Walks a submitted project once and classifies its files, dominant
language, entry points, dependencies, complexity and security signals.
The analyzer never writes to the project tree.
"""
import json
import logging
import os
import re
from collections import Counter
from typing import Dict, List, Optional, Tuple

from execution_engine.core.config import settings
from execution_engine.core.exceptions import AnalysisError
from execution_engine.schemas.execution import (
    ComplexityLevel,
    IssueSeverity,
    ProjectComplexity,
    ProjectFile,
    ProjectSecurityScan,
    ProjectStructureAnalysis,
    ProjectValidationResult,
    SecurityIssue,
)

logger = logging.getLogger(__name__)


SKIP_DIRECTORIES = {
    ".git", ".svn", ".hg", "node_modules", "__pycache__", ".venv", "venv",
    ".gradle", ".idea", ".vs", ".vscode", ".mypy_cache", ".pytest_cache",
}

SOURCE_EXTENSIONS: Dict[str, str] = {
    ".py": "Python",
    ".js": "JavaScript",
    ".jsx": "JavaScript",
    ".mjs": "JavaScript",
    ".cjs": "JavaScript",
    ".ts": "TypeScript",
    ".tsx": "TypeScript",
    ".java": "Java",
    ".cs": "C#",
    ".c": "C",
    ".h": "C",
    ".cpp": "C++",
    ".hpp": "C++",
    ".go": "Go",
    ".rs": "Rust",
    ".rb": "Ruby",
    ".html": "HTML",
    ".htm": "HTML",
    ".css": "CSS",
}

# Markup and stylesheets count as source but never decide the language
NON_LANGUAGE_SOURCES = {"HTML", "CSS"}

CONFIG_EXTENSIONS = {
    ".json", ".yaml", ".yml", ".toml", ".ini", ".cfg", ".conf", ".xml",
    ".config", ".properties", ".env", ".csproj", ".sln", ".gradle", ".kts", ".lock",
}

CONFIG_FILE_NAMES = {
    "requirements.txt", "setup.py", "Pipfile", "Dockerfile", "Makefile",
    ".gitignore", ".dockerignore", "gradlew", "mvnw",
}

BINARY_EXTENSIONS = {
    ".exe", ".dll", ".so", ".dylib", ".jar", ".war", ".class", ".pyc", ".pyd",
    ".o", ".a", ".lib", ".bin", ".zip", ".tar", ".gz", ".tgz", ".7z",
    ".png", ".jpg", ".jpeg", ".gif", ".ico", ".bmp", ".webp", ".pdf",
    ".woff", ".woff2", ".ttf", ".eot", ".mp3", ".mp4", ".wasm",
}

# Manifest file name -> language it implies
MANIFESTS: Dict[str, str] = {
    "requirements.txt": "Python",
    "pyproject.toml": "Python",
    "setup.py": "Python",
    "Pipfile": "Python",
    "package.json": "JavaScript",
    "tsconfig.json": "TypeScript",
    "pom.xml": "Java",
    "build.gradle": "Java",
    "build.gradle.kts": "Java",
    "go.mod": "Go",
    "Cargo.toml": "Rust",
    "Gemfile": "Ruby",
}
MANIFEST_SUFFIXES: Dict[str, str] = {".csproj": "C#", ".sln": "C#"}
MANIFEST_WEIGHT = 5

BUILD_FILES = {
    "package.json", "pom.xml", "build.gradle", "build.gradle.kts",
    "setup.py", "pyproject.toml", "requirements.txt", "Cargo.toml", "go.mod",
}

# Ordered by preference when picking the main entry point
ENTRY_POINT_NAMES = [
    "main.py", "__main__.py", "app.py", "run.py", "start.py", "manage.py",
    "index.js", "app.js", "server.js", "main.js", "start.js",
    "index.ts", "main.ts", "server.ts",
    "Program.cs", "Main.java", "main.go", "main.rs", "index.html",
]

MAIN_GUARDS = {
    "Python": re.compile(r"""if\s+__name__\s*==\s*['"]__main__['"]"""),
    "Java": re.compile(r"public\s+static\s+void\s+main\s*\(\s*String"),
    "C#": re.compile(r"static\s+(async\s+)?(void|int|Task(<int>)?)\s+Main\s*\("),
}

SECURITY_PATTERNS: List[Tuple[str, re.Pattern, IssueSeverity, str]] = [
    (
        "shell_execution",
        re.compile(
            r"\bos\.system\s*\(|\bsubprocess\.(call|run|Popen|check_output)\b|"
            r"Runtime\.getRuntime\(\)\.exec|Process\.Start\s*\(|"
            r"require\(\s*['\"]child_process['\"]\s*\)|\bexecSync\s*\("
        ),
        IssueSeverity.HIGH,
        "Arbitrary shell or process invocation",
    ),
    (
        "dynamic_evaluation",
        re.compile(r"(?<![\w.])(eval|exec)\s*\(|\bnew\s+Function\s*\("),
        IssueSeverity.MEDIUM,
        "Dynamic code evaluation",
    ),
    (
        "network_access",
        re.compile(
            r"\brequests\.(get|post|put|delete|patch)\s*\(|\burllib\.request\b|"
            r"\bsocket\.socket\s*\(|(?<![\w.])fetch\s*\(|\bhttps?\.request\s*\(|"
            r"\bnew\s+HttpClient\s*\(|\bjava\.net\.(URL|Socket)\b|\baxios\."
        ),
        IssueSeverity.LOW,
        "Outbound network call",
    ),
    (
        "hardcoded_credential",
        re.compile(
            r"(?i)\b(password|passwd|secret|api[_-]?key|access[_-]?token)\b\s*[:=]\s*['\"][^'\"\s]{4,}['\"]"
        ),
        IssueSeverity.HIGH,
        "Credential-like string literal",
    ),
]


def risk_level_for(issues: List[SecurityIssue]) -> int:
    """Map scan findings to a 1-5 risk level."""
    count = len(issues)
    if count == 0:
        level = 1
    elif count < 3:
        level = 2
    elif count < 6:
        level = 3
    elif count < 10:
        level = 4
    else:
        level = 5
    if any(issue.severity == IssueSeverity.HIGH for issue in issues):
        level = max(level, 4)
    return level


def complexity_for(total_files: int, total_lines: int, dependencies: int) -> ProjectComplexity:
    score = (
        min(total_files * 0.1, 5.0)
        + min(dependencies * 0.2, 3.0)
        + min(total_lines / 1000.0, 2.0)
    )
    if score < 2:
        level = ComplexityLevel.SIMPLE
    elif score < 5:
        level = ComplexityLevel.MODERATE
    elif score < 8:
        level = ComplexityLevel.COMPLEX
    else:
        level = ComplexityLevel.VERY_COMPLEX
    return ProjectComplexity(
        total_files=total_files,
        total_lines=total_lines,
        dependencies=dependencies,
        complexity_score=round(score, 2),
        complexity_level=level,
    )


def parse_requirements(text: str) -> List[str]:
    """Return requirement lines without comments, options or blanks."""
    deps = []
    for line in text.splitlines():
        line = line.split("#", 1)[0].strip()
        if line and not line.startswith("-"):
            deps.append(line)
    return deps


def parse_package_json(text: str) -> Dict:
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def _read_text(path: str, limit: int) -> Optional[str]:
    """Read a text file, or None when it is binary, too large or unreadable."""
    try:
        if os.path.getsize(path) > limit:
            return None
        with open(path, "rb") as f:
            raw = f.read()
    except OSError:
        return None
    if b"\x00" in raw[:1024]:
        return None
    return raw.decode("utf-8", errors="replace")


class ProjectStructureAnalyzer:
    """
    Generic, language-agnostic project analysis.

    Language runners refine the result (project type, entry points,
    dependencies) through their own ``analyze_project``.
    """

    def __init__(
        self,
        max_files: int = None,
        max_scan_file_bytes: int = None,
        enable_security_scan: bool = None,
    ):
        self.max_files = max_files or settings.EXECUTION_MAX_PROJECT_FILES
        self.max_scan_file_bytes = max_scan_file_bytes or settings.EXECUTION_MAX_SCAN_FILE_BYTES
        self.enable_security_scan = (
            settings.EXECUTION_ENABLE_SECURITY_SCAN if enable_security_scan is None else enable_security_scan
        )

    def list_files(self, directory: str) -> List[str]:
        """
        List project files as sorted, forward-slash relative paths.

        Raises:
            AnalysisError: If the directory is missing, unreadable, empty
                or holds more files than the configured ceiling
        """
        if not os.path.isdir(directory):
            raise AnalysisError(directory, "directory does not exist")

        def _on_error(error: OSError):
            raise AnalysisError(directory, f"unreadable: {error}")

        files = []
        for root, dirs, names in os.walk(directory, onerror=_on_error):
            dirs[:] = sorted(d for d in dirs if d not in SKIP_DIRECTORIES)
            for name in names:
                rel = os.path.relpath(os.path.join(root, name), directory)
                files.append(rel.replace(os.sep, "/"))
                if len(files) > self.max_files:
                    raise AnalysisError(directory, f"more than {self.max_files} files")

        if not files:
            raise AnalysisError(directory, "project directory is empty")
        return sorted(files)

    def analyze(self, directory: str) -> ProjectStructureAnalysis:
        """
        Analyze a project directory.

        Args:
            directory: Root of the materialized project

        Returns:
            Immutable ProjectStructureAnalysis

        Raises:
            AnalysisError: If the tree cannot be analyzed
        """
        files = self.list_files(directory)

        source_files: List[str] = []
        config_files: List[str] = []
        binary_files: List[str] = []
        records: List[ProjectFile] = []
        language_votes: Counter = Counter()
        entry_points: List[str] = []
        issues: List[SecurityIssue] = []
        total_lines = 0

        for rel in files:
            path = os.path.join(directory, rel)
            name = os.path.basename(rel)
            ext = os.path.splitext(name)[1].lower()
            try:
                size = os.path.getsize(path)
            except OSError as e:
                raise AnalysisError(directory, f"unreadable file {rel}: {e}")

            manifest_language = MANIFESTS.get(name) or MANIFEST_SUFFIXES.get(ext)
            if manifest_language:
                language_votes[manifest_language] += MANIFEST_WEIGHT

            text = None
            if ext in BINARY_EXTENSIONS:
                file_type = "binary"
                binary_files.append(rel)
            elif ext in SOURCE_EXTENSIONS:
                file_type = "source"
                source_files.append(rel)
                source_language = SOURCE_EXTENSIONS[ext]
                if source_language not in NON_LANGUAGE_SOURCES:
                    language_votes[source_language] += 1
                text = _read_text(path, self.max_scan_file_bytes)
            elif ext in CONFIG_EXTENSIONS or name in CONFIG_FILE_NAMES or manifest_language:
                file_type = "config"
                config_files.append(rel)
            else:
                file_type = "other"

            line_count = 0
            if file_type != "binary":
                if text is None and file_type != "source":
                    text = _read_text(path, self.max_scan_file_bytes)
                if text:
                    line_count = text.count("\n") + (0 if text.endswith("\n") else 1)
                    total_lines += line_count

            is_entry = name in ENTRY_POINT_NAMES
            if not is_entry and file_type == "source" and text:
                guard = MAIN_GUARDS.get(SOURCE_EXTENSIONS[ext])
                is_entry = bool(guard and guard.search(text))
            if is_entry:
                entry_points.append(rel)

            if self.enable_security_scan and file_type == "source" and text:
                issues.extend(self._scan_text(rel, text))

            records.append(ProjectFile(
                path=rel,
                type=file_type,
                size=size,
                extension=ext,
                line_count=line_count,
                is_entry_point=is_entry,
            ))

        language = self._dominant_language(language_votes)
        dependencies = self._collect_dependencies(directory, config_files)
        has_build_file = any(
            os.path.basename(f) in BUILD_FILES or os.path.splitext(f)[1].lower() in MANIFEST_SUFFIXES
            for f in config_files
        )
        entry_points = self._order_entry_points(entry_points)

        analysis = ProjectStructureAnalysis(
            language=language,
            project_type=self._generic_project_type(language, files),
            entry_points=entry_points,
            main_entry_point=entry_points[0] if entry_points else None,
            config_files=config_files,
            source_files=source_files,
            binary_files=binary_files,
            files=records,
            dependencies=dependencies,
            has_build_file=has_build_file,
            metadata={"language_votes": dict(language_votes)},
            complexity=complexity_for(len(files), total_lines, len(dependencies)),
            security_scan=ProjectSecurityScan(
                issues=issues,
                suspicious_patterns=sorted({issue.type for issue in issues}),
                risk_level=risk_level_for(issues),
            ),
        )
        logger.info(
            f"Analyzed {directory}: language={analysis.language}, files={len(files)}, "
            f"complexity={analysis.complexity.complexity_level.value}, "
            f"risk={analysis.security_scan.risk_level}"
        )
        return analysis

    def validate(
        self,
        directory: str,
        max_project_size_bytes: int = None,
        analysis: Optional[ProjectStructureAnalysis] = None,
    ) -> ProjectValidationResult:
        """
        Structural checks shared by every language.

        Blocked extensions and security findings are warnings; an empty,
        missing or oversized project is an error.
        """
        max_size = max_project_size_bytes or settings.EXECUTION_MAX_PROJECT_SIZE_BYTES
        result = ProjectValidationResult()
        if analysis is None:
            try:
                analysis = self.analyze(directory)
            except AnalysisError as e:
                result.is_valid = False
                result.errors.append(e.message)
                return result

        blocked = set(ext.lower() for ext in settings.EXECUTION_BLOCKED_EXTENSIONS)
        for record in analysis.files:
            if record.extension in blocked:
                result.warnings.append(f"Potentially unsafe file: {record.path}")

        total_size = sum(record.size for record in analysis.files)
        if total_size > max_size:
            result.is_valid = False
            result.errors.append(
                f"Project size ({total_size:,} bytes) exceeds maximum allowed size ({max_size:,} bytes)"
            )

        if self.enable_security_scan:
            result.security_scan = analysis.security_scan
            for issue in analysis.security_scan.issues:
                location = f"{issue.file}:{issue.line}" if issue.line else issue.file
                result.warnings.append(f"Security: {issue.description} ({location})")
        result.complexity = analysis.complexity

        if not analysis.entry_points:
            result.suggestions.append("Add a conventional entry point such as main.py or index.js")
        return result

    def _scan_text(self, rel: str, text: str) -> List[SecurityIssue]:
        found = []
        for line_no, line in enumerate(text.splitlines(), start=1):
            for issue_type, pattern, severity, description in SECURITY_PATTERNS:
                if pattern.search(line):
                    found.append(SecurityIssue(
                        type=issue_type,
                        description=description,
                        severity=severity,
                        file=rel,
                        line=line_no,
                    ))
        return found

    @staticmethod
    def _dominant_language(votes: Counter) -> str:
        if not votes:
            return "Unknown"
        # Highest score wins; name order keeps ties deterministic
        return sorted(votes.items(), key=lambda item: (-item[1], item[0]))[0][0]

    @staticmethod
    def _order_entry_points(entry_points: List[str]) -> List[str]:
        def rank(rel: str):
            name = os.path.basename(rel)
            preference = ENTRY_POINT_NAMES.index(name) if name in ENTRY_POINT_NAMES else len(ENTRY_POINT_NAMES)
            return (rel.count("/"), preference, rel)
        return sorted(entry_points, key=rank)

    @staticmethod
    def _generic_project_type(language: str, files: List[str]) -> str:
        names = {os.path.basename(f) for f in files}
        if "index.html" in names and not (names & set(MANIFESTS)) and language in ("Unknown", "JavaScript"):
            return "Static Site"
        if "Dockerfile" in names and language == "Unknown":
            return "Container"
        return f"{language} Project" if language != "Unknown" else "Unknown"

    def _collect_dependencies(self, directory: str, config_files: List[str]) -> List[str]:
        deps: List[str] = []
        for rel in config_files:
            name = os.path.basename(rel)
            text = _read_text(os.path.join(directory, rel), self.max_scan_file_bytes)
            if not text:
                continue
            if name == "requirements.txt":
                deps.extend(parse_requirements(text))
            elif name == "package.json":
                data = parse_package_json(text)
                for section in ("dependencies", "devDependencies"):
                    declared = data.get(section)
                    if isinstance(declared, dict):
                        deps.extend(sorted(declared))
            elif name == "pom.xml":
                deps.extend(re.findall(r"<dependency>.*?<artifactId>([^<]+)</artifactId>", text, re.S))
            elif name in ("build.gradle", "build.gradle.kts"):
                deps.extend(re.findall(
                    r"""(?:implementation|api|compile|runtimeOnly)\s*\(?\s*['"]([^'"]+)['"]""", text
                ))
            elif name.endswith(".csproj"):
                deps.extend(re.findall(r'<PackageReference\s+Include="([^"]+)"', text))
        return deps
