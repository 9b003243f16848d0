"""
Tests for runner selection.

Tests cover:
- Priority order of the built-in runners
- Mixed-manifest projects picking the highest priority runner
- Failing detection being skipped
- Unsupported projects

Run with: pytest tests/test_runner_registry.py -v
"""
import pytest

from execution_engine.services.execution.runner_base import ProjectLanguageRunner


class StubRunner(ProjectLanguageRunner):
    """Runner whose detection answer is fixed."""

    def __init__(self, language, priority, claims=True, error=None):
        super().__init__()
        self.language = language
        self.priority = priority
        self.claims = claims
        self.error = error

    async def can_handle_project(self, project_directory, analysis):
        if self.error is not None:
            raise self.error
        return self.claims

    def build_steps(self, project_directory, build_args):
        return []

    def get_run_command(self, context):
        return ["true"]


class TestRunnerRegistry:
    """Tests for RunnerRegistry."""

    @pytest.mark.asyncio
    async def test_python_and_node_manifests_select_node(self, make_project):
        """Test a project with both manifests goes to the Node.js runner."""
        from execution_engine.services.analysis.project_analyzer import ProjectStructureAnalyzer
        from execution_engine.services.execution.nodejs_runner import NodeJsProjectRunner
        from execution_engine.services.execution.runner_registry import RunnerRegistry, build_default_runners

        directory = make_project({
            "requirements.txt": "flask\n",
            "main.py": "print('hi')\n",
            "package.json": '{"name": "mixed", "main": "index.js"}',
            "index.js": "console.log('hi');\n",
        })
        analysis = ProjectStructureAnalyzer().analyze(directory)

        runner = await RunnerRegistry(build_default_runners()).select(directory, analysis)

        assert isinstance(runner, NodeJsProjectRunner)
        assert runner.priority == 40

    @pytest.mark.asyncio
    async def test_python_project_selects_python(self, make_project):
        """Test a plain Python project goes to the Python runner."""
        from execution_engine.services.analysis.project_analyzer import ProjectStructureAnalyzer
        from execution_engine.services.execution.runner_registry import RunnerRegistry, build_default_runners

        directory = make_project({"main.py": "print('hi')\n"})
        analysis = ProjectStructureAnalyzer().analyze(directory)

        runner = await RunnerRegistry(build_default_runners()).select(directory, analysis)

        assert runner.language == "Python"

    @pytest.mark.asyncio
    async def test_csproj_selects_csharp(self, make_project):
        """Test a .csproj project goes to the C# runner."""
        from execution_engine.services.analysis.project_analyzer import ProjectStructureAnalyzer
        from execution_engine.services.execution.runner_registry import RunnerRegistry, build_default_runners

        directory = make_project({
            "App.csproj": '<Project Sdk="Microsoft.NET.Sdk"></Project>',
            "Program.cs": "class Program { static void Main() {} }\n",
        })
        analysis = ProjectStructureAnalyzer().analyze(directory)

        runner = await RunnerRegistry(build_default_runners()).select(directory, analysis)

        assert runner.language == "C#"

    @pytest.mark.asyncio
    async def test_failing_detection_is_skipped(self, make_project):
        """Test a runner whose detection raises is treated as not claiming the project."""
        from execution_engine.schemas.execution import ProjectStructureAnalysis
        from execution_engine.services.execution.runner_registry import RunnerRegistry

        broken = StubRunner("Broken", 100, error=RuntimeError("detection exploded"))
        fallback = StubRunner("Fallback", 1)

        runner = await RunnerRegistry([fallback, broken]).select("/nowhere", ProjectStructureAnalysis())

        assert runner is fallback

    @pytest.mark.asyncio
    async def test_equal_priority_keeps_registration_order(self):
        """Test ties are resolved by registration order."""
        from execution_engine.schemas.execution import ProjectStructureAnalysis
        from execution_engine.services.execution.runner_registry import RunnerRegistry

        first = StubRunner("First", 10)
        second = StubRunner("Second", 10)

        runner = await RunnerRegistry([first, second]).select("/nowhere", ProjectStructureAnalysis())

        assert runner is first

    @pytest.mark.asyncio
    async def test_no_runner_raises(self, make_project):
        """Test a project nobody claims raises UnsupportedLanguageError."""
        from execution_engine.core.exceptions import UnsupportedLanguageError
        from execution_engine.services.analysis.project_analyzer import ProjectStructureAnalyzer
        from execution_engine.services.execution.runner_registry import RunnerRegistry, build_default_runners

        directory = make_project({"README.md": "# notes\n"})
        analysis = ProjectStructureAnalyzer().analyze(directory)

        with pytest.raises(UnsupportedLanguageError):
            await RunnerRegistry(build_default_runners()).select(directory, analysis)

    def test_supported_languages_follow_priority(self):
        """Test languages are listed highest priority first."""
        from execution_engine.services.execution.runner_registry import RunnerRegistry, build_default_runners

        registry = RunnerRegistry(build_default_runners())

        assert registry.supported_languages() == ["JavaScript", "TypeScript", "Java", "Python", "C#"]
        assert [r.priority for r in registry.runners] == [40, 30, 20, 10]

    def test_get_by_language(self):
        """Test runners can be looked up case-insensitively."""
        from execution_engine.services.execution.runner_registry import RunnerRegistry, build_default_runners

        registry = RunnerRegistry(build_default_runners())

        assert registry.get("python").language == "Python"
        assert registry.get("Cobol") is None
