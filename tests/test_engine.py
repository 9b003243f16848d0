"""
Tests for the project execution engine.

Tests cover:
- End-to-end execution of a Python project with parameters and output files
- Result persistence and lifecycle events
- Failure kinds (unknown program, unsupported language, invalid project, unsafe execution id)
- Resource limit breaches, cancellation and deadlines
- Inspection operations (validate, analyze, supported languages)

Run with: pytest tests/test_engine.py -v
"""
import asyncio
import os
import sys

import pytest


HELLO_MAIN = (
    "import json, os, sys\n"
    "params = json.loads(sys.argv[1])\n"
    "print('rows', params['rows'])\n"
    "with open(os.path.join(os.environ['OUTPUT_DIR'], 'result.txt'), 'w') as f:\n"
    "    f.write('done')\n"
)

SLOW_MAIN = "import time\nprint('ready', flush=True)\ntime.sleep(30)\n"


def _engine(tmp_path, sandbox, dispatcher):
    from execution_engine.services.execution.build_stage import BuildStage
    from execution_engine.services.execution.engine import ProjectExecutionEngine
    from execution_engine.services.execution.python_runner import PythonProjectRunner
    from execution_engine.services.execution.result_store import FileSystemResultStore
    from execution_engine.services.execution.runner_registry import RunnerRegistry
    from execution_engine.services.execution.source_provider import LocalSourceProvider

    return ProjectExecutionEngine(
        source_provider=LocalSourceProvider(str(tmp_path / "sources")),
        result_store=FileSystemResultStore(str(tmp_path / "results")),
        registry=RunnerRegistry([PythonProjectRunner(sandbox, python_executable=sys.executable)]),
        build_stage=BuildStage(sandbox),
        sandbox=sandbox,
        dispatcher=dispatcher,
        working_directory=str(tmp_path / "work"),
        max_concurrent=2,
    )


def _request(program_id="hello", **kwargs):
    from execution_engine.schemas.execution import ProjectExecutionRequest
    return ProjectExecutionRequest(program_id=program_id, user_id="user-1", **kwargs)


class TestExecuteProject:
    """Tests for ProjectExecutionEngine.execute_project."""

    @pytest.mark.asyncio
    async def test_successful_run(self, tmp_path, make_project, sandbox, dispatcher):
        """Test a project runs with its parameters and its outputs are collected."""
        from execution_engine.core.events import ExecutionCompletedEvent, ExecutionStartedEvent

        make_project({"main.py": HELLO_MAIN}, name="sources/hello/v1")
        engine = _engine(tmp_path, sandbox, dispatcher)
        started, completed, lines = [], [], []
        dispatcher.register(ExecutionStartedEvent, started.append)
        dispatcher.register(ExecutionCompletedEvent, completed.append)

        result = await engine.execute_project(
            _request(parameters={"rows": 10}), execution_id="run-1", output_callback=lines.append,
        )

        assert result.success is True, result.error_message
        assert result.exit_code == 0
        assert result.output.strip() == "rows 10"
        assert lines == ["rows 10"]
        assert result.output_files == ["result.txt"]
        assert result.metadata["version_id"] == "v1"
        assert result.metadata["runner"] == "Python"
        with open(os.path.join(result.metadata["output_directory"], "result.txt")) as f:
            assert f.read() == "done"

        assert [e.execution_id for e in started] == ["run-1"]
        assert completed[0].success is True
        # Sources are removed, outputs are kept
        assert not os.path.exists(tmp_path / "work" / "run-1" / "project")
        assert os.path.isdir(tmp_path / "work" / "run-1" / "outputs")

        stored = await engine.result_store.get("run-1")
        assert stored.success is True
        assert engine.result_store.get_log("run-1").strip() == "rows 10"
        assert engine.get_active_executions() == []

    @pytest.mark.asyncio
    async def test_unknown_program(self, tmp_path, sandbox, dispatcher):
        """Test an unknown program is a validation failure."""
        from execution_engine.schemas.execution import ErrorKind

        result = await _engine(tmp_path, sandbox, dispatcher).execute_project(_request("missing"))

        assert result.success is False
        assert result.error_kind == ErrorKind.VALIDATION_FAILURE

    @pytest.mark.asyncio
    async def test_unsupported_language(self, tmp_path, make_project, sandbox, dispatcher):
        """Test a project no runner claims is UNSUPPORTED_LANGUAGE."""
        from execution_engine.schemas.execution import ErrorKind

        make_project({"README.md": "# notes\n"}, name="sources/notes/v1")

        result = await _engine(tmp_path, sandbox, dispatcher).execute_project(_request("notes"))

        assert result.error_kind == ErrorKind.UNSUPPORTED_LANGUAGE

    @pytest.mark.asyncio
    async def test_invalid_project(self, tmp_path, make_project, sandbox, dispatcher):
        """Test a project failing validation never runs."""
        from execution_engine.schemas.execution import ErrorKind

        make_project({"main.py": "def broken(:\n"}, name="sources/broken/v1")

        result = await _engine(tmp_path, sandbox, dispatcher).execute_project(_request("broken"))

        assert result.error_kind == ErrorKind.VALIDATION_FAILURE
        assert "Syntax error in main.py" in result.error_message

    @pytest.mark.asyncio
    async def test_execution_id_must_stay_in_working_directory(self, tmp_path, make_project, sandbox, dispatcher):
        """Test ids with separators or parent references fail before any file is touched."""
        from execution_engine.core.events import ExecutionStartedEvent
        from execution_engine.schemas.execution import ErrorKind

        make_project({"main.py": HELLO_MAIN}, name="sources/hello/v1")
        make_project({"keep.txt": "keep"}, name="victim/project")
        engine = _engine(tmp_path, sandbox, dispatcher)
        started = []
        dispatcher.register(ExecutionStartedEvent, started.append)

        for execution_id in ("../victim", "a/b", "..", "."):
            result = await engine.execute_project(
                _request(parameters={"rows": 1}), execution_id=execution_id,
            )
            assert result.success is False, execution_id
            assert result.error_kind == ErrorKind.VALIDATION_FAILURE
            assert "Invalid execution id" in result.error_message

        assert (tmp_path / "victim" / "project" / "keep.txt").read_text() == "keep"
        assert not (tmp_path / "work" / "a").exists()
        assert started == []

    @pytest.mark.asyncio
    async def test_memory_limit(self, tmp_path, make_project, sandbox, dispatcher):
        """Test a program over its memory ceiling is RESOURCE_LIMIT_EXCEEDED."""
        from execution_engine.schemas.execution import ErrorKind, ProjectResourceLimits

        make_project(
            {"main.py": "import time\ndata = b'x' * (300 * 1024 * 1024)\ntime.sleep(30)\n"},
            name="sources/hungry/v1",
        )
        limits = ProjectResourceLimits(max_memory_mb=128, max_cpu_percentage=1e6)

        result = await _engine(tmp_path, sandbox, dispatcher).execute_project(
            _request("hungry", resource_limits=limits, timeout_seconds=20),
        )

        assert result.success is False
        assert result.error_kind == ErrorKind.RESOURCE_LIMIT_EXCEEDED
        assert "memory" in result.error_message

    @pytest.mark.asyncio
    async def test_timeout(self, tmp_path, make_project, sandbox, dispatcher):
        """Test a program past timeout_seconds is EXECUTION_TIMEOUT."""
        from execution_engine.schemas.execution import ErrorKind

        make_project({"main.py": SLOW_MAIN}, name="sources/slow/v1")

        result = await _engine(tmp_path, sandbox, dispatcher).execute_project(
            _request("slow", timeout_seconds=0.5),
        )

        assert result.error_kind == ErrorKind.EXECUTION_TIMEOUT
        assert result.output.strip() == "ready"

    @pytest.mark.asyncio
    async def test_cancel_and_duplicate_id(self, tmp_path, make_project, sandbox, dispatcher):
        """Test a running execution can be cancelled and its id cannot be reused meanwhile."""
        from execution_engine.core.events import ExecutionCancelledEvent
        from execution_engine.schemas.execution import ErrorKind

        make_project({"main.py": SLOW_MAIN}, name="sources/slow/v1")
        engine = _engine(tmp_path, sandbox, dispatcher)
        ready = asyncio.Event()
        cancelled = []
        dispatcher.register(ExecutionCancelledEvent, cancelled.append)

        def on_output(line):
            if line == "ready":
                ready.set()

        task = asyncio.create_task(
            engine.execute_project(_request("slow", timeout_seconds=20), execution_id="run-2", output_callback=on_output)
        )
        await asyncio.wait_for(ready.wait(), timeout=10)

        duplicate = await engine.execute_project(_request("slow"), execution_id="run-2")
        assert duplicate.error_kind == ErrorKind.VALIDATION_FAILURE
        assert "already running" in duplicate.error_message
        assert engine.get_active_executions() == ["run-2"]

        assert await engine.cancel_execution("run-2") is True
        result = await asyncio.wait_for(task, timeout=15)

        assert result.cancelled is True
        assert result.error_kind == ErrorKind.CANCELLED
        assert [e.execution_id for e in cancelled] == ["run-2"]
        assert await engine.cancel_execution("run-2") is False


class TestInspection:
    """Tests for validate_project, analyze_project_structure and languages."""

    @pytest.mark.asyncio
    async def test_analyze_refines_with_runner(self, tmp_path, make_project, sandbox, dispatcher):
        """Test the analysis is refined by the selected runner."""
        make_project(
            {"app.py": "print('hi')\n", "requirements.txt": "flask\n"},
            name="sources/web/v3",
        )

        analysis = await _engine(tmp_path, sandbox, dispatcher).analyze_project_structure("web")

        assert analysis.language == "Python"
        assert analysis.project_type == "Flask"
        assert analysis.main_entry_point == "app.py"

    @pytest.mark.asyncio
    async def test_analyze_unknown_version_raises(self, tmp_path, make_project, sandbox, dispatcher):
        """Test analysis of a missing version raises VersionNotFoundError."""
        from execution_engine.core.exceptions import VersionNotFoundError

        make_project({"main.py": ""}, name="sources/web/v1")

        with pytest.raises(VersionNotFoundError):
            await _engine(tmp_path, sandbox, dispatcher).analyze_project_structure("web", "v9")

    @pytest.mark.asyncio
    async def test_validate_valid_project(self, tmp_path, make_project, sandbox, dispatcher):
        """Test a valid project validates without being built."""
        make_project({"main.py": "print('hi')\n"}, name="sources/hello/v1")

        result = await _engine(tmp_path, sandbox, dispatcher).validate_project("hello")

        assert result.is_valid is True
        assert any("requirements.txt" in s for s in result.suggestions)

    @pytest.mark.asyncio
    async def test_validate_unknown_program(self, tmp_path, sandbox, dispatcher):
        """Test validating an unknown program reports an error."""
        result = await _engine(tmp_path, sandbox, dispatcher).validate_project("missing")

        assert result.is_valid is False
        assert result.errors

    def test_supported_languages(self, tmp_path, sandbox, dispatcher):
        """Test languages come from the registered runners."""
        assert _engine(tmp_path, sandbox, dispatcher).get_supported_languages() == ["Python"]


class TestSources:
    """Tests for LocalSourceProvider."""

    @pytest.mark.asyncio
    async def test_latest_version_is_current(self, tmp_path, make_project):
        """Test the most recently written version is resolved by default."""
        from execution_engine.services.execution.source_provider import LocalSourceProvider

        old = make_project({"main.py": ""}, name="sources/app/v1")
        make_project({"main.py": ""}, name="sources/app/v2")
        os.utime(old, (1, 1))

        provider = LocalSourceProvider(str(tmp_path / "sources"))

        assert await provider.resolve_version("app") == "v2"
        assert await provider.resolve_version("app", "v1") == "v1"

    @pytest.mark.asyncio
    async def test_unsafe_identifier(self, tmp_path):
        """Test identifiers cannot walk out of the source root."""
        from execution_engine.core.exceptions import InvalidPathError
        from execution_engine.services.execution.source_provider import LocalSourceProvider

        with pytest.raises(InvalidPathError):
            await LocalSourceProvider(str(tmp_path)).resolve_version("../etc")

    @pytest.mark.asyncio
    async def test_missing_result(self, tmp_path):
        """Test reading an unknown result raises ExecutionNotFoundError."""
        from execution_engine.core.exceptions import ExecutionNotFoundError
        from execution_engine.services.execution.result_store import FileSystemResultStore

        with pytest.raises(ExecutionNotFoundError):
            await FileSystemResultStore(str(tmp_path)).get("nope")
