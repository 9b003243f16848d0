"""
Pytest configuration and fixtures for engine tests.

This file is automatically loaded by pytest before running tests.
It points every storage setting at a scratch directory and provides
helpers for writing small projects to disk.
"""
import os
import sys
import tempfile

import pytest

_STORAGE = tempfile.mkdtemp(prefix="execution-engine-tests-")

# Set environment variables BEFORE any engine imports
# These are read once by the Settings singleton
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("PYTHON_EXECUTABLE", sys.executable)
os.environ.setdefault("EXECUTION_USE_DOCKER", "false")
os.environ.setdefault("EXECUTION_WORKING_DIRECTORY", os.path.join(_STORAGE, "executions"))
os.environ.setdefault("EXECUTION_SOURCE_ROOT", os.path.join(_STORAGE, "projects"))
os.environ.setdefault("EXECUTION_RESULTS_DIR", os.path.join(_STORAGE, "execution_results"))
os.environ.setdefault("EXECUTION_PACKAGE_CACHE_DIR", os.path.join(_STORAGE, "package_cache"))
os.environ.setdefault("DEPLOYMENT_PATH", os.path.join(_STORAGE, "deployments"))


def write_tree(root, files):
    """Write {relative path: text or bytes} under root and return root as str."""
    for rel, content in files.items():
        path = os.path.join(str(root), rel)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        mode = "wb" if isinstance(content, bytes) else "w"
        with open(path, mode) as f:
            f.write(content)
    return str(root)


@pytest.fixture
def make_project(tmp_path):
    """Factory writing a project tree under tmp_path."""
    def _make(files, name="project"):
        return write_tree(tmp_path / name, files)
    return _make


@pytest.fixture
def sandbox():
    """Host sandbox with a short kill grace and a fast sampling interval."""
    from execution_engine.services.execution.sandbox import ProcessSandbox
    return ProcessSandbox(kill_grace_seconds=1.0, monitor_interval=0.05)


@pytest.fixture
def dispatcher():
    """Isolated event dispatcher, so tests never touch the global one."""
    from execution_engine.core.events import EventDispatcher
    return EventDispatcher()
