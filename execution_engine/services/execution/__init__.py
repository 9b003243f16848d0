"""
Project execution services.

This package contains the pieces of one execution:
- Language runners and the priority-ordered RunnerRegistry
- BuildStage: dependency restore and compilation under a timeout
- ProcessSandbox / DockerSandbox: resource-bounded, cancellable processes
- ProjectExecutionEngine: the end-to-end pipeline
"""
from execution_engine.services.execution.build_stage import BuildStage
from execution_engine.services.execution.engine import ProjectExecutionEngine
from execution_engine.services.execution.result_store import ExecutionResultStore, FileSystemResultStore
from execution_engine.services.execution.runner_base import ProjectExecutionContext, ProjectLanguageRunner
from execution_engine.services.execution.runner_registry import RunnerRegistry, build_default_runners
from execution_engine.services.execution.sandbox import DockerSandbox, ProcessSandbox
from execution_engine.services.execution.source_provider import LocalSourceProvider, ProjectSourceProvider

__all__ = [
    "BuildStage",
    "DockerSandbox",
    "ExecutionResultStore",
    "FileSystemResultStore",
    "LocalSourceProvider",
    "ProcessSandbox",
    "ProjectExecutionContext",
    "ProjectExecutionEngine",
    "ProjectLanguageRunner",
    "ProjectSourceProvider",
    "RunnerRegistry",
    "build_default_runners",
]
