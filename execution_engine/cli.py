#!/usr/bin/env python3
"""
Command line entry point.

Usage:
    project-engine languages
    project-engine analyze my-program --version v3
    project-engine validate my-program
    project-engine run my-program \
        --parameters '{"rows": 10}' \
        --env MODE=fast \
        --memory-mb 512
"""
import argparse
import asyncio
import json
import logging
import sys
from typing import Dict, List, Optional

from pydantic import BaseModel

from execution_engine.core.config import settings
from execution_engine.core.exceptions import DomainException
from execution_engine.schemas.execution import (
    ProjectBuildArgs,
    ProjectExecutionRequest,
    ProjectResourceLimits,
)
from execution_engine.services.execution.engine import ProjectExecutionEngine
from execution_engine.services.execution.source_provider import LocalSourceProvider

logger = logging.getLogger(__name__)


def parse_env(pairs: Optional[List[str]]) -> Dict[str, str]:
    """Turn KEY=VALUE arguments into a dict."""
    env = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got {pair!r}")
        env[key] = value
    return env


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="project-engine",
        description="Analyze, validate and run submitted source projects",
    )
    parser.add_argument(
        "--source-root",
        default=settings.EXECUTION_SOURCE_ROOT,
        help=f"Directory holding <program>/<version>/ sources (default: {settings.EXECUTION_SOURCE_ROOT})",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("languages", help="List supported languages")

    for name, help_text in (("analyze", "Analyze a project's structure"), ("validate", "Validate a project")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("program_id")
        sub.add_argument("--version", dest="version_id", help="Version to use (default: latest)")

    run = subparsers.add_parser("run", help="Build and run a project")
    run.add_argument("program_id")
    run.add_argument("--version", dest="version_id", help="Version to use (default: latest)")
    run.add_argument("--user", dest="user_id", default="cli", help="User id recorded on the execution")
    run.add_argument("--name", dest="execution_name", help="Execution name")
    run.add_argument("--parameters", help="JSON payload passed to the program")
    run.add_argument("--env", action="append", metavar="KEY=VALUE", help="Environment variable (repeatable)")
    run.add_argument("--timeout", type=float, dest="timeout_seconds", help="Run deadline in seconds")
    run.add_argument("--memory-mb", type=int, help="Memory ceiling in MB")
    run.add_argument("--cpu-percent", type=float, help="CPU ceiling in percent")
    run.add_argument("--max-processes", type=int, help="Process ceiling")
    run.add_argument("--skip-build", action="store_true", help="Do not run the build stage")
    run.add_argument("--build-timeout", type=float, help="Build timeout in minutes")
    run.add_argument("--keep", action="store_true", help="Keep the working directory afterwards")
    run.add_argument("--no-save", action="store_true", help="Do not store the result")
    return parser


def build_request(args: argparse.Namespace) -> ProjectExecutionRequest:
    limits = None
    overrides = {
        "max_memory_mb": args.memory_mb,
        "max_cpu_percentage": args.cpu_percent,
        "max_processes": args.max_processes,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        limits = ProjectResourceLimits(**overrides)

    build_args = ProjectBuildArgs(skip_build=args.skip_build)
    if args.build_timeout:
        build_args.build_timeout_minutes = args.build_timeout

    return ProjectExecutionRequest(
        program_id=args.program_id,
        version_id=args.version_id,
        user_id=args.user_id,
        parameters=json.loads(args.parameters) if args.parameters else None,
        environment=parse_env(args.env),
        resource_limits=limits,
        build_args=build_args,
        execution_name=args.execution_name,
        cleanup_on_completion=not args.keep,
        save_results=not args.no_save,
        timeout_seconds=args.timeout_seconds,
    )


def emit(value) -> None:
    if isinstance(value, BaseModel):
        print(value.model_dump_json(indent=2))
    else:
        print(json.dumps(value, indent=2, default=str))


async def run_command(args: argparse.Namespace) -> int:
    engine = ProjectExecutionEngine(source_provider=LocalSourceProvider(args.source_root))

    if args.command == "languages":
        emit(engine.get_supported_languages())
        return 0

    if args.command == "analyze":
        emit(await engine.analyze_project_structure(args.program_id, args.version_id))
        return 0

    if args.command == "validate":
        result = await engine.validate_project(args.program_id, args.version_id)
        emit(result)
        return 0 if result.is_valid else 1

    result = await engine.execute_project(
        build_request(args),
        output_callback=lambda line: print(line, file=sys.stderr),
        error_callback=lambda line: print(line, file=sys.stderr),
    )
    emit(result)
    return 0 if result.success else 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.get_log_level(),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        return asyncio.run(run_command(args))
    except json.JSONDecodeError as e:
        logger.error(f"Invalid JSON in --parameters: {e}")
        return 2
    except argparse.ArgumentTypeError as e:
        logger.error(str(e))
        return 2
    except DomainException as e:
        logger.error(e.message)
        return 1


if __name__ == "__main__":
    sys.exit(main())
