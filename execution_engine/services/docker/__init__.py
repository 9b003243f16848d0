"""
Docker CLI helpers shared by the container sandbox and the container
deployment strategy.
"""
from execution_engine.services.docker.command import run_docker_command, sanitize_name

__all__ = ["run_docker_command", "sanitize_name"]
