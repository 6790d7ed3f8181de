# sitekv/cli/__init__.py
"""Command-line interface for sitekv."""

from .commands import cli, deploy_command, plan_command, validate_command, verify_command

__all__ = ["cli", "deploy_command", "plan_command", "validate_command", "verify_command"]
