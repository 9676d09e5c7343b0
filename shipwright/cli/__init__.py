"""Shipwright CLI — Typer-based command-line interface.

Provides the ``shipwright`` command with subcommands for running a
pipeline, approving manual jobs, showing run status and validating the
pipeline definition.

All output uses Rich for formatted terminal display.
"""
