"""Layerforge CLI - Typer-based command-line interface.

Provides the ``layerforge`` command with subcommands for building the
runtime artifact, previewing the stage plan, inspecting the resolved
configuration and the model cache, and auditing a finished artifact.

All output uses Rich for formatted terminal display.
"""
