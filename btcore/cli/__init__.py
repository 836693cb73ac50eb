"""Command-line interface for btcore."""

from __future__ import annotations

from btcore.cli.main import cli, main

__all__ = ["cli", "main"]
