"""Typer subcommands."""
