"""Fleetplane CLI — Typer-based operator interface.

Provides the ``fleetplane`` command with subcommands for registering
instances, managing manifests, reconciling, and running the drift and
stuck-instance sweeps.

All output uses Rich for formatted terminal display.
"""
