"""Dupkite: civic crowd-reporting backend for road and infrastructure issues."""

__version__ = "1.0.0"
