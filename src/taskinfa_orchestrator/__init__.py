"""Kanban task orchestrator: polls a task store and drives CLI coding agents."""

__version__ = "0.1.0"
