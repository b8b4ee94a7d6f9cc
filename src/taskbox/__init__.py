"""Taskbox: run tasks in disposable containers."""

__version__ = "0.1.0"
