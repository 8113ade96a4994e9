"""Scheduling and work-distribution core for multi-stage delivery pipelines."""

__version__ = "0.1.0"
