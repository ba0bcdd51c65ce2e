"""Vigil: a long-running background agent with tiered memory."""

__version__ = "0.1.0"
