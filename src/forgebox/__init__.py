"""Forgebox: sandbox orchestration core for AI-assisted app generation.

The package coordinates admission control (rate limiter + circuit breaker),
a durable job queue for deferred work, sandbox session lifecycle, and the
agent pipeline with its bounded validate-then-repair loop.
"""

from .version import __version__

__all__ = ["__version__"]
