"""Fatal error types raised outside the convergence loops."""

from __future__ import annotations


class ConfigurationError(Exception):
    """Missing collaborator access or invalid configuration.

    Reported once by the CLI, which exits with code 2. Never retried.
    """
