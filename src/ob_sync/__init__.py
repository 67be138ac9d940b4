"""ob: Unattended synchronization of a git-backed vault with its remote branch.

This package provides the reconciliation engine that keeps a single working
copy converged with one remote tracking branch, the scheduler that drives it
from timers and manual triggers, and the CLI and daemon around them.
"""

from . import (
    cli,
    config,
    constants,
    daemon,
    engine,
    errors,
    git_wrapper,
    markers,
    scheduler,
    service,
    state,
)

__all__ = [
    "cli",
    "config",
    "constants",
    "daemon",
    "engine",
    "errors",
    "git_wrapper",
    "markers",
    "scheduler",
    "service",
    "state",
]
