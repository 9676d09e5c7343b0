"""Shipwright: stage-gated build, promote and multi-instance deploy engine.

  - Job graph of stages and jobs with declarative ref gates and manual approvals
  - Concurrent stage scheduler with blocking or parked (resumable) approvals
  - Immutable commit-keyed artifacts with aliases (local or docker registry)
  - Idempotent remote apply (stop, remove, prepare, start, record) over SSH
  - Sequential and fixed-set rollouts across named instances
  - SQLite run ledger behind ``shipwright status`` and ``shipwright approve``
"""

__version__ = "0.1.0"
__description__ = "Stage-gated build, promote and multi-instance deploy engine"

from shipwright.core.orchestrator import Orchestrator
from shipwright.monitor.projection import StatusProjection
from shipwright.cli.app import app as cli

__all__ = ["Orchestrator", "StatusProjection", "cli", "__version__"]
