"""boardforge: gated, artifact-passing CI pipeline for hardware design projects.

  - Validation gate over parsed design-rule-check reports
  - Revision-keyed, write-once artifact store with push/pull archives
  - Collision-free release tag allocation (reserve, re-read, retry)
  - DAG stage scheduler with skip propagation and failure isolation
  - Append-only, hash-chained run ledger of every transition and tool output
"""

__version__ = "0.1.0"
__description__ = "Gated CI pipeline orchestrator for hardware design projects"

from boardforge.core.orchestrator import Orchestrator
from boardforge.cli.app import app as cli

__all__ = ["Orchestrator", "cli", "__version__"]
