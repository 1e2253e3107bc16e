"""CDKTF infrastructure engine.

The stack modules import cdktf, which needs a node runtime; they are loaded
by ``CDKTFExecutor.synth`` rather than here.
"""

from .executor import ApplyResult, CDKTFExecutor, DestroyResult, PlanResult
from .state import WorkflowLease, configure_backend, ensure_state_backend
from .terraform import ChangeSummary, TerraformRunner, classify_error

__all__ = [
    "ApplyResult",
    "CDKTFExecutor",
    "DestroyResult",
    "PlanResult",
    "WorkflowLease",
    "configure_backend",
    "ensure_state_backend",
    "ChangeSummary",
    "TerraformRunner",
    "classify_error",
]
