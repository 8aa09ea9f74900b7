# replctl: runbook automation for a MySQL primary/replica pair.
# Provisions the replica, recovers replication after restarts, refreshes
# databases from dumps and rolls operations back, step by step.

__version__ = "1.0.0"

from .config import TopologyConfig, NodeConfig, create_default_config
from .errors import ReplctlError, StepFailed
from .models import TopologyState, ReplicationLink, LinkState
from .runbook import Runbook, create_runbook, load_runbook

__all__ = [
    "TopologyConfig",
    "NodeConfig",
    "create_default_config",
    "ReplctlError",
    "StepFailed",
    "TopologyState",
    "ReplicationLink",
    "LinkState",
    "Runbook",
    "create_runbook",
    "load_runbook",
]
