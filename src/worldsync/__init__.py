"""worldsync: lease-coordinated sharing of one game world across hosts."""

from worldsync.core.config import SyncConfig, load_config
from worldsync.sync.orchestrator import SyncOrchestrator

__version__ = "0.1.0"

__all__ = ["SyncConfig", "SyncOrchestrator", "__version__", "load_config"]
