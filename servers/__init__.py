from .metrics import BootstrapMetrics, MetricsServer
from .snapshot import SnapshotServer, create_snapshot_app

__all__ = [
    "BootstrapMetrics",
    "MetricsServer",
    "SnapshotServer",
    "create_snapshot_app",
]
