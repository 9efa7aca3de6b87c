"""procbox core components."""

from procbox.core.launcher import DaemonLauncher
from procbox.core.liveness import is_alive, reconcile
from procbox.core.log_utils import LogReader
from procbox.core.store import ProcessStore
from procbox.core.supervisor import StopAllReport, Supervisor

__all__ = [
    "DaemonLauncher",
    "LogReader",
    "ProcessStore",
    "StopAllReport",
    "Supervisor",
    "is_alive",
    "reconcile",
]
