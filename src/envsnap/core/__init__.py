"""Core functionality for envsnap."""

from .backup import BackupManager
from .config import Config
from .planner import RestorePlanner
from .restore import RestoreManager
from .snapshot import SnapshotBuilder

__all__ = ["BackupManager", "Config", "RestoreManager", "RestorePlanner", "SnapshotBuilder"]
