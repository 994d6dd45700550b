"""Synthetic health monitor for a PIX payment API."""

from .error_state import ErrorStateTracker
from .metrics import PerformanceTracker
from .monitor import MonitorState, PixMonitor
from .storage import JsonFileStore

__all__ = ["ErrorStateTracker", "JsonFileStore", "MonitorState", "PerformanceTracker", "PixMonitor"]
