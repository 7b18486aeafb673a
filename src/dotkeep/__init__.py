"""Core package for the dotkeep project."""

from .batch import BatchExecutor
from .cli import app, run
from .config import ApplicationConfig, Config, EntryConfig, Settings, load_config, save_config
from .context import HostContext
from .detection import aggregate_state, detect_config_state, detect_entry_state
from .differ import NO_DIFFERENCES, unified_diff
from .dispatcher import CheckDispatcher
from .manager import DotkeepError, DotkeepManager
from .models import BatchResult, PathState, RenderRecord, ResultItem, SubEntryKey
from .selection import SelectionModel
from .session import PersistenceError, ReconcileSession, SelectionError
from .store import RenderStore, StoreError
from .templates import TemplateEngine

__all__ = [
    "ApplicationConfig",
    "Config",
    "EntryConfig",
    "Settings",
    "load_config",
    "save_config",
    "HostContext",
    "RenderStore",
    "StoreError",
    "RenderRecord",
    "NO_DIFFERENCES",
    "unified_diff",
    "PathState",
    "detect_config_state",
    "detect_entry_state",
    "aggregate_state",
    "SubEntryKey",
    "SelectionModel",
    "BatchExecutor",
    "BatchResult",
    "ResultItem",
    "CheckDispatcher",
    "TemplateEngine",
    "DotkeepManager",
    "DotkeepError",
    "ReconcileSession",
    "SelectionError",
    "PersistenceError",
    "app",
    "run",
]
