"""Thread orchestration engine — registry, supervisor, and switching."""
from .models import (
    DEFAULT_TITLE,
    MessageRole,
    PermissionMode,
    Thread,
    ThreadMessage,
    ThreadSnapshot,
    ThreadStatus,
    ToolRecord,
)
from .config import ThreadsConfig
from .errors import (
    InvalidStateError,
    NoActiveSessionError,
    PersistenceError,
    ProcessCrashedError,
    ProcessSpawnError,
    ThreadArchivedError,
    ThreadNotFoundError,
    ThreadsError,
)

__all__ = [
    # Core (lazy import to avoid circular deps)
    "SessionRegistry",
    "ProcessSupervisor",
    "SwitchController",
    "ActivityTracker",
    # Models
    "DEFAULT_TITLE",
    "MessageRole",
    "PermissionMode",
    "Thread",
    "ThreadMessage",
    "ThreadSnapshot",
    "ThreadStatus",
    "ToolRecord",
    # Config
    "ThreadsConfig",
    "load_yaml_config",
    # Errors
    "InvalidStateError",
    "NoActiveSessionError",
    "PersistenceError",
    "ProcessCrashedError",
    "ProcessSpawnError",
    "ThreadArchivedError",
    "ThreadNotFoundError",
    "ThreadsError",
]


def __getattr__(name: str):
    if name == "SessionRegistry":
        from .registry import SessionRegistry
        return SessionRegistry
    if name == "ProcessSupervisor":
        from .supervisor import ProcessSupervisor
        return ProcessSupervisor
    if name == "SwitchController":
        from .switch import SwitchController
        return SwitchController
    if name == "ActivityTracker":
        from .activity import ActivityTracker
        return ActivityTracker
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
