"""Shared task list with per-task stopwatches and a bedtime deadline.

Provides the task/timer model, the pure reducer, the sync client that keeps a
local copy in step with the shared state store, and the store itself.
"""

from .model import DEFAULT_STATE, SharedState, Task, new_task
from .normalize import normalize_shared_state
from .reducer import (
    CreateTask,
    DeleteTask,
    Init,
    ResetAll,
    SetBedtime,
    StartTimer,
    StopTimer,
    ToggleDone,
    UpdateTask,
    reduce,
)
from .sync import PushPolicy, SaveStatus, SyncClient, SyncPhase

__version__ = "0.1.0"

__all__ = [
    "CreateTask",
    "DEFAULT_STATE",
    "DeleteTask",
    "Init",
    "PushPolicy",
    "ResetAll",
    "SaveStatus",
    "SetBedtime",
    "SharedState",
    "StartTimer",
    "StopTimer",
    "SyncClient",
    "SyncPhase",
    "Task",
    "ToggleDone",
    "UpdateTask",
    "new_task",
    "normalize_shared_state",
    "reduce",
]
