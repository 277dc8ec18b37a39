from dispatcher.state.store import ConcurrentUpdateError, JsonStateStore, StateError
from dispatcher.state.tasks import ActivityLog, TaskStore

__all__ = ["ActivityLog", "ConcurrentUpdateError", "JsonStateStore", "StateError", "TaskStore"]
