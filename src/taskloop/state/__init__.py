from taskloop.state.commits import CommitManager
from taskloop.state.lock import RunLock
from taskloop.state.progress import ProgressLog
from taskloop.state.store import StoreSnapshot, TaskStore

__all__ = ["CommitManager", "ProgressLog", "RunLock", "StoreSnapshot", "TaskStore"]
