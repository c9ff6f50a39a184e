from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from types import TracebackType

from taskloop.errors import ConcurrentLockError
from taskloop.models import utcnow_iso

logger = logging.getLogger(__name__)


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class RunLock:
    """Exclusive marker held for the whole duration of a run."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def holder(self) -> dict[str, object] | None:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (FileNotFoundError, json.JSONDecodeError):
            return None
        return payload if isinstance(payload, dict) else None

    def _is_stale(self) -> bool:
        holder = self.holder()
        if holder is None:
            return False
        try:
            pid = int(holder.get("pid", 0))
        except (TypeError, ValueError):
            return False
        return not _pid_alive(pid)

    def _create(self) -> None:
        fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        try:
            payload = {"pid": os.getpid(), "started_at": utcnow_iso()}
            os.write(fd, json.dumps(payload).encode("utf-8"))
        finally:
            os.close(fd)

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._create()
        except FileExistsError as exc:
            if not self._is_stale():
                holder = self.holder() or {}
                raise ConcurrentLockError(
                    "Another run is already in progress "
                    f"(pid {holder.get('pid', '?')}, started {holder.get('started_at', '?')})."
                ) from exc
            logger.warning("Reclaiming stale run lock %s", self.path)
            self.path.unlink(missing_ok=True)
            try:
                self._create()
            except FileExistsError as retry_exc:
                raise ConcurrentLockError("Another run grabbed the run lock.") from retry_exc
        self._held = True

    def release(self) -> None:
        if not self._held:
            return
        self.path.unlink(missing_ok=True)
        self._held = False

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()
