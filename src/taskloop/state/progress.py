from __future__ import annotations

import logging
import os
import re
from pathlib import Path

from taskloop.models import ENTRY_KINDS, ProgressEntry

logger = logging.getLogger(__name__)

ENTRY_PATTERN = re.compile(
    r"^\[(?P<timestamp>[^\]]+)\]"
    r"(?: \[iteration:(?P<iteration>\d+)\])?"
    r"(?: \[task:(?P<task_id>[^\]]+)\])?"
    r" (?P<kind>[A-Z_]+): (?P<message>.*)$"
)


def format_entry(entry: ProgressEntry) -> str:
    parts = [f"[{entry.timestamp}]"]
    if entry.iteration > 0:
        parts.append(f"[iteration:{entry.iteration}]")
    if entry.task_id:
        parts.append(f"[task:{entry.task_id}]")
    message = " ".join(entry.message.split())
    parts.append(f"{entry.kind}: {message}")
    return " ".join(parts)


def parse_entry(line: str) -> ProgressEntry | None:
    match = ENTRY_PATTERN.match(line.rstrip("\n"))
    if match is None or match.group("kind") not in ENTRY_KINDS:
        return None
    return ProgressEntry(
        iteration=int(match.group("iteration") or 0),
        kind=match.group("kind"),
        message=match.group("message"),
        task_id=match.group("task_id"),
        timestamp=match.group("timestamp"),
    )


class ProgressLog:
    """Append-only journal of iteration events, one entry per line."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def append(self, entry: ProgressEntry) -> None:
        if entry.kind not in ENTRY_KINDS:
            raise ValueError(f"Unknown progress entry kind: {entry.kind}")
        data = (format_entry(entry) + "\n").encode("utf-8")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # A single write on an O_APPEND descriptor keeps each line whole for readers.
        fd = os.open(self.path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
        try:
            os.write(fd, data)
        finally:
            os.close(fd)
        logger.debug("progress %s", data.decode("utf-8").rstrip())

    def record(
        self,
        iteration: int,
        kind: str,
        message: str,
        task_id: str | None = None,
    ) -> ProgressEntry:
        entry = ProgressEntry(iteration=iteration, kind=kind, message=message, task_id=task_id)
        self.append(entry)
        return entry

    def lines(self) -> list[str]:
        if not self.path.exists():
            return []
        return self.path.read_text(encoding="utf-8").splitlines()

    def tail(self, count: int) -> list[str]:
        lines = self.lines()
        if count <= 0 or count >= len(lines):
            return lines
        return lines[-count:]

    def read_entries(self) -> list[ProgressEntry]:
        entries: list[ProgressEntry] = []
        for line in self.lines():
            entry = parse_entry(line)
            if entry is not None:
                entries.append(entry)
        return entries
