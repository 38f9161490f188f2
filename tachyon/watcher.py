"""
Depth-0 polling watcher for the comics root.

Only whole comic folders appearing or disappearing directly under the root
are observed; images added inside an existing folder are picked up on the
next full scan (restart).
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable

from .library import ComicIndex, list_child_folders, natural_key

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    ADD = "add"
    REMOVE = "remove"


@dataclass(frozen=True)
class FolderEvent:
    kind: EventKind
    name: str


class FolderWatcher:
    """
    Diffs the root's child folders on every poll. A new folder is announced
    only once its fingerprint has been stable for `stability` seconds, so a
    folder that is still being copied in is not indexed half-written.
    """

    def __init__(
        self,
        root: Path,
        queue: asyncio.Queue,
        interval: float = 2.0,
        stability: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.root = Path(root)
        self.queue = queue
        self.interval = interval
        self.stability = stability
        self.clock = clock
        self._known: set[str] | None = None
        self._pending: dict[str, tuple[tuple[int, int], float]] = {}

    def _fingerprint(self, name: str) -> tuple[int, int] | None:
        folder = self.root / name
        try:
            mtime = folder.stat().st_mtime_ns
            with os.scandir(folder) as it:
                count = sum(1 for _ in it)
        except OSError:
            return None
        return (mtime, count)

    def prime(self) -> None:
        try:
            self._known = set(list_child_folders(self.root))
        except OSError as exc:
            logger.warning("Folder watcher cannot read %s: %s", self.root, exc)
            self._known = set()
        self._pending.clear()

    def poll(self) -> list[FolderEvent]:
        if self._known is None:
            self.prime()
            return []
        try:
            current = set(list_child_folders(self.root))
        except OSError as exc:
            logger.warning("Folder watcher cannot read %s: %s", self.root, exc)
            return []

        now = self.clock()
        events: list[FolderEvent] = []

        for name in sorted(self._known - current, key=natural_key):
            self._known.discard(name)
            events.append(FolderEvent(EventKind.REMOVE, name))

        for name in [n for n in self._pending if n not in current]:
            del self._pending[name]

        for name in sorted(current - self._known, key=natural_key):
            fingerprint = self._fingerprint(name)
            if fingerprint is None:
                self._pending.pop(name, None)
                continue
            entry = self._pending.get(name)
            if entry is None or entry[0] != fingerprint:
                entry = (fingerprint, now)
                self._pending[name] = entry
            if now - entry[1] >= self.stability:
                del self._pending[name]
                self._known.add(name)
                events.append(FolderEvent(EventKind.ADD, name))

        return events

    async def run(self) -> None:
        if self._known is None:
            await asyncio.to_thread(self.prime)
        logger.info("Watching %s for comic folders (every %.1fs)", self.root, self.interval)
        while True:
            await asyncio.sleep(self.interval)
            try:
                events = await asyncio.to_thread(self.poll)
            except Exception:
                logger.exception("Folder watcher poll failed for %s", self.root)
                continue
            for event in events:
                await self.queue.put(event)


def apply_event(index: ComicIndex, event: FolderEvent) -> None:
    if event.kind is EventKind.ADD:
        logger.info("New comic folder detected: %s", event.name)
        index.apply_add(event.name)
    else:
        index.apply_remove(event.name)


async def apply_events(queue: asyncio.Queue, index: ComicIndex) -> None:
    """Single consumer: events are applied one at a time, in arrival order."""
    while True:
        event = await queue.get()
        try:
            await asyncio.to_thread(apply_event, index, event)
        except Exception:
            logger.exception("Failed to apply %s event for %s", event.kind.value, event.name)
        finally:
            queue.task_done()
