"""debounced autosave for one canvas.

observe() is called after every graph mutation. a change arms a single
timer; further changes re-arm it; when it fires the latest state is
written with save_canvas_state. saves never overlap, and close() flushes
whatever is still unsaved.
"""

from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import logging
from enum import Enum
from typing import Callable, Optional

from .models import Edge, Node, now_ms
from .repository import CanvasRepository

logger = logging.getLogger(__name__)


# --- configuration ---

DEFAULT_DEBOUNCE_MS = 1000


class SaveState(Enum):
    IDLE = "idle"
    PENDING = "pending"  # timer armed
    SAVING = "saving"


def fingerprint(nodes: list[Node], edges: list[Edge]) -> str:
    """structural hash of a graph; equal graphs hash equal."""
    payload = {
        "nodes": [n.to_dict() for n in nodes],
        "edges": [e.to_dict() for e in edges],
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()


class AutosaveScheduler:
    """keeps the stored canvas eventually equal to the in-memory graph."""

    def __init__(
        self,
        repository: CanvasRepository,
        canvas_id: str,
        debounce_ms: int = DEFAULT_DEBOUNCE_MS,
        on_save: Optional[Callable[[], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        initial: Optional[tuple[list[Node], list[Edge]]] = None,
    ):
        self.repository = repository
        self.canvas_id = canvas_id
        self.debounce_ms = debounce_ms
        self.on_save = on_save
        self.on_error = on_error

        self.last_saved: Optional[int] = None  # epoch ms of the last successful save
        self.last_error: Optional[Exception] = None
        self.save_count = 0

        self._latest: Optional[tuple[list[Node], list[Edge]]] = None
        self._latest_fp: Optional[str] = None
        self._saved_fp: Optional[str] = None
        self._timer: Optional[asyncio.Task] = None
        self._saving = False
        self._closed = False
        self._lock = asyncio.Lock()

        if initial is not None:
            nodes, edges = initial
            self._latest = (copy.deepcopy(list(nodes)), copy.deepcopy(list(edges)))
            self._latest_fp = self._saved_fp = fingerprint(nodes, edges)

    # --- status ---

    @property
    def state(self) -> SaveState:
        if self._saving:
            return SaveState.SAVING
        if self._timer is not None:
            return SaveState.PENDING
        return SaveState.IDLE

    @property
    def saving(self) -> bool:
        return self._saving

    @property
    def pending(self) -> bool:
        """True while the latest observed state is not yet persisted."""
        return self._latest_fp is not None and self._latest_fp != self._saved_fp

    @property
    def closed(self) -> bool:
        return self._closed

    # --- api ---

    def observe(self, nodes: list[Node], edges: list[Edge]) -> bool:
        """record the current graph. returns True if a save was scheduled."""
        if self._closed:
            return False
        fp = fingerprint(nodes, edges)
        if fp == self._latest_fp and self._timer is not None:
            return True
        self._latest = (copy.deepcopy(list(nodes)), copy.deepcopy(list(edges)))
        self._latest_fp = fp

        if fp == self._saved_fp and not (self._saving or self._lock.locked()):
            # back to what is already stored, unless a save of another state is running
            self._cancel_timer()
            return False

        self._cancel_timer()
        self._timer = asyncio.get_running_loop().create_task(self._fire())
        return True

    async def save_now(self) -> bool:
        """save immediately, skipping the debounce. True if something was written."""
        self._cancel_timer()
        return await self._save()

    async def close(self) -> None:
        """cancel the timer and flush the latest state. never raises."""
        if self._closed:
            return
        self._closed = True
        self._cancel_timer()
        try:
            await self._save()
        except Exception:
            logger.exception("final save of canvas %s failed", self.canvas_id)

    async def __aenter__(self) -> AutosaveScheduler:
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    # --- internals ---

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _fire(self) -> None:
        await asyncio.sleep(self.debounce_ms / 1000)
        # past this point the save runs to completion; re-arming starts a new timer
        if self._timer is asyncio.current_task():
            self._timer = None
        await self._save()

    async def _save(self) -> bool:
        async with self._lock:
            if self._latest is None or self._latest_fp == self._saved_fp:
                logger.debug("canvas %s already saved, skipping", self.canvas_id)
                return False

            nodes, edges = self._latest
            fp = self._latest_fp
            self._saving = True
            try:
                await self.repository.save_canvas_state(self.canvas_id, nodes, edges)
            except Exception as e:
                self.last_error = e
                logger.warning("autosave of canvas %s failed: %s", self.canvas_id, e)
                if self.on_error is not None:
                    self.on_error(e)
                return False
            finally:
                self._saving = False

            self._saved_fp = fp
            self.last_saved = now_ms()
            self.last_error = None
            self.save_count += 1
            logger.debug("autosaved canvas %s (%d nodes, %d edges)", self.canvas_id, len(nodes), len(edges))

        if self.on_save is not None:
            self.on_save()
        return True
