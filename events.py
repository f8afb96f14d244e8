#!/usr/bin/env python3
"""
events.py  – central hub

• Exposes a thread-safe queue so the sync driver (or any other thread)
  can hand "move to item" actions to whatever owns the UI.
• QueueSink adapts the queue to the SyncDriver action-sink interface.
"""

from __future__ import annotations
import queue
from typing import Hashable, Iterator

Action = dict      # alias for readability


class EventManager:
    _fifo: "queue.Queue[Action]" = queue.Queue()      # global, thread-safe

    # ── producer path ──────────────────────────────────────────────────
    @classmethod
    def post(cls, action: Action) -> None:
        """
        Any thread may call this to inject an already-formed action dict, e.g.:
            EventManager.post({"type":"move_to_item","context":"c1","id":"m42"})
        """
        cls._fifo.put(action)

    # ── main-loop consumer ─────────────────────────────────────────────
    @classmethod
    def poll(cls) -> Action | None:
        """Return next queued action or None (non-blocking)."""
        try:
            return cls._fifo.get_nowait()
        except queue.Empty:
            return None

    @classmethod
    def drain(cls) -> Iterator[Action]:
        while (act := cls.poll()) is not None:
            yield act

    @classmethod
    def discard(cls, action_type: str) -> int:
        """Drop queued actions of *action_type*; keep the rest in order."""
        keep, dropped = [], 0
        for act in cls.drain():
            if act.get("type") == action_type:
                dropped += 1
            else:
                keep.append(act)
        for act in keep:
            cls._fifo.put(act)
        return dropped


class QueueSink:
    """SyncDriver action sink that turns decisions into queued actions."""

    def __call__(self, context_id: Hashable, item_id: Hashable) -> None:
        EventManager.post({"type": "move_to_item",
                           "context": context_id, "id": item_id})

    def cancel(self) -> None:
        # a move still sitting in the queue is an in-flight move
        EventManager.discard("move_to_item")
        EventManager.post({"type": "cancel_move"})
