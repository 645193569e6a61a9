from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import defaultdict
from typing import Any, Dict, List, Optional, Set

logger = logging.getLogger(__name__)


class SessionBus:
    """
    In-process fan-out of outbound events keyed by session id.

    Each subscriber owns an asyncio.Queue; the transport drains it. Publishing
    never blocks on a slow subscriber: when a queue is full the oldest event is
    dropped for that subscriber only.
    """

    def __init__(self, max_queue_size: int = 256) -> None:
        self._subscribers: Dict[str, Set[asyncio.Queue]] = defaultdict(set)
        self._seq: Dict[str, int] = defaultdict(int)
        self._lock = threading.Lock()
        self._max_queue_size = max_queue_size

    def subscribe(self, session_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        with self._lock:
            self._subscribers[session_id].add(queue)
        logger.debug("session_bus_subscribe session_id=%s", session_id)
        return queue

    def unsubscribe(self, session_id: str, queue: asyncio.Queue) -> None:
        with self._lock:
            queues = self._subscribers.get(session_id)
            if not queues:
                return
            queues.discard(queue)
            if not queues:
                self._subscribers.pop(session_id, None)
                self._seq.pop(session_id, None)
        logger.debug("session_bus_unsubscribe session_id=%s", session_id)

    async def publish(self, session_id: Optional[str], message: Dict[str, Any]) -> Dict[str, Any]:
        """Deliver `message` to every current subscriber of `session_id`.

        A message without a session id goes to every subscriber of every session.
        Returns the envelope that was delivered (with `seq` and `ts_ms`).
        """
        with self._lock:
            if session_id is None:
                targets: List[asyncio.Queue] = [q for qs in self._subscribers.values() for q in qs]
                seq = 0
            else:
                targets = list(self._subscribers.get(session_id) or ())
                if targets:
                    self._seq[session_id] += 1
                seq = self._seq.get(session_id, 0)

        envelope = dict(message)
        envelope["seq"] = seq
        envelope.setdefault("ts_ms", int(time.time() * 1000))

        for queue in targets:
            if queue.full():
                try:
                    queue.get_nowait()
                    logger.warning("session_bus_queue_overflow session_id=%s", session_id)
                except asyncio.QueueEmpty:
                    pass
            queue.put_nowait(envelope)
        return envelope

