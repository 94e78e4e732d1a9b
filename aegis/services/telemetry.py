"""
Live telemetry fan-out to connected observers (e.g. dashboard websockets).

Each observer gets its own bounded queue drained by its own task, so one slow
or broken observer can not stall the others or the request path.
"""

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from loguru import logger

from aegis.services.security_events import SecurityEvent

SendCallable = Callable[[Dict[str, Any]], Awaitable[None]]
MetricsProvider = Callable[[], Dict[str, Any]]


@dataclass
class Observer:
    id: str
    send: SendCallable
    queue: asyncio.Queue
    task: Optional[asyncio.Task] = None
    dropped_messages: int = 0


class TelemetryBroadcaster:
    """Registry of observers plus synchronous publish to all of them."""

    def __init__(self, metrics_provider: MetricsProvider, queue_size: int = 100):
        self.metrics_provider = metrics_provider
        self.queue_size = queue_size
        self._observers: Dict[str, Observer] = {}

    def __len__(self) -> int:
        return len(self._observers)

    @property
    def observer_ids(self):
        return list(self._observers)

    async def subscribe(self, send: SendCallable) -> str:
        """Register an observer; it first receives the current metrics snapshot."""
        observer = Observer(
            id=uuid.uuid4().hex,
            send=send,
            queue=asyncio.Queue(maxsize=self.queue_size),
        )
        observer.queue.put_nowait({"type": "metrics", "data": self.metrics_provider()})
        observer.task = asyncio.create_task(self._pump(observer), name=f"aegis:observer:{observer.id}")
        self._observers[observer.id] = observer
        logger.info(f"Telemetry observer {observer.id} connected ({len(self._observers)} total)")
        return observer.id

    def unsubscribe(self, observer_id: str) -> bool:
        observer = self._observers.pop(observer_id, None)
        if observer is None:
            return False
        if observer.task is not None and observer.task is not asyncio.current_task():
            observer.task.cancel()
        self._discard_pending(observer)
        logger.info(f"Telemetry observer {observer_id} disconnected ({len(self._observers)} remaining)")
        return True

    def publish(self, message: Dict[str, Any]) -> int:
        """Queue ``message`` for every observer; returns how many accepted it."""
        delivered = 0
        for observer in list(self._observers.values()):
            try:
                observer.queue.put_nowait(message)
                delivered += 1
            except asyncio.QueueFull:
                observer.dropped_messages += 1
                logger.warning(
                    f"Telemetry observer {observer.id} queue full, "
                    f"dropped {message.get('type')} message"
                )
        return delivered

    def publish_event(self, event: SecurityEvent) -> int:
        return self.publish({"type": "security_event", "data": event.to_dict()})

    def publish_metrics(self, snapshot: Optional[Dict[str, Any]] = None) -> int:
        if not self._observers:
            return 0
        data = snapshot if snapshot is not None else self.metrics_provider()
        return self.publish({"type": "metrics_update", "data": data})

    async def flush(self):
        """Wait until every observer has drained its queue."""
        for observer in list(self._observers.values()):
            await observer.queue.join()

    async def close(self):
        tasks = []
        for observer_id in list(self._observers):
            observer = self._observers[observer_id]
            self.unsubscribe(observer_id)
            if observer.task is not None:
                tasks.append(observer.task)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _pump(self, observer: Observer):
        while True:
            message = await observer.queue.get()
            try:
                await observer.send(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Dropping telemetry observer {observer.id}: {e}")
                self.unsubscribe(observer.id)
                return
            finally:
                observer.queue.task_done()

    @staticmethod
    def _discard_pending(observer: Observer):
        while not observer.queue.empty():
            observer.queue.get_nowait()
            observer.queue.task_done()
