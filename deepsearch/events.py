import asyncio
from typing import Dict, List

from .db import Database


class EventBus:
    """In-memory fan-out for SSE plus persisted events."""

    def __init__(self, db: Database):
        self.db = db
        self.subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.lock = asyncio.Lock()

    async def emit(self, plan_id: str, event_type: str, payload: dict) -> dict:
        safe_payload = dict(payload or {})
        safe_payload.setdefault("plan_id", plan_id)
        stored = await self.db.add_event(plan_id, event_type, safe_payload)
        async with self.lock:
            queues = list(self.subscribers.get(plan_id, []))
        for q in queues:
            await q.put(stored)
        return stored

    async def subscribe(self, plan_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.subscribers.setdefault(plan_id, []).append(queue)
        return queue

    async def unsubscribe(self, plan_id: str, queue: asyncio.Queue) -> None:
        async with self.lock:
            queues = self.subscribers.get(plan_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self.subscribers.pop(plan_id, None)
