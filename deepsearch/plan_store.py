import asyncio
import logging
import re
from typing import Dict, Iterable, List, Optional

from pydantic import ValidationError

from .db import Database
from .schemas import SearchPlan

logger = logging.getLogger("uvicorn.error")

NEAREST_ID_TOLERANCE = 100000
_NUMBER_RE = re.compile(r"\d+")
_TIMESTAMP_RE = re.compile(r"\d{10,}")


def _first_number(value: str) -> int:
    match = _NUMBER_RE.search(value)
    return int(match.group(0)) if match else 0


def match_plan_id(requested: str, known_ids: Iterable[str]) -> Optional[str]:
    """Find the stored id a client most likely meant when it sent a truncated or reformatted one."""
    if not requested:
        return None
    ids = list(known_ids)
    if requested in ids:
        return requested
    for existing in ids:
        if existing.startswith(requested) or requested.startswith(existing):
            return existing
    if "plan-" in requested:
        number = requested.split("plan-", 1)[1]
        if number:
            for existing in ids:
                if number in existing:
                    return existing
    if not (_TIMESTAMP_RE.search(requested) or "plan-" in requested):
        return None
    target = _first_number(requested)
    closest: Optional[str] = None
    closest_distance: Optional[int] = None
    for existing in ids:
        distance = abs(_first_number(existing) - target)
        if closest_distance is None or distance < closest_distance:
            closest, closest_distance = existing, distance
    if closest is not None and closest_distance is not None and closest_distance < NEAREST_ID_TOLERANCE:
        return closest
    return None


class PlanStore:
    """Process-wide plan snapshots; values are copied on every read and write."""

    def __init__(self, archive: Optional[Database] = None):
        self._plans: Dict[str, SearchPlan] = {}
        self._lock = asyncio.Lock()
        self.archive = archive

    async def put(self, plan_id: str, plan: SearchPlan) -> None:
        snapshot = plan.model_copy(deep=True)
        async with self._lock:
            self._plans[plan_id] = snapshot
        logger.debug("Updated plan %s (%s)", plan_id, snapshot.status_counts())
        if self.archive is None:
            return
        try:
            await self.archive.save_plan_snapshot(plan_id, snapshot.query, snapshot.to_wire())
        except Exception as exc:
            logger.warning("Plan %s archive write failed: %s", plan_id, exc)

    async def get(self, plan_id: str) -> Optional[SearchPlan]:
        async with self._lock:
            plan = self._plans.get(plan_id)
            if plan is not None:
                return plan.model_copy(deep=True)
        if self.archive is None:
            return None
        return await self._load_archived(plan_id)

    async def _load_archived(self, plan_id: str) -> Optional[SearchPlan]:
        try:
            snapshot = await self.archive.load_plan_snapshot(plan_id)
        except Exception as exc:
            logger.warning("Plan %s archive read failed: %s", plan_id, exc)
            return None
        if snapshot is None:
            return None
        try:
            plan = SearchPlan.model_validate(snapshot)
        except ValidationError as exc:
            logger.warning("Plan %s archive snapshot is invalid: %s", plan_id, exc)
            return None
        async with self._lock:
            # A live write may have landed while the archive was being read.
            current = self._plans.setdefault(plan_id, plan)
            return current.model_copy(deep=True)

    async def has(self, plan_id: str) -> bool:
        return await self.get(plan_id) is not None

    async def ids(self) -> List[str]:
        async with self._lock:
            known = list(self._plans)
        if self.archive is not None:
            try:
                archived = await self.archive.list_plan_ids()
            except Exception as exc:
                logger.warning("Plan archive listing failed: %s", exc)
                archived = []
            known.extend(pid for pid in archived if pid not in known)
        return known

    async def resolve(self, plan_id: str) -> Optional[SearchPlan]:
        plan = await self.get(plan_id)
        if plan is not None:
            return plan
        match = match_plan_id(plan_id, await self.ids())
        if match is None:
            return None
        logger.info("Resolved requested plan %s to %s", plan_id, match)
        return await self.get(match)
