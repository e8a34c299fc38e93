import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        return default


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS search_plans(
                    plan_id TEXT PRIMARY KEY,
                    query TEXT,
                    snapshot_json TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    plan_id TEXT,
                    seq INTEGER,
                    event_type TEXT,
                    payload_json TEXT,
                    created_at TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_events_plan_seq ON events(plan_id, seq);
                CREATE TABLE IF NOT EXISTS configs(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    config_json TEXT,
                    created_at TEXT
                );
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            row = await cursor.fetchone()
            await cursor.close()
        return row

    async def save_config(self, config: Dict[str, Any]) -> None:
        await self.execute(
            "INSERT INTO configs(config_json, created_at) VALUES (?,?)",
            (json.dumps(config, ensure_ascii=True), utc_now()),
        )

    async def save_plan_snapshot(self, plan_id: str, query: str, snapshot: Dict[str, Any]) -> None:
        now = utc_now()
        async with aiosqlite.connect(self.path) as db:
            await db.execute(
                "INSERT INTO search_plans(plan_id, query, snapshot_json, created_at, updated_at) VALUES (?,?,?,?,?) "
                "ON CONFLICT(plan_id) DO UPDATE SET snapshot_json=excluded.snapshot_json, updated_at=excluded.updated_at",
                (plan_id, query, json.dumps(snapshot, ensure_ascii=True), now, now),
            )
            await db.commit()

    async def load_plan_snapshot(self, plan_id: str) -> Optional[Dict[str, Any]]:
        row = await self.fetchone("SELECT snapshot_json FROM search_plans WHERE plan_id=?", (plan_id,))
        if not row:
            return None
        return _json_loads(row["snapshot_json"], None)

    async def list_plan_ids(self) -> List[str]:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute("SELECT plan_id FROM search_plans ORDER BY created_at ASC")
            rows = await cursor.fetchall()
            await cursor.close()
        return [row[0] for row in rows]

    async def add_event(self, plan_id: str, event_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        created_at = utc_now()
        async with aiosqlite.connect(self.path) as db:
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute("SELECT COALESCE(MAX(seq), 0) FROM events WHERE plan_id=?", (plan_id,))
            row = await cursor.fetchone()
            await cursor.close()
            seq = int(row[0] or 0) + 1
            await db.execute(
                "INSERT INTO events(plan_id, seq, event_type, payload_json, created_at) VALUES (?,?,?,?,?)",
                (plan_id, seq, event_type, json.dumps(payload, ensure_ascii=True), created_at),
            )
            await db.commit()
        return {
            "plan_id": plan_id,
            "seq": seq,
            "event_type": event_type,
            "payload": payload,
            "created_at": created_at,
        }

    async def list_events(self, plan_id: str, after_seq: int = 0) -> List[Dict[str, Any]]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT plan_id, seq, event_type, payload_json, created_at FROM events "
                "WHERE plan_id=? AND seq>? ORDER BY seq ASC",
                (plan_id, after_seq),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [
            {
                "plan_id": row["plan_id"],
                "seq": row["seq"],
                "event_type": row["event_type"],
                "payload": _json_loads(row["payload_json"], {}),
                "created_at": row["created_at"],
            }
            for row in rows
        ]
