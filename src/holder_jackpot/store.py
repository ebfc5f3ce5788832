"""
Optional persistence boundary.

The engine, tracker and pipeline hand plain dict records to a store. The
default ``NullStore`` keeps nothing, so running without a store changes no
behaviour. ``JsonFileStore`` writes the same records as JSON files under a
state directory; round files double as verifiable draw audits.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Dict, List, Optional, Sequence

log = logging.getLogger(__name__)

Record = Dict[str, Any]


class NullStore:
    async def upsert_holders(self, rows: Sequence[Record]) -> None:
        return None

    async def save_round(self, record: Record) -> None:
        return None

    async def save_payout(self, record: Record) -> None:
        return None

    async def save_pool(self, amount: int) -> None:
        return None

    async def load_pool(self) -> Optional[int]:
        return None

    async def load_recent_rounds(self, limit: int) -> List[Record]:
        return []

    async def load_recent_payouts(self, limit: int) -> List[Record]:
        return []


class JsonFileStore(NullStore):
    """
    Single-node store for small deployments.

    File work runs in a worker thread so the event loop keeps ticking.
    ``payouts.jsonl`` is append-only (one line per terminal status change)
    and is never rotated; rotate or archive it externally on long-lived nodes.
    """

    def __init__(self, directory: str) -> None:
        self.directory = directory
        self.rounds_dir = os.path.join(directory, "rounds")
        self.payouts_path = os.path.join(directory, "payouts.jsonl")
        os.makedirs(self.rounds_dir, exist_ok=True)

    def _write_json(self, path: str, data: Any) -> None:
        tmp = f"{path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp, path)

    def _read_json(self, path: str) -> Any:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _merge_holders(self, rows: Sequence[Record]) -> None:
        path = os.path.join(self.directory, "holders.json")
        existing: Dict[str, Record] = {}
        if os.path.exists(path):
            existing = {row["address"]: row for row in self._read_json(path)}
        for row in rows:
            existing[row["address"]] = row
        self._write_json(path, sorted(existing.values(), key=lambda r: r["address"]))

    def _append_payout(self, record: Record) -> None:
        with open(self.payouts_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, default=str) + "\n")

    def _read_pool(self) -> Optional[int]:
        path = os.path.join(self.directory, "state.json")
        if not os.path.exists(path):
            return None
        return int(self._read_json(path)["current_pot"])

    def _read_rounds(self, limit: int) -> List[Record]:
        records = [
            self._read_json(os.path.join(self.rounds_dir, name))
            for name in os.listdir(self.rounds_dir)
            if name.endswith(".json")
        ]
        records.sort(key=lambda r: str(r.get("start_time", "")), reverse=True)
        return records[:limit]

    def _read_payouts(self, limit: int) -> List[Record]:
        if not os.path.exists(self.payouts_path):
            return []
        latest: Dict[str, Record] = {}
        with open(self.payouts_path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, 1):
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except ValueError:
                    log.warning("Skipping unreadable payout record at %s:%d", self.payouts_path, lineno)
                    continue
                # Re-inserting moves a re-written payout to the end.
                latest.pop(record["id"], None)
                latest[record["id"]] = record
        return list(reversed(latest.values()))[:limit]

    async def upsert_holders(self, rows: Sequence[Record]) -> None:
        await asyncio.to_thread(self._merge_holders, rows)

    async def save_round(self, record: Record) -> None:
        path = os.path.join(self.rounds_dir, f"{record['id']}.json")
        await asyncio.to_thread(self._write_json, path, record)

    async def save_payout(self, record: Record) -> None:
        await asyncio.to_thread(self._append_payout, record)

    async def save_pool(self, amount: int) -> None:
        path = os.path.join(self.directory, "state.json")
        await asyncio.to_thread(self._write_json, path, {"current_pot": amount})

    async def load_pool(self) -> Optional[int]:
        return await asyncio.to_thread(self._read_pool)

    async def load_recent_rounds(self, limit: int) -> List[Record]:
        return await asyncio.to_thread(self._read_rounds, limit)

    async def load_recent_payouts(self, limit: int) -> List[Record]:
        """Latest record per payout id, most recently written first."""
        return await asyncio.to_thread(self._read_payouts, limit)
