"""Append-only JSON-lines audit log."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

import aiofiles
import structlog

logger = structlog.get_logger()


class AuditLog:
    """Records deploy/restart outcomes, one JSON object per line."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def log(self, **event: Any) -> None:
        entry = {"timestamp": datetime.now(timezone.utc).isoformat(), **event}
        line = json.dumps(entry, default=str) + "\n"
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with self._lock:
                async with aiofiles.open(self.path, "a", encoding="utf-8") as f:
                    await f.write(line)
            logger.info("Audit log", **entry)
        except OSError as e:
            # auditing must never fail the operation it records
            logger.error("Failed to write audit log", path=str(self.path), error=str(e))

    async def read(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent entries first."""
        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                content = await f.read()
        except FileNotFoundError:
            return []
        entries = []
        for line in content.splitlines()[-limit:]:
            line = line.strip()
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                logger.warning("Skipping corrupt audit line")
        entries.reverse()
        return entries
