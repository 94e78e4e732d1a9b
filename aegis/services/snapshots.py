"""
Best-effort JSON snapshots of the event store and metrics.
"""

import asyncio
import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger

from aegis.services.security_events import SecurityEvent


class SnapshotWriter:
    """Writes and reloads snapshots on a worker thread; failures never propagate."""

    def __init__(self, path: str):
        self.path = Path(path)

    async def save(self, events: List[SecurityEvent], metrics: Dict[str, Any]) -> bool:
        data = {
            "events": [event.to_dict() for event in events],
            "metrics": metrics,
            "saved_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await asyncio.to_thread(self._write, data)
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save security snapshot to {self.path}: {e}")
            return False
        logger.debug(f"Saved security snapshot with {len(events)} events to {self.path}")
        return True

    async def load(self) -> Tuple[List[SecurityEvent], Optional[Dict[str, Any]]]:
        """Return (events, metrics) from the last snapshot, or ([], None)."""
        try:
            data = await asyncio.to_thread(self._read)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load security snapshot from {self.path}: {e}")
            return [], None
        if data is None:
            return [], None
        if not isinstance(data, dict):
            logger.warning(f"Ignoring security snapshot at {self.path}: expected an object")
            return [], None

        metrics = data.get("metrics")
        if metrics is not None and not isinstance(metrics, dict):
            logger.warning(f"Ignoring security snapshot metrics at {self.path}: expected an object")
            metrics = None

        raw_events = data.get("events") or []
        if not isinstance(raw_events, list):
            logger.warning(f"Ignoring security snapshot events at {self.path}: expected a list")
            raw_events = []

        events = []
        for raw in raw_events:
            try:
                events.append(SecurityEvent.from_dict(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed snapshot event: {e}")
        return events, metrics

    def _write(self, data: Dict[str, Any]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp_path, self.path)

    def _read(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)
