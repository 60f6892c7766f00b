from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from ..db.base import BaseDBManager
from ..models.usage import UsageEvent


logger = logging.getLogger(__name__)


class UsageLogger:
    """
    Append-only Usage Log writer.

    Each event is persisted through the configured ``BaseDBManager`` (the
    durable record that reconciliation reads) and mirrored as line-delimited
    JSON to a file for log aggregators. Only the DB write can fail the caller.
    """

    def __init__(self, db: BaseDBManager, file_path: Optional[Path] = None) -> None:
        self._db = db
        self._file_path = file_path
        if self._file_path is not None:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)

    async def append(self, event: UsageEvent) -> UsageEvent:
        event = await self._db.add_usage_event(event)
        self._mirror(event)
        return event

    def _mirror(self, event: UsageEvent) -> None:
        if self._file_path is None:
            return
        try:
            line = json.dumps(event.model_dump(mode="json"), default=str)
            with self._file_path.open("a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as exc:
            logger.warning(
                "Usage log mirror write failed: %s",
                exc,
                extra={"path": str(self._file_path), "user_id": event.user_id},
            )
