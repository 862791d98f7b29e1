"""JSONL journal for admission, risk and execution events."""

from __future__ import annotations

import json
from collections.abc import Iterator
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

# Event type -> payload keys every record of that type must carry.
_REQUIRED_KEYS: dict[str, tuple[str, ...]] = {
    "candidate": ("token_address", "confidence"),
    "dispatch": ("token_address",),
    "risk_check": ("token_address", "size", "allowed", "reasons"),
    "execution_result": ("token_address", "side", "success", "error_kind", "signature"),
    "position_open": ("token_address", "entry_price", "quantity"),
    "position_close": ("token_address", "reason", "realized_pnl"),
    "risk_event": ("kind",),
    "error": ("token_address", "error"),
}


class JournalStore:
    """Append-only event journal, one JSONL file per UTC day.

    Records are ``{timestamp, event_type, token_address, payload}``; the token
    is lifted out of the payload so one token's history can be read back
    without decoding every payload.
    """

    def __init__(self, journal_dir: Path) -> None:
        self._journal_dir = journal_dir
        self._journal_dir.mkdir(parents=True, exist_ok=True)

    def append(self, event_type: str, payload: dict[str, Any]) -> None:
        required = _REQUIRED_KEYS.get(event_type)
        if required is None:
            raise ValueError(f"unsupported_event_type: {event_type}")
        missing = [key for key in required if key not in payload]
        if missing:
            raise ValueError(f"{event_type}_missing_keys: {missing}")

        now = datetime.now(timezone.utc)
        record = {
            "timestamp": now.isoformat(),
            "event_type": event_type,
            "token_address": payload.get("token_address"),
            "payload": payload,
        }
        with self._file_path_for_day(now.date()).open("a", encoding="utf-8") as f:
            # Enums and timestamps fall back to str().
            f.write(json.dumps(record, ensure_ascii=True, default=str) + "\n")

    def load_recent(self, limit: int, event_type: str | None = None) -> list[dict[str, Any]]:
        """Return up to ``limit`` newest records, oldest first."""
        if limit <= 0:
            return []
        rows: list[dict[str, Any]] = []
        for record in self._iter_newest_first():
            if event_type is not None and record["event_type"] != event_type:
                continue
            rows.append(record)
            if len(rows) >= limit:
                break
        return list(reversed(rows))

    def token_history(self, token_address: str) -> list[dict[str, Any]]:
        """All records for one token, oldest first."""
        rows = [r for r in self._iter_newest_first() if r.get("token_address") == token_address]
        return list(reversed(rows))

    def _iter_newest_first(self) -> Iterator[dict[str, Any]]:
        for file in sorted(self._journal_dir.glob("*.jsonl"), reverse=True):
            for line in reversed(file.read_text(encoding="utf-8").splitlines()):
                if line.strip():
                    yield json.loads(line)

    def _file_path_for_day(self, day: date) -> Path:
        return self._journal_dir / f"{day.isoformat()}.jsonl"
