"""Credential pool management."""

import json
import logging
import os
import random
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from webchat_gateway.config import POOL_STRATEGIES, STRATEGY_RANDOM, STRATEGY_ROUND_ROBIN
from webchat_gateway.models import (
    STATUS_ACTIVE,
    STATUS_EXPIRED,
    STATUS_FAILED,
    CredentialEntry,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 5


class CredentialPool:
    """Ordered set of captured credentials for one provider.

    Every mutating call rewrites the whole pool file before returning.
    """

    def __init__(
        self,
        file_path: str,
        strategy: str = STRATEGY_ROUND_ROBIN,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
    ):
        self.file_path = Path(file_path)
        self.failure_threshold = failure_threshold
        self._entries: List[CredentialEntry] = []
        self._cursor = 0
        self._strategy = STRATEGY_ROUND_ROBIN
        self._lock = threading.RLock()
        self.set_strategy(strategy)
        self.load()

    def load(self) -> None:
        """Load the pool file, wrapping a legacy single record into a list."""
        with self._lock:
            if not self.file_path.exists():
                return
            try:
                raw = json.loads(self.file_path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as exc:
                logger.error("Unreadable credential file %s: %s", self.file_path, exc)
                return

            if isinstance(raw, list):
                self._entries = [
                    CredentialEntry.from_dict(item)
                    for item in raw
                    if isinstance(item, dict)
                ]
            elif isinstance(raw, dict) and raw:
                self._entries = [CredentialEntry.wrap_legacy(raw)]
                logger.info("Migrated legacy credential file %s", self.file_path)
                self.save()

    def save(self) -> None:
        with self._lock:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.file_path.with_suffix(self.file_path.suffix + ".tmp")
            tmp_path.write_text(
                json.dumps([e.to_dict() for e in self._entries], indent=2),
                encoding="utf-8",
            )
            os.replace(tmp_path, self.file_path)

    def next(self) -> Optional[CredentialEntry]:
        """Select the next active entry per strategy and stamp ``last_used``."""
        with self._lock:
            active = [e for e in self._entries if e.status == STATUS_ACTIVE]
            if not active:
                return None

            if self._strategy == STRATEGY_RANDOM:
                entry = random.choice(active)
            else:
                self._cursor = self._cursor % len(active)
                entry = active[self._cursor]
                self._cursor = (self._cursor + 1) % len(active)

            entry.last_used = utcnow()
            return entry

    def first(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            for entry in self._entries:
                if entry.status == STATUS_ACTIVE:
                    return entry.payload
            return None

    def get(self, entry_id: str) -> Optional[CredentialEntry]:
        with self._lock:
            return self._find(entry_id)

    def mark_success(self, entry_id: str) -> None:
        with self._lock:
            entry = self._find(entry_id)
            if not entry:
                return
            entry.fail_count = 0
            entry.last_error = None
            if entry.status == STATUS_FAILED:
                entry.status = STATUS_ACTIVE
            self.save()

    def mark_failed(self, entry_id: str, error: str) -> None:
        with self._lock:
            entry = self._find(entry_id)
            if not entry:
                return
            entry.fail_count += 1
            entry.last_error = error
            if entry.fail_count >= self.failure_threshold and entry.status != STATUS_FAILED:
                entry.status = STATUS_FAILED
                logger.warning(
                    "Credential %s demoted to failed after %d failures",
                    entry.id,
                    entry.fail_count,
                )
            self.save()

    def mark_expired(self, entry_id: str) -> None:
        with self._lock:
            entry = self._find(entry_id)
            if entry:
                entry.status = STATUS_EXPIRED
                self.save()

    def reset_status(self, entry_id: str) -> bool:
        with self._lock:
            entry = self._find(entry_id)
            if not entry:
                return False
            entry.status = STATUS_ACTIVE
            entry.fail_count = 0
            entry.last_error = None
            self.save()
            return True

    def add(self, payload: Dict[str, Any]) -> str:
        with self._lock:
            entry = CredentialEntry.wrap_legacy(payload)
            self._entries.append(entry)
            self.save()
            return entry.id

    def set(self, payload: Dict[str, Any]) -> str:
        """Replace the sole credential, or append when several exist."""
        with self._lock:
            if len(self._entries) > 1:
                return self.add(payload)
            entry = CredentialEntry.wrap_legacy(payload)
            if self._entries:
                entry.id = self._entries[0].id
            self._entries = [entry]
            self.save()
            return entry.id

    def remove(self, entry_id: str) -> bool:
        with self._lock:
            entry = self._find(entry_id)
            if not entry:
                return False
            self._entries.remove(entry)
            if self._cursor >= len(self._entries):
                self._cursor = 0
            self.save()
            return True

    def clear_all(self) -> bool:
        with self._lock:
            if not self._entries:
                return False
            self._entries = []
            self._cursor = 0
            try:
                self.file_path.unlink()
            except FileNotFoundError:
                pass
            return True

    def reorder(self, ids: List[str]) -> None:
        """Put ``ids`` first in the given order; unmentioned entries follow."""
        with self._lock:
            ordered: List[CredentialEntry] = []
            for entry_id in ids:
                entry = self._find(entry_id)
                if entry and entry not in ordered:
                    ordered.append(entry)
            ordered.extend(e for e in self._entries if e not in ordered)
            self._entries = ordered
            self.save()

    def get_strategy(self) -> str:
        return self._strategy

    def set_strategy(self, strategy: str) -> None:
        if strategy not in POOL_STRATEGIES:
            raise ValueError(f"Unknown pool strategy: {strategy}")
        self._strategy = strategy

    def get_all(self) -> List[CredentialEntry]:
        with self._lock:
            return list(self._entries)

    def count(self) -> int:
        return len(self._entries)

    def active_count(self) -> int:
        with self._lock:
            return sum(1 for e in self._entries if e.status == STATUS_ACTIVE)

    def get_summary(self) -> Dict[str, object]:
        with self._lock:
            return {
                "total": len(self._entries),
                "active": self.active_count(),
                "strategy": self._strategy,
                "entries": [self._format_entry(e) for e in self._entries],
            }

    def _find(self, entry_id: str) -> Optional[CredentialEntry]:
        for entry in self._entries:
            if entry.id == entry_id:
                return entry
        return None

    def _format_entry(self, entry: CredentialEntry) -> Dict[str, object]:
        return {
            "id": entry.id,
            "status": entry.status,
            "failCount": entry.fail_count,
            "lastUsed": entry.last_used.isoformat() if entry.last_used else None,
            "lastError": entry.last_error,
            "addedAt": entry.added_at.isoformat(),
            "capturedAt": entry.captured_at,
            "secretPreview": entry.secret_preview(),
        }
