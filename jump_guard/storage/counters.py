"""
Engagement counters per jump.

Known weakness: every ``record_*`` call reads the current row, computes the
new values and writes them back. Two concurrent calls on the same jump can
both read the same value and one increment is lost, so stored counts are
lower bounds. They are advisory analytics only and must never gate
admission or billing; that is the ledger's job.
"""

import logging
import sqlite3
from datetime import datetime
from typing import Callable, Dict, Optional

from .db import DEFAULT_BUSY_TIMEOUT, DEFAULT_DB_PATH, get_connection
from .models import UsageCounters

logger = logging.getLogger(__name__)

COUNTER_FIELDS = (
    "views_count",
    "clarifications_count",
    "reroutes_count",
    "tools_clicked_count",
    "prompts_copied_count",
    "combos_used_count",
    "max_clarification_level",
)


class UsageCounterStore:
    """Best-effort tracking of how a generated jump is used.

    Tracking never raises for storage failures: they are logged and the
    call reports False.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, busy_timeout: float = DEFAULT_BUSY_TIMEOUT):
        self.db_path = db_path
        self.busy_timeout = busy_timeout

    def _connect(self) -> sqlite3.Connection:
        return get_connection(self.db_path, timeout=self.busy_timeout)

    def create(self, jump_id: str) -> bool:
        """Create the zeroed counter row for a new jump.

        Returns:
            True if created, False if the row already existed
        """
        now = datetime.now().isoformat()
        conn = self._connect()
        try:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO jump_usage_counters (jump_id, created_at, updated_at)
                VALUES (?, ?, ?)
            """, (jump_id, now, now))
            return cursor.rowcount == 1
        finally:
            conn.close()

    def get(self, jump_id: str) -> Optional[UsageCounters]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM jump_usage_counters WHERE jump_id = ?", (jump_id,)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            return None
        return UsageCounters(jump_id=row["jump_id"], **{name: row[name] for name in COUNTER_FIELDS})

    def delete(self, jump_id: str) -> bool:
        """Remove the counters together with their jump."""
        conn = self._connect()
        try:
            cursor = conn.execute("DELETE FROM jump_usage_counters WHERE jump_id = ?", (jump_id,))
            return cursor.rowcount == 1
        finally:
            conn.close()

    def _track(
        self,
        jump_id: str,
        event: str,
        update: Callable[[UsageCounters], Dict[str, int]]
    ) -> bool:
        try:
            current = self.get(jump_id)
            if current is None:
                logger.debug(f"No counters for jump {jump_id}, skipping {event}")
                return False

            values = update(current)
            assignments = ", ".join(f"{name} = ?" for name in values)
            conn = self._connect()
            try:
                conn.execute(
                    f"UPDATE jump_usage_counters SET {assignments}, updated_at = ? WHERE jump_id = ?",
                    (*values.values(), datetime.now().isoformat(), jump_id)
                )
            finally:
                conn.close()
        except sqlite3.Error as e:
            logger.warning(f"Error tracking {event} for jump {jump_id}: {e}")
            return False

        logger.debug(f"Tracked {event} for jump {jump_id}")
        return True

    def record_view(self, jump_id: str) -> bool:
        return self._track(jump_id, "view", lambda c: {"views_count": c.views_count + 1})

    def record_clarification(self, jump_id: str, level: int) -> bool:
        """Count a clarification and raise the running maximum level."""
        if level < 0:
            raise ValueError("level must be >= 0")
        return self._track(jump_id, "clarification", lambda c: {
            "clarifications_count": c.clarifications_count + 1,
            "max_clarification_level": max(c.max_clarification_level, level),
        })

    def record_reroute(self, jump_id: str) -> bool:
        return self._track(jump_id, "reroute", lambda c: {"reroutes_count": c.reroutes_count + 1})

    def record_tool_click(self, jump_id: str) -> bool:
        return self._track(jump_id, "tool click", lambda c: {"tools_clicked_count": c.tools_clicked_count + 1})

    def record_prompt_copy(self, jump_id: str) -> bool:
        return self._track(jump_id, "prompt copy", lambda c: {"prompts_copied_count": c.prompts_copied_count + 1})

    def record_combo_usage(self, jump_id: str) -> bool:
        """Count use of a tool together with its prompt."""
        return self._track(jump_id, "combo usage", lambda c: {"combos_used_count": c.combos_used_count + 1})
