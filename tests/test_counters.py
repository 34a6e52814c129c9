"""
Unit tests for jump usage counters.
"""

import os
import shutil
import sqlite3
import tempfile
from unittest.mock import patch

import pytest

from jump_guard.storage.counters import UsageCounterStore
from jump_guard.storage.repository import initialize_schema


class TestUsageCounterStore:
    """Test counter creation, tracking and failure handling."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.store = UsageCounterStore(db_path=self.db_path)

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_create_zeroed_row(self):
        assert self.store.create("jump-1") is True

        counters = self.store.get("jump-1")
        assert counters.jump_id == "jump-1"
        assert counters.views_count == 0
        assert counters.combos_used_count == 0
        assert counters.max_clarification_level == 0

    def test_create_twice(self):
        self.store.create("jump-1")
        self.store.record_view("jump-1")

        assert self.store.create("jump-1") is False
        assert self.store.get("jump-1").views_count == 1

    def test_record_each_counter(self):
        self.store.create("jump-1")

        assert self.store.record_view("jump-1")
        assert self.store.record_view("jump-1")
        assert self.store.record_reroute("jump-1")
        assert self.store.record_tool_click("jump-1")
        assert self.store.record_prompt_copy("jump-1")
        assert self.store.record_combo_usage("jump-1")

        counters = self.store.get("jump-1")
        assert counters.views_count == 2
        assert counters.reroutes_count == 1
        assert counters.tools_clicked_count == 1
        assert counters.prompts_copied_count == 1
        assert counters.combos_used_count == 1
        assert counters.clarifications_count == 0

    def test_clarification_tracks_running_max(self):
        """Test the max level only ever grows."""
        self.store.create("jump-1")

        self.store.record_clarification("jump-1", 2)
        self.store.record_clarification("jump-1", 5)
        self.store.record_clarification("jump-1", 3)

        counters = self.store.get("jump-1")
        assert counters.clarifications_count == 3
        assert counters.max_clarification_level == 5

    def test_negative_level_rejected(self):
        self.store.create("jump-1")
        with pytest.raises(ValueError, match="level"):
            self.store.record_clarification("jump-1", -1)

    def test_missing_jump_is_not_tracked(self):
        assert self.store.record_view("missing") is False
        assert self.store.get("missing") is None

    def test_delete(self):
        self.store.create("jump-1")
        assert self.store.delete("jump-1") is True
        assert self.store.delete("jump-1") is False
        assert self.store.get("jump-1") is None

    @patch('jump_guard.storage.counters.get_connection')
    def test_storage_error_is_swallowed(self, mock_get_connection):
        """Test tracking reports False instead of raising on storage errors."""
        mock_get_connection.side_effect = sqlite3.OperationalError("disk I/O error")
        assert self.store.record_view("jump-1") is False
