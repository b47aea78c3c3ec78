"""
Tests for duplicate detection and side-channel markers.

Tests cover:
- Ledger layer (any age)
- Content-hash layer (24h, normalized)
- Side-channel marker layer, including corrupt marker files
- Layer precedence
- Rapid-fire and consecutive-failure safeguards per recipient
"""

import json

import pytest

from conftest import NOON_UTC_MS
from sendguard.clock import DAY_MS, HOUR_MS, SECOND_MS
from sendguard.duplicates import check_duplicates
from sendguard.markers import MarkerStore
from sendguard.schemas import ReasonCode
from sendguard.storage import insert_message_record, session_scope
from sendguard.utils import content_hash


NOW = NOON_UTC_MS
TEXT = "Your kurta is ready for pickup."


@pytest.fixture
def markers(tmp_path):
    return MarkerStore(tmp_path / "markers")


@pytest.fixture
def db(gate):
    with session_scope(gate.session_factory) as session:
        yield session


def add_row(db, order_id="O1", message_type="ready", content=TEXT, sent_at_ms=NOW - HOUR_MS, succeeded=True):
    insert_message_record(
        db, "R1", order_id, message_type, content_hash(content), content, sent_at_ms, succeeded
    )


class TestLedgerLayer:

    def test_clean_key_passes(self, db, markers):
        assert check_duplicates(db, markers, "R1", "O1", "ready", TEXT, NOW).allowed

    def test_success_blocks_regardless_of_age(self, db, markers):
        add_row(db, content="Older wording", sent_at_ms=NOW - 30 * DAY_MS)
        result = check_duplicates(db, markers, "R1", "O1", "ready", TEXT, NOW)
        assert result.reason_code == ReasonCode.LEDGER_DUPLICATE

    def test_failed_attempt_does_not_block(self, db, markers):
        add_row(db, succeeded=False)
        assert check_duplicates(db, markers, "R1", "O1", "ready", TEXT, NOW).allowed

    def test_ledger_wins_over_content(self, db, markers):
        add_row(db)
        result = check_duplicates(db, markers, "R1", "O1", "ready", TEXT, NOW)
        assert result.reason_code == ReasonCode.LEDGER_DUPLICATE


class TestContentLayer:

    def test_same_text_other_order_within_day(self, db, markers):
        add_row(db, order_id="O9", message_type="welcome")
        result = check_duplicates(db, markers, "R1", "O1", "ready", TEXT, NOW)
        assert result.reason_code == ReasonCode.CONTENT_DUPLICATE

    def test_case_and_whitespace_ignored(self, db, markers):
        add_row(db, order_id="O9", message_type="welcome")
        result = check_duplicates(db, markers, "R1", "O1", "ready", "  YOUR KURTA is ready for pickup. ", NOW)
        assert result.reason_code == ReasonCode.CONTENT_DUPLICATE

    def test_older_than_a_day_passes(self, db, markers):
        add_row(db, order_id="O9", message_type="welcome", sent_at_ms=NOW - DAY_MS - 1)
        assert check_duplicates(db, markers, "R1", "O1", "ready", TEXT, NOW).allowed

    def test_other_recipient_not_affected(self, db, markers):
        insert_message_record(db, "R2", "O9", "welcome", content_hash(TEXT), TEXT, NOW - HOUR_MS, True)
        assert check_duplicates(db, markers, "R1", "O1", "ready", TEXT, NOW).allowed


class TestSideChannelLayer:

    def test_recent_marker_blocks(self, db, markers):
        markers.write("R1", "O1", "ready", "abc", NOW - HOUR_MS, True)
        result = check_duplicates(db, markers, "R1", "O1", "ready", TEXT, NOW)
        assert result.reason_code == ReasonCode.SIDE_CHANNEL_DUPLICATE

    def test_failed_marker_ignored(self, db, markers):
        markers.write("R1", "O1", "ready", "abc", NOW - HOUR_MS, False, "timeout")
        assert check_duplicates(db, markers, "R1", "O1", "ready", TEXT, NOW).allowed

    def test_stale_marker_ignored(self, db, markers):
        markers.write("R1", "O1", "ready", "abc", NOW - 2 * DAY_MS, True)
        assert check_duplicates(db, markers, "R1", "O1", "ready", TEXT, NOW).allowed

    def test_corrupt_marker_treated_as_absent(self, db, markers):
        path = markers.path_for("R1", "O1", "ready")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("{not json", encoding="utf-8")

        assert markers.read("R1", "O1", "ready") is None
        assert check_duplicates(db, markers, "R1", "O1", "ready", TEXT, NOW).allowed


class TestMarkerStore:

    def test_write_then_read(self, markers):
        path = markers.write("+91 98765", "O/1", "ready", "abc", NOW, True)

        assert path.parent == markers.directory
        assert path.name.startswith("backup_") and path.suffix == ".json"
        assert " " not in path.name and "/" not in path.name
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["sent"] is True
        assert data["sent_at_ms"] == NOW
        assert markers.read("+91 98765", "O/1", "ready")["content_hash"] == "abc"

    def test_no_temp_file_left(self, markers):
        markers.write("R1", "O1", "ready", "abc", NOW, True)
        assert [p.name for p in markers.directory.iterdir()] == [markers.path_for("R1", "O1", "ready").name]

    def test_non_object_marker_ignored(self, markers):
        path = markers.path_for("R1", "O1", "ready")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("[1, 2]", encoding="utf-8")
        assert markers.read("R1", "O1", "ready") is None

    def test_keys_sharing_separators_get_distinct_files(self, markers):
        assert markers.path_for("R_1", "O", "welcome") != markers.path_for("R", "1_O", "welcome")

    def test_marker_for_other_key_ignored(self, db, markers):
        markers.write("R_1", "O", "welcome", "abc", NOW - HOUR_MS, True)
        # Copy the file to where another key's marker would live
        other = markers.path_for("R", "1_O", "welcome")
        other.write_text(markers.path_for("R_1", "O", "welcome").read_text(encoding="utf-8"), encoding="utf-8")

        assert markers.sent_since("R_1", "O", "welcome", NOW - DAY_MS)
        assert not markers.sent_since("R", "1_O", "welcome", NOW - DAY_MS)
        assert check_duplicates(db, markers, "R", "1_O", "welcome", TEXT, NOW).allowed


class TestRapidFire:

    def test_send_within_window_blocked(self, db, markers):
        add_row(db, order_id="O9", message_type="welcome", content="Welcome aboard", sent_at_ms=NOW - 2 * SECOND_MS)
        result = check_duplicates(db, markers, "R1", "O1", "ready", TEXT, NOW)
        assert result.reason_code == ReasonCode.RAPID_FIRE

    def test_window_boundary_passes(self, db, markers):
        add_row(db, order_id="O9", message_type="welcome", content="Welcome aboard", sent_at_ms=NOW - 5 * SECOND_MS)
        assert check_duplicates(db, markers, "R1", "O1", "ready", TEXT, NOW).allowed

    def test_failed_attempt_does_not_count(self, db, markers):
        add_row(db, order_id="O9", message_type="welcome", content="Welcome aboard", sent_at_ms=NOW - SECOND_MS,
                succeeded=False)
        assert check_duplicates(db, markers, "R1", "O1", "ready", TEXT, NOW).allowed

    def test_configurable_window(self, db, markers):
        add_row(db, order_id="O9", message_type="welcome", content="Welcome aboard", sent_at_ms=NOW - 10 * SECOND_MS)
        result = check_duplicates(db, markers, "R1", "O1", "ready", TEXT, NOW, rapid_fire_ms=30 * SECOND_MS)
        assert result.reason_code == ReasonCode.RAPID_FIRE


class TestConsecutiveFailures:

    def add_failures(self, db, count, start_ms=NOW - HOUR_MS):
        for i in range(count):
            add_row(db, order_id=f"F{i}", message_type="welcome", content=f"attempt {i}",
                    sent_at_ms=start_ms + i * SECOND_MS, succeeded=False)

    def test_three_failures_block(self, db, markers):
        self.add_failures(db, 3)
        result = check_duplicates(db, markers, "R1", "O1", "ready", TEXT, NOW)
        assert result.reason_code == ReasonCode.CONSECUTIVE_FAILURES

    def test_two_failures_pass(self, db, markers):
        self.add_failures(db, 2)
        assert check_duplicates(db, markers, "R1", "O1", "ready", TEXT, NOW).allowed

    def test_success_resets_streak(self, db, markers):
        self.add_failures(db, 3, start_ms=NOW - 2 * HOUR_MS)
        add_row(db, order_id="O9", message_type="welcome", content="Welcome aboard", sent_at_ms=NOW - HOUR_MS)
        assert check_duplicates(db, markers, "R1", "O1", "ready", TEXT, NOW).allowed

    def test_failures_older_than_a_day_ignored(self, db, markers):
        self.add_failures(db, 3, start_ms=NOW - 2 * DAY_MS)
        assert check_duplicates(db, markers, "R1", "O1", "ready", TEXT, NOW).allowed

    def test_other_recipient_not_affected(self, db, markers):
        for i in range(3):
            insert_message_record(db, "R2", f"F{i}", "welcome", content_hash(f"x{i}"), f"x{i}", NOW - HOUR_MS + i, False)
        assert check_duplicates(db, markers, "R1", "O1", "ready", TEXT, NOW).allowed
