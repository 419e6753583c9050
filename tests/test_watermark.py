"""Tests for watermark.py incremental state."""
import json

from knowledge_pipeline.watermark import (
    DAY_MS,
    MAX_PROCESSED_IDS,
    WATERMARK_FILE,
    WatermarkState,
    ensure_sources,
    init_watermark,
    mark_processed,
    read_watermark,
    write_watermark,
)

NOW = 1_772_400_000_000


class TestInitWatermark:
    """Tests for init_watermark() and ensure_sources()."""

    def test_backfill_cutoff(self):
        state = init_watermark(["claude-code", "claude-desktop"], 3, NOW)
        assert state.sources["claude-code"].last_processed_timestamp == NOW - 3 * DAY_MS
        assert state.sources["claude-desktop"].processed_session_ids == []

    def test_ensure_sources_adds_missing_only(self):
        state = init_watermark(["claude-code"], 1, NOW)
        mark_processed(state, "claude-code", "a", NOW)
        ensure_sources(state, ["claude-code", "claude-desktop"], 2, NOW)
        assert state.sources["claude-code"].last_processed_timestamp == NOW
        assert state.sources["claude-desktop"].last_processed_timestamp == NOW - 2 * DAY_MS


class TestMarkProcessed:
    """Tests for mark_processed()."""

    def test_timestamp_never_moves_backwards(self):
        state = init_watermark(["claude-code"], 1, NOW)
        mark_processed(state, "claude-code", "new", NOW + 500)
        mark_processed(state, "claude-code", "old", NOW - 10 * DAY_MS)
        assert state.sources["claude-code"].last_processed_timestamp == NOW + 500
        assert state.processed_ids() == {"new", "old"}

    def test_window_capped_fifo(self):
        """Only the most recent MAX_PROCESSED_IDS ids are kept, oldest dropped first."""
        state = init_watermark(["claude-code"], 1, NOW)
        for i in range(MAX_PROCESSED_IDS + 5):
            mark_processed(state, "claude-code", f"s{i}", NOW)
        ids = state.sources["claude-code"].processed_session_ids
        assert len(ids) == MAX_PROCESSED_IDS
        assert ids[0] == "s5"
        assert ids[-1] == f"s{MAX_PROCESSED_IDS + 4}"

    def test_reprocessed_id_moves_to_end(self):
        state = init_watermark(["claude-code"], 1, NOW)
        for session_id in ("a", "b", "a"):
            mark_processed(state, "claude-code", session_id, NOW)
        assert state.sources["claude-code"].processed_session_ids == ["b", "a"]

    def test_unknown_source_added(self):
        state = WatermarkState()
        mark_processed(state, "claude-desktop", "x", NOW)
        assert state.sources["claude-desktop"].processed_session_ids == ["x"]
        assert state.total_sessions_processed == 1


class TestReadWriteWatermark:
    """Tests for read_watermark() and write_watermark()."""

    def test_missing_returns_none(self, tmp_path):
        assert read_watermark(tmp_path) is None

    def test_write_then_read(self, tmp_path):
        state = init_watermark(["claude-code"], 1, NOW)
        mark_processed(state, "claude-code", "abc", NOW)
        state.total_notes_created = 2
        write_watermark(tmp_path, state)

        loaded = read_watermark(tmp_path)
        assert loaded.sources["claude-code"].processed_session_ids == ["abc"]
        assert loaded.total_notes_created == 2
        assert loaded.last_run_at.endswith("Z")

    def test_on_disk_schema(self, tmp_path):
        write_watermark(tmp_path, init_watermark(["claude-code"], 1, NOW))
        data = json.loads((tmp_path / WATERMARK_FILE).read_text())
        assert data["version"] == 1
        assert set(data["stats"]) == {"total_sessions_processed", "total_notes_created",
                                      "total_knowledge_extracted"}

    def test_corrupt_file_returns_none(self, tmp_path):
        """Corrupt state is treated as absent so the next run re-initializes."""
        (tmp_path / WATERMARK_FILE).write_text("{not json")
        assert read_watermark(tmp_path) is None

    def test_wrong_shape_returns_none(self, tmp_path):
        (tmp_path / WATERMARK_FILE).write_text(json.dumps({"version": 1, "sources": []}))
        assert read_watermark(tmp_path) is None
        (tmp_path / WATERMARK_FILE).write_text(json.dumps(
            {"version": 1, "sources": {"claude-code": {"processed_session_ids": []}}}))
        assert read_watermark(tmp_path) is None
