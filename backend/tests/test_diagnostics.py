"""
RagDiagnostics のテスト（ログのバッファリングと処理時間の集計）
"""
import logging

import pytest

from ragdesk.core.diagnostics import RagDiagnostics, track


@pytest.fixture
def diagnostics():
    # 他のテストのログと混ざらないよう専用のロガー名を使う
    instance = RagDiagnostics(level="DEBUG", buffer_size=5, logger_name="ragdesk_test")
    instance.attach()
    yield instance
    instance.detach()


class TestLogBuffer:
    def test_component_name_is_recorded(self, diagnostics):
        diagnostics.log("INFO", "rag.indexer", "indexed 3 chunks")

        entries = diagnostics.recent_entries()

        assert len(entries) == 1
        assert entries[0].component == "rag.indexer"
        assert entries[0].level == "INFO"
        assert entries[0].message == "indexed 3 chunks"

    def test_buffer_keeps_only_latest(self, diagnostics):
        for i in range(8):
            diagnostics.log("INFO", "x", f"message {i}")

        messages = [e.message for e in diagnostics.recent_entries()]

        assert messages == [f"message {i}" for i in range(3, 8)]

    def test_limit_and_min_level(self, diagnostics):
        diagnostics.log("DEBUG", "x", "debug")
        diagnostics.log("WARNING", "x", "warn")
        diagnostics.log("ERROR", "x", "error")

        assert [e.message for e in diagnostics.recent_entries(min_level="WARNING")] == ["warn", "error"]
        assert [e.message for e in diagnostics.recent_entries(limit=1)] == ["error"]
        assert diagnostics.recent_entries(limit=0) == []

    def test_disabled_collects_nothing(self, diagnostics):
        diagnostics.disable()

        diagnostics.log("ERROR", "x", "ignored")
        diagnostics.record_operation("embed", 5.0)

        assert diagnostics.recent_entries() == []
        assert diagnostics.performance_snapshot() == {}

    def test_handler_level_filters_records(self, diagnostics):
        diagnostics.set_level("WARNING")

        diagnostics.log("INFO", "x", "too quiet")
        diagnostics.log("WARNING", "x", "loud enough")

        assert [e.message for e in diagnostics.recent_entries()] == ["loud enough"]

    def test_detach_stops_collection(self, diagnostics):
        diagnostics.detach()

        logging.getLogger("ragdesk_test.x").warning("after detach")

        assert diagnostics.recent_entries() == []

    def test_unknown_level_is_rejected(self, diagnostics):
        with pytest.raises(ValueError):
            diagnostics.set_level("LOUD")
        with pytest.raises(ValueError):
            diagnostics.recent_entries(min_level="LOUD")

    def test_entry_serializes_timestamp(self, diagnostics):
        diagnostics.log("INFO", "x", "hello")

        data = diagnostics.recent_entries()[0].to_dict()

        assert isinstance(data["timestamp"], str)
        assert data["component"] == "x"


class TestOperations:
    def test_operation_records_time_and_count(self, diagnostics):
        with diagnostics.operation("embed"):
            pass
        with diagnostics.operation("embed"):
            pass

        stats = diagnostics.performance_snapshot()["embed"]

        assert stats["count"] == 2
        assert stats["failures"] == 0
        assert stats["max_ms"] >= stats["last_ms"] >= 0

    def test_failed_operation_is_counted_and_reraised(self, diagnostics):
        with pytest.raises(RuntimeError):
            with diagnostics.operation("generate"):
                raise RuntimeError("boom")

        assert diagnostics.performance_snapshot()["generate"]["failures"] == 1

    def test_track_without_diagnostics_is_noop(self):
        with track(None, "anything"):
            value = 1
        assert value == 1

    def test_clear_resets_everything(self, diagnostics):
        diagnostics.log("INFO", "x", "hello")
        diagnostics.record_operation("embed", 1.0)

        diagnostics.clear()

        assert diagnostics.recent_entries() == []
        assert diagnostics.performance_snapshot() == {}
