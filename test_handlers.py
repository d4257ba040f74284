"""
test_handlers.py — execution-server handlers and request router

Coverage:
  - handlers.py  : data_operations (sync / read / export), analytics texts,
                   argument failures as error results, exhaustive dispatch
  - engine.py    : handle_request router (ping, tools/list, unknown)
"""

import os

import pytest

import serializers
from conftest import FakeFetcher
from errors import CommerceClientError, UnknownTool
from handlers import NO_SNAPSHOT, ToolHandlers, text_result
from models import Product, ToolName
from snapshots import SnapshotRetentionManager
from tools import RUNS_IN_SERVER, ToolRegistry, default_declarations


def _handlers(tmp_path, fetcher=None, formats=("xlsx", "md")):
    retention = SnapshotRetentionManager(root=str(tmp_path), fetcher=fetcher or FakeFetcher(),
                                         formats=formats, freshness_seconds=3600)
    return ToolHandlers(ToolRegistry(), retention)


def _text(result):
    return result["content"][0]["text"]


# ══════════════════════════════════════════════════════════════════════════════
# SECTION 1 — dispatch
# ══════════════════════════════════════════════════════════════════════════════

class TestDispatch:

    def test_text_result_shape(self):
        assert text_result("ok") == {"content": [{"type": "text", "text": "ok"}]}
        assert text_result("bad", is_error=True)["isError"] is True

    def test_unknown_tool_raises(self, tmp_path):
        with pytest.raises(UnknownTool):
            _handlers(tmp_path).call("sync_inventory", {})

    def test_agent_side_tool_is_not_served(self, tmp_path):
        with pytest.raises(ValueError, match="not served"):
            _handlers(tmp_path).call("search", {"query": "mugs"})

    def test_invalid_arguments_become_error_result(self, tmp_path):
        result = _handlers(tmp_path).call("analytics", {"analysis_type": "median"})
        assert result["isError"] is True
        assert "Invalid arguments for analytics" in _text(result)

    def test_every_server_tool_needs_a_handler(self, tmp_path):
        decls = default_declarations()
        decls[ToolName.SEARCH]["runs_in"] = RUNS_IN_SERVER
        retention = SnapshotRetentionManager(root=str(tmp_path))
        with pytest.raises(RuntimeError, match="search"):
            ToolHandlers(ToolRegistry(decls), retention)


# ══════════════════════════════════════════════════════════════════════════════
# SECTION 2 — data_operations
# ══════════════════════════════════════════════════════════════════════════════

class TestDataOperations:

    def test_sync_then_cached(self, tmp_path):
        fetcher = FakeFetcher()
        h = _handlers(tmp_path, fetcher)
        first = _text(h.call("data_operations", {"operation": "sync"}))
        second = _text(h.call("data_operations", {"operation": "sync"}))
        assert first.startswith("Successfully synced 2 products to ")
        assert first.endswith(".xlsx")
        assert second.startswith("Using cached inventory (age 0h 0m): ")
        assert fetcher.calls == 1

    def test_forced_sync_refetches(self, tmp_path):
        fetcher = FakeFetcher()
        h = _handlers(tmp_path, fetcher)
        h.call("data_operations", {"operation": "sync"})
        h.call("data_operations", {"operation": "sync", "force": True})
        assert fetcher.calls == 2

    def test_sync_failure_is_error_result(self, tmp_path):
        h = _handlers(tmp_path, FakeFetcher(error=CommerceClientError("No commerce platform configured.")))
        result = h.call("data_operations", {"operation": "sync"})
        assert result["isError"] is True
        assert _text(result).startswith("Sync error: Inventory sync failed: No commerce platform")

    def test_read_active_snapshot(self, tmp_path):
        h = _handlers(tmp_path)
        h.call("data_operations", {"operation": "sync"})
        text = _text(h.call("data_operations", {"operation": "read"}))
        assert "- Total Products: 2" in text
        assert "- Platforms: SHOPIFY" in text
        assert "- Total Inventory Value: $174.00" in text
        assert "- Low Stock Items (< 5): 1" in text

    def test_read_missing_file(self, tmp_path):
        result = _handlers(tmp_path).call(
            "data_operations", {"operation": "read", "file_path": str(tmp_path / "nope.xlsx")}
        )
        assert result["isError"] is True
        assert "File not found" in _text(result)

    def test_read_without_snapshot(self, tmp_path):
        result = _handlers(tmp_path).call("data_operations", {"operation": "read"})
        assert _text(result) == NO_SNAPSHOT

    def test_export_writes_outside_retention(self, tmp_path):
        h = _handlers(tmp_path)
        h.call("data_operations", {"operation": "sync"})
        text = _text(h.call("data_operations", {"operation": "export", "format": "csv"}))
        assert text.startswith("Exported 2 products to ")
        path = text.rsplit(" ", 1)[-1]
        assert os.path.dirname(path) == h.retention.exports_dir
        assert len(serializers.read(path)) == 2
        assert all(not n.endswith(".csv") for n in os.listdir(h.retention.active_dir))


# ══════════════════════════════════════════════════════════════════════════════
# SECTION 3 — analytics
# ══════════════════════════════════════════════════════════════════════════════

class TestAnalytics:

    def _synced(self, tmp_path, products=None):
        h = _handlers(tmp_path, FakeFetcher(products))
        h.call("data_operations", {"operation": "sync"})
        return h

    def test_no_snapshot(self, tmp_path):
        result = _handlers(tmp_path).call("analytics", {"analysis_type": "count"})
        assert result["isError"] is True
        assert _text(result) == NO_SNAPSHOT

    def test_count(self, tmp_path):
        assert _text(self._synced(tmp_path).call("analytics", {"analysis_type": "count"})) == "Product count: 2"

    def test_value_is_exact(self, tmp_path):
        text = _text(self._synced(tmp_path).call("analytics", {"analysis_type": "value"}))
        assert text == "Total inventory value: $174.00 (2 products)"

    def test_low_stock_threshold_five(self, tmp_path):
        text = _text(self._synced(tmp_path).call(
            "analytics", {"analysis_type": "low_stock", "filters": {"threshold": 5}}
        ))
        lines = text.splitlines()
        assert lines[0] == "1 items < 5."
        assert lines[1:] == ["- Red Mug - Qty: 0 - SKU: RM-1"]

    def test_low_stock_default_threshold(self, tmp_path):
        text = _text(self._synced(tmp_path).call("analytics", {"analysis_type": "low_stock"}))
        assert text.startswith("1 items < 5.")

    def test_low_stock_is_strictly_below(self, tmp_path):
        text = _text(self._synced(tmp_path).call(
            "analytics", {"analysis_type": "low_stock", "filters": {"threshold": 12}}
        ))
        assert text.startswith("1 items < 12.")
        text = _text(self._synced(tmp_path).call(
            "analytics", {"analysis_type": "low_stock", "filters": {"threshold": 13}}
        ))
        assert "- Blue Mug (Large) - Qty: 12 - SKU: BM-1" in text

    def test_filters(self, tmp_path):
        items = [
            Product(id="1", title="A", quantity=1, price=2.0, platform="shopify", status="active"),
            Product(id="2", title="B", quantity=1, price=3.0, platform="etsy", status="active"),
            Product(id="3", title="C", quantity=1, price=4.0, platform="shopify", status="draft"),
        ]
        h = self._synced(tmp_path, items)
        count = h.call("analytics", {"analysis_type": "count", "filters": {"platform": "shopify"}})
        assert _text(count) == "Product count: 2"
        value = h.call("analytics", {"analysis_type": "value", "filters": {"status": "active"}})
        assert _text(value) == "Total inventory value: $5.00 (2 products)"

    def test_summary(self, tmp_path):
        text = _text(self._synced(tmp_path).call("analytics", {"analysis_type": "summary"}))
        assert text.splitlines() == [
            "Analytics Summary:",
            "- Total Products: 2",
            "- Active Products: 2",
            "- Platforms: SHOPIFY",
            "- Total Value: $174.00",
            "- Low Stock (< 5): 1",
            "- Out of Stock: 1",
        ]


# ══════════════════════════════════════════════════════════════════════════════
# SECTION 4 — engine.py: handle_request router
# ══════════════════════════════════════════════════════════════════════════════

class TestHandleRequest:

    def test_ping(self):
        from engine import handle_request
        r = handle_request({"type": "ping", "payload": {}})
        assert r["status"] == "ok"
        assert "version" in r

    def test_empty_payload(self):
        from engine import handle_request
        assert handle_request({"type": "ping"})["status"] == "ok"

    def test_tools_list_comes_from_registry(self):
        from engine import handle_request
        r = handle_request({"type": "tools/list"})
        assert r["tools"] == ToolRegistry().server_tools()

    def test_unknown_request_type_raises(self):
        from engine import handle_request
        with pytest.raises(ValueError, match="Unknown request type"):
            handle_request({"type": "nonexistent_type", "payload": {}})
