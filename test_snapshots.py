"""
test_snapshots.py — retention state machine and snapshot serializers

Coverage:
  - snapshots.py    : scan / keepers / freshness / refresh / failure semantics
  - serializers.py  : xlsx / csv / json round trips, markdown sections
"""

import os
import time

import pytest

import serializers
import snapshots
from conftest import FakeFetcher, make_products
from errors import CommerceClientError, SyncFailed
from models import Product, SnapshotFormat
from snapshots import SnapshotRetentionManager, format_age


def _manager(tmp_path, fetcher=None, formats=("xlsx", "md"), freshness=3600.0, events=None):
    sink = (lambda event, fields: events.append((event, fields))) if events is not None else None
    return SnapshotRetentionManager(
        root=str(tmp_path), fetcher=fetcher, formats=formats,
        freshness_seconds=freshness, on_event=sink,
    )


def _seed(directory, name, mtime, products=None):
    os.makedirs(directory, exist_ok=True)
    path = os.path.join(directory, name)
    serializers.save(products or make_products(), path)
    os.utime(path, (mtime, mtime))
    return path


def _active(mgr):
    return sorted(os.listdir(mgr.active_dir))


# ══════════════════════════════════════════════════════════════════════════════
# SECTION 1 — scan & keepers
# ══════════════════════════════════════════════════════════════════════════════

class TestScan:

    def test_empty_directory_has_no_keepers(self, tmp_path):
        mgr = _manager(tmp_path)
        assert mgr.scan() == {}
        assert os.path.isdir(mgr.active_dir)
        assert os.path.isdir(mgr.superseded_dir)

    def test_newest_file_per_format_is_kept(self, tmp_path):
        events = []
        mgr = _manager(tmp_path, events=events)
        now = time.time()
        _seed(mgr.active_dir, "inventory_a.xlsx", now - 300)
        _seed(mgr.active_dir, "inventory_b.xlsx", now - 200)
        newest = _seed(mgr.active_dir, "inventory_c.xlsx", now - 100)
        md = _seed(mgr.active_dir, "inventory_a.md", now - 300)

        keepers = mgr.scan()

        assert keepers[SnapshotFormat.SPREADSHEET].path == newest
        assert keepers[SnapshotFormat.MARKDOWN].path == md
        assert _active(mgr) == ["inventory_a.md", "inventory_c.xlsx"]
        evicted = [f["path"] for e, f in events if e == "snapshot_evicted"]
        assert len(evicted) == 2

    def test_mtime_tie_broken_by_name(self, tmp_path):
        mgr = _manager(tmp_path)
        now = time.time()
        _seed(mgr.active_dir, "inventory_2024-01-01.xlsx", now)
        later = _seed(mgr.active_dir, "inventory_2024-01-02.xlsx", now)
        assert mgr.scan()[SnapshotFormat.SPREADSHEET].path == later

    def test_unrelated_files_are_left_alone(self, tmp_path):
        mgr = _manager(tmp_path)
        _seed(mgr.active_dir, "inventory_x.xlsx", time.time())
        with open(os.path.join(mgr.active_dir, "notes.txt"), "w") as f:
            f.write("keep me")
        mgr.scan()
        assert "notes.txt" in _active(mgr)

    def test_superseded_files_are_purged(self, tmp_path):
        mgr = _manager(tmp_path)
        old = _seed(mgr.superseded_dir, "inventory_old.xlsx", time.time() - 10)
        mgr.scan()
        assert not os.path.exists(old)

    def test_delete_failure_is_reported_not_raised(self, tmp_path, monkeypatch):
        events = []
        mgr = _manager(tmp_path, events=events)
        now = time.time()
        stuck = _seed(mgr.active_dir, "inventory_old.xlsx", now - 100)
        _seed(mgr.active_dir, "inventory_new.xlsx", now)

        real_remove = os.remove

        def flaky_remove(path):
            if path == stuck:
                raise PermissionError("locked")
            real_remove(path)

        monkeypatch.setattr(snapshots.os, "remove", flaky_remove)
        keepers = mgr.scan()

        assert keepers[SnapshotFormat.SPREADSHEET].path.endswith("inventory_new.xlsx")
        failed = [f for e, f in events if e == "delete_failed"]
        assert failed and failed[0]["path"] == stuck
        assert "locked" in failed[0]["error"]

    def test_latest_never_deletes(self, tmp_path):
        mgr = _manager(tmp_path)
        now = time.time()
        _seed(mgr.active_dir, "inventory_a.xlsx", now - 100)
        newest = _seed(mgr.active_dir, "inventory_b.xlsx", now)
        assert mgr.latest(SnapshotFormat.SPREADSHEET).path == newest
        assert len(_active(mgr)) == 2
        assert mgr.latest(SnapshotFormat.CSV) is None


# ══════════════════════════════════════════════════════════════════════════════
# SECTION 2 — sync: freshness, refresh, eviction
# ══════════════════════════════════════════════════════════════════════════════

class TestSync:

    def test_first_sync_fetches_and_writes_every_format(self, tmp_path, fetcher):
        mgr = _manager(tmp_path, fetcher)
        outcome = mgr.sync()
        assert outcome.refreshed
        assert outcome.product_count == 2
        assert fetcher.calls == 1
        assert set(outcome.snapshots) == {SnapshotFormat.SPREADSHEET, SnapshotFormat.MARKDOWN}
        names = _active(mgr)
        assert len(names) == 2
        assert all(n.startswith("inventory_") for n in names)
        assert outcome.describe().startswith("Successfully synced 2 products to ")

    def test_second_sync_within_window_is_cached(self, tmp_path, fetcher):
        mgr = _manager(tmp_path, fetcher, freshness=3600)
        mgr.sync()
        second = mgr.sync()
        assert fetcher.calls == 1
        assert not second.refreshed
        assert 0 <= second.age_seconds < 3600
        assert second.describe().startswith("Using cached inventory (age 0h 0m): ")

    def test_force_refetches_inside_window(self, tmp_path, fetcher):
        mgr = _manager(tmp_path, fetcher)
        mgr.sync()
        assert mgr.sync(force=True).refreshed
        assert fetcher.calls == 2

    def test_stale_keeper_triggers_refresh(self, tmp_path, fetcher):
        mgr = _manager(tmp_path, fetcher, formats=("xlsx",), freshness=3600)
        _seed(mgr.active_dir, "inventory_old.xlsx", time.time() - 7200)
        assert mgr.sync().refreshed
        assert fetcher.calls == 1

    def test_missing_required_format_triggers_refresh(self, tmp_path, fetcher):
        mgr = _manager(tmp_path, fetcher, formats=("xlsx", "md"))
        _seed(mgr.active_dir, "inventory_fresh.xlsx", time.time())
        assert mgr.sync().refreshed

    def test_required_subset_can_be_cached(self, tmp_path, fetcher):
        mgr = _manager(tmp_path, fetcher, formats=("xlsx", "md"))
        _seed(mgr.active_dir, "inventory_fresh.xlsx", time.time())
        outcome = mgr.sync(required=[SnapshotFormat.SPREADSHEET])
        assert not outcome.refreshed
        assert fetcher.calls == 0

    def test_refresh_moves_previous_keeper_to_superseded(self, tmp_path, fetcher):
        mgr = _manager(tmp_path, fetcher, formats=("xlsx",), freshness=0)
        first = mgr.sync().primary.path
        mgr.sync()
        assert not os.path.exists(first)
        assert os.listdir(mgr.superseded_dir) == [os.path.basename(first)]
        mgr.scan()
        assert os.listdir(mgr.superseded_dir) == []

    def test_at_most_one_snapshot_per_format_after_many_syncs(self, tmp_path, fetcher):
        mgr = _manager(tmp_path, fetcher, formats=("xlsx", "md", "csv"), freshness=0)
        for _ in range(4):
            mgr.sync()
            exts = [n.rsplit(".", 1)[-1] for n in _active(mgr)]
            assert sorted(exts) == ["csv", "md", "xlsx"]
        assert fetcher.calls == 4

    def test_fetch_failure_raises_and_keeps_keeper(self, tmp_path):
        mgr = _manager(tmp_path, FakeFetcher(error=CommerceClientError("Shopify HTTP 401")),
                       formats=("xlsx",))
        keeper = _seed(mgr.active_dir, "inventory_keep.xlsx", time.time())
        with pytest.raises(SyncFailed, match="Shopify HTTP 401"):
            mgr.sync(force=True)
        assert _active(mgr) == ["inventory_keep.xlsx"]
        assert serializers.read(keeper) == make_products()

    def test_write_failure_leaves_no_partial_snapshot(self, tmp_path, fetcher, monkeypatch):
        mgr = _manager(tmp_path, fetcher, formats=("xlsx", "md"))
        _seed(mgr.active_dir, "inventory_keep.xlsx", time.time() - 7200)
        real_save = serializers.save

        def failing_save(products, path, fmt=None):
            if fmt == SnapshotFormat.MARKDOWN:
                raise OSError("disk full")
            return real_save(products, path, fmt)

        monkeypatch.setattr(serializers, "save", failing_save)
        with pytest.raises(SyncFailed, match="disk full"):
            mgr.sync()
        assert _active(mgr) == ["inventory_keep.xlsx"]

    def test_publish_failure_keeps_previous_keeper(self, tmp_path, fetcher, monkeypatch):
        mgr = _manager(tmp_path, fetcher, formats=("xlsx", "md"))
        first = mgr.sync()
        old_paths = sorted(f.path for f in first.snapshots.values())
        real_replace = os.replace

        def failing_replace(src, dst):
            if src.endswith(snapshots.PARTIAL_SUFFIX) and dst.endswith(".md"):
                raise OSError("device busy")
            real_replace(src, dst)

        monkeypatch.setattr(snapshots.os, "replace", failing_replace)
        with pytest.raises(SyncFailed, match="device busy"):
            mgr.sync(force=True)

        assert sorted(os.path.join(mgr.active_dir, n) for n in _active(mgr)) == old_paths
        assert os.listdir(mgr.superseded_dir) == []
        assert mgr.latest(SnapshotFormat.SPREADSHEET).path == first.snapshots[SnapshotFormat.SPREADSHEET].path

    def test_leftover_partial_files_are_purged_on_scan(self, tmp_path):
        mgr = _manager(tmp_path)
        os.makedirs(mgr.active_dir)
        leftover = os.path.join(mgr.active_dir, ".inventory_2024-01-01T00-00-00-000000.xlsx.partial")
        with open(leftover, "w") as f:
            f.write("half")
        mgr.scan()
        assert not os.path.exists(leftover)

    def test_no_fetcher_is_a_sync_failure(self, tmp_path):
        with pytest.raises(SyncFailed):
            _manager(tmp_path).sync()

    def test_unknown_format_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            _manager(tmp_path, formats=("xlsx", "pdf"))

    def test_format_age(self):
        assert format_age(0) == "0h 0m"
        assert format_age(3 * 3600 + 25 * 60 + 59) == "3h 25m"


# ══════════════════════════════════════════════════════════════════════════════
# SECTION 3 — serializers
# ══════════════════════════════════════════════════════════════════════════════

class TestSerializers:

    @pytest.mark.parametrize("ext", ["xlsx", "csv", "json"])
    def test_round_trip_preserves_fields(self, tmp_path, products, ext):
        extra = Product(id="etsy_77", title="Plain Bowl", quantity=3, price=20.0,
                        platform="etsy", status="sold_out")
        items = products + [extra]
        path = str(tmp_path / f"inventory.{ext}")
        serializers.save(items, path)
        back = serializers.read(path)
        assert back == items
        assert back[2].sku is None and back[2].variant is None
        assert back[1].variant == "Large"

    def test_column_order_is_fixed(self):
        assert serializers.COLUMNS == ["platform", "id", "title", "sku", "variant", "quantity", "price", "status"]

    def test_csv_header_row(self, tmp_path, products):
        path = str(tmp_path / "inventory.csv")
        serializers.save(products, path)
        with open(path, encoding="utf-8") as f:
            assert f.readline().strip() == ",".join(serializers.HEADERS)

    def test_markdown_has_one_section_per_product(self, tmp_path, products):
        path = str(tmp_path / "inventory.md")
        serializers.save(products, path)
        with open(path, encoding="utf-8") as f:
            text = f.read()
        assert text.count("## SKU:") == 2
        assert "Title: Red Mug" in text
        assert "Variant: Large" in text

    def test_markdown_cannot_be_read_back(self, tmp_path, products):
        path = str(tmp_path / "inventory.md")
        serializers.save(products, path)
        with pytest.raises(ValueError):
            serializers.read(path)

    def test_unknown_extension_rejected(self, tmp_path, products):
        with pytest.raises(ValueError, match="Unsupported snapshot format"):
            serializers.save(products, str(tmp_path / "inventory.pdf"))
