"""
snapshots.py — Snapshot Retention Manager

Owns the on-disk lifecycle of inventory snapshots:

  <root>/active/       one keeper per format (inventory_<timestamp>.<ext>)
  <root>/superseded/   keepers displaced by a refresh, deleted on the next scan

Every sync runs the same state machine:
  1. Scan       list active snapshots, partition by format
  2. Keepers    newest file per format stays, the rest are deleted (best effort)
  3. Freshness  every required format has a keeper younger than the window → cached
  4. Refresh    fetch, write each format to a hidden temp file, then swap it in
                with os.replace; the old keeper moves to superseded/

A fetch or write failure raises SyncFailed and leaves the keepers untouched.
Deletion failures never fail a sync; they surface as `delete_failed` events.
"""

import os
import re
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

import config
import serializers
from errors import SyncFailed
from models import InventorySnapshotFile, SnapshotFormat
from telemetry import emit_log, log


SNAPSHOT_PREFIX = "inventory_"
PARTIAL_SUFFIX = ".partial"
_SNAPSHOT_RE = re.compile(
    r"^" + SNAPSHOT_PREFIX + r".+\.(" + "|".join(f.value for f in SnapshotFormat) + r")$"
)

EventSink = Callable[[str, Dict[str, Any]], None]


class SyncOutcome(BaseModel):

    refreshed: bool
    age_seconds: float = 0.0
    product_count: Optional[int] = None
    snapshots: Dict[SnapshotFormat, InventorySnapshotFile] = Field(default_factory=dict)

    @property
    def primary(self) -> Optional[InventorySnapshotFile]:
        return next(iter(self.snapshots.values()), None)

    def describe(self) -> str:
        path = self.primary.path if self.primary else "(none)"
        if not self.refreshed:
            return f"Using cached inventory (age {format_age(self.age_seconds)}): {path}"
        return f"Successfully synced {self.product_count} products to {path}"


def format_age(seconds: float) -> str:
    minutes = int(seconds // 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes}m"


def parse_formats(names: Iterable[str]) -> List[SnapshotFormat]:
    formats: List[SnapshotFormat] = []
    for name in names:
        fmt = SnapshotFormat(name)
        if fmt not in formats:
            formats.append(fmt)
    if not formats:
        raise ValueError("At least one snapshot format must be declared")
    return formats


class SnapshotRetentionManager:

    def __init__(
        self,
        root: str = "",
        fetcher: Any = None,
        formats: Optional[Iterable[str]] = None,
        freshness_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
        on_event: Optional[EventSink] = None,
    ):
        root = root or config.INVENTORY_DIR
        self.active_dir = os.path.join(root, "active")
        self.superseded_dir = os.path.join(root, "superseded")
        self.exports_dir = os.path.join(root, "exports")
        self.formats = parse_formats(formats or config.INVENTORY_FORMATS)
        if freshness_seconds is None:
            freshness_seconds = config.FRESHNESS_HOURS * 3600
        self.freshness_seconds = freshness_seconds
        self._fetcher = fetcher
        self._clock = clock
        self._on_event = on_event

    # ── Events ────────────────────────────────────────────────────────────────

    def _event(self, event: str, **fields: Any) -> None:
        emit_log(event, **fields)
        if self._on_event is not None:
            self._on_event(event, fields)

    def _discard(self, path: str, reason: str) -> bool:
        """Best-effort delete. Failures are reported, never raised."""
        try:
            os.remove(path)
        except FileNotFoundError:
            return True
        except OSError as e:
            self._event("delete_failed", path=path, reason=reason, error=str(e))
            return False
        self._event("snapshot_evicted", path=path, reason=reason)
        return True

    # ── Scan ──────────────────────────────────────────────────────────────────

    def _list_active(self) -> Dict[SnapshotFormat, List[InventorySnapshotFile]]:
        by_format: Dict[SnapshotFormat, List[InventorySnapshotFile]] = {}
        if not os.path.isdir(self.active_dir):
            return by_format
        for name in os.listdir(self.active_dir):
            m = _SNAPSHOT_RE.match(name)
            if not m:
                continue
            path = os.path.join(self.active_dir, name)
            try:
                mtime = os.path.getmtime(path)
            except OSError:
                continue  # vanished between listdir and stat
            fmt = SnapshotFormat(m.group(1))
            by_format.setdefault(fmt, []).append(
                InventorySnapshotFile(path=path, format=fmt, mtime=mtime)
            )
        for files in by_format.values():
            files.sort(key=lambda f: (f.mtime, os.path.basename(f.path)), reverse=True)
        return by_format

    def scan(self) -> Dict[SnapshotFormat, InventorySnapshotFile]:
        """Evict superseded and duplicate snapshots; return the keeper per format."""
        os.makedirs(self.active_dir, exist_ok=True)
        os.makedirs(self.superseded_dir, exist_ok=True)

        for name in os.listdir(self.superseded_dir):
            self._discard(os.path.join(self.superseded_dir, name), "superseded")
        # Staging files left behind by an interrupted refresh
        for name in os.listdir(self.active_dir):
            if name.startswith("." + SNAPSHOT_PREFIX) and name.endswith(PARTIAL_SUFFIX):
                self._discard(os.path.join(self.active_dir, name), "partial")

        keepers: Dict[SnapshotFormat, InventorySnapshotFile] = {}
        for fmt, files in self._list_active().items():
            keepers[fmt] = files[0]
            for stale in files[1:]:
                self._discard(stale.path, "duplicate")
        return keepers

    def latest(self, fmt: SnapshotFormat) -> Optional[InventorySnapshotFile]:
        """Read-only lookup of the current keeper; never deletes."""
        files = self._list_active().get(fmt)
        return files[0] if files else None

    def readable_format(self) -> SnapshotFormat:
        """First declared format that products can be read back from."""
        for fmt in self.formats:
            if fmt != SnapshotFormat.MARKDOWN:
                return fmt
        raise ValueError("No declared snapshot format can be read back (markdown only)")

    # ── Sync ──────────────────────────────────────────────────────────────────

    def sync(self, force: bool = False,
             required: Optional[Iterable[SnapshotFormat]] = None) -> SyncOutcome:
        keepers = self.scan()
        required = list(required) if required is not None else self.formats
        now = self._clock()

        if not force and required and all(fmt in keepers for fmt in required):
            age = keepers[required[0]].age_seconds(now)
            if age < self.freshness_seconds:
                self._event("snapshot_cached", age_seconds=round(age, 1),
                            path=keepers[required[0]].path)
                ordered = {f: keepers[f] for f in self.formats if f in keepers}
                return SyncOutcome(refreshed=False, age_seconds=age, snapshots=ordered)

        return self._refresh(keepers)

    def _refresh(self, keepers: Dict[SnapshotFormat, InventorySnapshotFile]) -> SyncOutcome:
        if self._fetcher is None:
            raise SyncFailed("Inventory sync failed: no commerce client configured")
        try:
            products = self._fetcher.fetch_inventory()
        except Exception as e:
            raise SyncFailed(f"Inventory sync failed: {e}") from e

        stamp = datetime.fromtimestamp(self._clock()).strftime("%Y-%m-%dT%H-%M-%S-%f")
        staged: Dict[SnapshotFormat, str] = {}
        try:
            for fmt in self.formats:
                staged[fmt] = os.path.join(
                    self.active_dir, f".{SNAPSHOT_PREFIX}{stamp}{fmt.extension}{PARTIAL_SUFFIX}"
                )
                serializers.save(products, staged[fmt], fmt)
        except Exception as e:
            for tmp in staged.values():
                self._discard(tmp, "partial")
            raise SyncFailed(f"Inventory sync failed while writing snapshot: {e}") from e

        committed = self._publish(staged, stamp)

        # Old keepers leave active/ only once every new file is in place
        for fmt, new in committed.items():
            old = keepers.get(fmt)
            if old is None or old.path == new.path:
                continue
            try:
                os.replace(old.path, os.path.join(self.superseded_dir, os.path.basename(old.path)))
            except OSError as e:
                # Left in active/; the next scan evicts it as a duplicate
                log("Snapshots", f"Could not move superseded {old.path}: {e}")

        self._event("snapshot_refreshed", products=len(products), formats=[f.value for f in committed])
        return SyncOutcome(refreshed=True, age_seconds=0.0, product_count=len(products),
                           snapshots=committed)

    def _publish(self, staged: Dict[SnapshotFormat, str],
                 stamp: str) -> Dict[SnapshotFormat, InventorySnapshotFile]:
        """Move every staged file into active/, or none of them."""
        published: Dict[SnapshotFormat, str] = {}
        try:
            for fmt, tmp in staged.items():
                final = os.path.join(self.active_dir, f"{SNAPSHOT_PREFIX}{stamp}{fmt.extension}")
                os.replace(tmp, final)
                published[fmt] = final
            return {
                fmt: InventorySnapshotFile(path=path, format=fmt, mtime=os.path.getmtime(path))
                for fmt, path in published.items()
            }
        except OSError as e:
            for path in published.values():
                self._discard(path, "rollback")
            for fmt, tmp in staged.items():
                if fmt not in published:
                    self._discard(tmp, "partial")
            raise SyncFailed(f"Inventory sync failed while publishing snapshot: {e}") from e
