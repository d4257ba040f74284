"""
handlers.py — Execution-server tool handlers

Provides:
- ToolHandlers.call(name, arguments): validated dispatch for every tool the
  registry places in the execution server
- text_result(text, is_error): the single-text-segment result shape

Handlers never raise for domain failures (missing snapshot, sync failure,
unreadable file). They return an error-flagged result so the model can react
to the message on its next turn.
"""

import os
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import serializers
from errors import InventoryError
from models import Product, SnapshotFormat, ToolName
from snapshots import SnapshotRetentionManager
from telemetry import emit_log
from tools import (
    ANALYSIS_TYPES, DATA_OPERATIONS, DEFAULT_LOW_STOCK_THRESHOLD,
    RUNS_IN_SERVER, ToolRegistry,
)


NO_SNAPSHOT = "No inventory files found. Please sync first."


def text_result(text: str, is_error: bool = False) -> Dict[str, Any]:
    result: Dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["isError"] = True
    return result


def _num(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def _apply_filters(products: List[Product], filters: Dict[str, Any]) -> List[Product]:
    if filters.get("status"):
        products = [p for p in products if p.status.value == filters["status"]]
    if filters.get("platform"):
        products = [p for p in products if p.platform.value == filters["platform"]]
    return products


def _platforms(products: List[Product]) -> str:
    seen: List[str] = []
    for p in products:
        name = p.platform.value.upper()
        if name not in seen:
            seen.append(name)
    return ", ".join(seen)


class ToolHandlers:

    def __init__(self, registry: ToolRegistry, retention: SnapshotRetentionManager):
        self.registry = registry
        self.retention = retention
        self._dispatch: Dict[ToolName, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
            ToolName.DATA_OPERATIONS: self.data_operations,
            ToolName.ANALYTICS: self.analytics,
        }
        unhandled = [t.value for t in registry.tools_for(RUNS_IN_SERVER) if t not in self._dispatch]
        if unhandled:
            raise RuntimeError(f"Server tools without a handler: {', '.join(unhandled)}")

    def call(self, name: str, arguments: Any) -> Dict[str, Any]:
        """Validate then dispatch. UnknownTool propagates; bad arguments become an error result."""
        tool = self.registry.resolve(name)
        if tool not in self._dispatch:
            raise ValueError(f"Tool {tool.value} is not served by the execution server")
        try:
            tool, args = self.registry.validate(name, arguments)
        except InventoryError as e:
            return text_result(str(e), is_error=True)
        emit_log("tool_dispatched", tool=tool.value)
        return self._dispatch[tool](args)

    # ── Snapshot access ───────────────────────────────────────────────────────

    def _load_products(self) -> Optional[List[Product]]:
        keeper = self.retention.latest(self.retention.readable_format())
        if keeper is None:
            return None
        return serializers.read(keeper.path)

    # ── data_operations ───────────────────────────────────────────────────────

    def data_operations(self, args: Dict[str, Any]) -> Dict[str, Any]:
        operation = args["operation"]
        try:
            if operation == "sync":
                return self._sync(bool(args.get("force", False)))
            if operation == "read":
                return self._read(args.get("file_path"))
            if operation == "export":
                return self._export(args.get("format") or SnapshotFormat.SPREADSHEET.value)
        except Exception as e:
            emit_log("tool_failed", tool=ToolName.DATA_OPERATIONS.value, operation=operation, error=str(e))
            return text_result(f"{operation.capitalize()} error: {e}", is_error=True)
        return text_result(
            f"Unknown data operation: {operation}. Valid: {', '.join(DATA_OPERATIONS)}", is_error=True
        )

    def _sync(self, force: bool) -> Dict[str, Any]:
        outcome = self.retention.sync(force=force)
        return text_result(outcome.describe())

    def _read(self, file_path: Optional[str]) -> Dict[str, Any]:
        if not file_path:
            keeper = self.retention.latest(self.retention.readable_format())
            if keeper is None:
                return text_result(NO_SNAPSHOT, is_error=True)
            file_path = keeper.path
        if not os.path.exists(file_path):
            return text_result(f"File not found at {file_path}. Please sync inventory first.", is_error=True)

        data = serializers.read(file_path)
        total_value = sum(p.value for p in data)
        low = sum(1 for p in data if p.quantity < DEFAULT_LOW_STOCK_THRESHOLD)
        return text_result(
            "Inventory Summary:\n"
            f"- Total Products: {len(data)}\n"
            f"- Platforms: {_platforms(data)}\n"
            f"- Total Inventory Value: ${total_value:.2f}\n"
            f"- Low Stock Items (< {DEFAULT_LOW_STOCK_THRESHOLD}): {low}"
        )

    def _export(self, fmt_name: str) -> Dict[str, Any]:
        fmt = SnapshotFormat(fmt_name)
        data = self._load_products()
        if data is None:
            return text_result(NO_SNAPSHOT, is_error=True)

        os.makedirs(self.retention.exports_dir, exist_ok=True)
        stamp = datetime.now().strftime("%Y-%m-%dT%H-%M-%S")
        path = os.path.join(self.retention.exports_dir, f"inventory_export_{stamp}{fmt.extension}")
        serializers.save(data, path, fmt)
        return text_result(f"Exported {len(data)} products to {path}")

    # ── analytics ─────────────────────────────────────────────────────────────

    def analytics(self, args: Dict[str, Any]) -> Dict[str, Any]:
        analysis = args["analysis_type"]
        filters = args.get("filters") or {}
        try:
            data = self._load_products()
        except Exception as e:
            emit_log("tool_failed", tool=ToolName.ANALYTICS.value, analysis=analysis, error=str(e))
            return text_result(f"Analytics error: {e}", is_error=True)
        if data is None:
            return text_result(NO_SNAPSHOT, is_error=True)

        if analysis == "count":
            return text_result(f"Product count: {len(_apply_filters(data, filters))}")

        if analysis == "value":
            selected = _apply_filters(data, filters)
            total = sum(p.value for p in selected)
            return text_result(f"Total inventory value: ${total:.2f} ({len(selected)} products)")

        if analysis == "low_stock":
            threshold = filters.get("threshold", DEFAULT_LOW_STOCK_THRESHOLD)
            low = [p for p in _apply_filters(data, filters) if p.quantity < threshold]
            lines = [f"{len(low)} items < {_num(threshold)}."]
            lines += [f"- {p.label()} - Qty: {p.quantity} - SKU: {p.sku or 'N/A'}" for p in low]
            return text_result("\n".join(lines))

        if analysis == "summary":
            total = sum(p.value for p in data)
            return text_result(
                "Analytics Summary:\n"
                f"- Total Products: {len(data)}\n"
                f"- Active Products: {sum(1 for p in data if p.status.value == 'active')}\n"
                f"- Platforms: {_platforms(data)}\n"
                f"- Total Value: ${total:.2f}\n"
                f"- Low Stock (< {DEFAULT_LOW_STOCK_THRESHOLD}): "
                f"{sum(1 for p in data if p.quantity < DEFAULT_LOW_STOCK_THRESHOLD)}\n"
                f"- Out of Stock: {sum(1 for p in data if p.quantity == 0)}"
            )

        return text_result(
            f"Unknown analysis type: {analysis}. Valid: {', '.join(ANALYSIS_TYPES)}", is_error=True
        )
