"""
models.py — Pydantic models for products, snapshots and tool-calling I/O.
"""

import time
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Platform(str, Enum):

    SHOPIFY = "shopify"
    ETSY = "etsy"


class ProductStatus(str, Enum):

    ACTIVE = "active"
    DRAFT = "draft"
    ARCHIVED = "archived"
    INACTIVE = "inactive"
    SOLD_OUT = "sold_out"
    EXPIRED = "expired"


class SnapshotFormat(str, Enum):

    SPREADSHEET = "xlsx"
    MARKDOWN = "md"
    CSV = "csv"
    JSON = "json"

    @property
    def extension(self) -> str:
        return "." + self.value


class ToolName(str, Enum):
    """Closed set of tools the orchestrator may dispatch."""

    DATA_OPERATIONS = "data_operations"
    ANALYTICS = "analytics"
    SEARCH = "search"


class RunStatus(str, Enum):

    PENDING = "pending"
    REQUIRES_TOOL_OUTPUTS = "requires_tool_outputs"
    COMPLETED = "completed"
    FAILED = "failed"


# ── Inventory ─────────────────────────────────────────────────────────────────

class Product(BaseModel):
    """One sellable unit (a variant) inside a snapshot. Never mutated once written."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    sku: Optional[str] = None
    quantity: int = Field(ge=0)
    price: float = Field(ge=0)
    platform: Platform
    variant: Optional[str] = None
    status: ProductStatus

    @field_validator("sku", "variant", mode="before")
    @classmethod
    def _blank_is_absent(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None

    @field_validator("platform", "status", mode="before")
    @classmethod
    def _lowercase(cls, v):
        return v.lower() if isinstance(v, str) else v

    @property
    def value(self) -> float:
        return self.quantity * self.price

    def label(self) -> str:
        return f"{self.title} ({self.variant})" if self.variant else self.title


class InventorySnapshotFile(BaseModel):

    model_config = ConfigDict(frozen=True)

    path: str
    format: SnapshotFormat
    mtime: float

    def age_seconds(self, now: Optional[float] = None) -> float:
        now = time.time() if now is None else now
        return max(0.0, now - self.mtime)


# ── Tool calling ──────────────────────────────────────────────────────────────

class ToolCallRequest(BaseModel):

    name: ToolName
    arguments: Dict[str, Any] = Field(default_factory=dict)
    call_id: Optional[str] = None


class ToolCallResult(BaseModel):

    call_id: Optional[str] = None
    name: str
    output: str
    is_error: bool = False


class ConversationRun(BaseModel):
    """Transient state of one orchestrator turn."""

    status: RunStatus = RunStatus.PENDING
    pending_calls: List[ToolCallRequest] = Field(default_factory=list)
    results: List[ToolCallResult] = Field(default_factory=list)
    rounds: int = 0
