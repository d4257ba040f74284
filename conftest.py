"""
conftest.py — shared fixtures for the inventory agent test suite

Run with:
    python -m pytest -v
"""

import os
import sys

import pytest

# ── Path setup ────────────────────────────────────────────────────────────────
_HERE = os.path.dirname(os.path.abspath(__file__))
if _HERE not in sys.path:
    sys.path.insert(0, _HERE)

from models import Product  # noqa: E402


def make_products():
    return [
        Product(id="gid://shopify/ProductVariant/1", title="Red Mug", sku="RM-1",
                quantity=0, price=9.99, platform="shopify", status="active"),
        Product(id="gid://shopify/ProductVariant/2", title="Blue Mug", sku="BM-1",
                quantity=12, price=14.5, platform="shopify", variant="Large", status="active"),
    ]


class FakeFetcher:
    """Commerce client stand-in; counts fetches, optionally fails."""

    def __init__(self, products=None, error=None):
        self.products = make_products() if products is None else products
        self.error = error
        self.calls = 0

    def fetch_inventory(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.products)


@pytest.fixture
def products():
    return make_products()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def engine_env(tmp_path):
    """Environment for a real engine.py subprocess: isolated storage, no platforms."""
    env = dict(os.environ)
    env.update({
        "INVENTORY_DIR": str(tmp_path / "inventory"),
        "INVENTORY_FORMATS": "xlsx",
        "SHOPIFY_STORE": "",
        "SHOPIFY_ACCESS_TOKEN": "",
        "ETSY_API_KEY": "",
        "ETSY_ACCESS_TOKEN": "",
        "ETSY_SHOP_ID": "",
    })
    return env


@pytest.fixture
def engine_command():
    return [sys.executable, "-u", os.path.join(_HERE, "engine.py")]
