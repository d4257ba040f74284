"""
commerce.py — Commerce-platform clients

Provides:
- ShopifyClient.fetch_inventory(): Admin GraphQL, cursor pagination, one Product per variant
- EtsyClient.fetch_inventory(): Open API v3 active listings, offset pagination
- CommerceClient.fetch_inventory(): every configured platform, failures aggregated
  into a single CommerceClientError
"""

from typing import Any, Dict, List, Optional

import requests

import config
from errors import CommerceClientError
from models import Platform, Product
from telemetry import log


REQUEST_TIMEOUT = 30  # seconds per page

_PRODUCTS_QUERY = """
query getProducts($first: Int!, $after: String) {
  products(first: $first, after: $after) {
    edges {
      node {
        id
        title
        status
        variants(first: 100) {
          edges {
            node {
              id
              title
              sku
              price
              inventoryQuantity
            }
          }
        }
      }
    }
    pageInfo {
      hasNextPage
      endCursor
    }
  }
}
"""


class ShopifyClient:

    PAGE_SIZE = 50

    def __init__(self, store: str, access_token: str, api_version: str = "2023-10",
                 session: Optional[requests.Session] = None):
        domain = store.replace("https://", "").replace("http://", "").strip("/")
        self._url = f"https://{domain}/admin/api/{api_version}/graphql.json"
        self._headers = {
            "X-Shopify-Access-Token": access_token,
            "Content-Type": "application/json",
        }
        self._session = session or requests.Session()

    def _request(self, variables: Dict[str, Any]) -> Dict[str, Any]:
        r = self._session.post(
            self._url,
            json={"query": _PRODUCTS_QUERY, "variables": variables},
            headers=self._headers,
            timeout=REQUEST_TIMEOUT,
        )
        if r.status_code != 200:
            raise RuntimeError(f"Shopify HTTP {r.status_code}: {r.text[:200]}")
        body = r.json()
        if body.get("errors"):
            raise RuntimeError(f"Shopify GraphQL error: {body['errors']}")
        return body["data"]["products"]

    def fetch_inventory(self) -> List[Product]:
        products: List[Product] = []
        cursor: Optional[str] = None

        while True:
            page = self._request({"first": self.PAGE_SIZE, "after": cursor})
            for edge in page.get("edges", []):
                node = edge["node"]
                for v_edge in node.get("variants", {}).get("edges", []):
                    variant = v_edge["node"]
                    title = variant.get("title") or ""
                    products.append(Product(
                        id=variant["id"],
                        title=node["title"],
                        sku=variant.get("sku"),
                        # Oversold variants report negative stock
                        quantity=max(0, int(variant.get("inventoryQuantity") or 0)),
                        price=float(variant.get("price") or 0),
                        platform=Platform.SHOPIFY,
                        variant=title if title != "Default Title" else None,
                        status=(node.get("status") or "active").lower(),
                    ))

            info = page.get("pageInfo", {})
            if not info.get("hasNextPage"):
                break
            cursor = info.get("endCursor")

        return products


class EtsyClient:

    BASE_URL = "https://openapi.etsy.com/v3/application"
    PAGE_SIZE = 100

    def __init__(self, api_key: str, access_token: str, shop_id: str,
                 session: Optional[requests.Session] = None):
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "x-api-key": api_key,
            "Content-Type": "application/json",
        }
        self._shop_id = shop_id
        self._session = session or requests.Session()

    def fetch_inventory(self) -> List[Product]:
        products: List[Product] = []
        offset = 0

        while True:
            r = self._session.get(
                f"{self.BASE_URL}/shops/{self._shop_id}/listings/active",
                params={"limit": self.PAGE_SIZE, "offset": offset},
                headers=self._headers,
                timeout=REQUEST_TIMEOUT,
            )
            if r.status_code != 200:
                raise RuntimeError(f"Etsy HTTP {r.status_code}: {r.text[:200]}")
            listings = r.json().get("results", [])
            if not listings:
                break

            for listing in listings:
                skus = listing.get("sku") or []
                price = listing.get("price")
                # v3 returns {"amount", "divisor"}; older payloads a plain string
                if isinstance(price, dict):
                    price = price.get("amount", 0) / (price.get("divisor") or 1)
                products.append(Product(
                    id=f"etsy_{listing['listing_id']}",
                    title=listing.get("title", ""),
                    sku=skus[0] if skus else None,
                    quantity=max(0, int(listing.get("quantity") or 0)),
                    price=float(price or 0),
                    platform=Platform.ETSY,
                    status=listing.get("state", "active"),
                ))

            offset += self.PAGE_SIZE

        return products


class CommerceClient:
    """Fetches every configured platform; a failure on any platform fails the whole fetch."""

    def __init__(self, clients: Optional[Dict[str, Any]] = None):
        self._clients = clients if clients is not None else self._from_config()

    @staticmethod
    def _from_config() -> Dict[str, Any]:
        clients: Dict[str, Any] = {}
        if config.SHOPIFY_STORE and config.SHOPIFY_ACCESS_TOKEN:
            clients["shopify"] = ShopifyClient(
                config.SHOPIFY_STORE, config.SHOPIFY_ACCESS_TOKEN, config.SHOPIFY_API_VERSION
            )
        if config.ETSY_API_KEY and config.ETSY_ACCESS_TOKEN and config.ETSY_SHOP_ID:
            clients["etsy"] = EtsyClient(
                config.ETSY_API_KEY, config.ETSY_ACCESS_TOKEN, config.ETSY_SHOP_ID
            )
        return clients

    def fetch_inventory(self) -> List[Product]:
        if not self._clients:
            raise CommerceClientError(
                "No commerce platform configured. Set SHOPIFY_STORE and SHOPIFY_ACCESS_TOKEN."
            )

        products: List[Product] = []
        failures: List[str] = []
        for name, client in self._clients.items():
            try:
                fetched = client.fetch_inventory()
            except Exception as e:
                failures.append(f"{name}: {e}")
                continue
            log("Commerce", f"Fetched {len(fetched)} products from {name}")
            products.extend(fetched)

        if failures:
            raise CommerceClientError("Inventory fetch failed: " + "; ".join(failures))
        return products
