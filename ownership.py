"""
Seller ownership of products and order line items.

A line item belongs to a seller when any of these holds:

1. the item's ``product_seller`` is the seller,
2. the referenced product's ``seller`` is the seller,
3. the seller's storefront appears in the product's ``stores``.

Relations may be bare ids or populated documents. Everything that reports
seller revenue or seller order counts goes through ``belongs_to_seller`` and
``aggregate_seller_order`` so the dashboard pages cannot disagree.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo.database import Database

logger = logging.getLogger(__name__)


def ref_id(ref: Any) -> Optional[str]:
    """Return the id of a relation whether it is a bare id or populated."""
    if ref is None:
        return None
    if isinstance(ref, str):
        return ref or None
    if isinstance(ref, ObjectId):
        return str(ref)
    if isinstance(ref, dict):
        inner = ref.get("id", ref.get("_id"))
        # a populated document never nests another document as its id
        if isinstance(inner, (str, ObjectId)):
            return ref_id(inner)
    return None


def is_populated(ref: Any) -> bool:
    return isinstance(ref, dict)


def _store_matches(store: Any, seller_id: str, seller_storefront_id: Optional[str]) -> bool:
    if seller_storefront_id is not None and ref_id(store) == seller_storefront_id:
        return True
    # A populated storefront also tells us who owns it
    return is_populated(store) and ref_id(store.get("seller")) == seller_id


def product_belongs_to_seller(product: Any, seller_id: str, seller_storefront_id: Optional[str]) -> bool:
    if not is_populated(product) or not seller_id:
        return False
    if ref_id(product.get("seller")) == seller_id:
        return True
    stores = product.get("stores")
    if not isinstance(stores, list):
        return False
    return any(_store_matches(store, seller_id, seller_storefront_id) for store in stores)


def belongs_to_seller(item: Any, seller_id: Optional[str], seller_storefront_id: Optional[str] = None) -> bool:
    if not isinstance(item, dict) or not seller_id:
        return False
    if ref_id(item.get("product_seller")) == seller_id:
        return True
    # An unpopulated product leaves only the productSeller path
    return product_belongs_to_seller(item.get("product"), seller_id, seller_storefront_id)


@dataclass
class SellerOrderSummary:
    item_count: int = 0
    quantity: int = 0
    total: float = 0
    items: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"item_count": self.item_count, "quantity": self.quantity,
                "total": self.total, "items": self.items}


def aggregate_seller_order(order: Dict[str, Any], seller_id: Optional[str],
                           seller_storefront_id: Optional[str] = None) -> SellerOrderSummary:
    items = [item for item in (order.get("items") or [])
             if belongs_to_seller(item, seller_id, seller_storefront_id)]
    return SellerOrderSummary(
        item_count=len(items),
        quantity=sum(item.get("quantity") or 0 for item in items),
        total=sum(item.get("total") or 0 for item in items),
        items=items,
    )


def aggregate_seller_orders(orders: Iterable[Dict[str, Any]], seller_id: Optional[str],
                            seller_storefront_id: Optional[str] = None) -> Dict[str, Any]:
    totals = {"order_count": 0, "item_count": 0, "quantity": 0, "revenue": 0}
    for order in orders:
        summary = aggregate_seller_order(order, seller_id, seller_storefront_id)
        if not summary.item_count:
            continue
        totals["order_count"] += 1
        totals["item_count"] += summary.item_count
        totals["quantity"] += summary.quantity
        totals["revenue"] += summary.total
    return totals


# Query builders. These select candidates from MongoDB; the predicate above
# remains the authority on which items count.

def seller_products_query(seller_id: str, storefront_id: Optional[str]) -> Dict[str, Any]:
    if storefront_id:
        return {"$or": [{"seller": seller_id}, {"stores": storefront_id}]}
    return {"seller": seller_id}


def seller_product_ids(db: Database, seller_id: str, storefront_id: Optional[str]) -> List[str]:
    cursor = db["product"].find(seller_products_query(seller_id, storefront_id), {"_id": 1})
    return [str(p["_id"]) for p in cursor]


def seller_orders_query(seller_id: str, product_ids: Iterable[str]) -> Dict[str, Any]:
    product_ids = list(product_ids)
    clauses: List[Dict[str, Any]] = [{"items.product_seller": seller_id}]
    if product_ids:
        clauses.append({"items.product": {"$in": product_ids}})
    return {"$or": clauses}


def find_seller_storefront(db: Database, seller_id: str) -> Optional[Dict[str, Any]]:
    return db["storefront"].find_one({"seller": seller_id})


def populate_order_items(db: Database, orders: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Replace bare product ids in order items with product documents, in place."""
    wanted = set()
    for order in orders:
        for item in order.get("items") or []:
            pid = item.get("product")
            if isinstance(pid, str) and ObjectId.is_valid(pid):
                wanted.add(ObjectId(pid))
    if not wanted:
        return orders
    products = {}
    for p in db["product"].find({"_id": {"$in": list(wanted)}}):
        p["id"] = str(p.pop("_id"))
        products[p["id"]] = p
    for order in orders:
        for item in order.get("items") or []:
            pid = item.get("product")
            if isinstance(pid, str) and pid in products:
                item["product"] = products[pid]
    return orders


def seller_can_access_order(order: Dict[str, Any], seller_id: str, storefront_id: Optional[str]) -> bool:
    return any(belongs_to_seller(item, seller_id, storefront_id) for item in order.get("items") or [])
