"""
Saga Service - カート分割

複数出品者のカートを出品者ごとの注文意図 (OrderIntent) に分ける。
すべての明細を先に検証し、1 件でも不正があれば副作用の前に ValidationError を投げる。
"""

import math
from dataclasses import dataclass, field

from ..errors import ValidationError

DEFAULT_BOOK_WEIGHT_KG = 0.5


@dataclass
class OrderIntent:
    seller_id: str
    buyer_id: str
    shipping_address: dict | None
    items: list[dict] = field(default_factory=list)

    @property
    def subtotal(self) -> float:
        return round(sum(item["price"] for item in self.items), 2)

    @property
    def book_ids(self) -> list[str]:
        return [item["book_id"] for item in self.items]


def _snapshot(item: dict) -> dict:
    """チェックアウト時点の明細を非正規化して保存する (後の出品編集の影響を受けない)"""
    return {
        "book_id": item["book_id"],
        "seller_id": item["seller_id"],
        "price": round(float(item["price"]), 2),
        "title": item.get("title") or "",
        "author": item.get("author") or "",
        "condition": item.get("condition") or "",
        "weight_kg": item.get("weight_kg") or DEFAULT_BOOK_WEIGHT_KG,
    }


def validate_cart(buyer_id: str | None, items: list[dict]) -> list[dict]:
    """不正な項目をすべて列挙して返す (空なら問題なし)"""
    errors: list[dict] = []
    if not buyer_id:
        errors.append({"field": "buyer_id", "message": "buyer_id is required"})
    if not items:
        errors.append({"field": "items", "message": "cart is empty"})
        return errors

    seen: set[str] = set()
    for index, item in enumerate(items):
        book_id = item.get("book_id")
        seller_id = item.get("seller_id")
        price = item.get("price")

        if not book_id:
            errors.append({"index": index, "field": "book_id", "message": "book_id is required"})
        elif book_id in seen:
            errors.append({"index": index, "field": "book_id", "message": "duplicate book in cart"})
        else:
            seen.add(book_id)

        if not seller_id:
            errors.append({"index": index, "field": "seller_id", "message": "seller_id is required"})
        elif buyer_id and seller_id == buyer_id:
            errors.append(
                {"index": index, "field": "seller_id", "message": "cannot purchase own listing"}
            )

        if (
            isinstance(price, bool)
            or not isinstance(price, (int, float))
            or not math.isfinite(price)
            or price <= 0
        ):
            errors.append({"index": index, "field": "price", "message": "price must be positive"})
    return errors


def split_cart(
    buyer_id: str,
    items: list[dict],
    shipping_address: dict | None = None,
) -> list[OrderIntent]:
    """
    カートを出品者ごとに分割する。

    出品者の並びは最初に現れた順、各出品者の明細はカート内の順を保つ。
    """
    errors = validate_cart(buyer_id, items)
    if errors:
        raise ValidationError("Checkout request is invalid", errors)

    intents: dict[str, OrderIntent] = {}
    for item in items:
        seller_id = item["seller_id"]
        if seller_id not in intents:
            intents[seller_id] = OrderIntent(seller_id, buyer_id, shipping_address)
        intents[seller_id].items.append(_snapshot(item))
    return list(intents.values())
