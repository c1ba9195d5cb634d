"""商品カタログ

マーチャント単位の商品CRUD・在庫操作・一括ステータス更新・統計。
更新は ProductPatch（更新可能フィールドの明示リスト）を経由する。
"""

import logging
import math
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional

from lazsync.db.database import Database
from lazsync.errors import InsufficientStockError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

PRODUCT_STATUSES = ("active", "inactive", "draft")
STOCK_FILTERS = ("in_stock", "low_stock", "out_of_stock")
STOCK_ACTIONS = ("set", "increase", "decrease")
SORTABLE_COLUMNS = ("created_at", "updated_at", "name", "price", "stock", "sku")

LOW_STOCK_THRESHOLD = 10
MAX_PER_PAGE = 100


def _is_number(value: Any) -> bool:
    return (isinstance(value, (int, float)) and not isinstance(value, bool)
            and math.isfinite(value))


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass
class ProductPatch:
    """商品の部分更新。Noneのフィールドは変更しない"""

    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    sku: Optional[str] = None
    stock: Optional[int] = None
    image_url: Optional[str] = None
    status: Optional[str] = None

    @classmethod
    def field_names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def from_dict(cls, data: Dict[str, Any], partial: bool = True) -> "ProductPatch":
        """入力dictを検証してパッチを作る（未知のキーは無視）"""
        errors = validate_product_fields(data, partial=partial)
        if errors:
            raise ValidationError(errors)
        return cls(**{k: data[k] for k in cls.field_names() if k in data})

    def as_dict(self) -> Dict[str, Any]:
        return {
            k: getattr(self, k) for k in self.field_names()
            if getattr(self, k) is not None
        }


def validate_product_fields(data: Dict[str, Any],
                            partial: bool = False) -> Dict[str, List[str]]:
    """商品フィールドの検証。エラーマップを返す（空なら正常）"""
    errors = {}  # type: Dict[str, List[str]]

    def required(key: str) -> bool:
        if key in data:
            return True
        if not partial:
            errors.setdefault(key, []).append("{}は必須です".format(key))
        return False

    if required("name"):
        name = data["name"]
        if not isinstance(name, str) or not name.strip():
            errors.setdefault("name", []).append("nameは必須です")
        elif len(name) > 255:
            errors.setdefault("name", []).append("nameは255文字以内です")

    description = data.get("description")
    if description is not None and not isinstance(description, str):
        errors.setdefault("description", []).append("descriptionは文字列です")

    if required("price"):
        price = data["price"]
        if not _is_number(price):
            errors.setdefault("price", []).append("priceは数値です")
        elif price < 0:
            errors.setdefault("price", []).append("priceは0以上です")

    if required("sku"):
        sku = data["sku"]
        if not isinstance(sku, str) or not sku.strip():
            errors.setdefault("sku", []).append("skuは必須です")
        elif len(sku) > 100:
            errors.setdefault("sku", []).append("skuは100文字以内です")

    if required("stock"):
        stock = data["stock"]
        if not _is_int(stock):
            errors.setdefault("stock", []).append("stockは整数です")
        elif stock < 0:
            errors.setdefault("stock", []).append("stockは0以上です")

    image_url = data.get("image_url")
    if image_url is not None and (
        not isinstance(image_url, str)
        or not image_url.startswith(("http://", "https://"))
    ):
        errors.setdefault("image_url", []).append("image_urlはURL形式です")

    if required("status"):
        if data["status"] not in PRODUCT_STATUSES:
            errors.setdefault("status", []).append(
                "statusは{}のいずれかです".format("/".join(PRODUCT_STATUSES))
            )

    return errors


def stock_status(stock: int) -> str:
    if stock <= 0:
        return "out_of_stock"
    if stock <= LOW_STOCK_THRESHOLD:
        return "low_stock"
    return "in_stock"


def is_synced(product: Dict[str, Any]) -> bool:
    """Lazada登録済み（item_idあり）か"""
    sync_data = product.get("sync_data") or {}
    return bool(product.get("last_synced_at")) and "item_id" in sync_data


def present_product(product: Dict[str, Any]) -> Dict[str, Any]:
    """レスポンス用に派生フィールドを付与"""
    data = dict(product)
    data["stock_status"] = stock_status(product.get("stock") or 0)
    data["sync_status"] = "synced" if is_synced(product) else "not_synced"
    return data


class ProductCatalog:
    """マーチャント単位の商品操作"""

    def __init__(self, database: Database):
        self.db = database

    def get(self, merchant_id: int, product_id: int) -> Dict[str, Any]:
        product = self.db.get_product(product_id, merchant_id=merchant_id)
        if not product:
            raise NotFoundError("商品が見つかりません")
        return product

    def create(self, merchant_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
        """商品作成（SKU重複はskuフィールドのValidationError）"""
        patch = ProductPatch.from_dict(data, partial=False)
        product_id = self.db.create_product(merchant_id, patch.as_dict())
        logger.info(f"商品作成: id={product_id} sku={patch.sku}")
        return self.get(merchant_id, product_id)

    def update(self, merchant_id: int, product_id: int,
               data: Dict[str, Any]) -> Dict[str, Any]:
        self.get(merchant_id, product_id)
        patch = ProductPatch.from_dict(data, partial=True)
        updates = patch.as_dict()
        # descriptionとimage_urlはnullで消去できる
        for key in ("description", "image_url"):
            if key in data and data[key] is None:
                updates[key] = None
        if updates:
            self.db.update_product(product_id, updates)
        return self.get(merchant_id, product_id)

    def delete(self, merchant_id: int, product_id: int) -> None:
        self.get(merchant_id, product_id)
        self.db.delete_product(product_id)
        logger.info(f"商品削除: id={product_id}")

    def list(self, merchant_id: int, params: Dict[str, Any]) -> Dict[str, Any]:
        """商品一覧（検索・フィルタ・ソート・ページング）

        Returns:
            {"items": list, "meta": {"current_page", "last_page", "per_page",
                                     "total", "from", "to"}}
        """
        errors = {}  # type: Dict[str, List[str]]
        status = params.get("status") or None
        if status and status not in PRODUCT_STATUSES:
            errors["status"] = ["statusが不正です"]
        stock_filter = params.get("stock_filter") or None
        if stock_filter and stock_filter not in STOCK_FILTERS:
            errors["stock_filter"] = ["stock_filterが不正です"]
        sort_by = params.get("sort_by") or "created_at"
        if sort_by not in SORTABLE_COLUMNS:
            errors["sort_by"] = ["sort_byが不正です"]
        sort_order = (params.get("sort_order") or "desc").lower()
        if sort_order not in ("asc", "desc"):
            errors["sort_order"] = ["sort_orderはasc/descです"]

        try:
            per_page = int(params.get("per_page", 15))
            page = int(params.get("page", 1))
        except (TypeError, ValueError):
            errors["per_page"] = ["per_page/pageは整数です"]
            per_page, page = 15, 1
        if errors:
            raise ValidationError(errors)

        per_page = max(1, min(per_page, MAX_PER_PAGE))
        page = max(1, page)
        search = params.get("search") or None

        total = self.db.count_products(merchant_id, search, status, stock_filter)
        items = self.db.get_products(
            merchant_id, search=search, status=status,
            stock_filter=stock_filter, sort_by=sort_by, sort_order=sort_order,
            limit=per_page, offset=(page - 1) * per_page,
        )
        first = (page - 1) * per_page + 1 if items else None
        return {
            "items": [present_product(p) for p in items],
            "meta": {
                "current_page": page,
                "last_page": max(1, math.ceil(total / per_page)),
                "per_page": per_page,
                "total": total,
                "from": first,
                "to": first + len(items) - 1 if items else None,
            },
        }

    def change_stock(self, merchant_id: int, product_id: int,
                     quantity: Any, action: str = "set") -> Dict[str, Any]:
        """在庫操作（set / increase / decrease）

        decreaseで在庫不足の場合は更新せずInsufficientStockError。
        """
        errors = {}  # type: Dict[str, List[str]]
        if not _is_int(quantity) or quantity < 0:
            errors["stock"] = ["stockは0以上の整数です"]
        if action not in STOCK_ACTIONS:
            errors["action"] = ["actionはset/increase/decreaseのいずれかです"]
        if errors:
            raise ValidationError(errors)

        product = self.get(merchant_id, product_id)
        previous = product["stock"]

        if action == "increase":
            self.db.increase_product_stock(product_id, quantity)
        elif action == "decrease":
            if not self.db.decrease_product_stock(product_id, quantity):
                raise InsufficientStockError("在庫が不足しています")
        else:
            self.db.set_product_stock(product_id, max(0, quantity))

        current = self.get(merchant_id, product_id)["stock"]
        return {
            "product_id": product_id,
            "previous_stock": previous,
            "current_stock": current,
            "action": action,
        }

    def bulk_update_status(self, merchant_id: int, product_ids: Any,
                           status: Any) -> int:
        """一括ステータス更新（他マーチャントの商品は対象外）。更新件数を返す"""
        errors = {}  # type: Dict[str, List[str]]
        if (not isinstance(product_ids, list) or not product_ids
                or not all(_is_int(pid) for pid in product_ids)):
            errors["product_ids"] = ["product_idsは整数のリストである必要があります"]
        if status not in PRODUCT_STATUSES:
            errors["status"] = ["statusが不正です"]
        if errors:
            raise ValidationError(errors)

        return self.db.bulk_update_product_status(merchant_id, product_ids, status)

    def statistics(self, merchant_id: int) -> Dict[str, Any]:
        return self.db.get_product_statistics(merchant_id)
