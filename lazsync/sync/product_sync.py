"""商品同期ジョブ

1商品 × 1アクションをLazadaへ反映する。
接続取得 → 接続検証/トークン更新 → アクション実行 → sync_data更新 → 同期ログ追記。
失敗時もsync_dataとログを記録してから例外を再送出する（リトライはジョブキュー側）。
"""

import logging
import time
from dataclasses import dataclass, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from lazsync.catalog.products import validate_product_fields
from lazsync.db.database import Database
from lazsync.errors import (
    ConnectionInvalidError,
    NoConnectionError,
    NotFoundError,
    NotYetSyncedError,
    ValidationError,
)
from lazsync.platforms.lazada import PLATFORM_NAME, LazadaClient

logger = logging.getLogger(__name__)


class SyncAction(str, Enum):
    """同期アクション"""

    CREATE = "create"
    UPDATE = "update"
    STOCK_UPDATE = "stock_update"
    DELETE = "delete"

    @classmethod
    def parse(cls, value: Any) -> "SyncAction":
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(
                {"action": ["actionは{}のいずれかです".format(
                    "/".join(a.value for a in cls))]},
                status_code=400,
            )


# Lazada属性・梱包情報（文字列のまま送る）
_STRING_OVERRIDES = (
    "category_id", "spu_id", "brand", "model", "warranty_type", "warranty",
    "package_length", "package_height", "package_width", "package_weight",
)


@dataclass
class SyncOverrides:
    """同期時に商品データへ上書きする値（許可キーのみ）"""

    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    stock: Optional[int] = None
    image_url: Optional[str] = None
    status: Optional[str] = None
    category_id: Optional[str] = None
    spu_id: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    warranty_type: Optional[str] = None
    warranty: Optional[str] = None
    package_length: Optional[str] = None
    package_height: Optional[str] = None
    package_width: Optional[str] = None
    package_weight: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SyncOverrides":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValidationError(
                {"sync_data": ["sync_dataはオブジェクトです"]}, status_code=400
            )
        allowed = {f.name for f in fields(cls)}
        unknown = sorted(k for k in data if k not in allowed)
        if unknown:
            raise ValidationError(
                {"sync_data": ["未対応のキー: {}".format(", ".join(unknown))]},
                status_code=400,
            )

        # 商品フィールドはカタログと同じ規則で検証
        errors = {
            "sync_data.{}".format(k): v
            for k, v in validate_product_fields(data, partial=True).items()
        }
        for key in _STRING_OVERRIDES:
            value = data.get(key)
            if value is not None and not isinstance(value, str):
                errors["sync_data.{}".format(key)] = ["{}は文字列です".format(key)]
        if errors:
            raise ValidationError(errors, status_code=400)
        return cls(**data)

    def as_dict(self) -> Dict[str, Any]:
        return {
            f.name: getattr(self, f.name) for f in fields(self)
            if getattr(self, f.name) is not None
        }


# 同期に使う商品フィールド
_PRODUCT_FIELDS = ("name", "description", "price", "sku", "stock", "image_url", "status")

# アクション → ハンドラメソッド名
_HANDLERS = {
    SyncAction.CREATE: "_create",
    SyncAction.UPDATE: "_update",
    SyncAction.STOCK_UPDATE: "_stock_update",
    SyncAction.DELETE: "_delete",
}

if set(_HANDLERS) != set(SyncAction):
    raise RuntimeError("SyncActionのハンドラ定義が不足しています")


class ProductSyncRunner:
    """商品同期ジョブの実行"""

    def __init__(self, database: Database, client: LazadaClient):
        self.db = database
        self.client = client

    def run(self, product_id: int, action: Any,
            overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """同期ジョブを1回実行

        Returns:
            Lazada APIレスポンス
        Raises:
            NotFoundError: 商品なし（ログは残さない）
            ValidationError: アクション・上書き値の不正
            SyncPreconditionError: 接続なし・接続無効・未登録
            UpstreamError: Lazada APIエラー
        """
        product = self.db.get_product(product_id)
        if not product:
            raise NotFoundError("商品が見つかりません: id={}".format(product_id))

        label = action.value if isinstance(action, SyncAction) else str(action)
        logger.info(
            f"商品同期開始: product_id={product_id} action={label} "
            f"merchant_id={product['merchant_id']}"
        )
        started = time.monotonic()
        # 検証前の失敗ログには受け取った値をそのまま残す
        logged_overrides = overrides if isinstance(overrides, dict) else {}

        try:
            action = SyncAction.parse(action)
            sync_overrides = SyncOverrides.from_dict(overrides)
            logged_overrides = sync_overrides.as_dict()

            connection = self.db.get_active_connection(
                product["merchant_id"], PLATFORM_NAME
            )
            if not connection:
                raise NoConnectionError("アクティブなLazada接続がありません")

            if not self.client.validate_and_refresh(connection):
                raise ConnectionInvalidError("Lazada接続の検証に失敗しました")

            product_data = {k: product.get(k) for k in _PRODUCT_FIELDS}
            product_data.update(sync_overrides.as_dict())

            handler = getattr(self, _HANDLERS[action])
            result = handler(product, product_data, connection["access_token"])

        except Exception as e:
            self._update_sync_state(product, None, None, str(e))
            self._append_log(product, label, logged_overrides, "failed", str(e),
                             {}, time.monotonic() - started)
            logger.error(
                f"商品同期失敗: product_id={product_id} action={label}: {e}"
            )
            raise

        self._update_sync_state(product, action, result, None)
        self._append_log(product, action.value, logged_overrides, "success",
                         "商品を同期しました", result, time.monotonic() - started)
        logger.info(f"商品同期完了: product_id={product_id} action={action.value}")
        return result

    def failed(self, product_id: int, action: Any, error: BaseException) -> None:
        """リトライ上限到達時のフック（sync_dataをエラー状態にする）"""
        logger.error(
            f"商品同期が最終的に失敗: product_id={product_id} action={action}: {error}"
        )
        product = self.db.get_product(product_id)
        if not product:
            return
        sync_data = dict(product.get("sync_data") or {})
        sync_data["last_sync_status"] = "error"
        sync_data["last_error"] = str(error)
        self.db.update_product_sync_state(product_id, sync_data)

    # --- アクション ---

    def _create(self, product: Dict, product_data: Dict,
                access_token: str) -> Dict[str, Any]:
        payload = self.client.transform_for_lazada(product_data)
        return self.client.create_product(payload, access_token)

    def _update(self, product: Dict, product_data: Dict,
                access_token: str) -> Dict[str, Any]:
        payload = self.client.transform_for_lazada(product_data)
        self._attach_item_id(product, payload)
        return self.client.update_product(payload, access_token)

    def _delete(self, product: Dict, product_data: Dict,
                access_token: str) -> Dict[str, Any]:
        # Lazadaに削除APIはないため非公開化で代替
        product_data = dict(product_data, status="inactive")
        payload = self.client.transform_for_lazada(product_data)
        self._attach_item_id(product, payload)
        return self.client.update_product(payload, access_token)

    def _stock_update(self, product: Dict, product_data: Dict,
                      access_token: str) -> Dict[str, Any]:
        sync_data = product.get("sync_data") or {}
        if "seller_sku" not in sync_data:
            raise NotYetSyncedError("商品はまだLazadaに登録されていません")

        payload = {
            "Request": {
                "Product": {
                    "Skus": [{
                        "SellerSku": sync_data["seller_sku"],
                        "quantity": product_data["stock"],
                        "price": product_data["price"],
                    }]
                }
            }
        }
        return self.client.update_price_quantity(payload, access_token)

    @staticmethod
    def _attach_item_id(product: Dict, payload: Dict) -> None:
        item_id = (product.get("sync_data") or {}).get("item_id")
        if item_id is not None:
            payload["Request"]["Product"]["ItemId"] = item_id

    # --- 記録 ---

    def _update_sync_state(self, product: Dict, action: Optional[SyncAction],
                           result: Optional[Dict], error: Optional[str]) -> None:
        sync_data = dict(product.get("sync_data") or {})

        if error is None:
            data = (result or {}).get("data") or {}
            if isinstance(data, dict):
                if data.get("item_id") is not None:
                    sync_data["item_id"] = data["item_id"]
                if data.get("sku_id") is not None:
                    sync_data["sku_id"] = data["sku_id"]
            sync_data["seller_sku"] = product["sku"]
            sync_data["last_sync_action"] = action.value
            sync_data["last_sync_status"] = "success"
            sync_data.pop("last_error", None)
        else:
            sync_data["last_sync_status"] = "error"
            sync_data["last_error"] = error

        self.db.update_product_sync_state(
            product["id"], sync_data, datetime.now().isoformat()
        )
        product["sync_data"] = sync_data

    def _append_log(self, product: Dict, action: str,
                    overrides: Dict[str, Any], status: str, message: str,
                    response: Any, duration: float) -> None:
        self.db.create_sync_log({
            "merchant_id": product["merchant_id"],
            "action_type": "product_{}".format(action),
            "platform_name": PLATFORM_NAME,
            "status": status,
            "message": message,
            "request_data": {
                "product_id": product["id"],
                "action": action,
                "sync_data": overrides,
            },
            "response_data": response if response is not None else {},
            "affected_items": 1,
            "duration": round(duration, 3),
        })


def summarize_logs(logs: List[Dict[str, Any]]) -> Dict[str, Any]:
    """商品ごとの同期ログ要約（新しい順のログを受け取る）"""
    return {
        "total_syncs": len(logs),
        "successful_syncs": sum(1 for log in logs if log["status"] == "success"),
        "failed_syncs": sum(1 for log in logs if log["status"] == "failed"),
        "last_sync_status": logs[0]["status"] if logs else None,
        "last_sync_at": logs[0]["created_at"] if logs else None,
    }
