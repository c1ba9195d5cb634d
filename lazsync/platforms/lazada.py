"""Lazada Open Platform APIクライアント

- OAuth認証URL構築（stateにmerchant_idをbase64 JSONで埋め込む）
- 認証コード→トークン交換、リフレッシュ
- 署名付きAPI呼び出し（HMAC-SHA256、キー昇順で key+value を連結、大文字hex）
- 接続の検証と期限前リフレッシュ（1時間以内に期限切れなら更新）
- 商品データのLazada形式への変換

署名ルールを外れると全リクエストがLazada側で拒否される。
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from lazsync.config import LazadaConfig
from lazsync.db.database import Database
from lazsync.errors import UpstreamApiError, UpstreamAuthError, ValidationError

logger = logging.getLogger(__name__)

PLATFORM_NAME = "lazada"

# 期限切れ何秒前からリフレッシュ対象にするか
REFRESH_MARGIN = timedelta(hours=1)

PLACEHOLDER_IMAGE = "https://via.placeholder.com/300x300"

# 商品属性・パッケージのデフォルト値
ATTRIBUTE_DEFAULTS = {
    "brand": "No Brand",
    "model": "N/A",
    "warranty_type": "No Warranty",
    "warranty": "1 Month",
}
PACKAGE_DEFAULTS = {
    "package_length": "10",
    "package_height": "10",
    "package_width": "10",
    "package_weight": "0.5",
}


def encode_state(merchant_id: int) -> str:
    """OAuth stateを生成（base64 JSON）"""
    raw = json.dumps({"merchant_id": merchant_id}).encode()
    return base64.b64encode(raw).decode()


def decode_state(state: str) -> int:
    """OAuth stateからmerchant_idを復元"""
    try:
        data = json.loads(base64.b64decode(state.encode(), validate=True))
    except (binascii.Error, ValueError, TypeError, AttributeError):
        data = None

    if not isinstance(data, dict) or "merchant_id" not in data:
        raise ValidationError({"state": ["stateパラメータが不正です"]},
                              message="stateパラメータが不正です",
                              status_code=400)
    merchant_id = data["merchant_id"]
    if not isinstance(merchant_id, int) or isinstance(merchant_id, bool):
        raise ValidationError({"state": ["stateパラメータが不正です"]},
                              message="stateパラメータが不正です",
                              status_code=400)
    return merchant_id


def parse_datetime(value: Any) -> Optional[datetime]:
    """DBのISO文字列をdatetimeに変換"""
    if value is None or isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


def needs_refresh(connection: Dict[str, Any],
                  now: Optional[datetime] = None) -> bool:
    """トークンが期限切れ、または1時間以内に期限切れか"""
    expires_at = parse_datetime(connection.get("token_expires_at"))
    if expires_at is None:
        return False
    now = now or datetime.now()
    return expires_at - REFRESH_MARGIN <= now


def _vendor_error(data: Any) -> Optional[str]:
    """レスポンスボディのエラーコードを判定（code != "0" ならエラー）"""
    if not isinstance(data, dict):
        return "不正なレスポンス形式"
    code = data.get("code")
    if code is not None and str(code) != "0":
        return "Lazada API Error: {}".format(data.get("message", "Unknown error"))
    return None


class LazadaClient:
    """Lazada APIクライアント"""

    def __init__(self, config: LazadaConfig, database: Optional[Database] = None):
        self.config = config
        self.db = database
        # 接続IDごとのリフレッシュ用ロック
        self._refresh_locks = {}  # type: Dict[int, threading.Lock]
        self._locks_guard = threading.Lock()

    @property
    def platform_name(self) -> str:
        return PLATFORM_NAME

    # --- OAuth ---

    def build_authorization_url(self, merchant_id: int) -> str:
        """Lazada認証URL（ブラウザリダイレクト用）"""
        params = {
            "response_type": "code",
            "force_auth": "true",
            "redirect_uri": self.config.redirect_uri,
            "client_id": self.config.app_key,
            "state": encode_state(merchant_id),
        }
        return "{}/oauth/authorize?{}".format(
            self.config.auth_url.rstrip("/"), urlencode(params)
        )

    def exchange_code_for_token(self, code: str) -> Dict[str, Any]:
        """認証コードをトークンに交換

        Returns:
            {"access_token", "refresh_token", "expires_in",
             "account_platform", "country_user_info"}
        """
        params = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.config.redirect_uri,
            "client_id": self.config.app_key,
            "client_secret": self.config.app_secret,
            "timestamp": self._timestamp(),
        }
        data = self._token_call("/auth/token/create", params)

        return {
            "access_token": data["access_token"],
            "refresh_token": data.get("refresh_token"),
            "expires_in": int(data.get("expires_in", 0)),
            "account_platform": data.get("account_platform", PLATFORM_NAME),
            "country_user_info": data.get("country_user_info", []),
        }

    def refresh_token(self, refresh_token: str) -> Dict[str, Any]:
        """リフレッシュトークンで新しいアクセストークンを取得

        レスポンスにrefresh_tokenが無ければ既存を引き継ぐ。
        """
        params = {
            "grant_type": "refresh_token",
            "client_id": self.config.app_key,
            "client_secret": self.config.app_secret,
            "refresh_token": refresh_token,
            "timestamp": self._timestamp(),
        }
        try:
            data = self._token_call("/auth/token/refresh", params)
        except UpstreamAuthError as e:
            logger.error(
                f"Lazadaトークンリフレッシュ失敗: {e} "
                f"(refresh_token={(refresh_token or '')[:20]}...)"
            )
            raise

        return {
            "access_token": data["access_token"],
            "refresh_token": data.get("refresh_token") or refresh_token,
            "expires_in": int(data.get("expires_in", 0)),
        }

    def complete_authorization(self, code: str, state: str) -> Dict[str, Any]:
        """OAuthコールバック処理: トークン交換 → セラー情報取得 → 接続をupsert

        Returns:
            保存後の接続（DB行）
        """
        if self.db is None:
            raise RuntimeError("complete_authorization にはDatabaseが必要です")

        merchant_id = decode_state(state)
        if not self.db.get_merchant(merchant_id):
            raise ValidationError({"state": ["マーチャントが存在しません"]},
                                  message="stateパラメータが不正です",
                                  status_code=400)

        token_data = self.exchange_code_for_token(code)
        seller_info = self.get_seller_info(token_data["access_token"])

        now = datetime.now()
        connection_id = self.db.upsert_connection(merchant_id, PLATFORM_NAME, {
            "access_token": token_data["access_token"],
            "refresh_token": token_data["refresh_token"],
            "token_expires_at": (
                now + timedelta(seconds=token_data["expires_in"])
            ).isoformat(),
            "connection_data": {
                "account_platform": token_data["account_platform"],
                "country_user_info": token_data["country_user_info"],
                "seller_info": seller_info.get("data") or {},
            },
            "status": "active",
            "connected_at": now.isoformat(),
            "last_sync_at": now.isoformat(),
        })
        logger.info(
            f"Lazada接続完了: merchant_id={merchant_id} connection_id={connection_id}"
        )
        return self.db.get_connection(connection_id)

    def _token_call(self, endpoint: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """トークン系エンドポイント呼び出し（auth.lazada.com）"""
        signed = dict(params)
        signed["sign"] = self.sign(endpoint, params, "POST")
        url = "{}/rest{}".format(self.config.auth_url.rstrip("/"), endpoint)

        try:
            response = httpx.post(url, data=signed, timeout=self.config.timeout)
        except httpx.HTTPError as e:
            raise UpstreamAuthError("Lazadaトークン取得通信エラー: {}".format(e))

        if not response.is_success:
            raise UpstreamAuthError(
                "Lazadaトークン取得失敗: {} {}".format(
                    response.status_code, response.text
                )
            )

        try:
            data = response.json()
        except ValueError:
            raise UpstreamAuthError("Lazadaトークン取得: JSONでないレスポンス")

        error = _vendor_error(data)
        if error:
            raise UpstreamAuthError(error)
        if not data.get("access_token"):
            raise UpstreamAuthError("Lazadaトークン取得: access_tokenがありません")
        return data

    # --- 署名付きAPI呼び出し ---

    def sign(self, endpoint: str, params: Dict[str, Any], method: str = "GET") -> str:
        """APIリクエスト署名

        method + endpoint + キー昇順の key/value 連結をHMAC-SHA256し、大文字hexで返す。
        """
        string_to_sign = method.upper() + endpoint
        for key in sorted(params):
            string_to_sign += "{}{}".format(key, params[key])

        return hmac.new(
            self.config.app_secret.encode(),
            string_to_sign.encode(),
            hashlib.sha256,
        ).hexdigest().upper()

    @staticmethod
    def _timestamp() -> str:
        """ミリ秒タイムスタンプ（文字列）"""
        return str(int(time.time() * 1000))

    def request(self, endpoint: str, params: Optional[Dict[str, Any]] = None,
                method: str = "GET",
                access_token: Optional[str] = None) -> Dict[str, Any]:
        """署名付きでLazada APIを呼び出す"""
        method = method.upper()
        all_params = {
            "app_key": self.config.app_key,
            "timestamp": self._timestamp(),
            "sign_method": "sha256",
        }  # type: Dict[str, Any]
        if access_token:
            all_params["access_token"] = access_token
        all_params.update(params or {})
        all_params["sign"] = self.sign(endpoint, all_params, method)

        url = self.config.api_url.rstrip("/") + endpoint

        try:
            if method == "GET":
                response = httpx.get(url, params=all_params,
                                     timeout=self.config.timeout)
            else:
                response = httpx.post(url, data=all_params,
                                      timeout=self.config.timeout)
        except httpx.HTTPError as e:
            logger.error(f"Lazada API通信エラー: {method} {endpoint}: {e}")
            raise UpstreamApiError("Lazada API通信エラー: {}".format(e))

        if not response.is_success:
            logger.error(
                f"Lazada APIエラー: {method} {endpoint}: {response.status_code}"
            )
            raise UpstreamApiError(
                "API request failed: {} - {}".format(
                    response.status_code, response.text
                )
            )

        try:
            data = response.json()
        except ValueError:
            raise UpstreamApiError("Lazada API: JSONでないレスポンス")

        error = _vendor_error(data)
        if error:
            logger.error(f"Lazada APIエラー: {method} {endpoint}: {error}")
            raise UpstreamApiError(error)
        return data

    # --- 業務API ---

    def get_seller_info(self, access_token: str) -> Dict[str, Any]:
        """セラー情報（接続確認にも使う）"""
        return self.request("/seller/get", {}, "GET", access_token)

    def create_product(self, product_data: Dict[str, Any],
                       access_token: str) -> Dict[str, Any]:
        """商品登録"""
        payload = {"payload": json.dumps(product_data, ensure_ascii=False)}
        return self.request("/product/create", payload, "POST", access_token)

    def update_product(self, product_data: Dict[str, Any],
                       access_token: str) -> Dict[str, Any]:
        """商品更新"""
        payload = {"payload": json.dumps(product_data, ensure_ascii=False)}
        return self.request("/product/update", payload, "POST", access_token)

    def update_price_quantity(self, stock_data: Dict[str, Any],
                              access_token: str) -> Dict[str, Any]:
        """価格・在庫数更新"""
        payload = {"payload": json.dumps(stock_data, ensure_ascii=False)}
        return self.request(
            "/product/price_quantity/update", payload, "POST", access_token
        )

    def get_products(self, access_token: str,
                     filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Lazada上の商品一覧"""
        params = {"filter": "all", "limit": 50, "offset": 0}
        params.update(filters or {})
        return self.request("/products/get", params, "GET", access_token)

    def get_orders(self, access_token: str,
                   filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """注文一覧"""
        params = {
            "status": "pending",
            "limit": 50,
            "offset": 0,
            "sort_direction": "DESC",
            "sort_by": "updated_at",
        }
        params.update(filters or {})
        return self.request("/orders/get", params, "GET", access_token)

    def get_order_details(self, order_id: int, access_token: str) -> Dict[str, Any]:
        """注文詳細"""
        return self.request("/order/get", {"order_id": order_id}, "GET", access_token)

    # --- 接続検証 ---

    def _lock_for(self, connection_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._refresh_locks.get(connection_id)
            if lock is None:
                lock = threading.Lock()
                self._refresh_locks[connection_id] = lock
            return lock

    def validate_and_refresh(self, connection: Dict[str, Any]) -> bool:
        """接続を検証し、必要ならトークンをリフレッシュ

        期限が1時間以内ならリフレッシュしてDBに保存、その後セラー情報取得で疎通確認。
        失敗時は接続をstatus=errorにしてFalseを返す（例外は送出しない）。
        渡されたconnection dictは最新のトークンで上書きされる。
        """
        if self.db is None:
            raise RuntimeError("validate_and_refresh にはDatabaseが必要です")

        connection_id = connection["id"]
        try:
            with self._lock_for(connection_id):
                # 他ワーカーが先にリフレッシュ済みなら再取得した値で判定
                current = self.db.get_connection(connection_id) or connection
                if needs_refresh(current):
                    logger.info(
                        f"Lazadaトークンをリフレッシュ: merchant_id={current['merchant_id']}"
                    )
                    token_data = self.refresh_token(current["refresh_token"])
                    now = datetime.now()
                    self.db.update_connection(connection_id, {
                        "access_token": token_data["access_token"],
                        "refresh_token": token_data["refresh_token"],
                        "token_expires_at": (
                            now + timedelta(seconds=token_data["expires_in"])
                        ).isoformat(),
                        "last_sync_at": now.isoformat(),
                        "status": "active",
                    })
                    current = self.db.get_connection(connection_id)

            connection.update(current)
            self.get_seller_info(connection["access_token"])
            return True

        except Exception as e:
            logger.error(
                f"Lazada接続検証失敗: merchant_id={connection.get('merchant_id')}: {e}"
            )
            self._mark_error(connection, str(e))
            return False

    def _mark_error(self, connection: Dict[str, Any], message: str) -> None:
        """接続をエラー状態にし、last_errorを記録"""
        connection_data = dict(connection.get("connection_data") or {})
        connection_data["last_error"] = {
            "message": message,
            "timestamp": datetime.now().isoformat(),
        }
        try:
            self.db.update_connection(connection["id"], {
                "status": "error",
                "connection_data": connection_data,
            })
        except Exception as e:
            logger.error(f"接続ステータス更新失敗: id={connection['id']}: {e}")
        connection["status"] = "error"
        connection["connection_data"] = connection_data

    # --- 変換 ---

    def transform_for_lazada(self, product_data: Dict[str, Any]) -> Dict[str, Any]:
        """商品データをLazada APIのペイロード形式へ変換（通信なし）"""
        attributes = {
            "name": product_data.get("name"),
            "description": product_data.get("description"),
        }
        for key, default in ATTRIBUTE_DEFAULTS.items():
            attributes[key] = product_data.get(key) or default

        sku_entry = {
            "SellerSku": product_data.get("sku"),
            "quantity": product_data.get("stock"),
            "price": product_data.get("price"),
        }  # type: Dict[str, Any]
        for key, default in PACKAGE_DEFAULTS.items():
            sku_entry[key] = product_data.get(key) or default
        sku_entry["Images"] = [product_data.get("image_url") or PLACEHOLDER_IMAGE]
        if "status" in product_data:
            sku_entry["Status"] = (
                "active" if product_data["status"] == "active" else "inactive"
            )

        return {
            "Request": {
                "Product": {
                    "PrimaryCategory": product_data.get("category_id") or "1",
                    "SPUId": product_data.get("spu_id"),
                    "AssociatedSku": product_data.get("sku"),
                    "Attributes": attributes,
                    "Skus": [sku_entry],
                }
            }
        }
