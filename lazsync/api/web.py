"""JSON API（Flask）

/api/v1 以下でマーチャント認証・商品カタログ・Lazada接続・同期ジョブを提供する。
起動: python -m lazsync.cli.main web --port 8080

レスポンス形式:
- 認証系: {"success": bool, "message": str, "data": ...}
- その他: {"status": "success"|"error", "message": str, "data": ...}
- エラー時は "errors"（フィールド別）または "error"（文字列）を付与
"""

import atexit
import logging
import math
from datetime import datetime, timedelta
from functools import wraps
from typing import Any, Dict, Optional

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from lazsync.auth.merchant_auth import MerchantAuth
from lazsync.catalog.products import ProductCatalog, present_product, is_synced
from lazsync.config import LazadaConfig, load_sync_settings
from lazsync.db.database import Database
from lazsync.db.schema import PLATFORMS
from lazsync.errors import (
    LazsyncError,
    NoConnectionError,
    NotFoundError,
    ValidationError,
)
from lazsync.platforms.lazada import PLATFORM_NAME, LazadaClient
from lazsync.sync.job_queue import SyncJobQueue
from lazsync.sync.product_sync import (
    ProductSyncRunner,
    SyncAction,
    SyncOverrides,
    summarize_logs,
)

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"

# {"success": ...} 形式で返すエンドポイント
AUTH_ENDPOINTS = {
    "register", "login", "logout", "logout_all", "me",
    "update_profile", "change_password",
}

SYNC_LOG_STATUSES = ("success", "failed", "error", "pending", "partial")
MAX_BULK_SYNC = 50


def _is_auth_endpoint():
    # type: () -> bool
    return request.endpoint in AUTH_ENDPOINTS


def respond(message, data=None, status=200, **extra):
    # type: (str, Any, int, Any) -> Any
    """成功レスポンス"""
    if _is_auth_endpoint():
        body = {"success": True, "message": message, "data": data}
    else:
        body = {"status": "success", "message": message, "data": data}
    body.update(extra)
    return jsonify(body), status


def respond_error(message, status, **extra):
    # type: (str, int, Any) -> Any
    """エラーレスポンス"""
    if _is_auth_endpoint():
        body = {"success": False, "message": message}
    else:
        body = {"status": "error", "message": message}
    body.update(extra)
    return jsonify(body), status


def json_body():
    # type: () -> Dict[str, Any]
    """リクエストボディ（JSONオブジェクト以外は400）"""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError({"body": ["JSONオブジェクトを送信してください"]},
                              status_code=400)
    return data


def present_connection(connection):
    # type: (Dict[str, Any]) -> Dict[str, Any]
    """レスポンス用にトークンを除外"""
    data = {
        k: v for k, v in connection.items()
        if k not in ("access_token", "refresh_token")
    }
    data["has_token"] = bool(connection.get("access_token"))
    return data


def create_app(db_path=None, lazada_client=None, sync_queue=None):
    # type: (Optional[str], Optional[LazadaClient], Optional[SyncJobQueue]) -> Flask
    """Flaskアプリファクトリ

    Args:
        db_path: SQLiteファイル（Noneなら既定パス）
        lazada_client: Lazadaクライアント（Noneなら環境変数から生成）
        sync_queue: 同期ジョブキュー（Noneなら初回利用時に生成）
    """
    app = Flask(__name__)
    app.json.ensure_ascii = False

    db = Database(db_path=db_path)
    db.init_tables()
    auth = MerchantAuth(db)
    catalog = ProductCatalog(db)

    # Lazadaクライアントとジョブキューは設定が揃ったときだけ必要になる
    services = {"client": lazada_client, "queue": sync_queue}

    def get_client():
        # type: () -> LazadaClient
        if services["client"] is None:
            services["client"] = LazadaClient(LazadaConfig.from_env(), db)
        return services["client"]

    def get_queue():
        # type: () -> SyncJobQueue
        if services["queue"] is None:
            runner = ProductSyncRunner(db, get_client())
            services["queue"] = SyncJobQueue(runner, **load_sync_settings())
            # 自前で作ったキューのみプロセス終了時に停止
            atexit.register(services["queue"].shutdown)
        return services["queue"]

    app.extensions["lazsync"] = services

    # --- エラーハンドラ ---

    @app.errorhandler(LazsyncError)
    def handle_domain_error(e):
        if e.status_code >= 500:
            logger.error(f"{request.method} {request.path}: {e.message}")
        return respond_error(e.message, e.status_code, **e.to_dict())

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        if isinstance(e, HTTPException):
            return respond_error(e.name, e.code, error=e.description)
        logger.exception(f"{request.method} {request.path}: 予期しないエラー")
        return respond_error("サーバーエラーが発生しました", 500, error=str(e))

    # --- 認証 ---

    def require_auth(view):
        """Bearerトークン必須のデコレータ"""
        @wraps(view)
        def wrapper(*args, **kwargs):
            header = request.headers.get("Authorization", "")
            token = None
            if header.startswith("Bearer "):
                token = header[len("Bearer "):].strip()
            g.merchant = auth.authenticate(token)
            g.token = token
            return view(*args, **kwargs)
        return wrapper

    @app.route(API_PREFIX + "/health")
    def health():
        return respond("OK", {"timestamp": datetime.now().isoformat()})

    @app.route(API_PREFIX + "/register", methods=["POST"])
    def register():
        """マーチャント登録"""
        result = auth.register(json_body())
        return respond("マーチャントを登録しました", result, 201)

    @app.route(API_PREFIX + "/login", methods=["POST"])
    def login():
        data = json_body()
        result = auth.login(data.get("email"), data.get("password"))
        return respond("ログインしました", result)

    @app.route(API_PREFIX + "/logout", methods=["POST"])
    @require_auth
    def logout():
        auth.logout(g.token)
        return respond("ログアウトしました")

    @app.route(API_PREFIX + "/logout-all", methods=["POST"])
    @require_auth
    def logout_all():
        """全デバイスからログアウト"""
        revoked = auth.logout_all(g.merchant["id"])
        return respond("全デバイスからログアウトしました", {"revoked": revoked})

    @app.route(API_PREFIX + "/me")
    @require_auth
    def me():
        return respond("マーチャント情報を取得しました", {"merchant": g.merchant})

    @app.route(API_PREFIX + "/profile", methods=["PUT"])
    @require_auth
    def update_profile():
        merchant = auth.update_profile(g.merchant["id"], json_body())
        return respond("プロフィールを更新しました", {"merchant": merchant})

    @app.route(API_PREFIX + "/change-password", methods=["PUT"])
    @require_auth
    def change_password():
        """パスワード変更（現在のトークン以外は失効）"""
        auth.change_password(g.merchant["id"], json_body(), current_token=g.token)
        return respond("パスワードを変更しました")

    # --- 商品 ---

    @app.route(API_PREFIX + "/products")
    @require_auth
    def list_products():
        """商品一覧（search, status, stock_filter, sort_by, sort_order, per_page, page）"""
        result = catalog.list(g.merchant["id"], request.args.to_dict())
        return respond("商品一覧を取得しました", result["items"],
                       meta=result["meta"])

    @app.route(API_PREFIX + "/products", methods=["POST"])
    @require_auth
    def create_product():
        product = catalog.create(g.merchant["id"], json_body())
        return respond("商品を作成しました", present_product(product), 201)

    @app.route(API_PREFIX + "/products/<int:product_id>")
    @require_auth
    def show_product(product_id):
        product = catalog.get(g.merchant["id"], product_id)
        return respond("商品を取得しました", present_product(product))

    @app.route(API_PREFIX + "/products/<int:product_id>", methods=["PUT"])
    @require_auth
    def update_product(product_id):
        product = catalog.update(g.merchant["id"], product_id, json_body())
        return respond("商品を更新しました", present_product(product))

    @app.route(API_PREFIX + "/products/<int:product_id>", methods=["DELETE"])
    @require_auth
    def delete_product(product_id):
        catalog.delete(g.merchant["id"], product_id)
        return respond("商品を削除しました")

    @app.route(API_PREFIX + "/products/<int:product_id>/stock", methods=["PUT"])
    @require_auth
    def update_stock(product_id):
        """在庫操作（action: set / increase / decrease）"""
        data = json_body()
        result = catalog.change_stock(
            g.merchant["id"], product_id,
            data.get("stock"), data.get("action") or "set",
        )
        return respond("在庫を更新しました", result)

    @app.route(API_PREFIX + "/products/bulk-status", methods=["PATCH"])
    @require_auth
    def bulk_update_status():
        data = json_body()
        updated = catalog.bulk_update_status(
            g.merchant["id"], data.get("product_ids"), data.get("status")
        )
        return respond("{}件の商品ステータスを更新しました".format(updated),
                       {"updated_count": updated})

    @app.route(API_PREFIX + "/products-statistics")
    @require_auth
    def product_statistics():
        return respond("商品統計を取得しました", catalog.statistics(g.merchant["id"]))

    # --- プラットフォーム接続 ---

    def owned_connection(connection_id):
        connection = db.get_connection(connection_id, merchant_id=g.merchant["id"])
        if not connection:
            raise NotFoundError("接続が見つかりません")
        return connection

    @app.route(API_PREFIX + "/platform/connections")
    @require_auth
    def list_connections():
        connections = db.get_connections(merchant_id=g.merchant["id"])
        return respond("接続一覧を取得しました",
                       [present_connection(c) for c in connections])

    @app.route(API_PREFIX + "/platform/connections/stats")
    @require_auth
    def connection_stats():
        return respond("接続統計を取得しました",
                       db.get_connection_statistics(g.merchant["id"]))

    @app.route(API_PREFIX + "/platform/lazada/auth-url")
    @require_auth
    def lazada_auth_url():
        url = get_client().build_authorization_url(g.merchant["id"])
        return respond("認証URLを生成しました",
                       {"auth_url": url, "merchant_id": g.merchant["id"]})

    @app.route(API_PREFIX + "/lazada/callback", methods=["POST"])
    def lazada_callback():
        """OAuthコールバック（code, state）"""
        data = json_body() or request.values.to_dict()
        errors = {}
        for key in ("code", "state"):
            if not isinstance(data.get(key), str) or not data.get(key):
                errors[key] = ["{}は必須です".format(key)]
        if errors:
            raise ValidationError(errors, status_code=400)

        connection = get_client().complete_authorization(data["code"], data["state"])
        return respond("Lazadaアカウントを接続しました", {
            "connection_id": connection["id"],
            "platform_name": connection["platform_name"],
            "status": connection["status"],
            "connected_at": connection["connected_at"],
            "seller_info": (connection.get("connection_data") or {}).get(
                "seller_info", {}
            ),
        })

    @app.route(API_PREFIX + "/platform/connections/<int:connection_id>/test",
               methods=["POST"])
    @require_auth
    def test_connection(connection_id):
        """接続テスト（必要ならトークン更新）"""
        connection = owned_connection(connection_id)
        if connection["platform_name"] != PLATFORM_NAME:
            return respond_error("未対応のプラットフォームです", 400,
                                 error="Platform not supported")

        if get_client().validate_and_refresh(connection):
            connection = owned_connection(connection_id)
            return respond("接続は有効です", {
                "connection_id": connection["id"],
                "platform_name": connection["platform_name"],
                "status": connection["status"],
                "last_sync_at": connection["last_sync_at"],
            })
        return respond_error("接続テストに失敗しました", 400, data={
            "connection_id": connection["id"],
            "status": connection["status"],
        })

    @app.route(API_PREFIX + "/platform/connections/<int:connection_id>",
               methods=["DELETE"])
    @require_auth
    def disconnect(connection_id):
        connection = owned_connection(connection_id)
        db.update_connection(connection_id, {
            "status": "disconnected",
            "access_token": None,
            "refresh_token": None,
            "token_expires_at": None,
        })
        logger.info(
            f"接続解除: connection_id={connection_id} "
            f"platform={connection['platform_name']}"
        )
        return respond("接続を解除しました", {
            "connection_id": connection_id,
            "platform_name": connection["platform_name"],
            "status": "disconnected",
        })

    # --- 同期 ---

    def parse_sync_request(data):
        action = SyncAction.parse(data.get("action"))
        overrides = SyncOverrides.from_dict(data.get("sync_data"))
        return action, overrides.as_dict()

    def require_active_connection(merchant_id):
        if not db.get_active_connection(merchant_id, PLATFORM_NAME):
            raise NoConnectionError("アクティブなLazada接続がありません")

    @app.route(API_PREFIX + "/sync/products/<int:product_id>", methods=["POST"])
    @require_auth
    def sync_product(product_id):
        """同期ジョブを投入"""
        action, overrides = parse_sync_request(json_body())
        catalog.get(g.merchant["id"], product_id)
        require_active_connection(g.merchant["id"])

        get_queue().submit(product_id, action.value, overrides)
        logger.info(
            f"同期ジョブ投入: product_id={product_id} action={action.value} "
            f"merchant_id={g.merchant['id']}"
        )
        return respond("同期ジョブを投入しました", {
            "product_id": product_id,
            "action": action.value,
            "queued_at": datetime.now().isoformat(),
        })

    @app.route(API_PREFIX + "/sync/products/bulk", methods=["POST"])
    @require_auth
    def sync_products_bulk():
        """複数商品の同期ジョブを投入（1〜50件）"""
        data = json_body()
        product_ids = data.get("product_ids")
        if (not isinstance(product_ids, list)
                or not 1 <= len(product_ids) <= MAX_BULK_SYNC
                or not all(isinstance(pid, int) and not isinstance(pid, bool)
                           for pid in product_ids)):
            raise ValidationError(
                {"product_ids": ["product_idsは1〜{}件の整数リストです".format(
                    MAX_BULK_SYNC)]},
                status_code=400,
            )
        action, overrides = parse_sync_request(data)
        require_active_connection(g.merchant["id"])

        unique_ids = list(dict.fromkeys(product_ids))
        products = db.get_products_by_ids(g.merchant["id"], unique_ids)
        if len(products) != len(unique_ids):
            raise NotFoundError("一部の商品が見つからないか、権限がありません")

        get_queue().submit_bulk(unique_ids, action.value, overrides)
        queued = [
            {"product_id": p["id"], "sku": p["sku"], "name": p["name"]}
            for p in products
        ]
        return respond("{}件の同期ジョブを投入しました".format(len(queued)), {
            "action": action.value,
            "total_products": len(queued),
            "queued_products": queued,
            "queued_at": datetime.now().isoformat(),
        })

    @app.route(API_PREFIX + "/sync/products/<int:product_id>/status")
    @require_auth
    def sync_status(product_id):
        product = catalog.get(g.merchant["id"], product_id)
        logs = db.get_sync_logs(g.merchant["id"], product_id=product_id, limit=10)
        return respond("同期状況を取得しました", {
            "product": {
                "id": product["id"],
                "name": product["name"],
                "sku": product["sku"],
                "sync_data": product["sync_data"],
                "last_synced_at": product["last_synced_at"],
                "is_synced": is_synced(product),
            },
            "sync_logs": logs,
            "sync_summary": summarize_logs(logs),
        })

    @app.route(API_PREFIX + "/sync/statistics")
    @require_auth
    def sync_statistics():
        now = datetime.now()
        stats = db.get_sync_statistics(
            g.merchant["id"],
            since_day=(now - timedelta(days=1)).isoformat(),
            since_week=(now - timedelta(weeks=1)).isoformat(),
        )
        total = stats["products_total"]
        synced = stats["products_synced"]
        recent = stats["syncs_24h"]
        return respond("同期統計を取得しました", {
            "products": {
                "total": total,
                "synced": synced,
                "unsynced": total - synced,
                "sync_percentage": round(synced / total * 100, 2) if total else 0,
            },
            "recent_activity": {
                "total_syncs_24h": recent,
                "successful_syncs_24h": stats["successful_24h"],
                "failed_syncs_24h": stats["failed_24h"],
                "success_rate_24h": (
                    round(stats["successful_24h"] / recent * 100, 2) if recent else 0
                ),
            },
            "sync_by_action_7d": stats["by_action_7d"],
        })

    @app.route(API_PREFIX + "/sync/logs")
    @require_auth
    def sync_logs():
        """同期ログ一覧（platform, status, action_type, limit, page）"""
        platform = request.args.get("platform") or None
        status = request.args.get("status") or None
        action_type = request.args.get("action_type") or None

        errors = {}
        if platform and platform not in PLATFORMS:
            errors["platform"] = ["platformが不正です"]
        if status and status not in SYNC_LOG_STATUSES:
            errors["status"] = ["statusが不正です"]
        # 指定ありで整数に変換できない場合はNone
        limit = request.args.get("limit", type=int) if "limit" in request.args else 20
        page = request.args.get("page", type=int) if "page" in request.args else 1
        if limit is None or not 1 <= limit <= 100:
            errors["limit"] = ["limitは1〜100の整数です"]
        if page is None or page < 1:
            errors["page"] = ["pageは1以上の整数です"]
        if errors:
            raise ValidationError(errors, status_code=400)

        merchant_id = g.merchant["id"]
        total = db.count_sync_logs(merchant_id, platform, status, action_type)
        logs = db.get_sync_logs(
            merchant_id, platform=platform, status=status,
            action_type=action_type, limit=limit, offset=(page - 1) * limit,
        )
        first = (page - 1) * limit + 1 if logs else None
        return respond("同期ログを取得しました", logs, meta={
            "current_page": page,
            "last_page": max(1, math.ceil(total / limit)),
            "per_page": limit,
            "total": total,
            "from": first,
            "to": first + len(logs) - 1 if logs else None,
        })

    return app
