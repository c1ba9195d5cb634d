"""SQLiteデータベース接続管理

同期sqlite3を使用（DB操作はサブミリ秒、async不要）。
JSONカラムは書き込み時に文字列化し、読み込み時にdictへ戻す。
"""

import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from lazsync.config import default_db_path
from lazsync.db.schema import ALL_INDEXES, ALL_TABLES
from lazsync.errors import PersistenceError, ValidationError

# 読み込み時にデコードするJSONカラム
_JSON_COLUMNS = ("sync_data", "connection_data", "request_data", "response_data")


def _now() -> str:
    return datetime.now().isoformat()


def _to_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def _row_to_dict(row: Optional[sqlite3.Row]) -> Optional[dict]:
    """sqlite3.Rowをdictに変換し、JSONカラムをデコード"""
    if row is None:
        return None
    data = dict(row)
    for col in _JSON_COLUMNS:
        if col in data and isinstance(data[col], str):
            try:
                data[col] = json.loads(data[col])
            except (json.JSONDecodeError, TypeError):
                pass
    return data


class Database:
    """SQLiteデータベースマネージャー"""

    def __init__(self, db_path: Optional[str] = None):
        if db_path is None:
            db_path = default_db_path()

        self.db_path = db_path
        # dataディレクトリが存在しない場合は作成
        directory = os.path.dirname(db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

    @contextmanager
    def connect(self):
        """コネクション管理（コンテキストマネージャー）"""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def init_tables(self) -> List[str]:
        """全テーブルを作成（冪等）。作成したテーブル名リストを返す"""
        created = []
        with self.connect() as conn:
            for name, sql in ALL_TABLES:
                conn.execute(sql)
                created.append(name)
            for sql in ALL_INDEXES:
                conn.executescript(sql)
        return created

    def get_stats(self) -> Dict[str, Any]:
        """全テーブルのレコード数と概要統計を返す"""
        stats = {}  # type: Dict[str, Any]
        with self.connect() as conn:
            for name, _ in ALL_TABLES:
                try:
                    row = conn.execute(
                        f"SELECT COUNT(*) as cnt FROM {name}"
                    ).fetchone()
                    stats[name] = row["cnt"]
                except sqlite3.OperationalError:
                    stats[name] = "テーブル未作成"

            # 接続のステータス別内訳
            try:
                rows = conn.execute(
                    """SELECT status, COUNT(*) as cnt
                       FROM platform_connections GROUP BY status"""
                ).fetchall()
                stats["connections_by_status"] = {
                    row["status"]: row["cnt"] for row in rows
                }
            except sqlite3.OperationalError:
                pass

        return stats

    # --- マーチャント ---

    def create_merchant(self, merchant: Dict[str, Any]) -> int:
        """マーチャントを作成。merchant IDを返す"""
        now = _now()
        try:
            with self.connect() as conn:
                cursor = conn.execute(
                    """INSERT INTO merchants
                       (name, email, password_hash, phone, address, status,
                        created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        merchant["name"],
                        merchant["email"],
                        merchant["password_hash"],
                        merchant.get("phone"),
                        merchant.get("address"),
                        merchant.get("status", "active"),
                        now,
                        now,
                    ),
                )
                return cursor.lastrowid
        except sqlite3.IntegrityError:
            raise ValidationError(
                {"email": ["このメールアドレスは既に登録されています"]}
            )
        except sqlite3.Error as e:
            raise PersistenceError("マーチャント作成に失敗しました: {}".format(e))

    def get_merchant(self, merchant_id: int) -> Optional[dict]:
        """マーチャントをIDで取得"""
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM merchants WHERE id = ?",
                (merchant_id,),
            ).fetchone()
            return _row_to_dict(row)

    def get_merchant_by_email(self, email: str) -> Optional[dict]:
        """マーチャントをメールアドレスで取得"""
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM merchants WHERE email = ?",
                (email,),
            ).fetchone()
            return _row_to_dict(row)

    def update_merchant(self, merchant_id: int, updates: Dict[str, Any]) -> bool:
        """マーチャントを更新"""
        allowed = {"name", "email", "phone", "address", "status", "password_hash"}
        try:
            return self._update_row("merchants", merchant_id, updates, allowed)
        except sqlite3.IntegrityError:
            raise ValidationError(
                {"email": ["このメールアドレスは既に登録されています"]}
            )

    def delete_merchant(self, merchant_id: int) -> bool:
        """マーチャントを削除（商品・接続・ログ・トークンもカスケード削除）"""
        with self.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM merchants WHERE id = ?",
                (merchant_id,),
            )
            return cursor.rowcount > 0

    # --- セッショントークン ---

    def create_token(self, merchant_id: int, token_hash: str,
                     name: str = "auth_token") -> int:
        """トークンを登録。token IDを返す"""
        with self.connect() as conn:
            cursor = conn.execute(
                """INSERT INTO merchant_tokens
                   (merchant_id, name, token_hash, created_at)
                   VALUES (?, ?, ?, ?)""",
                (merchant_id, name, token_hash, _now()),
            )
            return cursor.lastrowid

    def get_token(self, token_hash: str) -> Optional[dict]:
        """トークンハッシュからトークン行を取得（last_used_atを更新）"""
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM merchant_tokens WHERE token_hash = ?",
                (token_hash,),
            ).fetchone()
            if row is None:
                return None
            conn.execute(
                "UPDATE merchant_tokens SET last_used_at = ? WHERE id = ?",
                (_now(), row["id"]),
            )
            return dict(row)

    def delete_token(self, token_hash: str) -> bool:
        """トークンを失効"""
        with self.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM merchant_tokens WHERE token_hash = ?",
                (token_hash,),
            )
            return cursor.rowcount > 0

    def delete_tokens(self, merchant_id: int,
                      except_hash: Optional[str] = None) -> int:
        """マーチャントの全トークンを失効（except_hashは残す）。失効件数を返す"""
        query = "DELETE FROM merchant_tokens WHERE merchant_id = ?"
        params = [merchant_id]  # type: List[Any]
        if except_hash:
            query += " AND token_hash != ?"
            params.append(except_hash)

        with self.connect() as conn:
            cursor = conn.execute(query, params)
            return cursor.rowcount

    # --- 商品 CRUD ---

    def create_product(self, merchant_id: int, product: Dict[str, Any]) -> int:
        """商品を作成。product IDを返す"""
        now = _now()
        try:
            with self.connect() as conn:
                cursor = conn.execute(
                    """INSERT INTO products
                       (merchant_id, name, description, price, sku, stock,
                        image_url, status, sync_data, created_at, updated_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        merchant_id,
                        product["name"],
                        product.get("description"),
                        product["price"],
                        product["sku"],
                        product.get("stock", 0),
                        product.get("image_url"),
                        product.get("status", "draft"),
                        _to_json(product.get("sync_data")),
                        now,
                        now,
                    ),
                )
                return cursor.lastrowid
        except sqlite3.IntegrityError as e:
            if "sku" in str(e):
                raise ValidationError({"sku": ["このSKUは既に使用されています"]})
            raise PersistenceError("商品作成に失敗しました: {}".format(e))

    def get_product(self, product_id: int,
                    merchant_id: Optional[int] = None) -> Optional[dict]:
        """商品をIDで取得（merchant_id指定時は所有者で絞り込み）"""
        query = "SELECT * FROM products WHERE id = ?"
        params = [product_id]  # type: List[Any]
        if merchant_id is not None:
            query += " AND merchant_id = ?"
            params.append(merchant_id)

        with self.connect() as conn:
            row = conn.execute(query, params).fetchone()
            return _row_to_dict(row)

    def get_product_by_sku(self, sku: str) -> Optional[dict]:
        """商品をSKUで取得"""
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM products WHERE sku = ?",
                (sku,),
            ).fetchone()
            return _row_to_dict(row)

    def get_products_by_ids(self, merchant_id: int,
                            product_ids: Iterable[int]) -> List[dict]:
        """マーチャント所有の商品をID指定で取得"""
        ids = list(product_ids)
        if not ids:
            return []
        placeholders = ",".join("?" for _ in ids)
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM products WHERE merchant_id = ? AND id IN ({})".format(
                    placeholders
                ),
                [merchant_id] + ids,
            ).fetchall()
            return [_row_to_dict(row) for row in rows]

    def _product_filters(self, merchant_id: int, search: Optional[str],
                         status: Optional[str],
                         stock_filter: Optional[str]):
        where = " WHERE merchant_id = ?"
        params = [merchant_id]  # type: List[Any]

        if search:
            where += " AND (name LIKE ? OR sku LIKE ? OR description LIKE ?)"
            like = "%{}%".format(search)
            params.extend([like, like, like])
        if status:
            where += " AND status = ?"
            params.append(status)
        if stock_filter == "in_stock":
            where += " AND stock > 0"
        elif stock_filter == "low_stock":
            where += " AND stock > 0 AND stock <= 10"
        elif stock_filter == "out_of_stock":
            where += " AND stock <= 0"

        return where, params

    def get_products(
        self,
        merchant_id: int,
        search: Optional[str] = None,
        status: Optional[str] = None,
        stock_filter: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
        limit: int = 15,
        offset: int = 0,
    ) -> List[dict]:
        """商品一覧を取得（sort_by/sort_orderは呼び出し側で検証済み）"""
        where, params = self._product_filters(
            merchant_id, search, status, stock_filter
        )
        direction = "ASC" if sort_order.lower() == "asc" else "DESC"
        query = "SELECT * FROM products{} ORDER BY {} {}, id {} LIMIT ? OFFSET ?".format(
            where, sort_by, direction, direction
        )
        params.extend([limit, offset])

        with self.connect() as conn:
            rows = conn.execute(query, params).fetchall()
            return [_row_to_dict(row) for row in rows]

    def count_products(
        self,
        merchant_id: int,
        search: Optional[str] = None,
        status: Optional[str] = None,
        stock_filter: Optional[str] = None,
    ) -> int:
        """フィルタ条件に合致する商品の総件数を返す"""
        where, params = self._product_filters(
            merchant_id, search, status, stock_filter
        )
        with self.connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) as cnt FROM products" + where, params
            ).fetchone()
            return row["cnt"]

    def update_product(self, product_id: int, updates: Dict[str, Any]) -> bool:
        """商品の部分更新（ホワイトリストで更新可能カラムを制限）"""
        allowed = {
            "name", "description", "price", "sku", "stock",
            "image_url", "status",
        }
        try:
            return self._update_row("products", product_id, updates, allowed)
        except sqlite3.IntegrityError as e:
            if "sku" in str(e):
                raise ValidationError({"sku": ["このSKUは既に使用されています"]})
            raise PersistenceError("商品更新に失敗しました: {}".format(e))

    def update_product_sync_state(self, product_id: int,
                                  sync_data: Dict[str, Any],
                                  last_synced_at: Optional[str] = None) -> bool:
        """同期メタデータ（sync_data, last_synced_at）を更新"""
        with self.connect() as conn:
            cursor = conn.execute(
                """UPDATE products
                   SET sync_data = ?, last_synced_at = ?
                   WHERE id = ?""",
                (_to_json(sync_data), last_synced_at or _now(), product_id),
            )
            return cursor.rowcount > 0

    def set_product_stock(self, product_id: int, stock: int) -> bool:
        """在庫数を設定"""
        with self.connect() as conn:
            cursor = conn.execute(
                "UPDATE products SET stock = ?, updated_at = ? WHERE id = ?",
                (stock, _now(), product_id),
            )
            return cursor.rowcount > 0

    def increase_product_stock(self, product_id: int, quantity: int) -> bool:
        """在庫数を加算"""
        with self.connect() as conn:
            cursor = conn.execute(
                """UPDATE products SET stock = stock + ?, updated_at = ?
                   WHERE id = ?""",
                (quantity, _now(), product_id),
            )
            return cursor.rowcount > 0

    def decrease_product_stock(self, product_id: int, quantity: int) -> bool:
        """在庫数を減算（在庫不足なら更新せずFalse）"""
        with self.connect() as conn:
            cursor = conn.execute(
                """UPDATE products SET stock = stock - ?, updated_at = ?
                   WHERE id = ? AND stock >= ?""",
                (quantity, _now(), product_id, quantity),
            )
            return cursor.rowcount > 0

    def delete_product(self, product_id: int) -> bool:
        """商品を削除"""
        with self.connect() as conn:
            cursor = conn.execute(
                "DELETE FROM products WHERE id = ?",
                (product_id,),
            )
            return cursor.rowcount > 0

    def bulk_update_product_status(self, merchant_id: int,
                                   product_ids: List[int], status: str) -> int:
        """複数商品のステータスを一括更新。更新件数を返す"""
        if not product_ids:
            return 0
        placeholders = ",".join("?" for _ in product_ids)
        params = [status, _now(), merchant_id] + list(product_ids)

        with self.connect() as conn:
            cursor = conn.execute(
                """UPDATE products SET status = ?, updated_at = ?
                   WHERE merchant_id = ? AND id IN ({})""".format(placeholders),
                params,
            )
            return cursor.rowcount

    def get_product_statistics(self, merchant_id: int) -> Dict[str, Any]:
        """マーチャントの商品統計"""
        with self.connect() as conn:
            row = conn.execute(
                """SELECT
                       COUNT(*) as total,
                       COALESCE(SUM(status = 'active'), 0) as active,
                       COALESCE(SUM(status = 'inactive'), 0) as inactive,
                       COALESCE(SUM(status = 'draft'), 0) as draft,
                       COALESCE(SUM(stock <= 0), 0) as out_of_stock,
                       COALESCE(SUM(stock > 0 AND stock <= 10), 0) as low_stock,
                       COALESCE(SUM(CASE WHEN status = 'active' THEN price END), 0)
                           as total_value
                   FROM products WHERE merchant_id = ?""",
                (merchant_id,),
            ).fetchone()

            return {
                "total_products": row["total"],
                "active_products": row["active"],
                "inactive_products": row["inactive"],
                "draft_products": row["draft"],
                "out_of_stock": row["out_of_stock"],
                "low_stock": row["low_stock"],
                "total_value": round(row["total_value"], 2),
            }

    # --- プラットフォーム接続 ---

    def upsert_connection(self, merchant_id: int, platform_name: str,
                          connection: Dict[str, Any]) -> int:
        """接続をupsert（merchant_id + platform_nameで一意）。connection IDを返す"""
        now = _now()
        with self.connect() as conn:
            conn.execute(
                """INSERT INTO platform_connections
                   (merchant_id, platform_name, access_token, refresh_token,
                    token_expires_at, connection_data, status,
                    connected_at, last_sync_at, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(merchant_id, platform_name) DO UPDATE SET
                    access_token = excluded.access_token,
                    refresh_token = excluded.refresh_token,
                    token_expires_at = excluded.token_expires_at,
                    connection_data = excluded.connection_data,
                    status = excluded.status,
                    connected_at = excluded.connected_at,
                    last_sync_at = excluded.last_sync_at,
                    updated_at = excluded.updated_at""",
                (
                    merchant_id,
                    platform_name,
                    connection.get("access_token"),
                    connection.get("refresh_token"),
                    connection.get("token_expires_at"),
                    _to_json(connection.get("connection_data")),
                    connection.get("status", "active"),
                    connection.get("connected_at", now),
                    connection.get("last_sync_at", now),
                    now,
                    now,
                ),
            )
            row = conn.execute(
                """SELECT id FROM platform_connections
                   WHERE merchant_id = ? AND platform_name = ?""",
                (merchant_id, platform_name),
            ).fetchone()
            return row["id"]

    def get_connection(self, connection_id: int,
                       merchant_id: Optional[int] = None) -> Optional[dict]:
        """接続をIDで取得"""
        query = "SELECT * FROM platform_connections WHERE id = ?"
        params = [connection_id]  # type: List[Any]
        if merchant_id is not None:
            query += " AND merchant_id = ?"
            params.append(merchant_id)

        with self.connect() as conn:
            row = conn.execute(query, params).fetchone()
            return _row_to_dict(row)

    def get_active_connection(self, merchant_id: int,
                              platform_name: str = "lazada") -> Optional[dict]:
        """アクティブな接続を取得"""
        with self.connect() as conn:
            row = conn.execute(
                """SELECT * FROM platform_connections
                   WHERE merchant_id = ? AND platform_name = ?
                     AND status = 'active'""",
                (merchant_id, platform_name),
            ).fetchone()
            return _row_to_dict(row)

    def get_connections(self, merchant_id: Optional[int] = None,
                        status: Optional[str] = None) -> List[dict]:
        """接続一覧を取得（新しい順）"""
        query = "SELECT * FROM platform_connections WHERE 1=1"
        params = []  # type: List[Any]
        if merchant_id is not None:
            query += " AND merchant_id = ?"
            params.append(merchant_id)
        if status:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY created_at DESC, id DESC"

        with self.connect() as conn:
            rows = conn.execute(query, params).fetchall()
            return [_row_to_dict(row) for row in rows]

    def get_connections_expiring_before(self, before: str,
                                        platform_name: str = "lazada") -> List[dict]:
        """token_expires_at が before より前のアクティブ接続（cronリフレッシュ用）"""
        with self.connect() as conn:
            rows = conn.execute(
                """SELECT * FROM platform_connections
                   WHERE platform_name = ? AND status = 'active'
                     AND token_expires_at IS NOT NULL
                     AND token_expires_at < ?""",
                (platform_name, before),
            ).fetchall()
            return [_row_to_dict(row) for row in rows]

    def update_connection(self, connection_id: int,
                          updates: Dict[str, Any]) -> bool:
        """接続を更新"""
        allowed = {
            "access_token", "refresh_token", "token_expires_at",
            "connection_data", "status", "connected_at", "last_sync_at",
        }
        return self._update_row(
            "platform_connections", connection_id, updates, allowed
        )

    def get_connection_statistics(self, merchant_id: int) -> Dict[str, Any]:
        """接続のステータス別集計"""
        with self.connect() as conn:
            rows = conn.execute(
                """SELECT platform_name, status, COUNT(*) as cnt
                   FROM platform_connections WHERE merchant_id = ?
                   GROUP BY platform_name, status""",
                (merchant_id,),
            ).fetchall()

        total = sum(row["cnt"] for row in rows)
        active = sum(row["cnt"] for row in rows if row["status"] == "active")
        error = sum(row["cnt"] for row in rows if row["status"] == "error")

        by_platform = {}  # type: Dict[str, Dict[str, int]]
        for row in rows:
            by_platform.setdefault(row["platform_name"], {})[row["status"]] = row["cnt"]

        return {
            "summary": {
                "total_connections": total,
                "active_connections": active,
                "error_connections": error,
                "disconnected_connections": total - active - error,
            },
            "by_platform": by_platform,
        }

    # --- 同期ログ（追記のみ） ---

    def create_sync_log(self, entry: Dict[str, Any]) -> int:
        """同期ログを追記。sync_log IDを返す"""
        request_data = entry.get("request_data") or {}
        with self.connect() as conn:
            cursor = conn.execute(
                """INSERT INTO sync_logs
                   (merchant_id, action_type, platform_name, status, message,
                    request_data, response_data, product_id,
                    affected_items, duration, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    entry["merchant_id"],
                    entry["action_type"],
                    entry.get("platform_name", "lazada"),
                    entry["status"],
                    entry.get("message"),
                    _to_json(request_data),
                    _to_json(entry.get("response_data")),
                    request_data.get("product_id"),
                    entry.get("affected_items", 0),
                    entry.get("duration"),
                    _now(),
                ),
            )
            return cursor.lastrowid

    def _sync_log_filters(self, merchant_id: int, platform: Optional[str],
                          status: Optional[str], action_type: Optional[str],
                          product_id: Optional[int]):
        where = " WHERE merchant_id = ?"
        params = [merchant_id]  # type: List[Any]
        if platform:
            where += " AND platform_name = ?"
            params.append(platform)
        if status:
            where += " AND status = ?"
            params.append(status)
        if action_type:
            where += " AND action_type = ?"
            params.append(action_type)
        if product_id is not None:
            where += " AND product_id = ?"
            params.append(product_id)
        return where, params

    def get_sync_logs(
        self,
        merchant_id: int,
        platform: Optional[str] = None,
        status: Optional[str] = None,
        action_type: Optional[str] = None,
        product_id: Optional[int] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[dict]:
        """同期ログ一覧（新しい順）"""
        where, params = self._sync_log_filters(
            merchant_id, platform, status, action_type, product_id
        )
        params.extend([limit, offset])
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_logs" + where
                + " ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
                params,
            ).fetchall()
            return [_row_to_dict(row) for row in rows]

    def count_sync_logs(
        self,
        merchant_id: int,
        platform: Optional[str] = None,
        status: Optional[str] = None,
        action_type: Optional[str] = None,
        product_id: Optional[int] = None,
    ) -> int:
        """フィルタ条件に合致する同期ログの総件数"""
        where, params = self._sync_log_filters(
            merchant_id, platform, status, action_type, product_id
        )
        with self.connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) as cnt FROM sync_logs" + where, params
            ).fetchone()
            return row["cnt"]

    def get_sync_statistics(self, merchant_id: int, since_day: str,
                            since_week: str) -> Dict[str, Any]:
        """同期統計（商品の同期率、24時間の成否、7日間のアクション別件数）"""
        with self.connect() as conn:
            product_row = conn.execute(
                """SELECT COUNT(*) as total,
                          COALESCE(SUM(last_synced_at IS NOT NULL
                              AND json_extract(sync_data, '$.item_id') IS NOT NULL), 0)
                              as synced
                   FROM products WHERE merchant_id = ?""",
                (merchant_id,),
            ).fetchone()

            recent_row = conn.execute(
                """SELECT COUNT(*) as total,
                          COALESCE(SUM(status = 'success'), 0) as success,
                          COALESCE(SUM(status = 'failed'), 0) as failed
                   FROM sync_logs
                   WHERE merchant_id = ? AND created_at >= ?""",
                (merchant_id, since_day),
            ).fetchone()

            action_rows = conn.execute(
                """SELECT action_type, COUNT(*) as cnt
                   FROM sync_logs
                   WHERE merchant_id = ? AND created_at >= ?
                   GROUP BY action_type""",
                (merchant_id, since_week),
            ).fetchall()

        return {
            "products_total": product_row["total"],
            "products_synced": product_row["synced"],
            "syncs_24h": recent_row["total"],
            "successful_24h": recent_row["success"],
            "failed_24h": recent_row["failed"],
            "by_action_7d": {row["action_type"]: row["cnt"] for row in action_rows},
        }

    # --- 共通 ---

    def _update_row(self, table: str, row_id: int, updates: Dict[str, Any],
                    allowed: set) -> bool:
        """ホワイトリストに含まれるカラムだけを更新"""
        if not updates:
            return False

        set_clauses = []
        params = []  # type: List[Any]
        for key, value in updates.items():
            if key not in allowed:
                continue
            if isinstance(value, (dict, list)):
                value = _to_json(value)
            set_clauses.append("{} = ?".format(key))
            params.append(value)

        if not set_clauses:
            return False

        set_clauses.append("updated_at = ?")
        params.append(_now())
        params.append(row_id)

        with self.connect() as conn:
            cursor = conn.execute(
                "UPDATE {} SET {} WHERE id = ?".format(table, ", ".join(set_clauses)),
                params,
            )
            return cursor.rowcount > 0
