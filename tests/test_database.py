"""データベーステスト

- スキーマ冪等性（2回実行してもエラーなし）
- SKU・メールアドレスの一意制約
- 在庫の原子的な減算
- 接続のupsert
- 同期ログの追記と検索
- マーチャント削除時のカスケード
"""

import os
import tempfile

import pytest

from lazsync.db.database import Database
from lazsync.errors import ValidationError


@pytest.fixture
def db():
    """テスト用の一時DBを作成"""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    database = Database(db_path=db_path)
    database.init_tables()

    yield database

    # クリーンアップ
    os.unlink(db_path)
    for ext in ["-journal", "-wal", "-shm"]:
        p = db_path + ext
        if os.path.exists(p):
            os.unlink(p)


@pytest.fixture
def merchant_id(db):
    return db.create_merchant({
        "name": "Test Shop",
        "email": "shop@example.com",
        "password_hash": "x",
    })


def _product(sku="SKU-1", **overrides):
    data = {"name": "テスト商品", "price": 100.0, "sku": sku, "stock": 5,
            "status": "active"}
    data.update(overrides)
    return data


class TestSchemaIdempotency:
    """スキーマ冪等性テスト"""

    def test_init_tables_twice(self, db):
        """テーブル作成を2回実行してもエラーにならない"""
        tables1 = db.init_tables()
        tables2 = db.init_tables()
        assert tables1 == tables2
        assert len(tables1) == 5

    def test_stats(self, db, merchant_id):
        stats = db.get_stats()
        assert stats["merchants"] == 1
        assert stats["products"] == 0
        assert stats["sync_logs"] == 0


class TestMerchants:
    """マーチャントテスト"""

    def test_duplicate_email(self, db, merchant_id):
        """同じメールアドレスは登録できない"""
        with pytest.raises(ValidationError) as exc:
            db.create_merchant({
                "name": "Other",
                "email": "shop@example.com",
                "password_hash": "y",
            })
        assert "email" in exc.value.errors

    def test_default_status_active(self, db, merchant_id):
        assert db.get_merchant(merchant_id)["status"] == "active"

    def test_cascade_delete(self, db, merchant_id):
        """マーチャント削除で商品・接続・ログも削除"""
        db.create_product(merchant_id, _product())
        db.upsert_connection(merchant_id, "lazada", {"access_token": "a"})
        db.create_sync_log({
            "merchant_id": merchant_id,
            "action_type": "product_create",
            "status": "success",
        })

        assert db.delete_merchant(merchant_id) is True
        stats = db.get_stats()
        assert stats["products"] == 0
        assert stats["platform_connections"] == 0
        assert stats["sync_logs"] == 0


class TestProducts:
    """商品テスト"""

    def test_create_and_get(self, db, merchant_id):
        product_id = db.create_product(merchant_id, _product())
        product = db.get_product(product_id)
        assert product["sku"] == "SKU-1"
        assert product["stock"] == 5
        assert product["sync_data"] is None

    def test_sku_unique_across_merchants(self, db, merchant_id):
        """SKUはマーチャント横断で一意"""
        other_id = db.create_merchant({
            "name": "Other", "email": "other@example.com", "password_hash": "x",
        })
        db.create_product(merchant_id, _product())
        with pytest.raises(ValidationError) as exc:
            db.create_product(other_id, _product())
        assert "sku" in exc.value.errors

    def test_get_product_scoped_by_merchant(self, db, merchant_id):
        product_id = db.create_product(merchant_id, _product())
        assert db.get_product(product_id, merchant_id=merchant_id) is not None
        assert db.get_product(product_id, merchant_id=merchant_id + 1) is None

    def test_decrease_stock_insufficient(self, db, merchant_id):
        """在庫不足の減算は更新されない"""
        product_id = db.create_product(merchant_id, _product(stock=3))
        assert db.decrease_product_stock(product_id, 5) is False
        assert db.get_product(product_id)["stock"] == 3
        assert db.decrease_product_stock(product_id, 3) is True
        assert db.get_product(product_id)["stock"] == 0

    def test_sync_state_json_roundtrip(self, db, merchant_id):
        product_id = db.create_product(merchant_id, _product())
        db.update_product_sync_state(product_id, {"item_id": 123, "seller_sku": "SKU-1"})
        product = db.get_product(product_id)
        assert product["sync_data"] == {"item_id": 123, "seller_sku": "SKU-1"}
        assert product["last_synced_at"] is not None

    def test_update_ignores_unknown_columns(self, db, merchant_id):
        """ホワイトリスト外のカラムは更新しない"""
        product_id = db.create_product(merchant_id, _product())
        assert db.update_product(product_id, {"merchant_id": 999}) is False
        assert db.get_product(product_id)["merchant_id"] == merchant_id

    def test_filters(self, db, merchant_id):
        db.create_product(merchant_id, _product("A", stock=0))
        db.create_product(merchant_id, _product("B", stock=5, name="青い帽子"))
        db.create_product(merchant_id, _product("C", stock=50, status="draft"))

        assert db.count_products(merchant_id, stock_filter="out_of_stock") == 1
        assert db.count_products(merchant_id, stock_filter="low_stock") == 1
        assert db.count_products(merchant_id, stock_filter="in_stock") == 2
        assert db.count_products(merchant_id, status="draft") == 1
        assert db.count_products(merchant_id, search="帽子") == 1

        rows = db.get_products(merchant_id, sort_by="stock", sort_order="asc")
        assert [r["sku"] for r in rows] == ["A", "B", "C"]

    def test_statistics(self, db, merchant_id):
        db.create_product(merchant_id, _product("A", price=10.0, stock=0))
        db.create_product(merchant_id, _product("B", price=20.5, stock=3))
        db.create_product(merchant_id, _product("C", price=99.0, status="draft"))

        stats = db.get_product_statistics(merchant_id)
        assert stats["total_products"] == 3
        assert stats["active_products"] == 2
        assert stats["draft_products"] == 1
        assert stats["out_of_stock"] == 1
        assert stats["low_stock"] == 2
        assert stats["total_value"] == 30.5


class TestConnections:
    """プラットフォーム接続テスト"""

    def test_upsert_single_row(self, db, merchant_id):
        """merchant + platform で1行のみ"""
        first = db.upsert_connection(merchant_id, "lazada", {"access_token": "old"})
        second = db.upsert_connection(merchant_id, "lazada", {"access_token": "new"})
        assert first == second
        assert db.get_connection(first)["access_token"] == "new"
        assert len(db.get_connections(merchant_id=merchant_id)) == 1

    def test_active_connection_only(self, db, merchant_id):
        conn_id = db.upsert_connection(merchant_id, "lazada", {"access_token": "a"})
        assert db.get_active_connection(merchant_id)["id"] == conn_id

        db.update_connection(conn_id, {"status": "error"})
        assert db.get_active_connection(merchant_id) is None

    def test_connection_data_json(self, db, merchant_id):
        conn_id = db.upsert_connection(merchant_id, "lazada", {
            "connection_data": {"seller_info": {"name": "shop"}},
        })
        db.update_connection(conn_id, {"connection_data": {"last_error": {"message": "x"}}})
        assert db.get_connection(conn_id)["connection_data"] == {
            "last_error": {"message": "x"}
        }

    def test_expiring_before(self, db, merchant_id):
        db.upsert_connection(merchant_id, "lazada", {
            "access_token": "a", "token_expires_at": "2026-01-01T00:00:00",
        })
        assert len(db.get_connections_expiring_before("2026-01-02T00:00:00")) == 1
        assert len(db.get_connections_expiring_before("2025-12-31T00:00:00")) == 0


class TestSyncLogs:
    """同期ログテスト"""

    def test_product_id_lookup(self, db, merchant_id):
        """request_data.product_id で検索できる"""
        for product_id, status in [(1, "success"), (2, "failed"), (1, "failed")]:
            db.create_sync_log({
                "merchant_id": merchant_id,
                "action_type": "product_update",
                "status": status,
                "request_data": {"product_id": product_id, "action": "update"},
                "duration": 0.5,
            })

        logs = db.get_sync_logs(merchant_id, product_id=1)
        assert len(logs) == 2
        assert logs[0]["status"] == "failed"  # 新しい順
        assert logs[0]["request_data"]["action"] == "update"
        assert db.count_sync_logs(merchant_id, status="failed") == 2

    def test_sync_statistics(self, db, merchant_id):
        product_id = db.create_product(merchant_id, _product())
        db.create_product(merchant_id, _product("SKU-2"))
        db.update_product_sync_state(product_id, {"item_id": 1})
        db.create_sync_log({
            "merchant_id": merchant_id,
            "action_type": "product_create",
            "status": "success",
        })

        stats = db.get_sync_statistics(
            merchant_id, "2000-01-01T00:00:00", "2000-01-01T00:00:00"
        )
        assert stats["products_total"] == 2
        assert stats["products_synced"] == 1
        assert stats["successful_24h"] == 1
        assert stats["by_action_7d"] == {"product_create": 1}
