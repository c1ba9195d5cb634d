"""商品同期ジョブテスト

Lazadaクライアントはモック（transform_for_lazadaのみ実物）。
- アクション別のペイロード
- 成功時・失敗時のsync_dataと同期ログ
- 接続なし・接続無効・未登録の前提条件エラー
"""

from unittest.mock import MagicMock

import pytest

from lazsync.config import LazadaConfig
from lazsync.db.database import Database
from lazsync.errors import (
    ConnectionInvalidError,
    NoConnectionError,
    NotFoundError,
    NotYetSyncedError,
    UpstreamApiError,
    ValidationError,
)
from lazsync.platforms.lazada import LazadaClient
from lazsync.sync.product_sync import (
    ProductSyncRunner,
    SyncAction,
    SyncOverrides,
    summarize_logs,
)


@pytest.fixture
def db(tmp_path):
    database = Database(db_path=str(tmp_path / "test.db"))
    database.init_tables()
    return database


@pytest.fixture
def client():
    real = LazadaClient(LazadaConfig(app_key="k", app_secret="s"))
    mock = MagicMock()
    mock.transform_for_lazada.side_effect = real.transform_for_lazada
    mock.validate_and_refresh.return_value = True
    mock.create_product.return_value = {
        "code": "0", "data": {"item_id": 111, "sku_id": 222},
    }
    mock.update_product.return_value = {"code": "0", "data": {"item_id": 111}}
    mock.update_price_quantity.return_value = {"code": "0"}
    return mock


@pytest.fixture
def runner(db, client):
    return ProductSyncRunner(db, client)


@pytest.fixture
def merchant_id(db):
    return db.create_merchant({
        "name": "Shop", "email": "shop@example.com", "password_hash": "x",
    })


@pytest.fixture
def connection(db, merchant_id):
    conn_id = db.upsert_connection(merchant_id, "lazada", {
        "access_token": "acc", "refresh_token": "ref",
        "token_expires_at": "2099-01-01T00:00:00",
    })
    return db.get_connection(conn_id)


@pytest.fixture
def product_id(db, merchant_id):
    return db.create_product(merchant_id, {
        "name": "テスト商品", "price": 25.0, "sku": "TEST-1", "stock": 50,
        "status": "active",
    })


def _payload(mock_method):
    return mock_method.call_args[0][0]["Request"]["Product"]


class TestCreate:
    """createアクションテスト"""

    def test_success_updates_sync_data(self, runner, db, client, connection, product_id):
        runner.run(product_id, "create")

        client.create_product.assert_called_once()
        assert client.create_product.call_args[0][1] == "acc"
        assert _payload(client.create_product)["AssociatedSku"] == "TEST-1"

        product = db.get_product(product_id)
        assert product["sync_data"] == {
            "item_id": 111,
            "sku_id": 222,
            "seller_sku": "TEST-1",
            "last_sync_action": "create",
            "last_sync_status": "success",
        }
        assert product["last_synced_at"] is not None

    def test_success_log(self, runner, db, merchant_id, connection, product_id):
        runner.run(product_id, SyncAction.CREATE, {"category_id": "10001"})

        logs = db.get_sync_logs(merchant_id)
        assert len(logs) == 1
        log = logs[0]
        assert log["action_type"] == "product_create"
        assert log["platform_name"] == "lazada"
        assert log["status"] == "success"
        assert log["affected_items"] == 1
        assert log["duration"] >= 0
        assert log["request_data"] == {
            "product_id": product_id,
            "action": "create",
            "sync_data": {"category_id": "10001"},
        }
        assert log["response_data"]["data"]["item_id"] == 111

    def test_overrides_merged(self, runner, client, connection, product_id):
        runner.run(product_id, "create", {"price": 30.0, "brand": "Acme"})
        payload = _payload(client.create_product)
        assert payload["Skus"][0]["price"] == 30.0
        assert payload["Attributes"]["brand"] == "Acme"

    def test_unknown_override_rejected(self, runner, db, client, merchant_id,
                                       connection, product_id):
        """未対応キーは失敗ログを残して拒否"""
        with pytest.raises(ValidationError) as exc:
            runner.run(product_id, "create", {"sku": "OTHER"})
        assert exc.value.status_code == 400
        client.create_product.assert_not_called()

        logs = db.get_sync_logs(merchant_id)
        assert len(logs) == 1
        assert logs[0]["status"] == "failed"
        assert logs[0]["request_data"]["sync_data"] == {"sku": "OTHER"}

    def test_invalid_override_values_rejected(self, runner, db, client, merchant_id,
                                              connection, product_id):
        """負の在庫・数値でない価格は送信前に拒否"""
        with pytest.raises(ValidationError) as exc:
            runner.run(product_id, "create", {"stock": -5, "price": "free"})
        assert set(exc.value.errors) == {"sync_data.stock", "sync_data.price"}
        client.create_product.assert_not_called()
        assert db.get_product(product_id)["sync_data"]["last_sync_status"] == "error"
        assert db.count_sync_logs(merchant_id, status="failed") == 1


class TestUpdateAndDelete:
    """update / deleteアクションテスト"""

    def test_update_includes_item_id(self, runner, db, client, connection, product_id):
        db.update_product_sync_state(product_id, {"item_id": 999, "seller_sku": "TEST-1"})
        runner.run(product_id, "update")
        assert _payload(client.update_product)["ItemId"] == 999

    def test_update_without_item_id(self, runner, client, connection, product_id):
        runner.run(product_id, "update")
        assert "ItemId" not in _payload(client.update_product)

    def test_delete_deactivates(self, runner, db, client, connection, product_id):
        """deleteはLazada上で非公開化する"""
        db.update_product_sync_state(product_id, {"item_id": 999, "seller_sku": "TEST-1"})
        runner.run(product_id, "delete")

        payload = _payload(client.update_product)
        assert payload["ItemId"] == 999
        assert payload["Skus"][0]["Status"] == "inactive"
        # ローカルの商品ステータスは変えない
        assert db.get_product(product_id)["status"] == "active"
        assert db.get_product(product_id)["sync_data"]["last_sync_action"] == "delete"


class TestStockUpdate:
    """stock_updateアクションテスト"""

    def test_not_yet_synced(self, runner, db, client, merchant_id, connection, product_id):
        """未登録商品の在庫更新は失敗し、ログが1件残る"""
        with pytest.raises(NotYetSyncedError):
            runner.run(product_id, "stock_update")

        client.update_price_quantity.assert_not_called()
        product = db.get_product(product_id)
        assert product["sync_data"]["last_sync_status"] == "error"
        assert product["sync_data"]["last_error"]

        logs = db.get_sync_logs(merchant_id)
        assert len(logs) == 1
        assert logs[0]["status"] == "failed"
        assert logs[0]["action_type"] == "product_stock_update"

    def test_minimal_payload(self, runner, db, client, connection, product_id):
        db.update_product_sync_state(product_id, {"item_id": 1, "seller_sku": "TEST-1"})
        runner.run(product_id, "stock_update", {"stock": 7})

        body = client.update_price_quantity.call_args[0][0]
        assert body == {
            "Request": {"Product": {"Skus": [
                {"SellerSku": "TEST-1", "quantity": 7, "price": 25.0},
            ]}}
        }
        sync_data = db.get_product(product_id)["sync_data"]
        assert sync_data["item_id"] == 1
        assert sync_data["last_sync_action"] == "stock_update"


class TestPreconditions:
    """前提条件テスト"""

    def test_no_connection(self, runner, db, client, merchant_id, product_id):
        """接続なしはNoConnectionError、失敗ログ1件"""
        with pytest.raises(NoConnectionError):
            runner.run(product_id, "create")

        client.validate_and_refresh.assert_not_called()
        logs = db.get_sync_logs(merchant_id)
        assert len(logs) == 1
        assert logs[0]["status"] == "failed"
        assert db.get_product(product_id)["sync_data"]["last_sync_status"] == "error"

    def test_inactive_connection_counts_as_missing(self, runner, db, merchant_id,
                                                   connection, product_id):
        db.update_connection(connection["id"], {"status": "disconnected"})
        with pytest.raises(NoConnectionError):
            runner.run(product_id, "create")

    def test_invalid_connection(self, runner, db, client, merchant_id,
                                connection, product_id):
        client.validate_and_refresh.return_value = False
        with pytest.raises(ConnectionInvalidError):
            runner.run(product_id, "create")

        client.create_product.assert_not_called()
        assert db.count_sync_logs(merchant_id, status="failed") == 1

    def test_missing_product(self, runner, db, merchant_id):
        with pytest.raises(NotFoundError):
            runner.run(12345, "create")
        assert db.get_sync_logs(merchant_id) == []

    def test_invalid_action(self, runner, db, merchant_id, product_id):
        """不正なアクションも失敗ログを残す"""
        with pytest.raises(ValidationError) as exc:
            runner.run(product_id, "archive")
        assert "action" in exc.value.errors

        logs = db.get_sync_logs(merchant_id)
        assert len(logs) == 1
        assert logs[0]["status"] == "failed"
        assert logs[0]["action_type"] == "product_archive"


class TestUpstreamFailure:
    """Lazada APIエラーテスト"""

    def test_error_recorded_then_cleared(self, runner, db, client, merchant_id,
                                         connection, product_id):
        client.create_product.side_effect = UpstreamApiError("Lazada API Error: boom")
        with pytest.raises(UpstreamApiError):
            runner.run(product_id, "create")

        sync_data = db.get_product(product_id)["sync_data"]
        assert sync_data["last_sync_status"] == "error"
        assert sync_data["last_error"] == "Lazada API Error: boom"
        failed = db.get_sync_logs(merchant_id, status="failed")
        assert failed[0]["message"] == "Lazada API Error: boom"

        client.create_product.side_effect = None
        runner.run(product_id, "create")
        sync_data = db.get_product(product_id)["sync_data"]
        assert sync_data["last_sync_status"] == "success"
        assert "last_error" not in sync_data
        assert db.count_sync_logs(merchant_id) == 2

    def test_failed_hook(self, runner, db, product_id):
        runner.failed(product_id, "create", RuntimeError("gave up"))
        sync_data = db.get_product(product_id)["sync_data"]
        assert sync_data == {"last_sync_status": "error", "last_error": "gave up"}

    def test_failed_hook_missing_product(self, runner):
        runner.failed(12345, "create", RuntimeError("gave up"))


class TestSyncOverrides:
    """上書き値の検証テスト"""

    def test_valid(self):
        overrides = SyncOverrides.from_dict({
            "price": 30.0, "stock": 0, "status": "inactive", "brand": "Acme",
        })
        assert overrides.as_dict() == {
            "price": 30.0, "stock": 0, "status": "inactive", "brand": "Acme",
        }

    @pytest.mark.parametrize("data,key", [
        ({"stock": -5}, "sync_data.stock"),
        ({"stock": 1.5}, "sync_data.stock"),
        ({"price": "free"}, "sync_data.price"),
        ({"price": -1}, "sync_data.price"),
        ({"status": "bogus"}, "sync_data.status"),
        ({"image_url": "ftp://example.com/a.jpg"}, "sync_data.image_url"),
        ({"name": ""}, "sync_data.name"),
        ({"category_id": 10001}, "sync_data.category_id"),
        ({"package_weight": 0.5}, "sync_data.package_weight"),
    ])
    def test_invalid_values(self, data, key):
        with pytest.raises(ValidationError) as exc:
            SyncOverrides.from_dict(data)
        assert exc.value.status_code == 400
        assert key in exc.value.errors

    def test_not_a_dict(self):
        with pytest.raises(ValidationError):
            SyncOverrides.from_dict(["stock"])


class TestSummary:
    def test_summarize_logs(self):
        logs = [
            {"status": "failed", "created_at": "2026-01-02"},
            {"status": "success", "created_at": "2026-01-01"},
        ]
        assert summarize_logs(logs) == {
            "total_syncs": 2,
            "successful_syncs": 1,
            "failed_syncs": 1,
            "last_sync_status": "failed",
            "last_sync_at": "2026-01-02",
        }
        assert summarize_logs([])["last_sync_status"] is None
