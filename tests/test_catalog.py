"""商品カタログテスト

- 作成時の検証・SKU重複
- 部分更新（ProductPatch）
- 在庫操作（set / increase / decrease）
- 一覧のページング
- 他マーチャントの商品へのアクセス
"""

import pytest

from lazsync.catalog.products import (
    ProductCatalog,
    ProductPatch,
    present_product,
    stock_status,
)
from lazsync.db.database import Database
from lazsync.errors import InsufficientStockError, NotFoundError, ValidationError


@pytest.fixture
def db(tmp_path):
    database = Database(db_path=str(tmp_path / "test.db"))
    database.init_tables()
    return database


@pytest.fixture
def catalog(db):
    return ProductCatalog(db)


@pytest.fixture
def merchant_id(db):
    return db.create_merchant({
        "name": "Shop", "email": "shop@example.com", "password_hash": "x",
    })


@pytest.fixture
def product(catalog, merchant_id):
    return catalog.create(merchant_id, {
        "name": "手ぬぐい", "price": 12.5, "sku": "TENUGUI-1", "stock": 10,
    })


class TestCreate:
    """作成テスト"""

    def test_defaults(self, product):
        assert product["status"] == "draft"
        assert product["stock"] == 10
        assert product["sync_data"] is None

    def test_required_fields(self, catalog, merchant_id):
        with pytest.raises(ValidationError) as exc:
            catalog.create(merchant_id, {})
        assert {"name", "price", "sku", "stock"} <= set(exc.value.errors)

    def test_invalid_values(self, catalog, merchant_id):
        with pytest.raises(ValidationError) as exc:
            catalog.create(merchant_id, {
                "name": "x", "price": -1, "sku": "S" * 101, "stock": 1.5,
                "status": "archived", "image_url": "ftp://example.com/a.png",
            })
        assert set(exc.value.errors) == {"price", "sku", "stock", "status", "image_url"}

    def test_duplicate_sku(self, catalog, merchant_id, product):
        with pytest.raises(ValidationError) as exc:
            catalog.create(merchant_id, {
                "name": "別商品", "price": 1, "sku": "TENUGUI-1", "stock": 1,
            })
        assert "sku" in exc.value.errors


class TestUpdate:
    """部分更新テスト"""

    def test_patch_only_allowed_fields(self):
        patch = ProductPatch.from_dict({"price": 20, "merchant_id": 99, "sync_data": {}})
        assert patch.as_dict() == {"price": 20}

    def test_update(self, catalog, merchant_id, product):
        updated = catalog.update(merchant_id, product["id"], {
            "price": 15.0, "status": "active", "merchant_id": 999,
        })
        assert updated["price"] == 15.0
        assert updated["status"] == "active"
        assert updated["merchant_id"] == merchant_id
        assert updated["name"] == "手ぬぐい"

    def test_clear_description(self, catalog, merchant_id, product):
        catalog.update(merchant_id, product["id"], {"description": "説明"})
        updated = catalog.update(merchant_id, product["id"], {"description": None})
        assert updated["description"] is None

    def test_other_merchant(self, catalog, db, product):
        other_id = db.create_merchant({
            "name": "Other", "email": "other@example.com", "password_hash": "x",
        })
        with pytest.raises(NotFoundError):
            catalog.update(other_id, product["id"], {"price": 1})
        with pytest.raises(NotFoundError):
            catalog.delete(other_id, product["id"])


class TestStock:
    """在庫操作テスト"""

    def test_increase(self, catalog, merchant_id, product):
        result = catalog.change_stock(merchant_id, product["id"], 5, "increase")
        assert result == {
            "product_id": product["id"],
            "previous_stock": 10,
            "current_stock": 15,
            "action": "increase",
        }

    def test_set(self, catalog, merchant_id, product):
        result = catalog.change_stock(merchant_id, product["id"], 0, "set")
        assert result["current_stock"] == 0

    def test_decrease_beyond_stock(self, catalog, merchant_id, product):
        """在庫を超える減算は拒否され、在庫は変わらない"""
        with pytest.raises(InsufficientStockError) as exc:
            catalog.change_stock(merchant_id, product["id"], 11, "decrease")
        assert exc.value.status_code == 400
        assert catalog.get(merchant_id, product["id"])["stock"] == 10

    def test_decrease(self, catalog, merchant_id, product):
        result = catalog.change_stock(merchant_id, product["id"], 10, "decrease")
        assert result["current_stock"] == 0

    def test_invalid_action(self, catalog, merchant_id, product):
        with pytest.raises(ValidationError) as exc:
            catalog.change_stock(merchant_id, product["id"], -1, "multiply")
        assert set(exc.value.errors) == {"stock", "action"}


class TestListing:
    """一覧・一括更新・統計テスト"""

    def test_pagination(self, catalog, merchant_id):
        for i in range(5):
            catalog.create(merchant_id, {
                "name": "商品{}".format(i), "price": i, "sku": "P-{}".format(i),
                "stock": i,
            })

        result = catalog.list(merchant_id, {
            "per_page": "2", "page": "2", "sort_by": "price", "sort_order": "asc",
        })
        assert [p["sku"] for p in result["items"]] == ["P-2", "P-3"]
        assert result["meta"] == {
            "current_page": 2, "last_page": 3, "per_page": 2,
            "total": 5, "from": 3, "to": 4,
        }
        assert result["items"][0]["sync_status"] == "not_synced"

    def test_invalid_sort(self, catalog, merchant_id):
        with pytest.raises(ValidationError) as exc:
            catalog.list(merchant_id, {"sort_by": "password_hash"})
        assert "sort_by" in exc.value.errors

    def test_bulk_status_only_own(self, catalog, db, merchant_id, product):
        other_id = db.create_merchant({
            "name": "Other", "email": "other@example.com", "password_hash": "x",
        })
        other = catalog.create(other_id, {
            "name": "他社", "price": 1, "sku": "OTHER-1", "stock": 1,
        })

        updated = catalog.bulk_update_status(
            merchant_id, [product["id"], other["id"]], "active"
        )
        assert updated == 1
        assert catalog.get(other_id, other["id"])["status"] == "draft"

    def test_statistics(self, catalog, merchant_id, product):
        stats = catalog.statistics(merchant_id)
        assert stats["total_products"] == 1
        assert stats["draft_products"] == 1
        assert stats["low_stock"] == 1


class TestPresentation:
    """派生フィールドテスト"""

    @pytest.mark.parametrize("stock,expected", [
        (0, "out_of_stock"), (10, "low_stock"), (11, "in_stock"),
    ])
    def test_stock_status(self, stock, expected):
        assert stock_status(stock) == expected

    def test_sync_status(self):
        product = {
            "stock": 5,
            "sync_data": {"item_id": 1},
            "last_synced_at": "2026-01-01T00:00:00",
        }
        assert present_product(product)["sync_status"] == "synced"
        product["sync_data"] = {"last_sync_status": "error"}
        assert present_product(product)["sync_status"] == "not_synced"
