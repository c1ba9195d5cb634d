"""SQLiteスキーマ定義

マーチャント・セッショントークン・商品・プラットフォーム接続・同期ログの5テーブル。
冪等に実行可能（IF NOT EXISTS）。
"""

# マーチャント（テナント）
MERCHANTS_TABLE = """
CREATE TABLE IF NOT EXISTS merchants (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    name                TEXT NOT NULL,
    email               TEXT UNIQUE NOT NULL,
    password_hash       TEXT NOT NULL,
    phone               TEXT,
    address             TEXT,
    status              TEXT DEFAULT 'active',    -- 'active','inactive'
    created_at          DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at          DATETIME DEFAULT CURRENT_TIMESTAMP
);
"""

# APIセッショントークン（平文は発行時のみ返す）
MERCHANT_TOKENS_TABLE = """
CREATE TABLE IF NOT EXISTS merchant_tokens (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    merchant_id         INTEGER NOT NULL REFERENCES merchants(id) ON DELETE CASCADE,
    name                TEXT DEFAULT 'auth_token',
    token_hash          TEXT UNIQUE NOT NULL,     -- sha256 hex
    created_at          DATETIME DEFAULT CURRENT_TIMESTAMP,
    last_used_at        DATETIME
);
"""

# 商品カタログ
PRODUCTS_TABLE = """
CREATE TABLE IF NOT EXISTS products (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    merchant_id         INTEGER NOT NULL REFERENCES merchants(id) ON DELETE CASCADE,
    name                TEXT NOT NULL,
    description         TEXT,
    price               REAL NOT NULL CHECK (price >= 0),
    sku                 TEXT UNIQUE NOT NULL,     -- 全マーチャント横断で一意
    stock               INTEGER DEFAULT 0 CHECK (stock >= 0),
    image_url           TEXT,
    status              TEXT DEFAULT 'draft',     -- 'active','inactive','draft'
    sync_data           TEXT,                     -- JSON object (item_id, sku_id, last_error...)
    last_synced_at      DATETIME,
    created_at          DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at          DATETIME DEFAULT CURRENT_TIMESTAMP
);
"""

PRODUCTS_INDEX = """
CREATE INDEX IF NOT EXISTS idx_products_merchant_status
    ON products (merchant_id, status);
"""

# マーケットプレイス接続（OAuthトークン）
PLATFORM_CONNECTIONS_TABLE = """
CREATE TABLE IF NOT EXISTS platform_connections (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    merchant_id         INTEGER NOT NULL REFERENCES merchants(id) ON DELETE CASCADE,
    platform_name       TEXT NOT NULL,            -- 'lazada','shopee','tokopedia'
    access_token        TEXT,
    refresh_token       TEXT,
    token_expires_at    DATETIME,
    connection_data     TEXT,                     -- JSON object (seller_info, last_error...)
    status              TEXT DEFAULT 'active',    -- 'active','disconnected','expired','error'
    connected_at        DATETIME,
    last_sync_at        DATETIME,
    created_at          DATETIME DEFAULT CURRENT_TIMESTAMP,
    updated_at          DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(merchant_id, platform_name)
);
"""

# 同期ログ（追記のみ）
SYNC_LOGS_TABLE = """
CREATE TABLE IF NOT EXISTS sync_logs (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    merchant_id         INTEGER NOT NULL REFERENCES merchants(id) ON DELETE CASCADE,
    action_type         TEXT NOT NULL,            -- 'product_create','product_stock_update'...
    platform_name       TEXT NOT NULL,
    status              TEXT NOT NULL,            -- 'success','failed','pending','partial'
    message             TEXT,
    request_data        TEXT,                     -- JSON
    response_data       TEXT,                     -- JSON
    product_id          INTEGER,                  -- request_data.product_id の検索用
    affected_items      INTEGER DEFAULT 0,
    duration            REAL,                     -- 秒
    created_at          DATETIME DEFAULT CURRENT_TIMESTAMP
);
"""

SYNC_LOGS_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_sync_logs_merchant_status
    ON sync_logs (merchant_id, status);
CREATE INDEX IF NOT EXISTS idx_sync_logs_platform_action
    ON sync_logs (platform_name, action_type);
"""

# 全テーブル定義（作成順）
ALL_TABLES = [
    ("merchants", MERCHANTS_TABLE),
    ("merchant_tokens", MERCHANT_TOKENS_TABLE),
    ("products", PRODUCTS_TABLE),
    ("platform_connections", PLATFORM_CONNECTIONS_TABLE),
    ("sync_logs", SYNC_LOGS_TABLE),
]

ALL_INDEXES = [PRODUCTS_INDEX, SYNC_LOGS_INDEXES]

# 対応プラットフォーム
PLATFORMS = ("lazada", "shopee", "tokopedia")
