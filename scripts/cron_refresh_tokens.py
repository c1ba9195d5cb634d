"""cron用 Lazadaトークン更新エントリポイント

30分間隔で実行。1時間以内に期限切れになる接続を検証・リフレッシュする。

crontab設定例:
    */30 * * * * cd /path/to/lazada-sync && python scripts/cron_refresh_tokens.py >> logs/refresh.log 2>&1
"""

import logging
import sys
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv

# プロジェクト設定
_project_root = Path(__file__).parent.parent
_env_path = _project_root / "config" / ".env"
if _env_path.exists():
    load_dotenv(_env_path)

sys.path.insert(0, str(_project_root))

# ログ設定
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("cron_refresh_tokens")


def main():
    """期限間近のトークンを更新"""
    from lazsync.config import LazadaConfig
    from lazsync.db.database import Database
    from lazsync.platforms.lazada import REFRESH_MARGIN, LazadaClient

    logger.info("トークン更新開始")
    start = datetime.now()

    database = Database()
    try:
        client = LazadaClient(LazadaConfig.from_env(), database)
    except ValueError as e:
        logger.error(f"Lazadaクライアント初期化失敗: {e}")
        sys.exit(1)

    before = (start + REFRESH_MARGIN).isoformat()
    connections = database.get_connections_expiring_before(
        before, client.platform_name
    )

    failed = 0
    for connection in connections:
        if not client.validate_and_refresh(connection):
            failed += 1

    elapsed = (datetime.now() - start).total_seconds()
    logger.info(
        f"トークン更新完了: "
        f"対象={len(connections)}件, "
        f"失敗={failed}件, "
        f"所要時間={elapsed:.1f}秒"
    )
    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
