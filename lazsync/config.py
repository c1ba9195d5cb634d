"""設定読み込み

秘密情報は環境変数（config/.env）、それ以外は config/config.yaml から読む。
環境変数がYAMLより優先。
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

_PROJECT_ROOT = Path(__file__).parent.parent
CONFIG_PATH = _PROJECT_ROOT / "config" / "config.yaml"
ENV_PATH = _PROJECT_ROOT / "config" / ".env"

DEFAULT_API_URL = "https://api.lazada.com/rest"
DEFAULT_AUTH_URL = "https://auth.lazada.com"


def load_yaml_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """config.yamlを読み込む（無ければ空dict）"""
    path = path or CONFIG_PATH
    if not path.exists():
        return {}
    with open(path) as f:
        return yaml.safe_load(f) or {}


@dataclass(frozen=True)
class LazadaConfig:
    """Lazada APIクライアントの設定"""

    app_key: str
    app_secret: str
    redirect_uri: str = ""
    api_url: str = DEFAULT_API_URL
    auth_url: str = DEFAULT_AUTH_URL
    timeout: float = 30.0

    @classmethod
    def from_env(cls, yaml_path: Optional[Path] = None) -> "LazadaConfig":
        section = load_yaml_config(yaml_path).get("lazada", {}) or {}

        app_key = os.environ.get("LAZADA_APP_KEY", "")
        app_secret = os.environ.get("LAZADA_APP_SECRET", "")
        if not app_key or not app_secret:
            raise ValueError(
                "LAZADA_APP_KEY / LAZADA_APP_SECRET が設定されていません。"
                "config/.env に追加してください。"
            )

        return cls(
            app_key=app_key,
            app_secret=app_secret,
            redirect_uri=os.environ.get(
                "LAZADA_REDIRECT_URI", section.get("redirect_uri", "")
            ),
            api_url=os.environ.get(
                "LAZADA_API_URL", section.get("api_url", DEFAULT_API_URL)
            ),
            auth_url=os.environ.get(
                "LAZADA_AUTH_URL", section.get("auth_url", DEFAULT_AUTH_URL)
            ),
            timeout=float(section.get("timeout", 30)),
        )


def load_sync_settings(yaml_path: Optional[Path] = None) -> Dict[str, Any]:
    """ジョブキュー設定（ワーカー数・リトライ回数・待機秒）"""
    section = load_yaml_config(yaml_path).get("sync", {}) or {}
    return {
        "max_workers": int(section.get("max_workers", 4)),
        "max_attempts": int(section.get("max_attempts", 3)),
        "retry_delay": float(section.get("retry_delay", 5.0)),
    }


def default_db_path() -> str:
    """DBファイルパス（LAZSYNC_DB_PATH で上書き可）"""
    return os.environ.get(
        "LAZSYNC_DB_PATH", str(_PROJECT_ROOT / "data" / "lazsync.db")
    )
