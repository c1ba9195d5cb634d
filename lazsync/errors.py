"""エラー分類

APIレスポンスのHTTPステータスとエラー形式をここで一元管理する。
同期ジョブ内のエラーは記録後に再送出し、ジョブキュー側でリトライ判定する。
"""

from typing import Dict, List, Optional


class LazsyncError(Exception):
    """全ドメインエラーの基底クラス"""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict:
        return {"error": self.message}


class ValidationError(LazsyncError):
    """入力値不正（フィールド別エラーマップ付き）"""

    status_code = 422

    def __init__(self, errors: Dict[str, List[str]],
                 message: str = "入力内容に誤りがあります",
                 status_code: Optional[int] = None):
        super().__init__(message, status_code)
        self.errors = errors

    def to_dict(self) -> Dict:
        return {"errors": self.errors}


class AuthError(LazsyncError):
    """認証失敗（401）/ アカウント無効（403）"""

    status_code = 401


class NotFoundError(LazsyncError):
    """リソースなし、または呼び出し元の所有物ではない"""

    status_code = 404


class InsufficientStockError(LazsyncError):
    """在庫数を超える減算"""

    status_code = 400


class SyncPreconditionError(LazsyncError):
    """同期の前提条件を満たしていない（リトライしても解消しない）"""

    status_code = 400


class NoConnectionError(SyncPreconditionError):
    """アクティブなLazada接続がない"""


class ConnectionInvalidError(SyncPreconditionError):
    """接続の検証・トークン更新に失敗"""


class NotYetSyncedError(SyncPreconditionError):
    """Lazada未登録の商品に在庫更新しようとした"""


class UpstreamError(LazsyncError):
    """Lazada側でエラー（メッセージはそのまま返す）"""

    status_code = 500


class UpstreamAuthError(UpstreamError):
    """トークン交換・リフレッシュ失敗"""


class UpstreamApiError(UpstreamError):
    """業務APIの呼び出し失敗"""


class PersistenceError(LazsyncError):
    """DB操作失敗"""

    status_code = 500
