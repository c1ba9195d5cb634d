"""同期ジョブキュー

ThreadPoolExecutorで同期ジョブを並行実行する。
失敗時はmax_attemptsまでリトライ（各試行が1ジョブとしてログを残す）。
前提条件エラー（接続なし等）はリトライしても解消しないため即失敗。
"""

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Iterable, List, Optional, Tuple

from lazsync.errors import NotFoundError, SyncPreconditionError, ValidationError
from lazsync.sync.product_sync import ProductSyncRunner

logger = logging.getLogger(__name__)

# リトライしても結果が変わらないエラー
NON_RETRYABLE = (SyncPreconditionError, ValidationError, NotFoundError)


class SyncJobQueue:
    """同期ジョブのワーカープール"""

    def __init__(
        self,
        runner: ProductSyncRunner,
        max_workers: int = 4,
        max_attempts: int = 3,
        retry_delay: float = 5.0,
    ):
        """
        Args:
            runner: 同期ジョブ実行者
            max_workers: 同時実行ワーカー数
            max_attempts: 1ジョブの最大試行回数
            retry_delay: リトライ前の待機秒
        """
        self.runner = runner
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="lazsync-sync"
        )

    def submit(self, product_id: int, action: str,
               overrides: Optional[Dict[str, Any]] = None) -> Future:
        """ジョブを投入。結果はFutureで受け取る"""
        logger.info(f"同期ジョブ投入: product_id={product_id} action={action}")
        future = self.executor.submit(self._run, product_id, action, overrides)
        future.add_done_callback(
            lambda f: self._log_outcome(product_id, action, f)
        )
        return future

    @staticmethod
    def _log_outcome(product_id: int, action: str, future: Future) -> None:
        """ジョブの最終結果をログに残す"""
        if future.cancelled():
            logger.warning(f"同期ジョブ取消: product_id={product_id} action={action}")
            return
        error = future.exception()
        if error is not None:
            logger.error(
                f"同期ジョブ最終失敗: product_id={product_id} action={action}: {error}"
            )
        else:
            logger.info(f"同期ジョブ完了: product_id={product_id} action={action}")

    def submit_bulk(self, product_ids: Iterable[int], action: str,
                    overrides: Optional[Dict[str, Any]] = None
                    ) -> List[Tuple[int, Future]]:
        """複数商品のジョブを投入（商品ごとに独立）"""
        return [
            (product_id, self.submit(product_id, action, overrides))
            for product_id in product_ids
        ]

    @staticmethod
    def collect(futures: List[Tuple[int, Future]]) -> List[Dict[str, Any]]:
        """全ジョブの完了を待ち、商品ごとの結果を返す"""
        results = []
        for product_id, future in futures:
            try:
                future.result()
                results.append(
                    {"product_id": product_id, "status": "success", "error": None}
                )
            except Exception as e:
                results.append(
                    {"product_id": product_id, "status": "failed", "error": str(e)}
                )
        return results

    def _run(self, product_id: int, action: str,
             overrides: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.runner.run(product_id, action, overrides)
            except NON_RETRYABLE as e:
                self.runner.failed(product_id, action, e)
                raise
            except Exception as e:
                if attempt >= self.max_attempts:
                    self.runner.failed(product_id, action, e)
                    raise
                logger.warning(
                    f"同期ジョブリトライ ({attempt}/{self.max_attempts}): "
                    f"product_id={product_id} action={action}: {e}"
                )
                time.sleep(self.retry_delay)

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)
