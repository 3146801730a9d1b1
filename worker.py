"""
定期実行ワーカー
バッチキュー・検証バッチ照合・検証キューを一定間隔で1ステップずつ進める

各処理は1回の呼び出しで完結するため、cron から --once で起動してもよい。

使い方:
    python worker.py              # WORKER_INTERVAL 秒ごとに繰り返す
    python worker.py --once       # 1回だけ実行
    python worker.py --interval 60
"""

import argparse
import asyncio
import logging

from config.settings import Settings, get_settings
from errors import ConfigurationError, PipelineError
from services.batch_scheduler import BatchQueueScheduler
from services.search_dispatcher import SearchDispatcher
from services.storage import Storage, get_storage
from services.validation_queue import ValidationQueueWorker
from services.validation_reconciler import ValidationBatchReconciler

logger = logging.getLogger(__name__)


async def run_once(settings: Settings, storage: Storage) -> dict:
    """
    全処理を1ステップずつ実行

    APIキーが未設定の処理はスキップする。1つの処理が失敗しても
    残りの処理は実行する。

    Returns:
        処理ごとの結果（スキップ・失敗は None）
    """
    summary = {"search_queue": None, "reconcile": None, "validation_queue": None}

    try:
        dispatcher = SearchDispatcher.from_settings(settings, storage)
        report = await BatchQueueScheduler(storage, dispatcher).process_queue()
        summary["search_queue"] = report.to_dict()
    except ConfigurationError as e:
        logger.debug(f"バッチキュー処理スキップ: {e}")
    except PipelineError as e:
        logger.error(f"バッチキュー処理エラー: {e}")

    try:
        reconciler = ValidationBatchReconciler.from_settings(settings, storage)
        results = await reconciler.reconcile_processing()
        summary["reconcile"] = [r.to_dict() for r in results]
    except ConfigurationError as e:
        logger.debug(f"照合スキップ: {e}")
    except PipelineError as e:
        logger.error(f"照合エラー: {e}")

    try:
        queue_worker = ValidationQueueWorker.from_settings(settings, storage)
        result = await queue_worker.process_next(settings.validation_queue_batch_size)
        summary["validation_queue"] = result.to_dict()
    except ConfigurationError as e:
        logger.debug(f"検証キュー処理スキップ: {e}")
    except PipelineError as e:
        logger.error(f"検証キュー処理エラー: {e}")

    return summary


async def run_forever(settings: Settings, storage: Storage, interval: float) -> None:
    """interval 秒ごとに run_once を繰り返す"""
    logger.info(f"ワーカー起動: {interval}秒間隔")
    while True:
        summary = await run_once(settings, storage)
        logger.info(f"ワーカー1回分完了: {summary}")
        await asyncio.sleep(interval)


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="バッチキュー・検証処理の定期実行ワーカー")
    parser.add_argument("--once", action="store_true", help="1回だけ実行して終了")
    parser.add_argument("--interval", type=float, default=None, help="実行間隔（秒）")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    settings = get_settings()
    storage = get_storage()

    if args.once:
        summary = asyncio.run(run_once(settings, storage))
        logger.info(f"完了: {summary}")
        return

    interval = args.interval if args.interval is not None else settings.worker_interval
    try:
        asyncio.run(run_forever(settings, storage, interval))
    except KeyboardInterrupt:
        logger.info("ワーカー停止")


if __name__ == "__main__":
    main()
