"""
リード検索 & メール検証 API
FastAPI + httpx

GET  /health                         - ヘルスチェック
POST /search                         - 検索を1回実行
POST /batches                        - 検索バッチを作成
GET  /batches                        - バッチ一覧
GET  /batches/{batch_id}             - バッチとジョブ一覧
POST /batches/{batch_id}/start       - バッチ開始
POST /batches/{batch_id}/pause       - 一時停止
POST /batches/{batch_id}/resume      - 再開
POST /batches/{batch_id}/reset       - 失敗ジョブを pending に戻す
POST /queue/process                  - running バッチを1ステップ進める
POST /validation/batches             - 検証バッチ送信
POST /validation/queue               - 1件ずつ検証するキューに登録
POST /validation/queue/process       - 検証キューを処理
POST /validation/webhook             - 検証サービスからの完了通知
GET  /validation/lists/{id}/status   - 検証リストの状態確認（ポーリング）
POST /validation/reconcile           - 照合を手動実行
"""

import os
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config.settings import get_settings
from errors import (
    InvalidRequestError,
    NotFoundError,
    PipelineError,
    ProviderError,
)
from models.job import BatchCreateRequest, ResetJobsRequest
from models.search import SearchRequest, SearchResponse
from models.validation import (
    QueueProcessRequest,
    QueueRunResponse,
    ReconcileRequest,
    ReconcileResponse,
    ValidationSubmitRequest,
    ValidationSubmitResponse,
)
from services.batch_manager import BatchManager
from services.batch_scheduler import BatchQueueScheduler
from services.search_dispatcher import SearchDispatcher
from services.storage import get_storage
from services.validation_queue import ValidationQueueWorker
from services.validation_reconciler import ValidationBatchReconciler
from services.validation_submitter import ValidationBatchSubmitter

# ロギング設定
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# FastAPIアプリ
app = FastAPI(
    title="Lead Search & Validation API",
    description="リード検索・連絡先抽出・メール検証API",
    version="1.0.0"
)


class HealthResponse(BaseModel):
    """ヘルスチェックレスポンス"""
    status: str
    message: str
    env_status: Optional[dict] = None


# ====================================
# エラーハンドリング
# ====================================

def error_status(exc: PipelineError) -> int:
    """例外の種類からHTTPステータスを決める"""
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, InvalidRequestError):
        return 400
    if isinstance(exc, ProviderError):
        return 502
    return 500


@app.exception_handler(PipelineError)
async def pipeline_error_handler(request: Request, exc: PipelineError):
    status_code = error_status(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} 失敗: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": exc.message})


# ====================================
# エンドポイント
# ====================================

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """ヘルスチェック"""
    settings = get_settings()
    missing = settings.validate()

    return HealthResponse(
        status="ok" if not missing else "warning",
        message="Lead API is running" if not missing else f"Missing env: {', '.join(missing)}",
        env_status={
            "SERPER_API_KEY": "set" if settings.serper_api_key else "missing",
            "TRUELIST_API_KEY": "set" if settings.truelist_api_key else "missing",
            "MAILS_SO_API_KEY": "set" if settings.mails_so_api_key else "missing",
            "SUPABASE_URL": "set" if settings.supabase_url else "missing",
        }
    )


@app.post("/search", response_model=SearchResponse)
async def search(request: SearchRequest):
    """
    検索を1回実行

    - Serperで指定ページ数分の検索結果を取得
    - 結果からメールアドレス等を抽出して保存
    """
    dispatcher = SearchDispatcher.from_settings(get_settings(), get_storage())
    outcome = await dispatcher.search(
        query=request.query,
        location=request.location,
        pages=request.pages,
        target_names=request.target_names,
        email_providers=request.email_providers,
        websites=request.websites,
        user_id=request.user_id,
    )
    return SearchResponse(
        search_id=outcome.search_id,
        result_count=outcome.result_count,
        contacts=[c.to_dict() for c in outcome.contacts],
    )


@app.post("/batches")
async def create_batch(request: BatchCreateRequest):
    """検索バッチを作成（pending）"""
    manager = BatchManager(get_storage())
    batch = await manager.create_batch(
        name=request.name,
        jobs=[job.model_dump() for job in request.jobs],
        description=request.description,
        delay_seconds=request.delay_seconds,
        user_id=request.user_id,
    )
    return batch.to_dict()


@app.get("/batches")
async def list_batches(user_id: Optional[str] = None, limit: int = 100):
    """バッチ一覧（新しい順）"""
    batches = await BatchManager(get_storage()).list_batches(user_id=user_id, limit=limit)
    return {"batches": [b.to_dict() for b in batches]}


@app.get("/batches/{batch_id}")
async def get_batch(batch_id: str):
    """バッチとジョブ一覧を取得"""
    manager = BatchManager(get_storage())
    batch = await manager.get_batch(batch_id)
    jobs = await manager.list_jobs(batch_id)
    return {**batch.to_dict(), "jobs": [j.to_dict() for j in jobs]}


@app.post("/batches/{batch_id}/start")
async def start_batch(batch_id: str):
    """バッチを開始"""
    batch = await BatchManager(get_storage()).start_batch(batch_id)
    return batch.to_dict()


@app.post("/batches/{batch_id}/pause")
async def pause_batch(batch_id: str):
    """バッチを一時停止"""
    batch = await BatchManager(get_storage()).pause_batch(batch_id)
    return batch.to_dict()


@app.post("/batches/{batch_id}/resume")
async def resume_batch(batch_id: str):
    """バッチを再開"""
    batch = await BatchManager(get_storage()).resume_batch(batch_id)
    return batch.to_dict()


@app.post("/batches/{batch_id}/reset")
async def reset_batch_jobs(batch_id: str, request: Optional[ResetJobsRequest] = None):
    """失敗ジョブ（指定時は running のままのジョブも）を pending に戻す"""
    include_running = request.include_running if request else False
    count = await BatchManager(get_storage()).reset_jobs(batch_id, include_running=include_running)
    return {"batch_id": batch_id, "reset_jobs": count}


@app.post("/queue/process")
async def process_queue():
    """
    running のバッチをそれぞれ1ジョブだけ進める

    ジョブ間の待機は呼び出し間隔で調整する（cron / worker.py）。
    """
    storage = get_storage()
    dispatcher = SearchDispatcher.from_settings(get_settings(), storage)
    report = await BatchQueueScheduler(storage, dispatcher).process_queue()
    return report.to_dict()


@app.post("/validation/batches", response_model=ValidationSubmitResponse)
async def submit_validation_batch(request: ValidationSubmitRequest):
    """メールアドレスを検証バッチとして送信"""
    submitter = ValidationBatchSubmitter.from_settings(get_settings(), get_storage())
    result = await submitter.submit(
        request.emails,
        list_name=request.list_name,
        existing_list_id=request.existing_list_id,
        user_id=request.user_id,
    )
    return ValidationSubmitResponse(
        success=True,
        list_id=result.list_id,
        truelist_batch_id=result.batch_id,
        total_emails=result.total_emails,
        message="Batch created successfully. Use list_id to check status.",
    )


@app.post("/validation/queue", response_model=ValidationSubmitResponse)
async def enqueue_validation(request: ValidationSubmitRequest):
    """メールアドレスを検証キューに登録"""
    result = await ValidationBatchSubmitter(get_storage()).enqueue(
        request.emails,
        list_name=request.list_name,
        user_id=request.user_id,
    )
    return ValidationSubmitResponse(
        success=True,
        list_id=result.list_id,
        total_emails=result.total_emails,
        message=f"{result.total_emails} emails queued for validation.",
    )


@app.post("/validation/queue/process", response_model=QueueRunResponse)
async def process_validation_queue(request: Optional[QueueProcessRequest] = None):
    """検証キューを1バッチ分処理"""
    settings = get_settings()
    worker = ValidationQueueWorker.from_settings(settings, get_storage())
    batch_size = (request.batch_size if request else None) or settings.validation_queue_batch_size
    result = await worker.process_next(batch_size)
    return QueueRunResponse(**result.to_dict())


@app.post("/validation/webhook")
async def validation_webhook(request: Request):
    """
    検証サービスからの完了通知

    body の batch_id（または id）で対象リストを照合する。
    IDが無ければ processing のリストを巡回する。
    """
    try:
        body = await request.json()
    except ValueError:
        body = {}
    batch_id = (body.get("batch_id") or body.get("id")) if isinstance(body, dict) else None

    reconciler = ValidationBatchReconciler.from_settings(get_settings(), get_storage())
    if batch_id:
        logger.info(f"Webhook受信: batch_id={batch_id}")
        result = await reconciler.reconcile(batch_id)
        return {"success": True, **result.to_dict()}

    logger.info("Webhook受信（batch_idなし）: processing リストを巡回")
    results = await reconciler.reconcile_processing()
    return {"success": True, "checked": len(results)}


@app.get("/validation/lists/{list_id}/status", response_model=ReconcileResponse)
async def validation_status(list_id: str):
    """検証リストの状態を確認（未完了なら外部サービスに問い合わせる）"""
    reconciler = ValidationBatchReconciler.from_settings(get_settings(), get_storage())
    result = await reconciler.reconcile_list(list_id)
    return ReconcileResponse(**result.to_dict())


@app.post("/validation/reconcile")
async def reconcile_validation(request: ReconcileRequest):
    """照合を手動実行（force=True で完了済みリストも再取得）"""
    reconciler = ValidationBatchReconciler.from_settings(get_settings(), get_storage())
    if request.batch_id:
        result = await reconciler.reconcile(request.batch_id, force=request.force)
        return result.to_dict()
    if request.list_id:
        result = await reconciler.reconcile_list(request.list_id, force=request.force)
        return result.to_dict()

    results = await reconciler.reconcile_processing()
    return {
        "success": True,
        "checked": len(results),
        "results": [r.to_dict() for r in results],
    }


# ====================================
# メイン
# ====================================

if __name__ == "__main__":
    import uvicorn

    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=True
    )
