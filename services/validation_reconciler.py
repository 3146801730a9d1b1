"""
検証バッチ照合モジュール
外部検証サービスのバッチ状態を確認し、完了していれば集計値とメールごとの結果を保存する

呼び出し経路:
- Webhook（外部バッチID指定）      → reconcile(batch_id)
- リストIDでのポーリング           → reconcile_list(list_id)
- processing リストの定期スイープ  → reconcile_processing()

メールごとの結果はページング付きJSON APIから取得し、取得できなければ
注釈付きCSVにフォールバックする。どちらの経路も services.verdicts の
同じ対応表で判定する。
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from config.settings import Settings
from errors import InvalidRequestError, NotFoundError, ProviderError, StorageError
from models.validation import ValidationList, ValidationListStatus, ValidationResult, Verdict
from services.storage import Storage, VALIDATION_LISTS, VALIDATION_RESULTS
from services.truelist import TruelistClient
from services.validation_submitter import MARKER_DOMAIN
from services.verdicts import classify, bucket_counts, parse_csv

logger = logging.getLogger(__name__)


BATCH_COMPLETED = "completed"
MAX_RESULT_PAGES = 1000

EMAIL_HEADERS = ("email", "email address", "email_address", "address")
STATE_HEADERS = ("email state", "email_state", "state", "result")
SUB_STATE_HEADERS = ("email sub-state", "email_sub_state", "sub_state", "sub-state", "reason")


@dataclass
class ReconcileResult:
    """照合結果"""
    status: str
    list_id: str
    batch_state: Optional[str] = None
    total_emails: int = 0
    processed_emails: int = 0
    deliverable_count: int = 0
    undeliverable_count: int = 0
    risky_count: int = 0
    unknown_count: int = 0
    inserted_results: int = 0

    @classmethod
    def from_list(
        cls,
        validation_list: ValidationList,
        batch_state: Optional[str] = None,
        inserted_results: int = 0,
    ) -> "ReconcileResult":
        return cls(
            status=validation_list.status.value,
            list_id=validation_list.id,
            batch_state=batch_state,
            total_emails=validation_list.total_emails,
            processed_emails=validation_list.processed_emails,
            deliverable_count=validation_list.deliverable_count,
            undeliverable_count=validation_list.undeliverable_count,
            risky_count=validation_list.risky_count,
            unknown_count=validation_list.unknown_count,
            inserted_results=inserted_results,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "list_id": self.list_id,
            "batch_state": self.batch_state,
            "total_emails": self.total_emails,
            "processed_emails": self.processed_emails,
            "deliverable_count": self.deliverable_count,
            "undeliverable_count": self.undeliverable_count,
            "risky_count": self.risky_count,
            "unknown_count": self.unknown_count,
            "inserted_results": self.inserted_results,
        }


def is_marker_email(email: str) -> bool:
    return email.endswith(f"@{MARKER_DOMAIN}")


# 目印アドレスのドメインは解決できないため、通常は undeliverable に入る
EXCESS_TRIM_ORDER = (Verdict.UNDELIVERABLE, Verdict.UNKNOWN, Verdict.RISKY, Verdict.DELIVERABLE)


def fit_bucket_counts(
    counts: dict[str, int],
    total_emails: int,
    marker_verdicts: list[Verdict],
) -> dict[str, int]:
    """
    外部バッチの集計値からリスト外のアドレス分を除く

    詳細結果で見つかった目印アドレスはその区分から1件ずつ引く。
    それでも合計が total_emails を超える場合（詳細結果が取れなかった等）は
    EXCESS_TRIM_ORDER の順に超過分を引く。
    """
    fitted = dict(counts)
    for verdict in marker_verdicts:
        column = verdict.counter_column
        if fitted.get(column, 0) > 0:
            fitted[column] -= 1

    excess = sum(fitted.values()) - total_emails
    for verdict in EXCESS_TRIM_ORDER:
        if excess <= 0:
            break
        column = verdict.counter_column
        taken = min(fitted.get(column, 0), excess)
        fitted[column] = fitted.get(column, 0) - taken
        excess -= taken
    return fitted


# ====================================
# 結果行の変換
# ====================================

def result_from_json(list_id: str, item: dict[str, Any]) -> Optional[ValidationResult]:
    """JSON APIの1件を結果行に変換（アドレスがなければNone）"""
    email = (item.get("address") or item.get("email") or "").strip().lower()
    if "@" not in email:
        return None
    state = item.get("email_state") or ""
    sub_state = item.get("email_sub_state") or ""
    c = classify(state, sub_state)
    return ValidationResult(
        validation_list_id=list_id,
        email=email,
        result=c.verdict,
        format_valid=c.format_valid,
        domain_valid=c.domain_valid,
        smtp_valid=c.smtp_valid,
        deliverable=c.deliverable,
        catch_all=c.catch_all,
        disposable=c.disposable,
        free_email=bool(item.get("free_email", False)),
        reason=sub_state or state or None,
        full_response=item,
    )


def _find_column(header: list[str], exact: tuple[str, ...], markers: tuple[str, ...], skip: set) -> Optional[int]:
    for i, h in enumerate(header):
        if i not in skip and h in exact:
            return i
    for i, h in enumerate(header):
        if i not in skip and any(m in h for m in markers):
            return i
    return None


def find_csv_columns(header: list[str]) -> tuple[Optional[int], Optional[int], Optional[int]]:
    """
    ヘッダ行から (メール列, 状態列, サブ状態列) の位置を探す

    大文字小文字は区別しない。完全一致を優先し、なければ部分一致
    （"email"/"address"、"state"/"result"）で探す。
    """
    lowered = [h.strip().lower() for h in header]

    sub_idx = _find_column(lowered, SUB_STATE_HEADERS, ("sub-state", "sub_state", "substate"), set())
    taken = {sub_idx} if sub_idx is not None else set()

    state_idx = _find_column(lowered, STATE_HEADERS, ("state", "result"), taken)
    if state_idx is not None:
        taken = taken | {state_idx}

    email_idx = _find_column(lowered, EMAIL_HEADERS, ("email", "address"), taken)
    return email_idx, state_idx, sub_idx


def parse_annotated_csv(text: str, list_id: str) -> list[ValidationResult]:
    """
    注釈付きCSVを結果行に変換

    列が見つからない場合、メール列は先頭データ行で '@' を含む列、
    状態列は最終列とみなす。
    """
    rows = parse_csv(text)
    if len(rows) < 2:
        logger.info("CSVにデータ行がありません")
        return []

    header, data_rows = rows[0], rows[1:]
    email_idx, state_idx, sub_idx = find_csv_columns(header)
    if email_idx is None:
        email_idx = next((i for i, v in enumerate(data_rows[0]) if "@" in v), 0)
    logger.debug(f"CSV列: email={email_idx}, state={state_idx}, sub_state={sub_idx}")

    results = []
    for row in data_rows:
        if len(row) < 2 or email_idx >= len(row):
            continue
        email = row[email_idx].strip().lower()
        if "@" not in email:
            continue

        state_pos = state_idx if state_idx is not None else len(row) - 1
        state = row[state_pos].lower() if state_pos < len(row) else ""
        sub_state = row[sub_idx].lower() if sub_idx is not None and sub_idx < len(row) else ""

        c = classify(state, sub_state)
        results.append(ValidationResult(
            validation_list_id=list_id,
            email=email,
            result=c.verdict,
            format_valid=c.format_valid,
            domain_valid=c.domain_valid,
            smtp_valid=c.smtp_valid,
            deliverable=c.deliverable,
            catch_all=c.catch_all,
            disposable=c.disposable,
            free_email=False,
            reason=sub_state or state or None,
            full_response={"state": state, "sub_state": sub_state, "row": row},
        ))
    return results


# ====================================
# 照合
# ====================================

class ValidationBatchReconciler:
    """検証バッチ照合"""

    def __init__(
        self,
        storage: Storage,
        truelist_client: TruelistClient,
        page_size: int = 100,
        page_delay: float = 0.5,
        insert_chunk: int = 100,
    ):
        self.storage = storage
        self.truelist = truelist_client
        self.page_size = page_size
        self.page_delay = page_delay
        self.insert_chunk = insert_chunk

    @classmethod
    def from_settings(cls, settings: Settings, storage: Storage) -> "ValidationBatchReconciler":
        """設定から生成（TRUELIST_API_KEY が無ければ即エラー）"""
        settings.require("TRUELIST_API_KEY")
        return cls(
            storage=storage,
            truelist_client=TruelistClient(settings.truelist_api_key, timeout=settings.http_timeout),
            page_size=settings.results_page_size,
            page_delay=settings.results_page_delay,
            insert_chunk=settings.results_insert_chunk,
        )

    async def reconcile(self, batch_id: str, force: bool = False) -> ReconcileResult:
        """
        外部バッチIDで照合（Webhook経由）

        Args:
            batch_id: 外部バッチID
            force: 完了済みリストでも結果を再取得する（結果行は重複して追加される）
        """
        rows = await self.storage.select(VALIDATION_LISTS, {"truelist_batch_id": batch_id}, limit=1)
        if not rows:
            raise NotFoundError(f"Validation list not found for batch {batch_id}")
        return await self._reconcile(ValidationList.from_row(rows[0]), force=force)

    async def reconcile_list(self, list_id: str, force: bool = False) -> ReconcileResult:
        """検証リストIDで照合（ポーリング経由）"""
        row = await self.storage.get(VALIDATION_LISTS, list_id)
        if row is None:
            raise NotFoundError(f"Validation list {list_id} not found")
        return await self._reconcile(ValidationList.from_row(row), force=force)

    async def reconcile_processing(self, limit: int = 5) -> list[ReconcileResult]:
        """
        processing かつ外部バッチIDを持つリストをまとめて照合

        1件の外部API失敗は記録してスキップし、残りのリストは続行する。
        """
        rows = await self.storage.select(
            VALIDATION_LISTS,
            {"status": ValidationListStatus.PROCESSING.value},
            order_by="created_at",
        )
        lists = [ValidationList.from_row(r) for r in rows if r.get("truelist_batch_id")][:limit]
        if not lists:
            logger.info("照合対象のリストなし")
            return []

        logger.info(f"照合対象: {len(lists)}リスト")
        results = []
        for validation_list in lists:
            try:
                results.append(await self._reconcile(validation_list))
            except ProviderError as e:
                logger.warning(f"照合スキップ: {validation_list.id} - {e}")
        return results

    async def _reconcile(self, validation_list: ValidationList, force: bool = False) -> ReconcileResult:
        list_id = validation_list.id

        if validation_list.status == ValidationListStatus.COMPLETED and not force:
            logger.info(f"照合済み: {list_id}")
            return ReconcileResult.from_list(validation_list)

        batch_id = validation_list.truelist_batch_id
        if not batch_id:
            raise InvalidRequestError(f"No Truelist batch ID found for list {list_id}")

        batch = await self.truelist.get_batch(batch_id)
        batch_state = batch.get("batch_state")
        processed = min(int(batch.get("processed_count") or 0), validation_list.total_emails)
        logger.info(f"バッチ状態: {batch_id} {batch_state} ({processed}/{validation_list.total_emails})")

        if batch_state != BATCH_COMPLETED:
            await self.storage.update(VALIDATION_LISTS, {"id": list_id}, {"processed_emails": processed})
            return ReconcileResult(
                status=ValidationListStatus.PROCESSING.value,
                list_id=list_id,
                batch_state=batch_state,
                total_emails=validation_list.total_emails,
                processed_emails=processed,
            )

        results = await self._fetch_details(list_id, batch_id, batch.get("annotated_csv_url"))

        # 目印アドレスは結果に含めず、集計からも除く
        markers = [r for r in results if is_marker_email(r.email)]
        results = [r for r in results if not is_marker_email(r.email)]
        counts = fit_bucket_counts(
            bucket_counts(batch),
            validation_list.total_emails,
            [m.result for m in markers],
        )

        await self.storage.update(VALIDATION_LISTS, {"id": list_id}, {
            "processed_emails": processed,
            "status": ValidationListStatus.COMPLETED.value,
            **counts,
        })
        logger.info(f"バッチ完了: {batch_id} {counts}")

        inserted = await self._insert_results(results)

        row = await self.storage.get(VALIDATION_LISTS, list_id)
        final = ValidationList.from_row(row) if row else validation_list
        return ReconcileResult.from_list(final, batch_state=batch_state, inserted_results=inserted)

    async def _fetch_details(
        self,
        list_id: str,
        batch_id: str,
        csv_url: Optional[str],
    ) -> list[ValidationResult]:
        """メールごとの結果を取得（JSON優先・CSVフォールバック）"""
        results: list[ValidationResult] = []
        try:
            results = await self._fetch_json_results(list_id, batch_id)
        except ProviderError as e:
            logger.warning(f"JSON結果の取得に失敗: {batch_id} - {e}")
            results = []

        if results or not csv_url:
            if not results:
                logger.info(f"詳細結果なし: {batch_id}")
            return results

        logger.info(f"注釈付きCSVから取得: {batch_id}")
        try:
            text = await self.truelist.download_csv(csv_url)
        except ProviderError as e:
            logger.error(f"CSV取得失敗: {batch_id} - {e}")
            return []
        return parse_annotated_csv(text, list_id)

    async def _fetch_json_results(self, list_id: str, batch_id: str) -> list[ValidationResult]:
        """ページング付きJSON APIから全件取得（件数がページサイズ未満のページで終了）"""
        results = []
        for page in range(1, MAX_RESULT_PAGES + 1):
            items = await self.truelist.list_emails(batch_id, page=page, per_page=self.page_size)
            for item in items:
                result = result_from_json(list_id, item)
                if result is not None:
                    results.append(result)
            logger.debug(f"結果ページ {page}: {len(items)}件")
            if len(items) < self.page_size:
                break
            await asyncio.sleep(self.page_delay)
        return results

    async def _insert_results(self, results: list[ValidationResult]) -> int:
        """一定件数ごとに分割して挿入（失敗したチャンクは記録して続行）"""
        inserted = 0
        for start in range(0, len(results), self.insert_chunk):
            chunk = results[start:start + self.insert_chunk]
            try:
                await self.storage.insert_many(VALIDATION_RESULTS, [r.to_row() for r in chunk])
            except StorageError as e:
                logger.error(f"結果の挿入に失敗 (chunk={start // self.insert_chunk + 1}): {e}")
                continue
            inserted += len(chunk)
        logger.info(f"結果保存: {inserted}/{len(results)}件")
        return inserted
