"""
検索ディスパッチモジュール
1回の検索（クエリ＋地域＋ページ数）を複数ページにわたって実行し、
抽出した連絡先を検索セッションに紐付けて保存する
"""

import logging
from typing import Optional

from config.settings import Settings
from errors import InvalidRequestError, ProviderError
from models.search import SearchOutcome
from services.contact_extractor import ContactExtractor
from services.serper import SerperClient, build_search_query
from services.storage import Storage, SEARCHES

logger = logging.getLogger(__name__)


MIN_PAGES = 1
MAX_PAGES = 20


def clamp_pages(pages: Optional[int], max_pages: int = MAX_PAGES) -> int:
    """ページ数を [1, max_pages] に丸める"""
    try:
        value = int(pages) if pages is not None else MIN_PAGES
    except (TypeError, ValueError):
        value = MIN_PAGES
    return max(MIN_PAGES, min(value, max_pages))


class SearchDispatcher:
    """検索ディスパッチャ"""

    def __init__(
        self,
        serper_client: SerperClient,
        storage: Storage,
        extractor: ContactExtractor,
        results_per_page: int = 10,
        max_pages: int = MAX_PAGES,
    ):
        self.serper = serper_client
        self.storage = storage
        self.extractor = extractor
        self.results_per_page = results_per_page
        self.max_pages = max_pages

    @classmethod
    def from_settings(cls, settings: Settings, storage: Storage) -> "SearchDispatcher":
        """設定から生成（SERPER_API_KEY が無ければ即エラー）"""
        settings.require("SERPER_API_KEY")
        return cls(
            serper_client=SerperClient(
                settings.serper_api_key,
                gl=settings.search_gl,
                hl=settings.search_hl,
                timeout=settings.http_timeout,
            ),
            storage=storage,
            extractor=ContactExtractor(storage, fetch_pages=settings.fetch_result_pages),
            results_per_page=settings.search_results_per_page,
            max_pages=min(settings.max_search_pages, MAX_PAGES),
        )

    async def search(
        self,
        query: str,
        location: Optional[str] = None,
        pages: int = 1,
        target_names: Optional[list[str]] = None,
        email_providers: Optional[list[str]] = None,
        websites: Optional[list[str]] = None,
        user_id: Optional[str] = None,
    ) -> SearchOutcome:
        """
        検索を実行

        ページは1から順番に取得する（レート制限対策と、ページ間で
        既出メールの集合を共有するため並列にしない）。
        失敗したページはログに残して次へ進む。全ページ失敗しても例外にはせず
        空の結果を返す。

        Args:
            query: 検索クエリ
            location: 地域（任意）
            pages: ページ数（1〜20に丸める）
            target_names: 対象者名（メールアドレスに含まれるもののみ残す）
            email_providers: メールドメインの絞り込み
            websites: リンク先ドメインの絞り込み
            user_id: 検索の所有ユーザー

        Returns:
            SearchOutcome（検索セッションIDと新規連絡先）
        """
        if not query or not query.strip():
            raise InvalidRequestError("Query is required")

        num_pages = clamp_pages(pages, self.max_pages)
        target_names = target_names or []
        search_query = build_search_query(query, location, target_names)

        logger.info(f"検索開始: \"{search_query}\" ({num_pages}ページ)")

        # 外部APIを呼ぶ前に検索セッションを作成
        session = await self.storage.insert(SEARCHES, {
            "query": query,
            "location": location,
            "user_id": user_id,
        })
        outcome = SearchOutcome(search_id=session["id"])
        seen_emails: set[str] = set()

        for page in range(1, num_pages + 1):
            try:
                results = await self.serper.search(search_query, num=self.results_per_page, page=page)
            except ProviderError as e:
                logger.warning(f"検索エラー (page={page}): {e}")
                outcome.pages_failed += 1
                continue

            outcome.pages_fetched += 1
            logger.info(f"page={page}/{num_pages}: {len(results)}件")

            page_contacts = await self.extractor.extract(
                results,
                seen_emails,
                outcome.search_id,
                email_providers=email_providers or [],
                websites=websites or [],
                target_names=target_names,
            )
            outcome.contacts.extend(page_contacts)
            logger.info(f"page={page}: 新規{len(page_contacts)}件（累計: {len(outcome.contacts)}件）")

        if outcome.pages_failed == num_pages:
            logger.error(f"全ページの取得に失敗: \"{search_query}\"")

        logger.info(f"検索終了: 合計{len(outcome.contacts)}件の連絡先（{num_pages}ページ）")
        return outcome
