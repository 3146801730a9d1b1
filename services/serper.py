"""
Serper.dev 検索モジュール
Google検索APIを使用して検索結果ページ（organic）を取得
"""

import logging

import httpx

from errors import ProviderError

logger = logging.getLogger(__name__)


# ============================================================
# クエリ生成
# ============================================================

MAX_TARGET_NAMES_IN_QUERY = 5


def build_search_query(
    query: str,
    location: str = None,
    target_names: list[str] = None,
) -> str:
    """
    検索クエリを組み立てる

    - 対象者名（先頭5件）を小文字の完全一致フレーズとして OR で追加
    - 地域があれば半角スペース1つで連結（それ以上のエスケープはしない）
    """
    search_query = query
    names = [n for n in (target_names or []) if n and n.strip()]
    if names:
        names_query = " OR ".join(f'"{n.strip().lower()}"' for n in names[:MAX_TARGET_NAMES_IN_QUERY])
        search_query = f"{search_query} ({names_query})"
    if location:
        search_query = f"{search_query} {location}"
    return search_query


# ============================================================
# Serper API クライアント
# ============================================================

class SerperClient:
    """Serper.dev APIクライアント"""

    API_URL = "https://google.serper.dev/search"

    def __init__(
        self,
        api_key: str,
        gl: str = "it",
        hl: str = "it",
        timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.gl = gl
        self.hl = hl
        self.timeout = timeout
        self.headers = {
            "X-API-KEY": api_key,
            "Content-Type": "application/json",
        }

    async def search(
        self,
        query: str,
        num: int = 10,
        page: int = 1,
    ) -> list[dict]:
        """
        Serper APIで1ページ分を検索

        Returns:
            organic 結果のリスト [{title, snippet, link}, ...]
        """
        payload = {
            "q": query,
            "num": min(num, 100),
            "page": page,
            "gl": self.gl,
            "hl": self.hl,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.API_URL,
                    headers=self.headers,
                    json=payload,
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Serper API HTTP error: {e.response.status_code} (page={page})")
            raise ProviderError(
                f"Serper API error: {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Serper API error: {e} (page={page})")
            raise ProviderError(f"Serper API error: {e}") from e

        if not isinstance(data, dict):
            logger.error(f"Serper API unexpected payload (page={page})")
            raise ProviderError("Serper API returned an unexpected payload")
        organic = data.get("organic") or []
        return organic if isinstance(organic, list) else []
