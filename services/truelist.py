"""
Truelist 検証APIクライアント
メールアドレスのバッチ検証（作成・状態確認・結果取得）
"""

import json
import logging
from typing import Any, Optional

import httpx

from errors import ProviderError

logger = logging.getLogger(__name__)


class TruelistClient:
    """Truelist APIクライアント"""

    BASE_URL = "https://api.truelist.io/api/v1"

    def __init__(self, api_key: str, timeout: float = 30.0):
        self.api_key = api_key
        self.timeout = timeout
        self.headers = {"Authorization": f"Bearer {api_key}"}

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        data: Optional[dict[str, Any]] = None,
    ) -> Any:
        url = f"{self.BASE_URL}/{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                if data is not None:
                    # multipart/form-data で送信
                    files = {key: (None, value) for key, value in data.items()}
                    response = await client.request(method, url, headers=self.headers, params=params, files=files)
                else:
                    response = await client.request(method, url, headers=self.headers, params=params)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"Truelist API HTTPエラー: {e.response.status_code} {e.response.text}")
            raise ProviderError(
                f"Truelist API error: {e.response.status_code} - {e.response.text}",
                status_code=e.response.status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Truelist API エラー: {e}")
            raise ProviderError(f"Truelist API error: {e}") from e

    async def create_batch(
        self,
        emails: list[str],
        filename: str,
        webhook_url: Optional[str] = None,
    ) -> dict[str, Any]:
        """
        バッチを作成

        Args:
            emails: メールアドレス（1行1件の [[email], ...] 形式で送信）
            filename: アップロードファイル名（同一内容の重複アップロード判定を避けるため一意にする）
            webhook_url: 完了通知先（任意）

        Returns:
            {"id", "batch_state", "email_count", ...}
        """
        form = {
            "data": json.dumps([[email] for email in emails]),
            "filename": filename,
        }
        if webhook_url:
            form["webhook_url"] = webhook_url

        logger.info(f"Truelistバッチ作成: {len(emails)}件 ({filename})")
        return await self._request("POST", "batches", data=form)

    async def get_batch(self, batch_id: str) -> dict[str, Any]:
        """バッチの状態と集計カウンタを取得"""
        return await self._request("GET", f"batches/{batch_id}")

    async def list_emails(self, batch_id: str, page: int = 1, per_page: int = 100) -> list[dict[str, Any]]:
        """
        バッチ内のメールごとの結果を1ページ分取得

        Returns:
            [{"address", "email_state", "email_sub_state", ...}, ...]
        """
        data = await self._request(
            "GET",
            "email_addresses",
            params={"batch_uuid": batch_id, "page": page, "per_page": per_page},
        )
        if isinstance(data, dict):
            data = data.get("email_addresses") or data.get("data") or []
        return data if isinstance(data, list) else []

    async def download_csv(self, url: str) -> str:
        """注釈付きCSVをダウンロード（署名付きURLのため認証ヘッダは付けない）"""
        try:
            async with httpx.AsyncClient(timeout=self.timeout, follow_redirects=True) as client:
                response = await client.get(url)
                response.raise_for_status()
                return response.text
        except httpx.HTTPStatusError as e:
            logger.error(f"CSVダウンロード失敗: {e.response.status_code}")
            raise ProviderError(
                f"CSV download failed: {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"CSVダウンロードエラー: {e}")
            raise ProviderError(f"CSV download error: {e}") from e
