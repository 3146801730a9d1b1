"""
Mails.so 検証APIクライアント
メールアドレス1件ずつの検証
"""

import logging
from typing import Any

import httpx

from errors import ProviderError

logger = logging.getLogger(__name__)


class MailsSoClient:
    """Mails.so APIクライアント"""

    API_URL = "https://api.mails.so/v1/validate"

    def __init__(self, api_key: str, timeout: float = 30.0):
        self.api_key = api_key
        self.timeout = timeout
        self.headers = {"x-mails-api-key": api_key}

    async def validate(self, email: str) -> dict[str, Any]:
        """
        メールアドレスを1件検証

        Returns:
            {"email", "format_valid", "domain_valid", "smtp_valid",
             "deliverable", "catch_all", "disposable", "free_email", ...}
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.get(self.API_URL, headers=self.headers, params={"email": email})
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                f"Mails.so API error: {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError(f"Mails.so API error: {e}") from e

        # {"data": {...}} 形式にも対応
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            data = data["data"]
        if not isinstance(data, dict):
            raise ProviderError("Mails.so API returned an unexpected payload")
        return data
