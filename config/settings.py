"""
設定管理モジュール
環境変数から設定を読み込む
"""

import os
from dataclasses import dataclass
from typing import Optional

from errors import ConfigurationError


def _env_bool(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """アプリケーション設定"""

    # Serper API（検索）
    serper_api_key: str = ""

    # Truelist API（バッチ検証）
    truelist_api_key: str = ""
    truelist_webhook_url: str = ""

    # Mails.so API（単一メール検証）
    mails_so_api_key: str = ""

    # Supabase（ストレージ）
    supabase_url: str = ""
    supabase_service_role_key: str = ""

    # 検索設定
    search_gl: str = "it"
    search_hl: str = "it"
    search_results_per_page: int = 10
    max_search_pages: int = 20
    fetch_result_pages: bool = False

    # 検証設定
    validation_queue_batch_size: int = 200
    results_page_size: int = 100
    results_page_delay: float = 0.5
    results_insert_chunk: int = 100

    # HTTP・ワーカー設定
    http_timeout: float = 30.0
    worker_interval: float = 30.0

    @classmethod
    def from_env(cls) -> "Settings":
        """環境変数から設定を読み込む"""
        return cls(
            serper_api_key=os.environ.get("SERPER_API_KEY", ""),
            truelist_api_key=os.environ.get("TRUELIST_API_KEY", ""),
            truelist_webhook_url=os.environ.get("TRUELIST_WEBHOOK_URL", ""),
            mails_so_api_key=os.environ.get("MAILS_SO_API_KEY", ""),
            supabase_url=os.environ.get("SUPABASE_URL", ""),
            supabase_service_role_key=os.environ.get("SUPABASE_SERVICE_ROLE_KEY", ""),
            search_gl=os.environ.get("SEARCH_GL", "it"),
            search_hl=os.environ.get("SEARCH_HL", "it"),
            search_results_per_page=int(os.environ.get("SEARCH_RESULTS_PER_PAGE", "10")),
            max_search_pages=int(os.environ.get("MAX_SEARCH_PAGES", "20")),
            fetch_result_pages=_env_bool("FETCH_RESULT_PAGES"),
            validation_queue_batch_size=int(os.environ.get("VALIDATION_QUEUE_BATCH_SIZE", "200")),
            results_page_size=int(os.environ.get("RESULTS_PAGE_SIZE", "100")),
            results_page_delay=float(os.environ.get("RESULTS_PAGE_DELAY", "0.5")),
            results_insert_chunk=int(os.environ.get("RESULTS_INSERT_CHUNK", "100")),
            http_timeout=float(os.environ.get("HTTP_TIMEOUT", "30.0")),
            worker_interval=float(os.environ.get("WORKER_INTERVAL", "30.0")),
        )

    def validate(self) -> list[str]:
        """設定の検証（足りない環境変数をリストで返す）"""
        missing = []
        if not self.serper_api_key:
            missing.append("SERPER_API_KEY")
        if not self.truelist_api_key:
            missing.append("TRUELIST_API_KEY")
        if not self.mails_so_api_key:
            missing.append("MAILS_SO_API_KEY")
        if not self.supabase_url:
            missing.append("SUPABASE_URL")
        if not self.supabase_service_role_key:
            missing.append("SUPABASE_SERVICE_ROLE_KEY")
        return missing

    def require(self, *names: str) -> None:
        """
        必須の環境変数が揃っているか確認する

        外部APIを呼ぶ前に呼び出し、欠けていれば即座に ConfigurationError を送出する。

        Args:
            names: 環境変数名（例: "SERPER_API_KEY"）
        """
        missing = [name for name in names if not getattr(self, name.lower(), "")]
        if missing:
            raise ConfigurationError(f"{', '.join(missing)} not configured")


# グローバル設定インスタンス
settings: Optional[Settings] = None


def get_settings() -> Settings:
    """設定を取得（遅延初期化）"""
    global settings
    if settings is None:
        settings = Settings.from_env()
    return settings


def reset_settings() -> None:
    """キャッシュ済みの設定を破棄（テスト用）"""
    global settings
    settings = None
