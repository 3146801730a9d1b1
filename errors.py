"""
例外定義
パイプライン全体で使うエラー分類
"""

from typing import Optional


class PipelineError(Exception):
    """パイプライン共通の基底例外（メッセージ文字列を1つ持つ）"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class ConfigurationError(PipelineError):
    """必須設定（APIキー等）の欠落"""


class ProviderError(PipelineError):
    """外部API（Serper / Truelist / Mails.so）のエラー"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StorageError(PipelineError):
    """ストレージへの書き込み・読み込みの失敗"""


class NotFoundError(PipelineError):
    """対象レコードが存在しない"""


class InvalidRequestError(PipelineError):
    """入力不正・状態遷移できない操作"""
