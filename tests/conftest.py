import os
import sys

import pytest

# プロジェクトルートを import パスに追加
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from config.settings import Settings, reset_settings  # noqa: E402
from services.storage import InMemoryStorage, set_storage  # noqa: E402


ENV_KEYS = (
    "SERPER_API_KEY",
    "TRUELIST_API_KEY",
    "TRUELIST_WEBHOOK_URL",
    "MAILS_SO_API_KEY",
    "SUPABASE_URL",
    "SUPABASE_SERVICE_ROLE_KEY",
)


@pytest.fixture(autouse=True)
def _test_env(monkeypatch):
    # 外部サービスの設定は毎回空にする（テストはオフライン）
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    reset_settings()
    set_storage(None)
    yield
    reset_settings()
    set_storage(None)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def settings():
    return Settings(
        serper_api_key="test_serper_key",
        truelist_api_key="test_truelist_key",
        mails_so_api_key="test_mails_key",
        results_page_delay=0.0,
    )
