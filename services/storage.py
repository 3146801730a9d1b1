"""
ストレージモジュール
バッチ・ジョブ・連絡先・検証リスト等のテーブル操作

- Storage: 共通インターフェース
- InMemoryStorage: プロセス内の辞書で保持（テスト・ローカル実行用）
- SupabaseStorage: Supabase（PostgREST）をhttpxで操作
"""

import copy
import logging
import uuid
from typing import Optional, Any

import httpx

from config.settings import get_settings
from errors import StorageError
from models.job import now_iso

logger = logging.getLogger(__name__)


# テーブル名
SEARCH_BATCHES = "search_batches"
SEARCH_JOBS = "search_jobs"
SEARCHES = "searches"
CONTACTS = "contacts"
VALIDATION_LISTS = "validation_lists"
VALIDATION_RESULTS = "validation_results"
VALIDATION_QUEUE = "validation_queue"


class Storage:
    """
    ストレージの共通インターフェース

    filters は {列名: 値} の等価条件。値がリストなら「いずれかに一致」、
    None なら「NULL」を意味する。
    """

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """1行挿入し、採番済みの行を返す"""
        raise NotImplementedError

    async def insert_many(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """複数行をまとめて挿入"""
        raise NotImplementedError

    async def select(
        self,
        table: str,
        filters: Optional[dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        """条件に一致する行を取得"""
        raise NotImplementedError

    async def get(self, table: str, row_id: str) -> Optional[dict[str, Any]]:
        """IDで1行取得（なければNone）"""
        rows = await self.select(table, {"id": row_id}, limit=1)
        return rows[0] if rows else None

    async def update(
        self,
        table: str,
        filters: dict[str, Any],
        values: dict[str, Any],
    ) -> list[dict[str, Any]]:
        """
        条件付き更新

        Returns:
            実際に更新された行。現在のステータスを条件に含めれば
            compare-and-swap として使える（空なら他の実行者が先に更新済み）
        """
        raise NotImplementedError

    async def count(self, table: str, filters: Optional[dict[str, Any]] = None) -> int:
        """条件に一致する行数"""
        raise NotImplementedError

    async def increment(self, table: str, row_id: str, column: str, amount: int = 1) -> None:
        """単一行のカウンタをアトミックに加算"""
        raise NotImplementedError


# ====================================
# インメモリ実装
# ====================================

def _matches(row: dict[str, Any], filters: Optional[dict[str, Any]]) -> bool:
    if not filters:
        return True
    for key, expected in filters.items():
        value = row.get(key)
        if isinstance(expected, (list, tuple, set)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


def _sort_key(value: Any) -> tuple:
    # NULLは末尾
    return (value is None, value if value is not None else 0)


class InMemoryStorage(Storage):
    """
    インメモリストレージ

    各操作は await を挟まずに完結するため、同一イベントループ内の
    並行コルーチンに対して更新・加算はアトミックになる。
    """

    def __init__(self):
        self._tables: dict[str, dict[str, dict[str, Any]]] = {}

    def _table(self, table: str) -> dict[str, dict[str, Any]]:
        return self._tables.setdefault(table, {})

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        stored = dict(row)
        stored.setdefault("id", str(uuid.uuid4()))
        stored.setdefault("created_at", now_iso())
        self._table(table)[stored["id"]] = stored
        logger.debug(f"挿入: {table} {stored['id']}")
        return copy.deepcopy(stored)

    async def insert_many(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return [await self.insert(table, row) for row in rows]

    async def select(
        self,
        table: str,
        filters: Optional[dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        rows = [r for r in self._table(table).values() if _matches(r, filters)]
        if order_by:
            rows.sort(key=lambda r: _sort_key(r.get(order_by)), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return [copy.deepcopy(r) for r in rows]

    async def update(
        self,
        table: str,
        filters: dict[str, Any],
        values: dict[str, Any],
    ) -> list[dict[str, Any]]:
        updated = []
        for row in self._table(table).values():
            if _matches(row, filters):
                row.update(values)
                updated.append(copy.deepcopy(row))
        return updated

    async def count(self, table: str, filters: Optional[dict[str, Any]] = None) -> int:
        return sum(1 for r in self._table(table).values() if _matches(r, filters))

    async def increment(self, table: str, row_id: str, column: str, amount: int = 1) -> None:
        row = self._table(table).get(row_id)
        if row is None:
            raise StorageError(f"{table} {row_id} not found")
        row[column] = (row.get(column) or 0) + amount

    def rows(self, table: str) -> list[dict[str, Any]]:
        """テーブルの全行（テスト・デバッグ用）"""
        return [copy.deepcopy(r) for r in self._table(table).values()]


# ====================================
# Supabase（PostgREST）実装
# ====================================

class SupabaseStorage(Storage):
    """Supabase REST クライアント"""

    MAX_INCREMENT_RETRIES = 5

    # アトミック加算用のRPC（テーブル名 → (関数名, ID引数名, 列名引数名)）
    INCREMENT_RPCS = {
        VALIDATION_LISTS: ("increment_validation_counter", "list_id", "counter_name"),
    }

    # RPCが受け付ける列（それ以外は旧値を条件にしたPATCHで加算）
    RPC_COUNTER_COLUMNS = {
        VALIDATION_LISTS: ("deliverable_count", "undeliverable_count", "risky_count", "unknown_count"),
    }

    def __init__(self, base_url: str, service_key: str, timeout: float = 15.0):
        """
        Args:
            base_url: SupabaseプロジェクトのURL
            service_key: サービスロールキー
            timeout: タイムアウト秒数
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }

    @staticmethod
    def _filter_params(filters: Optional[dict[str, Any]]) -> dict[str, str]:
        """{列名: 値} をPostgRESTのクエリパラメータに変換"""
        params: dict[str, str] = {}
        for key, value in (filters or {}).items():
            if value is None:
                params[key] = "is.null"
            elif isinstance(value, (list, tuple, set)):
                params[key] = f"in.({','.join(str(v) for v in value)})"
            elif isinstance(value, bool):
                params[key] = f"is.{str(value).lower()}"
            else:
                params[key] = f"eq.{value}"
        return params

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, str]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> httpx.Response:
        headers = dict(self.headers)
        if prefer:
            headers["Prefer"] = prefer
        url = f"{self.base_url}/rest/v1/{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(method, url, headers=headers, params=params, json=json)
                response.raise_for_status()
                return response
        except httpx.HTTPStatusError as e:
            logger.error(f"Supabase {method} {path} HTTPエラー: {e.response.status_code} {e.response.text}")
            raise StorageError(f"Supabase {method} {path} failed: {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.error(f"Supabase {method} {path} エラー: {e}")
            raise StorageError(f"Supabase {method} {path} error: {e}") from e

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        response = await self._request("POST", table, json=row)
        data = response.json()
        if isinstance(data, list):
            if not data:
                raise StorageError(f"Supabase insert into {table} returned no rows")
            return data[0]
        return data

    async def insert_many(self, table: str, rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
        if not rows:
            return []
        response = await self._request("POST", table, json=rows)
        data = response.json()
        return data if isinstance(data, list) else [data]

    async def select(
        self,
        table: str,
        filters: Optional[dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict[str, Any]]:
        params = {"select": "*", **self._filter_params(filters)}
        if order_by:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = str(limit)
        response = await self._request("GET", table, params=params)
        data = response.json()
        return data if isinstance(data, list) else []

    async def update(
        self,
        table: str,
        filters: dict[str, Any],
        values: dict[str, Any],
    ) -> list[dict[str, Any]]:
        if not filters:
            raise StorageError(f"Refusing unfiltered update on {table}")
        response = await self._request("PATCH", table, params=self._filter_params(filters), json=values)
        data = response.json() if response.content else []
        return data if isinstance(data, list) else [data]

    async def count(self, table: str, filters: Optional[dict[str, Any]] = None) -> int:
        params = {"select": "id", **self._filter_params(filters)}
        response = await self._request("HEAD", table, params=params, prefer="count=exact")
        content_range = response.headers.get("content-range", "")
        total = content_range.rsplit("/", 1)[-1]
        return int(total) if total.isdigit() else 0

    async def increment(self, table: str, row_id: str, column: str, amount: int = 1) -> None:
        rpc = self.INCREMENT_RPCS.get(table)
        if rpc and amount == 1 and column in self.RPC_COUNTER_COLUMNS.get(table, ()):
            function, id_arg, column_arg = rpc
            await self._request("POST", f"rpc/{function}", json={id_arg: row_id, column_arg: column})
            return

        # RPC対象外は旧値を条件にしたPATCHで加算（競合時は再試行）
        for attempt in range(self.MAX_INCREMENT_RETRIES):
            row = await self.get(table, row_id)
            if row is None:
                raise StorageError(f"{table} {row_id} not found")
            previous = row.get(column)
            updated = await self.update(
                table,
                {"id": row_id, column: previous},
                {column: (previous or 0) + amount},
            )
            if updated:
                return
            logger.debug(f"加算競合: {table} {row_id}.{column} (attempt={attempt + 1})")
        raise StorageError(f"Could not increment {table}.{column} for {row_id}")


# グローバルインスタンス
_storage: Optional[Storage] = None


def get_storage() -> Storage:
    """
    ストレージを取得

    SUPABASE_URL と SUPABASE_SERVICE_ROLE_KEY が設定されていれば Supabase、
    なければプロセス内のインメモリストレージを使う。
    """
    global _storage
    if _storage is None:
        settings = get_settings()
        if settings.supabase_url and settings.supabase_service_role_key:
            _storage = SupabaseStorage(
                settings.supabase_url,
                settings.supabase_service_role_key,
                timeout=settings.http_timeout,
            )
            logger.info("ストレージ: Supabase")
        else:
            _storage = InMemoryStorage()
            logger.warning("ストレージ: インメモリ（SUPABASE_URL 未設定）")
    return _storage


def set_storage(storage: Optional[Storage]) -> None:
    """ストレージを差し替える（テスト用）"""
    global _storage
    _storage = storage
