"""
連絡先抽出モジュール
検索結果（title / snippet / link）からメール・電話番号・氏名・組織名を抽出する

氏名・組織名は正規表現によるベストエフォートの推定で、正確性は保証しない。
ルールは FactRule（テキスト → Optional[str]）として差し替え可能。
"""

import re
import asyncio
import logging
from urllib.parse import urlparse
from typing import Callable, Iterable, Optional

import httpx
from bs4 import BeautifulSoup

from errors import StorageError
from models.search import Contact
from services.storage import Storage, CONTACTS

logger = logging.getLogger(__name__)


# ====================================
# 定数
# ====================================

EMAIL_PATTERN = re.compile(
    r"\b[\w.+\-]+@[A-Za-z0-9\-]+(?:\.[A-Za-z0-9\-]+)*\.[A-Za-z]{2,}\b"
)

# 北米形式の電話番号（+1 (555) 123-4567 / 555.123.4567 等）
PHONE_PATTERN = re.compile(
    r"(?<!\d)(?:\+?1[-.\s]?)?(?:\(\d{3}\)|\d{3})[-.\s]?\d{3}[-.\s]?\d{4}(?!\d)"
)

# 「名 姓」で始まり区切り文字が続く
NAME_PATTERN = re.compile(r"^([A-Z][a-z]+\s[A-Z][a-z]+)[\s\-|]")

LEGAL_SUFFIX = r"(?:Inc|LLC|Ltd|Corp)"

ORGANIZATION_PATTERNS = [
    # 「at Acme Corp」「@ Initech LLC」
    re.compile(
        r"(?:\bat|@)\s+([A-Z][\w&\-]*(?:\s+(?:&\s+)?[A-Z][\w&\-]*)*(?:,?\s+" + LEGAL_SUFFIX + r"\b\.?)?)"
    ),
    # 法人格で終わる大文字始まりのフレーズ
    re.compile(r"\b((?:[A-Z][\w&\-]*\s+){1,4}" + LEGAL_SUFFIX + r"\b\.?)"),
]

# メールに見えるがファイル名のもの
INVALID_EXTENSIONS = (
    ".js", ".css", ".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp",
    ".woff", ".ttf", ".eot", ".ico",
)

# プレースホルダ・テスト用アドレス
PLACEHOLDER_MARKERS = ("example", "test@", "noreply")

# HTML取得しないSNS（スニペットのみ使用）
SOCIAL_DOMAINS = ("instagram.com", "facebook.com", "tiktok.com")

HTTP_HEADERS = {
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36",
}

FETCH_TIMEOUT = 5.0  # 秒
MAX_HTML_CHARS = 50000


FactRule = Callable[[str], Optional[str]]


# ====================================
# URL操作関数
# ====================================

def extract_domain(url: str) -> str:
    """URLからドメインを抽出（www. は除去）"""
    try:
        parsed = urlparse(url)
        return parsed.netloc.lower().removeprefix("www.")
    except Exception:
        return url


def is_social_link(url: str) -> bool:
    """SNSのリンクかチェック"""
    return any(domain in url for domain in SOCIAL_DOMAINS)


# ====================================
# 抽出ルール
# ====================================

def find_emails(text: str) -> list[str]:
    """
    テキストからメールアドレスを抽出

    小文字化・ファイル名/プレースホルダ除外・出現順で重複除去
    """
    emails = []
    for match in EMAIL_PATTERN.findall(text):
        email = match.lower()
        if email.endswith(INVALID_EXTENSIONS):
            continue
        if any(marker in email for marker in PLACEHOLDER_MARKERS):
            continue
        if email not in emails:
            emails.append(email)
    return emails


def extract_phone(text: str) -> Optional[str]:
    """最初に見つかった電話番号"""
    match = PHONE_PATTERN.search(text)
    return match.group(0).strip() if match else None


def extract_name(text: str) -> Optional[str]:
    """先頭の「Name Surname」＋区切り文字から氏名を推定"""
    match = NAME_PATTERN.match(text)
    return match.group(1) if match else None


def extract_organization(text: str) -> Optional[str]:
    """「at/@ 組織名」または法人格付きフレーズから組織名を推定"""
    for pattern in ORGANIZATION_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1).strip().rstrip(",")
    return None


def matches_provider(email: str, providers: Iterable[str]) -> bool:
    """メールのドメインが指定プロバイダのいずれかを含むか"""
    domain = email.split("@", 1)[-1].lower()
    return any(p.lower().lstrip("@") in domain for p in providers if p)


def matches_website(link: str, websites: Iterable[str]) -> bool:
    """リンク先ドメインが指定サイトのいずれかを含むか"""
    domain = extract_domain(link)
    if not domain:
        return False
    return any(w.lower().removeprefix("www.") in domain for w in websites if w)


def matches_target_name(email: str, target_names: Iterable[str]) -> bool:
    """対象者名がメールアドレスに含まれるか"""
    email_lower = email.lower()
    return any(n.strip().lower() in email_lower for n in target_names if n and n.strip())


# ====================================
# HTML取得
# ====================================

async def fetch_page_text(client: httpx.AsyncClient, url: str) -> str:
    """結果ページを取得してテキスト化（失敗時は空文字）"""
    try:
        response = await client.get(
            url,
            headers=HTTP_HEADERS,
            timeout=FETCH_TIMEOUT,
            follow_redirects=True,
        )
        if response.status_code != 200:
            logger.debug(f"HTTP {response.status_code}: {url}")
            return ""
        if "text/html" not in response.headers.get("content-type", ""):
            return ""
        soup = BeautifulSoup(response.text[:MAX_HTML_CHARS], "lxml")
        for tag in soup(["script", "style", "noscript"]):
            tag.decompose()
        return soup.get_text(" ")
    except httpx.TimeoutException:
        logger.debug(f"タイムアウト: {url}")
    except httpx.HTTPError as e:
        logger.debug(f"HTTP取得エラー: {url} - {type(e).__name__}")
    return ""


# ====================================
# 抽出本体
# ====================================

class ContactExtractor:
    """検索結果ページから連絡先を抽出して保存する"""

    def __init__(
        self,
        storage: Storage,
        name_rule: FactRule = extract_name,
        organization_rule: FactRule = extract_organization,
        fetch_pages: bool = False,
    ):
        """
        Args:
            storage: 連絡先の保存先
            name_rule: 氏名推定ルール
            organization_rule: 組織名推定ルール
            fetch_pages: 結果ページのHTMLも取得して走査するか
        """
        self.storage = storage
        self.name_rule = name_rule
        self.organization_rule = organization_rule
        self.fetch_pages = fetch_pages

    async def extract(
        self,
        results: list[dict],
        seen_emails: set[str],
        search_id: Optional[str],
        email_providers: Iterable[str] = (),
        websites: Iterable[str] = (),
        target_names: Iterable[str] = (),
    ) -> list[Contact]:
        """
        1ページ分の検索結果から新規の連絡先を抽出

        Args:
            results: [{"title", "snippet", "link"}, ...]
            seen_emails: この検索で既出のメール（その場で更新される）
            search_id: 連絡先を紐付ける検索セッションID

        Returns:
            保存に成功した連絡先のリスト
        """
        email_providers = list(email_providers)
        websites = list(websites)
        target_names = list(target_names)

        if self.fetch_pages:
            async with httpx.AsyncClient(verify=False) as client:
                page_texts = await asyncio.gather(*[
                    self._page_text(client, r.get("link") or "") for r in results
                ])
        else:
            page_texts = [""] * len(results)

        contacts: list[Contact] = []
        skipped_filter = 0
        store_failed = 0

        for result, page_text in zip(results, page_texts):
            title = result.get("title") or ""
            snippet = result.get("snippet") or ""
            link = result.get("link") or ""

            if websites and not matches_website(link, websites):
                continue

            text = f"{title} {snippet}"
            scan_text = f"{text} {page_text}" if page_text else text
            phone = extract_phone(scan_text)

            for email in find_emails(scan_text):
                if email in seen_emails:
                    continue
                if email_providers and not matches_provider(email, email_providers):
                    skipped_filter += 1
                    continue
                if target_names and not matches_target_name(email, target_names):
                    logger.debug(f"対象者名なし: {email}")
                    skipped_filter += 1
                    continue

                seen_emails.add(email)

                contact = Contact(
                    email=email,
                    search_id=search_id,
                    name=self.name_rule(text),
                    organization=self.organization_rule(text),
                    phone=phone,
                    website=link or None,
                )

                try:
                    row = await self.storage.insert(CONTACTS, contact.to_row())
                except StorageError as e:
                    logger.error(f"連絡先保存エラー（スキップ）: {email} - {e}")
                    store_failed += 1
                    continue

                contacts.append(Contact.from_row(row))

        logger.info(
            f"抽出完了: 結果{len(results)}件 → 新規{len(contacts)}件"
            f"（フィルタ除外: {skipped_filter}件, 保存失敗: {store_failed}件）"
        )
        return contacts

    async def _page_text(self, client: httpx.AsyncClient, link: str) -> str:
        if not link or is_social_link(link):
            return ""
        return await fetch_page_text(client, link)
