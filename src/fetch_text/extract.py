"""Full-text extraction for cached articles.

HTML is fetched once with requests, checked for paywall markers, then parsed
with trafilatura, falling back to readability-lxml.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Union

import requests
import trafilatura
from lxml import etree
from lxml import html as lxml_html
from readability import Document

from article_store.models import Article
from article_store.store import Store
from common.config import ExtractionConfig
from common.datetime import utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Success:
    text: str
    title: str | None = None


@dataclass(frozen=True)
class PaywallDetected:
    reason: str
    from_markers: bool = True


@dataclass(frozen=True)
class NetworkError:
    message: str


@dataclass(frozen=True)
class ExtractionError:
    message: str


@dataclass(frozen=True)
class NotFetched:
    reason: str


ExtractionResult = Union[Success, PaywallDetected, NetworkError, ExtractionError, NotFetched]


def _class_xpath(name: str) -> str:
    return f"//*[contains(concat(' ', normalize-space(@class), ' '), ' {name} ')]"


PAYWALL_XPATHS = [
    _class_xpath("paywall"),
    _class_xpath("subscription-required"),
    _class_xpath("subscriber-only"),
    "//*[@id='paywall']",
    _class_xpath("tp-modal"),  # Piano
    _class_xpath("pf-paywall"),  # Paragon
    "//*[@data-testid='paywall']",
]

PAYWALL_PHRASES = [
    "subscribe to continue reading",
    "subscription required",
    "subscribers only",
    "premium content",
    "register to read",
    "sign in to continue",
    "this content is for subscribers",
    "your free articles",
]


def detect_paywall(html: str) -> bool:
    """True if the page carries structured-data, markup or text paywall markers."""
    lowered = html.lower()
    if '"isaccessibleforfree"' in lowered and "false" in lowered:
        return True

    try:
        tree = lxml_html.fromstring(html)
    except (etree.ParserError, ValueError):
        return False
    for xpath in PAYWALL_XPATHS:
        if tree.xpath(xpath):
            return True

    body = tree.find("body")
    visible = (body if body is not None else tree).text_content().lower()
    return any(phrase in visible for phrase in PAYWALL_PHRASES)


def extract_with_trafilatura(html: str, url: str) -> Optional[str]:
    return trafilatura.extract(html, url=url)


def extract_with_readability(html: str) -> Optional[str]:
    doc = Document(html)
    tree = lxml_html.fromstring(doc.summary())
    text = tree.text_content()
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    return "\n".join(lines) if lines else None


def extract_title(html: str) -> Optional[str]:
    try:
        return Document(html).short_title() or None
    except Exception as e:
        logger.debug("Could not read title: %s", e)
        return None


class TextExtractor:
    """Fetch and extract article body text.

    Args:
        config: Extraction settings (timeouts, minimum length, retry policy)
        session: Optional requests session
    """

    def __init__(self, config: ExtractionConfig | None = None, session: requests.Session | None = None):
        self.config = config or ExtractionConfig()
        self.session = session or requests.Session()

    def fetch_html(self, url: str) -> Optional[str]:
        try:
            response = self.session.get(
                url,
                timeout=self.config.request_timeout,
                headers={"User-Agent": self.config.user_agent},
            )
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Failed to fetch %s: %s", url, e)
            return None
        return response.text or None

    def parse(self, html: str, url: str) -> ExtractionResult:
        """Extract body text from already fetched HTML."""
        if detect_paywall(html):
            return PaywallDetected("Paywall markers detected in HTML")

        text = None
        try:
            text = extract_with_trafilatura(html, url)
        except Exception as e:
            logger.warning("trafilatura failed for %s: %s", url, e)
        if not text:
            try:
                text = extract_with_readability(html)
            except Exception as e:
                logger.warning("readability failed for %s: %s", url, e)
                return ExtractionError(str(e) or "Unknown parsing error")

        length = len(text.strip()) if text else 0
        if length < self.config.min_content_length:
            # Usually JS-rendered pages or partial paywalls
            return PaywallDetected(
                f"Extracted content too short ({length} chars), likely paywalled or JS-rendered",
                from_markers=False,
            )
        return Success(text=text.strip(), title=extract_title(html))

    def extract(self, url: str) -> ExtractionResult:
        if not self.config.enabled:
            return NotFetched("Article fetching disabled in settings")
        html = self.fetch_html(url)
        if html is None:
            return NetworkError(f"Failed to fetch HTML from {url}")
        return self.parse(html, url)

    def extract_and_save(
        self, store: Store, article: Article, now: datetime | None = None
    ) -> ExtractionResult:
        """Extract text for a cached article and record the outcome on it.

        Articles get one retry, no sooner than retry_delay_minutes after the
        first failure. Paywalls fail permanently.
        """
        now = now or utc_now()
        permanent = self.config.max_retries + 1
        retry_count = article.extraction_retry_count

        if retry_count >= permanent:
            logger.debug("Skipping permanently failed article: %s", article.key)
            return ExtractionError(
                f"Article permanently failed after retry (extraction_retry_count={retry_count})"
            )
        if retry_count > 0 and article.extraction_failed_at is not None:
            eligible_at = article.extraction_failed_at + timedelta(minutes=self.config.retry_delay_minutes)
            if now < eligible_at:
                return NotFetched("Extraction failed recently, waiting for retry window")
            logger.debug("Retrying previously failed article: %s", article.key)

        result = self.extract(article.key)

        if isinstance(result, Success):
            store.update_full_text(article.key, result.text)
            store.clear_extraction_failure(article.key)
            logger.debug("Extracted %d chars for %s", len(result.text), article.key)
        elif isinstance(result, PaywallDetected) and result.from_markers:
            for _ in range(permanent - retry_count):
                store.mark_extraction_failed(article.key, now)
            logger.warning("Paywall detected, marked as permanently failed: %s", article.key)
        elif isinstance(result, (PaywallDetected, NetworkError, ExtractionError)):
            store.mark_extraction_failed(article.key, now)
            logger.warning("Extraction failed for %s, marked for retry: %s", article.key, result)
        return result
