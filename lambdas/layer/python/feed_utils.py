"""RSS/Atomフィードの取得・WebSubハブの検出を行うユーティリティ関数"""

import calendar
import logging
import os
from typing import Any, Dict, List

import feedparser
import requests

FEED_REQUEST_TIMEOUT = float(os.environ.get("FEED_REQUEST_TIMEOUT", "30"))
USER_AGENT = "FeedWebSub-Subscriber/1.0"

logger = logging.getLogger(__name__)


def fetch_feed(feed_url: str) -> requests.Response:
    """
    フィードを直接取得する

    Args:
        feed_url (str): フィードURL

    Returns:
        requests.Response: レスポンス

    Raises:
        requests.exceptions.RequestException: 通信エラー・エラーステータスの場合
    """
    response: requests.Response = requests.get(
        feed_url,
        headers={"User-Agent": USER_AGENT},
        timeout=FEED_REQUEST_TIMEOUT,
    )
    response.raise_for_status()
    return response


def get_last_build_date(feed_content: bytes | str) -> int | None:
    """
    フィードの最終更新日時(RSSのlastBuildDate、Atomのupdated)を取得する
    存在しない場合はチャンネルの公開日時(pubDate)で代用する

    Args:
        feed_content (bytes | str): フィードのXML

    Returns:
        int | None: UNIX時刻(秒)、取得できない場合はNone
    """
    parsed = feedparser.parse(feed_content)
    for key in ("updated_parsed", "published_parsed"):
        value = parsed.feed.get(key)
        if value:
            return calendar.timegm(value)
    return None


def discover_hub(feed_url: str) -> str | None:
    """
    フィードのWebSubハブURLを検出する
    HTTPのLinkヘッダー(rel="hub")を優先し、なければフィード内の<link rel="hub">を探す

    Args:
        feed_url (str): フィードURL

    Returns:
        str | None: ハブURL、見つからない場合はNone
    """
    response: requests.Response = fetch_feed(feed_url)

    hub_link: Dict[str, str] | None = response.links.get("hub")
    if hub_link and hub_link.get("url"):
        return hub_link["url"]

    parsed = feedparser.parse(response.content)
    links: List[Dict[str, Any]] = parsed.feed.get("links", [])
    for link in links:
        if link.get("rel") == "hub" and link.get("href"):
            return link["href"]

    logger.info("No WebSub hub advertised by %s", feed_url)
    return None
