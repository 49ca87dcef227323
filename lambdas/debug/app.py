"""WebSubの通知漏れ調査用に、フィードの直接取得・手動処理・購読状態の確認を行う"""

import json
import logging
import os
import time
import traceback
from typing import Any, Dict, List

import requests

import subscription_manager
import subscription_store
from subscription_store import Subscription

FEED_UPDATE_TOPIC_ARN = os.environ["FEED_UPDATE_TOPIC_ARN"]
FEED_CONTENT_PREVIEW_LENGTH = 500

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def json_response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    """JSON形式のレスポンスを組み立てる"""
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(body),
    }


def find_subscription(feed_url: str, hub_url: str | None) -> Subscription | None:
    """
    調査対象のサブスクリプションを取得する
    hubUrlの指定がない場合は、更新日時が最も新しいものを対象にする

    Args:
        feed_url (str): フィードURL
        hub_url (str | None): ハブURL

    Returns:
        Subscription | None: 存在しない場合はNone
    """
    if hub_url:
        return subscription_store.get_subscription(feed_url, hub_url)

    subscriptions: List[Subscription] = subscription_store.find_subscriptions_by_topic(
        feed_url
    )
    if not subscriptions:
        return None
    return max(subscriptions, key=lambda subscription: subscription["updated_at"])


def summarize(subscription: Subscription, now: int) -> Dict[str, Any]:
    """レスポンスに含めるサブスクリプションの概要"""
    return {
        "status": subscription_store.effective_status(subscription, now),
        "expiresAt": subscription_manager.to_isoformat(subscription["expires_at"]),
        "hub": subscription["hub"],
    }


def preview(feed_content: str | None) -> str | None:
    """フィード本文の先頭部分(省略した場合のみ末尾に...を付ける)"""
    if not feed_content:
        return None
    if len(feed_content) <= FEED_CONTENT_PREVIEW_LENGTH:
        return feed_content
    return f"{feed_content[:FEED_CONTENT_PREVIEW_LENGTH]}..."


def check_feed(feed_url: str, subscription: Subscription, now: int) -> Dict[str, Any]:
    """
    [action=check] フィードを直接取得し、最後のプッシュ通知以降の更新有無を返す

    Args:
        feed_url (str): フィードURL
        subscription (Subscription): サブスクリプション
        now (int): 現在のUNIX時刻(秒)

    Returns:
        dict: レスポンス
    """
    try:
        result: Dict[str, Any] = subscription_manager.check_feed_for_updates(feed_url)
    except requests.exceptions.RequestException as error:
        logger.error("Failed to fetch feed %s: %s", feed_url, error)
        return json_response(
            502,
            {
                "message": f"Failed to fetch feed: {error}",
                "feedUrl": feed_url,
                "subscription": summarize(subscription, now),
            },
        )

    feed_content: str | None = result["feed_content"]
    return json_response(
        200,
        {
            "message": "Feed check completed",
            "feedUrl": feed_url,
            "subscription": summarize(subscription, now),
            "lastBuildDate": subscription_manager.to_isoformat(
                result["last_build_date"]
            ),
            "lastNotificationDate": subscription_manager.to_isoformat(
                result["last_notification_date"]
            ),
            "hasChanged": result["has_changed"],
            "feedContentPreview": preview(feed_content),
        },
    )


def process_feed(
    feed_url: str, subscription: Subscription, now: int
) -> Dict[str, Any]:
    """[action=process] プッシュ通知と同じフィード処理を手動で実行する"""
    result: Dict[str, Any] = subscription_manager.manually_process_feed(
        feed_url, FEED_UPDATE_TOPIC_ARN
    )
    return json_response(
        200 if result["success"] else 502,
        {
            "message": result["message"],
            "success": result["success"],
            "feedUrl": feed_url,
            "subscription": summarize(subscription, now),
        },
    )


def verify_subscription(
    feed_url: str, subscription: Subscription, now: int
) -> Dict[str, Any]:
    """[action=verify] 保存されているサブスクリプションの状態をそのまま返す"""
    return json_response(
        200,
        {
            "message": "Subscription status",
            "feedUrl": feed_url,
            "subscription": subscription_manager.describe_subscription(
                subscription, now
            ),
        },
    )


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    WebSubの調査用エンドポイントのLambda関数のハンドラー

    Args:
        event (dict): API Gatewayイベント
        context: Lambda実行コンテキスト

    Returns:
        dict: レスポンス
    """
    try:
        query_params: Dict[str, str] = event.get("queryStringParameters") or {}
        action: str | None = query_params.get("action")
        feed_url: str | None = query_params.get("feedUrl")

        if not feed_url:
            return json_response(400, {"message": "feedUrl parameter is required"})

        subscription: Subscription | None = find_subscription(
            feed_url, query_params.get("hubUrl")
        )
        if subscription is None:
            return json_response(
                404, {"message": f"No subscription found for feed: {feed_url}"}
            )

        now = int(time.time())
        if action == "check":
            return check_feed(feed_url, subscription, now)
        if action == "process":
            return process_feed(feed_url, subscription, now)
        if action == "verify":
            return verify_subscription(feed_url, subscription, now)

        return json_response(
            400,
            {
                "message": "Invalid action parameter. "
                "Use 'check', 'process', or 'verify'"
            },
        )
    except Exception:
        logger.error(traceback.format_exc())
        return json_response(500, {"error": "Internal Server Error"})
