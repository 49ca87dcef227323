"""WebSubサブスクリプションの一覧取得・手動更新を行う管理用API"""

import json
import logging
import os
import time
import traceback
from typing import Any, Dict, List

import subscription_manager
import subscription_store
from ssm_utils import get_parameter_value
from subscription_store import STATUS_ACTIVE, STATUSES, Subscription

LEASE_SECONDS = int(os.environ["LEASE_SECONDS"])
HMAC_SECRET_LENGTH = int(os.environ["HMAC_SECRET_LENGTH"])
WEBSUB_CALLBACK_URL_PARAMETER_NAME = os.environ["WEBSUB_CALLBACK_URL_PARAMETER_NAME"]
RENEWAL_WINDOW_SECONDS = int(os.environ.get("RENEWAL_WINDOW_SECONDS", "43200"))
RENEWAL_DELAY_SECONDS = float(os.environ.get("RENEWAL_DELAY_SECONDS", "1"))
DEFAULT_LIMIT = 100

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def json_response(status_code: int, body: Dict[str, Any]) -> Dict[str, Any]:
    """JSON形式のレスポンスを組み立てる"""
    return {
        "statusCode": status_code,
        "headers": {"Content-Type": "application/json"},
        "body": json.dumps(body),
    }


def handle_get_manage(event: Dict[str, Any]) -> Dict[str, Any]:
    """
    サブスクリプションを条件で絞り込んで一覧を返す
    (status・expiringSoon・feedUrl・limit)

    Args:
        event (dict): API Gatewayイベント

    Returns:
        dict: レスポンス
    """
    query_params: Dict[str, str] = event.get("queryStringParameters") or {}
    status: str | None = query_params.get("status")
    if status is not None and status not in STATUSES:
        return json_response(400, {"message": f"Invalid status: {status}"})

    limit_param: str = query_params.get("limit") or str(DEFAULT_LIMIT)
    if (
        not limit_param.isascii()
        or not limit_param.isdecimal()
        or int(limit_param) <= 0
    ):
        return json_response(400, {"message": f"Invalid limit: {limit_param}"})

    now = int(time.time())
    expires_after: int | None = None
    expires_before: int | None = None
    if query_params.get("expiringSoon") == "true":
        # 有効期限はactiveのサブスクリプションでのみ意味を持つ
        status = status or STATUS_ACTIVE
        expires_after = now
        expires_before = now + RENEWAL_WINDOW_SECONDS + 1

    subscriptions: List[Subscription] = subscription_store.list_subscriptions(
        status=status,
        topic=query_params.get("feedUrl"),
        expires_after=expires_after,
        expires_before=expires_before,
        limit=int(limit_param),
    )
    return json_response(
        200,
        {
            "message": "Subscriptions retrieved successfully",
            "count": len(subscriptions),
            "subscriptions": [
                subscription_manager.describe_subscription(subscription, now)
                for subscription in subscriptions
            ],
        },
    )


def select_subscriptions_to_renew(query_params: Dict[str, str]) -> List[Subscription]:
    """
    更新対象のサブスクリプションを選択する
    feedUrl指定時はそのtopicの全ハブ分、renewAll=true時はactive全件
    (expiringOnly=trueの場合は有効期限が近いもののみ)

    Args:
        query_params (dict): クエリパラメータ

    Returns:
        List[Subscription]: 更新対象
    """
    feed_url: str | None = query_params.get("feedUrl")
    if feed_url:
        return subscription_store.find_subscriptions_by_topic(feed_url)

    if query_params.get("renewAll") == "true":
        if query_params.get("expiringOnly") == "true":
            return subscription_store.find_expiring_subscriptions(
                int(time.time()), RENEWAL_WINDOW_SECONDS
            )
        return subscription_store.list_subscriptions(status=STATUS_ACTIVE)

    return []


def handle_post_manage(event: Dict[str, Any]) -> Dict[str, Any]:
    """
    [action=renew] 選択したサブスクリプションを手動で更新する

    Args:
        event (dict): API Gatewayイベント

    Returns:
        dict: レスポンス
    """
    query_params: Dict[str, str] = event.get("queryStringParameters") or {}
    if query_params.get("action") != "renew":
        return json_response(400, {"message": "Invalid action parameter"})

    subscriptions: List[Subscription] = select_subscriptions_to_renew(query_params)
    if not subscriptions:
        return json_response(404, {"message": "No subscriptions found to renew"})

    callback_url: str = get_parameter_value(WEBSUB_CALLBACK_URL_PARAMETER_NAME)
    results: List[Dict[str, Any]] = subscription_manager.renew_subscriptions(
        subscriptions,
        callback_url,
        LEASE_SECONDS,
        HMAC_SECRET_LENGTH,
        RENEWAL_DELAY_SECONDS,
    )
    successful: int = sum(1 for result in results if result["success"])
    logger.info(
        "Manual renewal complete: successful=%d, failed=%d",
        successful,
        len(results) - successful,
    )
    return json_response(
        200,
        {
            "message": "Subscription renewal process completed",
            "total": len(subscriptions),
            "successful": successful,
            "failed": len(results) - successful,
            "results": results,
        },
    )


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    WebSubサブスクリプション管理用APIのLambda関数のハンドラー

    Args:
        event (dict): API Gatewayイベント
        context: Lambda実行コンテキスト

    Returns:
        dict: レスポンス
    """
    try:
        http_method: str = event.get("httpMethod", "").upper()
        if http_method == "GET":
            # [GET] /websub/manage
            return handle_get_manage(event)
        if http_method == "POST":
            # [POST] /websub/manage
            return handle_post_manage(event)

        return json_response(405, {"error": f"Method Not Allowed: {http_method}"})
    except Exception:
        logger.error(traceback.format_exc())
        return json_response(500, {"error": "Internal Server Error"})
