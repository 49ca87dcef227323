"""WebSubハブからのサブスクリプション検証・フィード更新のプッシュ通知を受け付ける"""

import base64
import json
import logging
import os
import time
import traceback
from typing import Any, Dict, List

import requests

import feed_processor
import signature_utils
import subscription_store
from subscription_manager import HUB_URL_PARAM
from subscription_store import STATUS_ACTIVE, STATUS_PENDING, Subscription

FEED_UPDATE_TOPIC_ARN = os.environ["FEED_UPDATE_TOPIC_ARN"]

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def find_candidates(topic: str, hub: str | None) -> List[Subscription]:
    """
    コールバックの対象となり得るサブスクリプションを取得する
    コールバックURLにhub_urlがあればtopic + hubで、なければtopicの全ハブ分を取得する

    Args:
        topic (str): フィードURL
        hub (str | None): コールバックURLのhub_urlクエリパラメータ

    Returns:
        List[Subscription]: サブスクリプションのリスト
    """
    if hub:
        subscription: Subscription | None = subscription_store.get_subscription(
            topic, hub
        )
        return [subscription] if subscription else []
    return subscription_store.find_subscriptions_by_topic(topic)


def is_awaiting_verification(subscription: Subscription) -> bool:
    """初回(pending)または更新(再検証待ちのactive)の検証待ちかを判定する"""
    return subscription["status"] == STATUS_PENDING or (
        subscription["status"] == STATUS_ACTIVE and subscription["renewal_pending"]
    )


def verify_query_params(query_params: Dict[str, str]) -> str | None:
    """
    サブスクリプション検証リクエストのクエリパラメータを検証する

    Args:
        query_params (dict): クエリパラメータ

    Returns:
        str | None: 検証成功時はNone、失敗時はエラーメッセージ
    """
    hub_mode: str | None = query_params.get("hub.mode")
    hub_lease_seconds: str | None = query_params.get("hub.lease_seconds")

    if not query_params.get("hub.challenge"):
        return "Bad Request: Missing hub.challenge parameter"
    if not query_params.get("hub.topic"):
        return "Bad Request: Missing hub.topic parameter"
    if hub_mode not in ["subscribe", "unsubscribe"]:
        return f"Bad Request: Invalid hub.mode: {hub_mode}"
    if hub_mode == "subscribe" and (
        not hub_lease_seconds
        or not hub_lease_seconds.isascii()
        or not hub_lease_seconds.isdecimal()
        or int(hub_lease_seconds) <= 0
    ):
        return f"Bad Request: Invalid hub.lease_seconds: {hub_lease_seconds}"

    return None


def handle_get_callback(event: Dict[str, Any]) -> Dict[str, Any]:
    """
    WebSubハブからのサブスクリプション検証(購読・購読解除)に応答する
    検証待ちの既知のtopicに限りhub.challengeをそのまま返す

    Args:
        event (dict): API Gatewayイベント

    Returns:
        dict: レスポンス
    """
    query_params: Dict[str, str] = event.get("queryStringParameters") or {}
    error: str | None = verify_query_params(query_params)
    if error:
        return {"statusCode": 400, "body": error}

    hub_mode: str = query_params["hub.mode"]
    hub_topic: str = query_params["hub.topic"]
    hub_challenge: str = query_params["hub.challenge"]
    hub: str | None = query_params.get(HUB_URL_PARAM)
    now = int(time.time())

    candidates: List[Subscription] = find_candidates(hub_topic, hub)
    if hub_mode == "subscribe":
        awaiting: List[Subscription] = [
            subscription
            for subscription in candidates
            if is_awaiting_verification(subscription)
        ]
        # 検証待ちの既知のtopic + hubにのみ応答する
        if len(awaiting) != 1:
            logger.warning(
                "Rejected subscribe verification for %s (hub: %s, candidates: %d)",
                hub_topic,
                hub,
                len(awaiting),
            )
            return {"statusCode": 404, "body": "Not Found"}

        lease_seconds = int(query_params["hub.lease_seconds"])
        if not subscription_store.activate_subscription(
            hub_topic, awaiting[0]["hub"], lease_seconds, now
        ):
            return {"statusCode": 404, "body": "Not Found"}
        logger.info(
            "Subscription verified for %s at %s (lease_seconds: %d)",
            hub_topic,
            awaiting[0]["hub"],
            lease_seconds,
        )
    else:
        non_terminal: List[Subscription] = [
            subscription
            for subscription in candidates
            if subscription["status"] in [STATUS_PENDING, STATUS_ACTIVE]
        ]
        targets: List[Subscription] = non_terminal or candidates
        if len(targets) != 1:
            logger.warning(
                "Rejected unsubscribe verification for %s (hub: %s, candidates: %d)",
                hub_topic,
                hub,
                len(targets),
            )
            return {"statusCode": 404, "body": "Not Found"}

        subscription_store.mark_unsubscribed(hub_topic, targets[0]["hub"], now)
        logger.info("Unsubscription verified for %s at %s", hub_topic, targets[0]["hub"])

    # hub.challengeは加工せずに返す
    return {
        "statusCode": 200,
        "headers": {"Content-Type": "text/plain"},
        "body": hub_challenge,
    }


def get_topic_from_headers(headers: Dict[str, str]) -> str | None:
    """
    プッシュ通知のヘッダーからtopicを取得する
    X-Hub-Topic・Hub-Topicヘッダーを優先し、なければLinkヘッダーのrel="self"を使う

    Args:
        headers (dict): ヘッダー名を小文字にしたヘッダー

    Returns:
        str | None: topic、取得できない場合はNone
    """
    topic: str | None = headers.get("x-hub-topic") or headers.get("hub-topic")
    if topic:
        return topic

    link_header: str | None = headers.get("link")
    if link_header:
        for link in requests.utils.parse_header_links(link_header):
            if "self" in link.get("rel", "").split():
                return link.get("url")

    return None


def get_raw_body(event: Dict[str, Any]) -> bytes:
    """
    API Gatewayイベントから署名計算用の生のリクエストボディを取得する

    Args:
        event (dict): API Gatewayイベント

    Returns:
        bytes: リクエストボディ
    """
    body: str = event.get("body") or ""
    if event.get("isBase64Encoded"):
        return base64.b64decode(body)
    return body.encode("utf-8")


def handle_post_callback(event: Dict[str, Any]) -> Dict[str, Any]:
    """
    WebSubハブからのプッシュ通知のHMAC署名を検証し、フィード処理に引き渡す

    Args:
        event (dict): API Gatewayイベント

    Returns:
        dict: レスポンス
    """
    headers: Dict[str, str] = {
        k.lower(): v for k, v in (event.get("headers") or {}).items()
    }

    topic: str | None = get_topic_from_headers(headers)
    if not topic:
        return {"statusCode": 400, "body": "Bad Request: Missing X-Hub-Topic header"}

    signature: str | None = headers.get("x-hub-signature")
    if not signature:
        return {
            "statusCode": 400,
            "body": "Bad Request: Missing X-Hub-Signature header",
        }
    try:
        method, digest = signature_utils.parse_signature_header(signature)
    except ValueError as error:
        return {"statusCode": 400, "body": f"Bad Request: {error}"}

    query_params: Dict[str, str] = event.get("queryStringParameters") or {}
    candidates: List[Subscription] = find_candidates(
        topic, query_params.get(HUB_URL_PARAM)
    )
    if not candidates:
        logger.warning("Notification for unknown topic: %s", topic)
        return {"statusCode": 404, "body": "Subscription not found"}

    now = int(time.time())
    active: List[Subscription] = [
        subscription
        for subscription in candidates
        if subscription_store.effective_status(subscription, now) == STATUS_ACTIVE
    ]
    if not active:
        logger.warning("Notification for inactive topic: %s", topic)
        return {"statusCode": 410, "body": "Subscription is not active"}

    # HMACは生のボディに対して計算する
    body: bytes = get_raw_body(event)
    subscription: Subscription | None = next(
        (
            candidate
            for candidate in active
            if signature_utils.verify_signature(
                candidate["secret"], body, method, digest
            )
        ),
        None,
    )
    if subscription is None:
        logger.warning(
            "HMAC signature verification failed for %s (method: %s)", topic, method
        )
        return {"statusCode": 401, "body": "Invalid signature"}

    feed_processor.process_feed_notification(
        FEED_UPDATE_TOPIC_ARN, topic, body, source="websub", hub=subscription["hub"]
    )
    # 引き渡しに成功した通知のみを受信日時として記録する
    subscription_store.record_notification(topic, subscription["hub"], now)
    logger.info("Notification accepted for %s (%d bytes)", topic, len(body))

    return {"statusCode": 200, "body": "OK"}


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    WebSubコールバック(検証・プッシュ通知)を受け付けるLambda関数のハンドラー

    Args:
        event (dict): API Gatewayイベント
        context: Lambda実行コンテキスト

    Returns:
        dict: レスポンス
    """
    try:
        http_method: str = event.get("httpMethod", "").upper()
        if http_method == "GET":
            # [GET] /websub/callback
            return handle_get_callback(event)
        if http_method == "POST":
            # [POST] /websub/callback
            return handle_post_callback(event)

        return {
            "statusCode": 405,
            "body": json.dumps({"error": f"Method Not Allowed: {http_method}"}),
        }
    except Exception:
        logger.error(traceback.format_exc())
        return {
            "statusCode": 500,
            "body": json.dumps({"error": "Internal Server Error"}),
        }
