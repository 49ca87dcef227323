"""WebSubサブスクリプションの登録・更新・状態確認を行う"""

import logging
import time
import traceback
import urllib.parse
from datetime import datetime, timezone
from typing import Any, Dict, List

import requests
from botocore.exceptions import ClientError

import feed_processor
import feed_utils
import hub_client
import signature_utils
import subscription_store
from subscription_store import STATUS_ACTIVE, Subscription

# コールバックURLに付与し、検証・通知時にtopic + hubを特定するためのクエリパラメータ
HUB_URL_PARAM = "hub_url"

logger = logging.getLogger(__name__)


def build_callback_url(callback_url: str, hub: str) -> str:
    """
    ハブごとのコールバックURLを組み立てる

    Args:
        callback_url (str): デプロイ環境のコールバックURL
        hub (str): ハブURL

    Returns:
        str: hub_urlクエリパラメータを付与したコールバックURL
    """
    parts = urllib.parse.urlsplit(callback_url)
    query = [
        (name, value)
        for name, value in urllib.parse.parse_qsl(parts.query, keep_blank_values=True)
        if name != HUB_URL_PARAM
    ]
    query.append((HUB_URL_PARAM, hub))
    return urllib.parse.urlunsplit(parts._replace(query=urllib.parse.urlencode(query)))


def subscribe(
    topic: str,
    hub: str,
    callback_url: str,
    lease_seconds: int,
    hmac_secret_length: int = 32,
) -> bool:
    """
    サブスクリプションを登録・更新する(初回登録と更新で共通の入口)

    - 未登録: シークレットを生成し、pendingで作成してからハブに要求する
    - 有効なactive: 更新として扱い、再検証が届くまでactive・有効期限を維持する
    - pending・expired・failed: 既存のシークレットを再利用し、pendingに戻す

    Args:
        topic (str): フィードURL
        hub (str): ハブURL
        callback_url (str): デプロイ環境のコールバックURL
        lease_seconds (int): 要求するリース期間(秒)
        hmac_secret_length (int): シークレット生成時の乱数のバイト数

    Returns:
        bool: ハブが要求を受け付けた場合True、それ以外はFalse(例外は送出しない)
    """
    now = int(time.time())
    existing: Subscription | None = subscription_store.get_subscription(topic, hub)

    renewal = False
    if existing is None:
        secret = signature_utils.generate_secret(hmac_secret_length)
        if not subscription_store.create_subscription(
            topic, hub, secret, lease_seconds, now
        ):
            logger.warning(
                "Subscription for %s at %s was created concurrently", topic, hub
            )
            return False
    elif subscription_store.effective_status(existing, now) == STATUS_ACTIVE:
        # 更新ではシークレットを変更しない
        secret = existing["secret"]
        renewal = True
        if not subscription_store.mark_renewal_requested(topic, hub, now):
            logger.warning(
                "Subscription for %s at %s changed during renewal", topic, hub
            )
            return False
    else:
        secret = existing["secret"]
        if not subscription_store.mark_pending(topic, hub, lease_seconds, now):
            logger.warning(
                "Subscription for %s at %s changed during resubscribe", topic, hub
            )
            return False

    accepted: bool = hub_client.request_subscription(
        hub,
        "subscribe",
        topic,
        build_callback_url(callback_url, hub),
        secret=secret,
        lease_seconds=lease_seconds,
    )
    if accepted:
        logger.info(
            "%s requested for %s at %s",
            "Renewal" if renewal else "Subscription",
            topic,
            hub,
        )
        return True

    # 更新失敗時は有効期限まではactiveのまま、次回の更新ジョブで再試行する
    if renewal:
        subscription_store.clear_renewal_requested(topic, hub, int(time.time()))
    else:
        subscription_store.mark_failed(topic, hub, int(time.time()))
    return False


def unsubscribe(topic: str, hub: str, callback_url: str) -> bool:
    """
    ハブに購読解除を要求する
    ステータスはハブからの購読解除の検証を受けた時点で終了状態になる

    Args:
        topic (str): フィードURL
        hub (str): ハブURL
        callback_url (str): デプロイ環境のコールバックURL

    Returns:
        bool: ハブが要求を受け付けた場合True
    """
    if subscription_store.get_subscription(topic, hub) is None:
        logger.warning("No subscription to unsubscribe: topic=%s, hub=%s", topic, hub)
        return False

    return hub_client.request_subscription(
        hub, "unsubscribe", topic, build_callback_url(callback_url, hub)
    )


def renew_subscriptions(
    subscriptions: List[Subscription],
    callback_url: str,
    lease_seconds: int,
    hmac_secret_length: int,
    delay_seconds: float,
) -> List[Dict[str, Any]]:
    """
    サブスクリプションを1件ずつ順番に更新する
    ハブのレート制限を考慮し、リクエスト間に一定時間待機する

    Args:
        subscriptions (List[Subscription]): 更新対象
        callback_url (str): デプロイ環境のコールバックURL
        lease_seconds (int): 要求するリース期間(秒)
        hmac_secret_length (int): シークレット生成時の乱数のバイト数
        delay_seconds (float): リクエスト間の待機時間(秒)

    Returns:
        List[Dict[str, Any]]: topic・hub・成否(エラー時はerror)のリスト
    """
    results: List[Dict[str, Any]] = []
    for index, subscription in enumerate(subscriptions):
        if index > 0 and delay_seconds > 0:
            time.sleep(delay_seconds)

        topic: str = subscription["topic"]
        hub: str = subscription["hub"]
        logger.info(
            "Renewing subscription for %s (expires_at: %s)",
            topic,
            subscription["expires_at"],
        )
        try:
            success: bool = subscribe(
                topic, hub, callback_url, lease_seconds, hmac_secret_length
            )
        except Exception as error:  # pylint: disable=broad-exception-caught
            # 1件の失敗で残りの更新を止めない
            logger.error(traceback.format_exc())
            results.append(
                {"topic": topic, "hub": hub, "success": False, "error": str(error)}
            )
            continue
        results.append({"topic": topic, "hub": hub, "success": success})
    return results


def check_feed_for_updates(topic: str) -> Dict[str, Any]:
    """
    フィードを直接取得し、最後にプッシュ通知を受けた後に更新されているかを判定する
    ハブが通知を送らなくなった状態を検出するためのフォールバック

    Args:
        topic (str): フィードURL

    Returns:
        dict: last_build_date・last_notification_date(UNIX時刻またはNone)、
              has_changed、feed_content

    Raises:
        requests.exceptions.RequestException: フィードを取得できなかった場合
    """
    notification_dates: List[int] = [
        subscription["last_notification_at"]
        for subscription in subscription_store.find_subscriptions_by_topic(topic)
        if subscription["last_notification_at"] is not None
    ]
    last_notification_date: int | None = max(notification_dates, default=None)

    response: requests.Response = feed_utils.fetch_feed(topic)
    last_build_date: int | None = feed_utils.get_last_build_date(response.content)

    # 更新日時が取得できないフィードは変更ありと判定できない
    has_changed: bool = last_build_date is not None and (
        last_notification_date is None or last_build_date > last_notification_date
    )
    return {
        "last_build_date": last_build_date,
        "last_notification_date": last_notification_date,
        "has_changed": has_changed,
        "feed_content": response.text,
    }


def manually_process_feed(topic: str, feed_update_topic_arn: str) -> Dict[str, Any]:
    """
    ハブ・署名を介さず、プッシュ通知と同じフィード処理を実行する

    Args:
        topic (str): フィードURL
        feed_update_topic_arn (str): フィード処理用のSNSトピックARN

    Returns:
        dict: success(bool)とmessage(str)
    """
    try:
        response: requests.Response = feed_utils.fetch_feed(topic)
        message_id: str = feed_processor.process_feed_notification(
            feed_update_topic_arn, topic, response.content, source="manual"
        )
    except requests.exceptions.RequestException as error:
        logger.error("Failed to fetch feed %s: %s", topic, error)
        return {"success": False, "message": f"Failed to fetch feed: {error}"}
    except ClientError as error:
        logger.error("Failed to publish feed update for %s: %s", topic, error)
        return {"success": False, "message": f"Failed to publish feed update: {error}"}

    return {"success": True, "message": f"Feed processed successfully: {message_id}"}


def to_isoformat(timestamp: int | None) -> str | None:
    """UNIX時刻(秒)をISO 8601形式(UTC)に変換する"""
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def describe_subscription(subscription: Subscription, now: int) -> Dict[str, Any]:
    """
    サブスクリプションをJSON応答用に変換する(シークレットは含めない)

    Args:
        subscription (Subscription): サブスクリプション
        now (int): 現在のUNIX時刻(秒)

    Returns:
        dict: JSON応答用の辞書
    """
    return {
        "topic": subscription["topic"],
        "hub": subscription["hub"],
        "status": subscription["status"],
        "effectiveStatus": subscription_store.effective_status(subscription, now),
        "leaseSeconds": subscription["lease_seconds"],
        "expiresAt": to_isoformat(subscription["expires_at"]),
        "renewalPending": subscription["renewal_pending"],
        "lastNotificationAt": to_isoformat(subscription["last_notification_at"]),
        "createdAt": to_isoformat(subscription["created_at"]),
        "updatedAt": to_isoformat(subscription["updated_at"]),
    }
