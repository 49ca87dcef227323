"""有効期限が近いWebSubサブスクリプションを更新する(日次のスケジュール実行)"""

import json
import logging
import os
import time
import traceback
import uuid
from typing import Any, Dict, List

import subscription_manager
import subscription_store
from ssm_utils import get_parameter_value
from subscription_store import Subscription

LEASE_SECONDS = int(os.environ["LEASE_SECONDS"])
HMAC_SECRET_LENGTH = int(os.environ["HMAC_SECRET_LENGTH"])
WEBSUB_CALLBACK_URL_PARAMETER_NAME = os.environ["WEBSUB_CALLBACK_URL_PARAMETER_NAME"]
RENEWAL_WINDOW_SECONDS = int(os.environ.get("RENEWAL_WINDOW_SECONDS", "43200"))
RENEWAL_DELAY_SECONDS = float(os.environ.get("RENEWAL_DELAY_SECONDS", "1"))
VERIFY_TIMEOUT_SECONDS = int(os.environ.get("VERIFY_TIMEOUT_SECONDS", "3600"))
SWEEP_LEASE_SECONDS = int(os.environ.get("SWEEP_LEASE_SECONDS", "900"))

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def expire_lapsed_subscriptions(now: int) -> int:
    """
    有効期限を過ぎたactiveのサブスクリプションをexpiredとして保存する

    Args:
        now (int): 現在のUNIX時刻(秒)

    Returns:
        int: expiredにした件数
    """
    count = 0
    for subscription in subscription_store.find_lapsed_subscriptions(now):
        if subscription_store.mark_lapsed(
            subscription["topic"], subscription["hub"], now
        ):
            logger.info(
                "Subscription expired for %s at %s",
                subscription["topic"],
                subscription["hub"],
            )
            count += 1
    return count


def fail_unverified_subscriptions(now: int) -> int:
    """
    検証がタイムアウトしたpendingのサブスクリプションをfailedとして保存する

    Args:
        now (int): 現在のUNIX時刻(秒)

    Returns:
        int: failedにした件数
    """
    cutoff: int = now - VERIFY_TIMEOUT_SECONDS
    count = 0
    for subscription in subscription_store.find_stale_pending_subscriptions(cutoff):
        if subscription_store.mark_verification_timed_out(
            subscription["topic"], subscription["hub"], cutoff, now
        ):
            logger.warning(
                "Verification timed out for %s at %s",
                subscription["topic"],
                subscription["hub"],
            )
            count += 1
    return count


def renew_expiring_subscriptions(callback_url: str) -> Dict[str, int]:
    """
    有効期限が先読み時間内に到来するactiveのサブスクリプションを順番に更新する
    更新に失敗しても有効期限まではactiveのままとし、翌日の実行で再試行する

    Args:
        callback_url (str): デプロイ環境のコールバックURL

    Returns:
        dict: 更新対象・成功・失敗・残件数
    """
    now = int(time.time())
    expiring: List[Subscription] = subscription_store.find_expiring_subscriptions(
        now, RENEWAL_WINDOW_SECONDS
    )
    logger.info("Found %d subscriptions that need renewal", len(expiring))

    results: List[Dict[str, Any]] = subscription_manager.renew_subscriptions(
        expiring,
        callback_url,
        LEASE_SECONDS,
        HMAC_SECRET_LENGTH,
        RENEWAL_DELAY_SECONDS,
    )
    renewed: int = sum(1 for result in results if result["success"])

    # 再検証待ちでないものは次回以降の実行で再び更新対象となる
    remaining: int = sum(
        1
        for subscription in subscription_store.find_expiring_subscriptions(
            int(time.time()), RENEWAL_WINDOW_SECONDS
        )
        if not subscription["renewal_pending"]
    )
    return {
        "total": len(expiring),
        "renewed": renewed,
        "failed": len(results) - renewed,
        "remaining": remaining,
    }


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    WebSubサブスクリプションを更新するLambda関数のハンドラー

    Args:
        event (dict): EventBridgeイベント
        context: Lambda実行コンテキスト

    Returns:
        dict: レスポンス
    """
    owner: str = getattr(context, "aws_request_id", None) or str(uuid.uuid4())
    try:
        # 同じサブスクリプション群に対する更新ジョブの多重実行を防ぐ
        if not subscription_store.acquire_sweep_lease(
            owner, int(time.time()), SWEEP_LEASE_SECONDS
        ):
            logger.warning("Another renewal sweep is running; skipping")
            return {"statusCode": 409, "body": "Renewal sweep already running"}

        try:
            now = int(time.time())
            expired: int = expire_lapsed_subscriptions(now)
            timed_out: int = fail_unverified_subscriptions(now)

            callback_url: str = get_parameter_value(WEBSUB_CALLBACK_URL_PARAMETER_NAME)
            summary: Dict[str, int] = renew_expiring_subscriptions(callback_url)
            summary["expired"] = expired
            summary["timed_out"] = timed_out
        finally:
            subscription_store.release_sweep_lease(owner)

        logger.info(
            "WebSub renewal complete: renewed=%d, failed=%d, total=%d, "
            "remaining=%d, expired=%d, timed_out=%d",
            summary["renewed"],
            summary["failed"],
            summary["total"],
            summary["remaining"],
            summary["expired"],
            summary["timed_out"],
        )
        return {
            "statusCode": 200,
            "body": json.dumps(summary),
        }

    except Exception:
        logger.error(traceback.format_exc())
        return {
            "statusCode": 500,
            "body": "Internal server error",
        }
