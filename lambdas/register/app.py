"""フィードのWebSubハブを検出し、サブスクリプションを登録する"""

import json
import logging
import os
import time
import traceback
from typing import Any, Dict, List

import subscription_manager
from feed_utils import discover_hub
from ssm_utils import get_parameter_value, get_parameter_values

LEASE_SECONDS = int(os.environ["LEASE_SECONDS"])
HMAC_SECRET_LENGTH = int(os.environ["HMAC_SECRET_LENGTH"])
WEBSUB_CALLBACK_URL_PARAMETER_NAME = os.environ["WEBSUB_CALLBACK_URL_PARAMETER_NAME"]
FEED_URLS_PARAMETER_NAME = os.environ["FEED_URLS_PARAMETER_NAME"]
RENEWAL_DELAY_SECONDS = float(os.environ.get("RENEWAL_DELAY_SECONDS", "1"))

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def register_feed(feed_url: str, callback_url: str) -> Dict[str, Any]:
    """
    1件のフィードのハブを検出してサブスクリプションを登録する

    Args:
        feed_url (str): フィードURL
        callback_url (str): デプロイ環境のコールバックURL

    Returns:
        dict: feedUrl・hub・成否(失敗理由)
    """
    hub: str | None = discover_hub(feed_url)
    if hub is None:
        return {"feedUrl": feed_url, "hub": None, "success": False, "error": "No hub"}

    logger.info("Found hub for %s: %s", feed_url, hub)
    success: bool = subscription_manager.subscribe(
        feed_url, hub, callback_url, LEASE_SECONDS, HMAC_SECRET_LENGTH
    )
    return {"feedUrl": feed_url, "hub": hub, "success": success}


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """
    フィードのWebSubサブスクリプションを登録するLambda関数のハンドラー
    イベントのfeedUrlsがなければParameter Storeのフィード一覧を対象にする

    Args:
        event (dict): イベント
        context: Lambda実行コンテキスト

    Returns:
        dict: レスポンス
    """
    try:
        feed_urls: List[str] = (event or {}).get("feedUrls") or get_parameter_values(
            FEED_URLS_PARAMETER_NAME
        )
        callback_url: str = get_parameter_value(WEBSUB_CALLBACK_URL_PARAMETER_NAME)
        logger.info("Found %d feeds to process", len(feed_urls))

        results: List[Dict[str, Any]] = []
        for index, feed_url in enumerate(feed_urls):
            if index > 0 and RENEWAL_DELAY_SECONDS > 0:
                time.sleep(RENEWAL_DELAY_SECONDS)
            try:
                results.append(register_feed(feed_url, callback_url))
            except Exception as error:  # pylint: disable=broad-exception-caught
                # 1件の失敗で残りのフィードの登録を止めない
                logger.error(traceback.format_exc())
                results.append(
                    {
                        "feedUrl": feed_url,
                        "hub": None,
                        "success": False,
                        "error": str(error),
                    }
                )

        successful: int = sum(1 for result in results if result["success"])
        logger.info(
            "WebSub subscription update complete: successful=%d, failed=%d, total=%d",
            successful,
            len(results) - successful,
            len(results),
        )
        return {
            "statusCode": 200,
            "body": json.dumps(
                {
                    "total": len(results),
                    "successful": successful,
                    "failed": len(results) - successful,
                    "results": results,
                }
            ),
        }

    except Exception:
        logger.error(traceback.format_exc())
        return {
            "statusCode": 500,
            "body": "Internal server error",
        }
