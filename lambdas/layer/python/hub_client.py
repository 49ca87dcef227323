"""WebSub HubへサブスクリプションのPOSTリクエストを送信する"""

import logging
import os
import time
import urllib.parse
from typing import Dict

import requests

HUB_REQUEST_TIMEOUT = float(os.environ.get("HUB_REQUEST_TIMEOUT", "30"))
HUB_MAX_RETRIES = int(os.environ.get("HUB_MAX_RETRIES", "3"))
BASE_DELAY = 1.0  # 初回待機時間（秒）
USER_AGENT = "FeedWebSub-Subscriber/1.0"

logger = logging.getLogger(__name__)


class HubRequestError(Exception):
    """ハブがリクエストを受け付けなかったことを表す例外"""

    def __init__(self, status_code: int, text: str):
        super().__init__(f"status code: {status_code}, response: {text}")
        self.status_code = status_code
        self.text = text


def send_hub_request(hub_url: str, fields: Dict[str, str]) -> int:
    """
    ハブにフォームエンコードのPOSTリクエストを送信する
    スロットル(429)の場合のみ指数バックオフで再試行する

    Args:
        hub_url (str): ハブURL
        fields (dict): hub.*パラメータ

    Returns:
        int: 2xxのステータスコード

    Raises:
        HubRequestError: 2xx以外のレスポンスの場合、または再試行回数を超えた場合
        requests.exceptions.RequestException: 通信エラーの場合(再試行しない)
    """
    data: str = urllib.parse.urlencode(fields)
    headers: Dict[str, str] = {
        "Content-Type": "application/x-www-form-urlencoded",
        "User-Agent": USER_AGENT,
    }

    for attempt in range(HUB_MAX_RETRIES + 1):
        response = requests.post(
            url=hub_url,
            data=data,
            headers=headers,
            timeout=HUB_REQUEST_TIMEOUT,
        )
        logger.info(
            "Hub %s responded %d to %s request",
            hub_url,
            response.status_code,
            fields.get("hub.mode"),
        )

        if 200 <= response.status_code < 300:
            return response.status_code

        if response.status_code == 429 and attempt < HUB_MAX_RETRIES:
            delay = BASE_DELAY * (2**attempt)
            logger.warning(
                "Throttled (429) on attempt %d/%d. Retrying in %.1f seconds...",
                attempt + 1,
                HUB_MAX_RETRIES + 1,
                delay,
            )
            time.sleep(delay)
            continue

        raise HubRequestError(response.status_code, response.text)

    # HUB_MAX_RETRIESが負の場合のみ到達する
    raise HubRequestError(429, "No attempts made")


def request_subscription(
    hub_url: str,
    mode: str,
    topic: str,
    callback_url: str,
    secret: str | None = None,
    lease_seconds: int | None = None,
) -> bool:
    """
    ハブに購読・購読解除を要求する
    通信エラー・2xx以外のレスポンスは例外にせずFalseとして返す

    Args:
        hub_url (str): ハブURL
        mode (str): subscribe または unsubscribe
        topic (str): フィードURL
        callback_url (str): コールバックURL
        secret (str | None): HMACシークレット(subscribeのみ)
        lease_seconds (int | None): 要求するリース期間(subscribeのみ)

    Returns:
        bool: ハブが要求を受け付けた場合True
    """
    fields: Dict[str, str] = {
        "hub.mode": mode,
        "hub.topic": topic,
        "hub.callback": callback_url,
        "hub.verify": "async",
    }
    if secret is not None:
        fields["hub.secret"] = secret
    if lease_seconds is not None:
        fields["hub.lease_seconds"] = str(lease_seconds)

    try:
        send_hub_request(hub_url, fields)
    except HubRequestError as error:
        logger.error("Hub rejected %s for %s at %s: %s", mode, topic, hub_url, error)
        return False
    except requests.exceptions.RequestException as error:
        logger.error("Hub request failed for %s at %s: %s", topic, hub_url, error)
        return False

    logger.info("Hub accepted %s for %s at %s", mode, topic, hub_url)
    return True
