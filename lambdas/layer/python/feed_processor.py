"""受理したフィード更新をSNS経由でフィード処理側に引き渡す"""

import base64
import json
import logging
import time
from typing import Any, Dict

import boto3

# SNSのメッセージ上限(本文とメッセージ属性の合計)
SNS_MAX_MESSAGE_BYTES = 256 * 1024

logger = logging.getLogger(__name__)

sns_client = boto3.client("sns")


def message_size(message: str, attributes: Dict[str, Dict[str, str]]) -> int:
    """SNSの上限判定に使う本文とメッセージ属性の合計バイト数"""
    size: int = len(message.encode("utf-8"))
    for name, attribute in attributes.items():
        size += len(name.encode("utf-8"))
        size += len(attribute["DataType"].encode("utf-8"))
        size += len(attribute["StringValue"].encode("utf-8"))
    return size


def process_feed_notification(
    topic_arn: str, topic: str, body: bytes, source: str, hub: str | None = None
) -> str:
    """
    フィードの生データをフィード処理用のSNSトピックに発行する
    同一内容が複数回届く可能性があるため、購読側は冪等に処理すること

    Args:
        topic_arn (str): SNSトピックARN
        topic (str): フィードURL
        body (bytes): フィードの生データ(Base64エンコードして発行する)
        source (str): websub(プッシュ通知) または manual(手動処理)
        hub (str | None): 通知元のハブURL

    Returns:
        str: SNSのメッセージID
    """
    attributes: Dict[str, Dict[str, str]] = {
        "topic": {"DataType": "String", "StringValue": topic},
        "source": {"DataType": "String", "StringValue": source},
    }
    message: Dict[str, Any] = {
        "topic": topic,
        "hub": hub,
        "source": source,
        "received_at": int(time.time()),
        "content": base64.b64encode(body).decode("ascii"),
        "content_encoding": "base64",
        "truncated": False,
    }
    serialized: str = json.dumps(message)
    # 上限を超える場合は本文を渡さず、購読側にフィードを再取得させる
    if message_size(serialized, attributes) > SNS_MAX_MESSAGE_BYTES:
        logger.warning(
            "Feed payload for %s is %d bytes; publishing without content",
            topic,
            len(body),
        )
        message["content"] = None
        message["truncated"] = True
        serialized = json.dumps(message)

    response: Dict[str, Any] = sns_client.publish(
        TopicArn=topic_arn,
        Message=serialized,
        MessageAttributes=attributes,
    )
    logger.info("Published feed update for %s: %s", topic, response["MessageId"])
    return response["MessageId"]
