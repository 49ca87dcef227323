"""DynamoDBのWebSubサブスクリプションテーブルを操作する"""

import logging
import os
from typing import Any, Dict, List, TypedDict

import boto3
from botocore.exceptions import ClientError

SUBSCRIPTIONS_TABLE = os.environ["SUBSCRIPTIONS_TABLE"]
SUBSCRIPTIONS_STATUS_INDEX = os.environ.get(
    "SUBSCRIPTIONS_STATUS_INDEX", "status-index"
)

STATUS_PENDING = "pending"
STATUS_ACTIVE = "active"
STATUS_EXPIRED = "expired"
STATUS_FAILED = "failed"
STATUSES = [STATUS_PENDING, STATUS_ACTIVE, STATUS_EXPIRED, STATUS_FAILED]

# 更新ジョブの多重起動防止用のリース項目(statusを持たないためGSIには載らない)
SWEEP_LEASE_TOPIC = "lease#renewal-sweep"
SWEEP_LEASE_HUB = "lease"

logger = logging.getLogger(__name__)

dynamodb_client = boto3.client("dynamodb")


class Subscription(TypedDict):
    """サブスクリプション1件(topic + hub で一意)"""

    topic: str
    hub: str
    secret: str
    status: str
    lease_seconds: int
    expires_at: int | None
    renewal_pending: bool
    last_notification_at: int | None
    created_at: int
    updated_at: int


def _key(topic: str, hub: str) -> Dict[str, Dict[str, str]]:
    return {"topic": {"S": topic}, "hub": {"S": hub}}


def _optional_number(item: Dict[str, Any], name: str) -> int | None:
    value: Dict[str, str] | None = item.get(name)
    if value is None or "N" not in value:
        return None
    return int(value["N"])


def to_subscription(item: Dict[str, Any]) -> Subscription:
    """
    DynamoDBの項目をSubscriptionに変換する

    Args:
        item (dict): DynamoDBの項目(属性値の型記述子付き)

    Returns:
        Subscription: サブスクリプション
    """
    return {
        "topic": item["topic"]["S"],
        "hub": item["hub"]["S"],
        "secret": item["secret"]["S"],
        "status": item["status"]["S"],
        "lease_seconds": int(item["lease_seconds"]["N"]),
        "expires_at": _optional_number(item, "expires_at"),
        "renewal_pending": item.get("renewal_pending", {}).get("BOOL", False),
        "last_notification_at": _optional_number(item, "last_notification_at"),
        "created_at": int(item["created_at"]["N"]),
        "updated_at": int(item["updated_at"]["N"]),
    }


def effective_status(subscription: Subscription, now: int) -> str:
    """
    有効期限を考慮したステータスを返す
    activeでも有効期限を過ぎている場合はexpiredとして扱う

    Args:
        subscription (Subscription): サブスクリプション
        now (int): 現在のUNIX時刻(秒)

    Returns:
        str: ステータス
    """
    if (
        subscription["status"] == STATUS_ACTIVE
        and subscription["expires_at"] is not None
        and subscription["expires_at"] < now
    ):
        return STATUS_EXPIRED
    return subscription["status"]


def _is_conditional_check_failure(error: ClientError) -> bool:
    return (
        error.response.get("Error", {}).get("Code")
        == "ConditionalCheckFailedException"
    )


def _update_subscription(
    topic: str,
    hub: str,
    update_expression: str,
    condition_expression: str,
    values: Dict[str, Dict[str, Any]],
) -> bool:
    """
    条件付きでサブスクリプションを更新する

    Returns:
        bool: 更新した場合True、条件を満たさず更新しなかった場合False
    """
    params: Dict[str, Any] = {
        "TableName": SUBSCRIPTIONS_TABLE,
        "Key": _key(topic, hub),
        "UpdateExpression": update_expression,
        "ConditionExpression": condition_expression,
        "ExpressionAttributeValues": values,
    }
    # 未使用の属性名は渡せない
    if "#status" in update_expression or "#status" in condition_expression:
        params["ExpressionAttributeNames"] = {"#status": "status"}

    try:
        dynamodb_client.update_item(**params)
    except ClientError as error:
        if _is_conditional_check_failure(error):
            logger.info(
                "Conditional update skipped: topic=%s, hub=%s, condition=%s",
                topic,
                hub,
                condition_expression,
            )
            return False
        raise
    return True


def get_subscription(topic: str, hub: str) -> Subscription | None:
    """
    topicとhubからサブスクリプションを取得する

    Args:
        topic (str): フィードURL
        hub (str): ハブURL

    Returns:
        Subscription | None: 存在しない場合はNone
    """
    response: Dict[str, Any] = dynamodb_client.get_item(
        TableName=SUBSCRIPTIONS_TABLE, Key=_key(topic, hub), ConsistentRead=True
    )
    if "Item" not in response:
        return None
    return to_subscription(response["Item"])


def find_subscriptions_by_topic(topic: str) -> List[Subscription]:
    """
    topicに紐づく全ハブのサブスクリプションを取得する

    Args:
        topic (str): フィードURL

    Returns:
        List[Subscription]: サブスクリプションのリスト
    """
    paginator = dynamodb_client.get_paginator("query")
    subscriptions: List[Subscription] = []
    for page in paginator.paginate(
        TableName=SUBSCRIPTIONS_TABLE,
        KeyConditionExpression="topic = :topic",
        ExpressionAttributeValues={":topic": {"S": topic}},
        ConsistentRead=True,
    ):
        subscriptions.extend(to_subscription(item) for item in page.get("Items", []))
    return subscriptions


def list_subscriptions(
    status: str | None = None,
    topic: str | None = None,
    expires_after: int | None = None,
    expires_before: int | None = None,
    updated_before: int | None = None,
    limit: int | None = None,
) -> List[Subscription]:
    """
    条件に一致するサブスクリプションを更新日時の降順で取得する
    statusを指定した場合はGSIをQueryし、それ以外はテーブルをScanする

    Args:
        status (str | None): ステータス
        topic (str | None): フィードURL
        expires_after (int | None): 有効期限の下限(この値を含む)
        expires_before (int | None): 有効期限の上限(この値を含まない)
        updated_before (int | None): 更新日時の上限(この値を含まない)
        limit (int | None): 最大件数

    Returns:
        List[Subscription]: サブスクリプションのリスト
    """
    conditions: List[str] = []
    values: Dict[str, Dict[str, str]] = {}
    if topic is not None:
        conditions.append("topic = :topic")
        values[":topic"] = {"S": topic}
    if expires_after is not None:
        conditions.append("expires_at >= :expires_after")
        values[":expires_after"] = {"N": str(expires_after)}
    if expires_before is not None:
        conditions.append("expires_at < :expires_before")
        values[":expires_before"] = {"N": str(expires_before)}
    if updated_before is not None:
        conditions.append("updated_at < :updated_before")
        values[":updated_before"] = {"N": str(updated_before)}

    params: Dict[str, Any] = {"TableName": SUBSCRIPTIONS_TABLE}
    if status is not None:
        operation = "query"
        params["IndexName"] = SUBSCRIPTIONS_STATUS_INDEX
        params["KeyConditionExpression"] = "#status = :status"
        params["ExpressionAttributeNames"] = {"#status": "status"}
        values[":status"] = {"S": status}
    else:
        operation = "scan"
        # リース項目を除外する
        conditions.append("attribute_exists(secret)")
    if conditions:
        params["FilterExpression"] = " AND ".join(conditions)
    if values:
        params["ExpressionAttributeValues"] = values

    paginator = dynamodb_client.get_paginator(operation)
    subscriptions: List[Subscription] = []
    for page in paginator.paginate(**params):
        subscriptions.extend(to_subscription(item) for item in page.get("Items", []))

    subscriptions.sort(key=lambda subscription: subscription["updated_at"], reverse=True)
    if limit is not None:
        return subscriptions[:limit]
    return subscriptions


def find_expiring_subscriptions(now: int, window_seconds: int) -> List[Subscription]:
    """
    有効期限が現在時刻からwindow_seconds以内に到来するactiveなサブスクリプションを取得する

    Args:
        now (int): 現在のUNIX時刻(秒)
        window_seconds (int): 先読み時間(秒)

    Returns:
        List[Subscription]: サブスクリプションのリスト
    """
    return list_subscriptions(
        status=STATUS_ACTIVE,
        expires_after=now,
        expires_before=now + window_seconds + 1,
    )


def find_lapsed_subscriptions(now: int) -> List[Subscription]:
    """有効期限切れのままactiveになっているサブスクリプションを取得する"""
    return list_subscriptions(status=STATUS_ACTIVE, expires_before=now)


def find_stale_pending_subscriptions(cutoff: int) -> List[Subscription]:
    """cutoff以前から検証待ちのままのpendingなサブスクリプションを取得する"""
    return list_subscriptions(status=STATUS_PENDING, updated_before=cutoff)


def create_subscription(
    topic: str, hub: str, secret: str, lease_seconds: int, now: int
) -> bool:
    """
    pendingのサブスクリプションを新規作成する
    同じtopic・hubの項目が既に存在する場合は作成しない

    Args:
        topic (str): フィードURL
        hub (str): ハブURL
        secret (str): HMACシークレット
        lease_seconds (int): 要求するリース期間(秒)
        now (int): 現在のUNIX時刻(秒)

    Returns:
        bool: 作成した場合True、既に存在した場合False
    """
    try:
        dynamodb_client.put_item(
            TableName=SUBSCRIPTIONS_TABLE,
            Item={
                **_key(topic, hub),
                "secret": {"S": secret},
                "status": {"S": STATUS_PENDING},
                "lease_seconds": {"N": str(lease_seconds)},
                "renewal_pending": {"BOOL": False},
                "created_at": {"N": str(now)},
                "updated_at": {"N": str(now)},
            },
            ConditionExpression="attribute_not_exists(topic)",
        )
    except ClientError as error:
        if _is_conditional_check_failure(error):
            logger.info("Subscription already exists: topic=%s, hub=%s", topic, hub)
            return False
        raise
    return True


def mark_pending(topic: str, hub: str, lease_seconds: int, now: int) -> bool:
    """
    pending・終了状態(期限切れのactiveを含む)のサブスクリプションをpendingに戻す
    有効なactiveのサブスクリプションは対象外

    Returns:
        bool: 更新した場合True
    """
    return _update_subscription(
        topic,
        hub,
        "SET #status = :pending, lease_seconds = :lease_seconds, "
        "renewal_pending = :false, updated_at = :now",
        "#status IN (:pending, :expired, :failed) "
        "OR (#status = :active AND expires_at < :now)",
        {
            ":pending": {"S": STATUS_PENDING},
            ":expired": {"S": STATUS_EXPIRED},
            ":failed": {"S": STATUS_FAILED},
            ":active": {"S": STATUS_ACTIVE},
            ":lease_seconds": {"N": str(lease_seconds)},
            ":false": {"BOOL": False},
            ":now": {"N": str(now)},
        },
    )


def mark_renewal_requested(topic: str, hub: str, now: int) -> bool:
    """
    有効なactiveのサブスクリプションを再検証待ちにする
    ステータス・有効期限は再検証が届くまで変更しない

    Returns:
        bool: 更新した場合True
    """
    return _update_subscription(
        topic,
        hub,
        "SET renewal_pending = :true, updated_at = :now",
        "#status = :active AND expires_at >= :now",
        {
            ":active": {"S": STATUS_ACTIVE},
            ":true": {"BOOL": True},
            ":now": {"N": str(now)},
        },
    )


def clear_renewal_requested(topic: str, hub: str, now: int) -> bool:
    """更新要求が失敗したactiveのサブスクリプションの再検証待ちを解除する"""
    return _update_subscription(
        topic,
        hub,
        "SET renewal_pending = :false, updated_at = :now",
        "#status = :active",
        {
            ":active": {"S": STATUS_ACTIVE},
            ":false": {"BOOL": False},
            ":now": {"N": str(now)},
        },
    )


def activate_subscription(topic: str, hub: str, lease_seconds: int, now: int) -> bool:
    """
    検証待ちのサブスクリプションをactiveにし、有効期限を設定する
    検証待ち(pending、または再検証待ちのactive)でない場合は何もしない

    Args:
        topic (str): フィードURL
        hub (str): ハブURL
        lease_seconds (int): ハブが許可したリース期間(秒)
        now (int): 現在のUNIX時刻(秒)

    Returns:
        bool: 更新した場合True
    """
    return _update_subscription(
        topic,
        hub,
        "SET #status = :active, lease_seconds = :lease_seconds, "
        "expires_at = :expires_at, renewal_pending = :false, updated_at = :now",
        "#status = :pending OR (#status = :active AND renewal_pending = :true)",
        {
            ":pending": {"S": STATUS_PENDING},
            ":active": {"S": STATUS_ACTIVE},
            ":lease_seconds": {"N": str(lease_seconds)},
            ":expires_at": {"N": str(now + lease_seconds)},
            ":true": {"BOOL": True},
            ":false": {"BOOL": False},
            ":now": {"N": str(now)},
        },
    )


def mark_unsubscribed(topic: str, hub: str, now: int) -> bool:
    """購読解除が確認されたサブスクリプションをexpiredにする"""
    return _update_subscription(
        topic,
        hub,
        "SET #status = :expired, renewal_pending = :false, updated_at = :now",
        "#status IN (:pending, :active)",
        {
            ":pending": {"S": STATUS_PENDING},
            ":active": {"S": STATUS_ACTIVE},
            ":expired": {"S": STATUS_EXPIRED},
            ":false": {"BOOL": False},
            ":now": {"N": str(now)},
        },
    )


def mark_lapsed(topic: str, hub: str, now: int) -> bool:
    """有効期限を過ぎたactiveのサブスクリプションをexpiredにする"""
    return _update_subscription(
        topic,
        hub,
        "SET #status = :expired, renewal_pending = :false, updated_at = :now",
        "#status = :active AND expires_at < :now",
        {
            ":active": {"S": STATUS_ACTIVE},
            ":expired": {"S": STATUS_EXPIRED},
            ":false": {"BOOL": False},
            ":now": {"N": str(now)},
        },
    )


def mark_failed(topic: str, hub: str, now: int) -> bool:
    """ハブへの購読要求が失敗したpendingのサブスクリプションをfailedにする"""
    return _update_subscription(
        topic,
        hub,
        "SET #status = :failed, updated_at = :now",
        "#status = :pending",
        {
            ":pending": {"S": STATUS_PENDING},
            ":failed": {"S": STATUS_FAILED},
            ":now": {"N": str(now)},
        },
    )


def mark_verification_timed_out(topic: str, hub: str, cutoff: int, now: int) -> bool:
    """cutoff以前から検証が届かないpendingのサブスクリプションをfailedにする"""
    return _update_subscription(
        topic,
        hub,
        "SET #status = :failed, updated_at = :now",
        "#status = :pending AND updated_at < :cutoff",
        {
            ":pending": {"S": STATUS_PENDING},
            ":failed": {"S": STATUS_FAILED},
            ":cutoff": {"N": str(cutoff)},
            ":now": {"N": str(now)},
        },
    )


def record_notification(topic: str, hub: str, now: int) -> bool:
    """プッシュ通知を受理した日時を記録する"""
    return _update_subscription(
        topic,
        hub,
        "SET last_notification_at = :now",
        "attribute_exists(topic)",
        {":now": {"N": str(now)}},
    )


def acquire_sweep_lease(owner: str, now: int, lease_seconds: int) -> bool:
    """
    更新ジョブのリースを取得する
    未取得、または他の実行のリースが期限切れの場合のみ取得できる

    Args:
        owner (str): 実行を識別する文字列
        now (int): 現在のUNIX時刻(秒)
        lease_seconds (int): リース期間(秒)

    Returns:
        bool: 取得できた場合True
    """
    try:
        dynamodb_client.put_item(
            TableName=SUBSCRIPTIONS_TABLE,
            Item={
                **_key(SWEEP_LEASE_TOPIC, SWEEP_LEASE_HUB),
                "owner": {"S": owner},
                "lease_expires_at": {"N": str(now + lease_seconds)},
            },
            ConditionExpression="attribute_not_exists(topic) OR lease_expires_at < :now",
            ExpressionAttributeValues={":now": {"N": str(now)}},
        )
    except ClientError as error:
        if _is_conditional_check_failure(error):
            return False
        raise
    return True


def release_sweep_lease(owner: str) -> bool:
    """自身が取得した更新ジョブのリースを解放する"""
    try:
        dynamodb_client.delete_item(
            TableName=SUBSCRIPTIONS_TABLE,
            Key=_key(SWEEP_LEASE_TOPIC, SWEEP_LEASE_HUB),
            ConditionExpression="#owner = :owner",
            ExpressionAttributeNames={"#owner": "owner"},
            ExpressionAttributeValues={":owner": {"S": owner}},
        )
    except ClientError as error:
        if _is_conditional_check_failure(error):
            logger.warning("Sweep lease is held by another owner: %s", owner)
            return False
        raise
    return True
