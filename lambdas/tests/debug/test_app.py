"""WebSub調査用エンドポイントのユニットテスト"""

import json
import os
from unittest.mock import Mock, patch

import requests

# pylint: disable=import-outside-toplevel,import-error

NOW = 1_700_000_000
FEED_URL = "https://feed.example/rss"
ENVIRON = {"FEED_UPDATE_TOPIC_ARN": "arn:aws:sns:ap-northeast-1:123456789012:feed"}


def make_subscription(**overrides):
    """サブスクリプションを作成する"""
    subscription = {
        "topic": FEED_URL,
        "hub": "https://hub.example/",
        "secret": "test_secret",
        "status": "active",
        "lease_seconds": 86400,
        "expires_at": NOW + 86400,
        "renewal_pending": False,
        "last_notification_at": NOW - 3600,
        "created_at": NOW - 86400,
        "updated_at": NOW - 3600,
    }
    subscription.update(overrides)
    return subscription


def make_event(**query_params):
    """API Gatewayイベントを作成する"""
    return {"httpMethod": "GET", "queryStringParameters": query_params}


@patch.dict(os.environ, ENVIRON)
class TestFindSubscription:
    """find_subscription関数のテスト"""

    def test_find_subscription_with_hub(self):
        """hubUrl指定時はtopic + hubで取得するテスト"""
        from lambdas.debug.app import find_subscription

        with patch("subscription_store.get_subscription") as mock_get:
            mock_get.return_value = make_subscription()

            assert find_subscription(FEED_URL, "https://hub.example/") == (
                make_subscription()
            )
            mock_get.assert_called_once_with(FEED_URL, "https://hub.example/")

    def test_find_subscription_latest(self):
        """hubUrl未指定時は更新日時が最も新しいものを返すテスト"""
        from lambdas.debug.app import find_subscription

        with patch("subscription_store.find_subscriptions_by_topic") as mock_find:
            mock_find.return_value = [
                make_subscription(hub="https://hub1.example/", updated_at=NOW - 100),
                make_subscription(hub="https://hub2.example/", updated_at=NOW - 10),
            ]

            result = find_subscription(FEED_URL, None)

            assert result["hub"] == "https://hub2.example/"

    def test_find_subscription_not_found(self):
        """サブスクリプションがない場合のテスト"""
        from lambdas.debug.app import find_subscription

        with patch("subscription_store.find_subscriptions_by_topic") as mock_find:
            mock_find.return_value = []

            assert find_subscription(FEED_URL, None) is None


@patch.dict(os.environ, ENVIRON)
class TestPreview:
    """preview関数のテスト"""

    def test_preview_truncated(self):
        """長いフィードは先頭500文字に...を付けるテスト"""
        from lambdas.debug.app import preview

        assert preview("x" * 501) == "x" * 500 + "..."

    def test_preview_short_content(self):
        """500文字以下のフィードはそのまま返すテスト"""
        from lambdas.debug.app import preview

        assert preview("<rss/>") == "<rss/>"
        assert preview("x" * 500) == "x" * 500

    def test_preview_empty(self):
        """本文がない場合のテスト"""
        from lambdas.debug.app import preview

        assert preview("") is None
        assert preview(None) is None


@patch.dict(os.environ, ENVIRON)
@patch("lambdas.debug.app.time.time", Mock(return_value=NOW))
class TestLambdaHandler:
    """lambda_handler関数のテスト"""

    def test_lambda_handler_check(self):
        """action=checkでフィードの更新有無を返すテスト"""
        from lambdas.debug.app import lambda_handler

        with patch("lambdas.debug.app.find_subscription") as mock_find, patch(
            "subscription_manager.check_feed_for_updates"
        ) as mock_check:
            mock_find.return_value = make_subscription()
            mock_check.return_value = {
                "last_build_date": NOW,
                "last_notification_date": NOW - 3600,
                "has_changed": True,
                "feed_content": "x" * 600,
            }

            result = lambda_handler(make_event(action="check", feedUrl=FEED_URL), None)

            assert result["statusCode"] == 200
            body = json.loads(result["body"])
            assert body["message"] == "Feed check completed"
            assert body["feedUrl"] == FEED_URL
            assert body["subscription"] == {
                "status": "active",
                "expiresAt": "2023-11-15T22:13:20+00:00",
                "hub": "https://hub.example/",
            }
            assert body["lastBuildDate"] == "2023-11-14T22:13:20+00:00"
            assert body["lastNotificationDate"] == "2023-11-14T21:13:20+00:00"
            assert body["hasChanged"] is True
            assert body["feedContentPreview"] == "x" * 500 + "..."
            mock_check.assert_called_once_with(FEED_URL)

    def test_lambda_handler_check_fetch_error(self):
        """フィードを取得できない場合に502を返すテスト"""
        from lambdas.debug.app import lambda_handler

        with patch("lambdas.debug.app.find_subscription") as mock_find, patch(
            "subscription_manager.check_feed_for_updates"
        ) as mock_check:
            mock_find.return_value = make_subscription()
            mock_check.side_effect = requests.exceptions.ConnectionError("refused")

            result = lambda_handler(make_event(action="check", feedUrl=FEED_URL), None)

            assert result["statusCode"] == 502
            body = json.loads(result["body"])
            assert body["message"].startswith("Failed to fetch feed")
            assert body["subscription"]["hub"] == "https://hub.example/"

    def test_lambda_handler_process(self):
        """action=processで手動のフィード処理結果を返すテスト"""
        from lambdas.debug.app import lambda_handler

        with patch("lambdas.debug.app.find_subscription") as mock_find, patch(
            "subscription_manager.manually_process_feed"
        ) as mock_process:
            mock_find.return_value = make_subscription()
            mock_process.return_value = {
                "success": True,
                "message": "Feed processed successfully: message-1",
            }

            result = lambda_handler(
                make_event(action="process", feedUrl=FEED_URL), None
            )

            assert result["statusCode"] == 200
            body = json.loads(result["body"])
            assert body["success"] is True
            mock_process.assert_called_once_with(
                FEED_URL, ENVIRON["FEED_UPDATE_TOPIC_ARN"]
            )

    def test_lambda_handler_process_failure(self):
        """手動のフィード処理に失敗した場合に502を返すテスト"""
        from lambdas.debug.app import lambda_handler

        with patch("lambdas.debug.app.find_subscription") as mock_find, patch(
            "subscription_manager.manually_process_feed"
        ) as mock_process:
            mock_find.return_value = make_subscription()
            mock_process.return_value = {
                "success": False,
                "message": "Failed to fetch feed: refused",
            }

            result = lambda_handler(
                make_event(action="process", feedUrl=FEED_URL), None
            )

            assert result["statusCode"] == 502
            assert json.loads(result["body"])["success"] is False

    def test_lambda_handler_verify(self):
        """action=verifyで保存されている状態をシークレットなしで返すテスト"""
        from lambdas.debug.app import lambda_handler

        with patch("lambdas.debug.app.find_subscription") as mock_find:
            mock_find.return_value = make_subscription(status="pending")

            result = lambda_handler(make_event(action="verify", feedUrl=FEED_URL), None)

            assert result["statusCode"] == 200
            body = json.loads(result["body"])
            assert body["subscription"]["status"] == "pending"
            assert "secret" not in body["subscription"]
            assert "test_secret" not in result["body"]

    def test_lambda_handler_missing_feed_url(self):
        """feedUrlがない場合に400を返すテスト"""
        from lambdas.debug.app import lambda_handler

        result = lambda_handler({"queryStringParameters": None}, None)

        assert result["statusCode"] == 400
        assert json.loads(result["body"]) == {
            "message": "feedUrl parameter is required"
        }

    def test_lambda_handler_subscription_not_found(self):
        """サブスクリプションがない場合に404を返すテスト"""
        from lambdas.debug.app import lambda_handler

        with patch("lambdas.debug.app.find_subscription") as mock_find:
            mock_find.return_value = None

            result = lambda_handler(make_event(action="check", feedUrl=FEED_URL), None)

            assert result["statusCode"] == 404
            assert json.loads(result["body"]) == {
                "message": f"No subscription found for feed: {FEED_URL}"
            }

    def test_lambda_handler_invalid_action(self):
        """actionが不正な場合に400を返すテスト"""
        from lambdas.debug.app import lambda_handler

        with patch("lambdas.debug.app.find_subscription") as mock_find:
            mock_find.return_value = make_subscription()

            result = lambda_handler(make_event(action="delete", feedUrl=FEED_URL), None)

            assert result["statusCode"] == 400
            assert "Invalid action parameter" in json.loads(result["body"])["message"]

    def test_lambda_handler_exception(self):
        """予期しない例外の場合に500を返すテスト"""
        from lambdas.debug.app import lambda_handler

        with patch("lambdas.debug.app.find_subscription") as mock_find:
            mock_find.side_effect = Exception("DynamoDB error")

            result = lambda_handler(make_event(action="check", feedUrl=FEED_URL), None)

            assert result["statusCode"] == 500
            assert json.loads(result["body"]) == {"error": "Internal Server Error"}
