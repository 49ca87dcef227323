"""WebSub HubへのPOSTリクエスト送信のユニットテスト"""

from unittest.mock import Mock, patch

import pytest
import requests

# pylint: disable=import-outside-toplevel,import-error


def make_response(status_code, text=""):
    """requests.Responseのモックを作成する"""
    mock_response = Mock()
    mock_response.status_code = status_code
    mock_response.text = text
    return mock_response


SUBSCRIBE_FIELDS = {
    "hub.mode": "subscribe",
    "hub.topic": "https://feed.example/rss",
    "hub.callback": "https://example.com/websub/callback?hub_url=https%3A%2F%2Fhub.example%2F",
    "hub.verify": "async",
    "hub.secret": "test_secret",
    "hub.lease_seconds": "86400",
}


class TestSendHubRequest:
    """send_hub_request関数のテスト"""

    def test_send_hub_request_accepted(self):
        """ハブが202を返した場合のテスト"""
        from hub_client import send_hub_request

        with patch("hub_client.requests.post") as mock_requests_post:
            mock_requests_post.return_value = make_response(202, "Accepted")

            result = send_hub_request("https://hub.example/", SUBSCRIBE_FIELDS)

            assert result == 202
            mock_requests_post.assert_called_once()

    def test_send_hub_request_any_2xx(self):
        """202以外の2xxも受理とみなすテスト"""
        from hub_client import send_hub_request

        with patch("hub_client.requests.post") as mock_requests_post:
            mock_requests_post.return_value = make_response(204)

            assert send_hub_request("https://hub.example/", SUBSCRIBE_FIELDS) == 204

    def test_send_hub_request_form_encoded(self):
        """フォームエンコードのボディ・ヘッダー・タイムアウトのテスト"""
        from hub_client import send_hub_request

        with patch("hub_client.requests.post") as mock_requests_post:
            mock_requests_post.return_value = make_response(202)

            send_hub_request("https://hub.example/", SUBSCRIBE_FIELDS)

            call_kwargs = mock_requests_post.call_args[1]
            assert call_kwargs["url"] == "https://hub.example/"
            assert "hub.mode=subscribe" in call_kwargs["data"]
            assert "hub.verify=async" in call_kwargs["data"]
            assert "hub.secret=test_secret" in call_kwargs["data"]
            assert "hub.lease_seconds=86400" in call_kwargs["data"]
            assert "hub.topic=https%3A%2F%2Ffeed.example%2Frss" in call_kwargs["data"]
            assert call_kwargs["headers"]["Content-Type"] == (
                "application/x-www-form-urlencoded"
            )
            assert call_kwargs["timeout"] > 0

    def test_send_hub_request_429_retry_success(self):
        """429スロットリングエラー後の再試行成功テスト"""
        from hub_client import send_hub_request

        with patch("hub_client.requests.post") as mock_requests_post:
            with patch("hub_client.time.sleep") as mock_sleep:
                mock_requests_post.side_effect = [
                    make_response(429, "Throttled"),
                    make_response(202, "Accepted"),
                ]

                send_hub_request("https://hub.example/", SUBSCRIBE_FIELDS)

                assert mock_requests_post.call_count == 2
                mock_sleep.assert_called_once_with(1.0)

    def test_send_hub_request_429_max_retries_exceeded(self):
        """429エラーの最大再試行回数超過後の失敗テスト"""
        from hub_client import HubRequestError, send_hub_request

        with patch("hub_client.requests.post") as mock_requests_post:
            with patch("hub_client.time.sleep") as mock_sleep:
                mock_requests_post.return_value = make_response(429, "Throttled")

                with pytest.raises(HubRequestError, match="status code: 429"):
                    send_hub_request("https://hub.example/", SUBSCRIBE_FIELDS)

                # 初回 + 3回再試行
                assert mock_requests_post.call_count == 4
                assert [call[0][0] for call in mock_sleep.call_args_list] == [
                    1.0,
                    2.0,
                    4.0,
                ]

    def test_send_hub_request_non_retryable_error(self):
        """再試行不可能なエラーの即座の失敗テスト"""
        from hub_client import HubRequestError, send_hub_request

        with patch("hub_client.requests.post") as mock_requests_post:
            with patch("hub_client.time.sleep") as mock_sleep:
                mock_requests_post.return_value = make_response(500, "Internal Server Error")

                with pytest.raises(HubRequestError) as excinfo:
                    send_hub_request("https://hub.example/", SUBSCRIBE_FIELDS)

                assert excinfo.value.status_code == 500
                assert mock_requests_post.call_count == 1
                mock_sleep.assert_not_called()


class TestRequestSubscription:
    """request_subscription関数のテスト"""

    def test_request_subscription_accepted(self):
        """ハブが要求を受け付けた場合のテスト"""
        from hub_client import request_subscription

        with patch("hub_client.send_hub_request") as mock_send:
            mock_send.return_value = 202

            result = request_subscription(
                "https://hub.example/",
                "subscribe",
                "https://feed.example/rss",
                "https://example.com/websub/callback",
                secret="test_secret",
                lease_seconds=86400,
            )

            assert result is True
            mock_send.assert_called_once_with(
                "https://hub.example/",
                {
                    "hub.mode": "subscribe",
                    "hub.topic": "https://feed.example/rss",
                    "hub.callback": "https://example.com/websub/callback",
                    "hub.verify": "async",
                    "hub.secret": "test_secret",
                    "hub.lease_seconds": "86400",
                },
            )

    def test_request_subscription_unsubscribe_fields(self):
        """購読解除ではシークレット・リース期間を送らないテスト"""
        from hub_client import request_subscription

        with patch("hub_client.send_hub_request") as mock_send:
            mock_send.return_value = 202

            request_subscription(
                "https://hub.example/",
                "unsubscribe",
                "https://feed.example/rss",
                "https://example.com/websub/callback",
            )

            fields = mock_send.call_args[0][1]
            assert fields["hub.mode"] == "unsubscribe"
            assert "hub.secret" not in fields
            assert "hub.lease_seconds" not in fields

    def test_request_subscription_rejected(self):
        """ハブが要求を拒否した場合は例外にせずFalseを返すテスト"""
        from hub_client import HubRequestError, request_subscription

        with patch("hub_client.send_hub_request") as mock_send:
            mock_send.side_effect = HubRequestError(400, "Bad Request")

            result = request_subscription(
                "https://hub.example/",
                "subscribe",
                "https://feed.example/rss",
                "https://example.com/websub/callback",
                secret="test_secret",
                lease_seconds=86400,
            )

            assert result is False

    def test_request_subscription_network_error(self):
        """通信エラー・タイムアウトの場合は例外にせずFalseを返すテスト"""
        from hub_client import request_subscription

        with patch("hub_client.requests.post") as mock_requests_post:
            mock_requests_post.side_effect = requests.exceptions.Timeout("timed out")

            result = request_subscription(
                "https://hub.example/",
                "subscribe",
                "https://feed.example/rss",
                "https://example.com/websub/callback",
                secret="test_secret",
                lease_seconds=86400,
            )

            assert result is False
            assert mock_requests_post.call_count == 1
