"""テスト共通の環境変数設定"""

import os

# boto3クライアント・レイヤーのモジュールはインポート時に環境変数を参照する
os.environ.setdefault("AWS_DEFAULT_REGION", "ap-northeast-1")
os.environ.setdefault("SUBSCRIPTIONS_TABLE", "test-subscriptions-table")
os.environ.setdefault("HUB_MAX_RETRIES", "3")
