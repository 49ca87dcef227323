"""
Parameter StoreからコールバックURL・購読フィード一覧を取得するユーティリティ関数
"""
from typing import Any, Dict, List

import boto3

ssm_client = boto3.client("ssm")


def get_parameter_value(parameter_name: str) -> str:
    """
    Parameter Storeからパラメータ値を復号して取得する

    Args:
        parameter_name (str): パラメータ名

    Returns:
        str: パラメータ値
    """
    response: Dict[str, Any] = ssm_client.get_parameter(
        Name=parameter_name, WithDecryption=True
    )
    return response["Parameter"]["Value"]


def get_parameter_values(parameter_name: str) -> List[str]:
    """
    StringList(カンマ区切り)・改行区切りのパラメータ値をリストとして取得する

    Args:
        parameter_name (str): パラメータ名

    Returns:
        List[str]: 空要素を除き、前後の空白を取り除いた値のリスト
    """
    value: str = get_parameter_value(parameter_name)
    return [
        item.strip()
        for line in value.splitlines()
        for item in line.split(",")
        if item.strip()
    ]
