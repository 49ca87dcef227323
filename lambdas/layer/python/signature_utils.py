"""WebSubのHMACシークレット生成・署名検証を行うユーティリティ関数"""

import hashlib
import hmac
import secrets
from typing import Tuple

SUPPORTED_SIGNATURE_METHODS = ["sha1", "sha256", "sha384", "sha512"]


def generate_secret(length: int) -> str:
    """
    サブスクリプションごとのHMACシークレットを生成する

    Args:
        length (int): 乱数のバイト数

    Returns:
        str: 16進数文字列のシークレット
    """
    return secrets.token_hex(length)


def compute_signature(secret: str, body: bytes, method: str = "sha1") -> str:
    """
    リクエストボディのHMACダイジェストを計算する

    Args:
        secret (str): HMACシークレット
        body (bytes): 生のリクエストボディ
        method (str): ハッシュアルゴリズム名

    Returns:
        str: 16進数文字列のダイジェスト
    """
    return hmac.new(secret.encode("utf-8"), body, getattr(hashlib, method)).hexdigest()


def parse_signature_header(signature: str) -> Tuple[str, str]:
    """
    X-Hub-Signatureヘッダーを「アルゴリズム」と「ダイジェスト」に分解する

    Args:
        signature (str): X-Hub-Signatureヘッダー値(例: sha1=abcdef...)

    Returns:
        Tuple[str, str]: (アルゴリズム名, ダイジェスト)

    Raises:
        ValueError: ヘッダーが「<method>=<hex>」の形式でない場合
    """
    method, separator, digest = signature.strip().partition("=")
    if not separator or not method or not digest:
        raise ValueError(f"Malformed X-Hub-Signature header: {signature}")
    return method.lower(), digest


def verify_signature(secret: str, body: bytes, method: str, digest: str) -> bool:
    """
    プッシュ通知のHMAC署名を定数時間比較で検証する

    Args:
        secret (str): 保存済のHMACシークレット
        body (bytes): 生のリクエストボディ
        method (str): ヘッダーで指定されたアルゴリズム名
        digest (str): ヘッダーで指定されたダイジェスト

    Returns:
        bool: 署名が一致した場合True、アルゴリズム未対応または不一致の場合False
    """
    # compare_digestは非ASCII文字列を受け付けない
    if method not in SUPPORTED_SIGNATURE_METHODS or not digest.isascii():
        return False

    expected_digest: str = compute_signature(secret, body, method)
    return hmac.compare_digest(digest.lower(), expected_digest)
