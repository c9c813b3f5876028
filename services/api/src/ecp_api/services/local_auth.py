"""本地凭据工具：口令哈希与一次性验证码。"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import secrets

DEFAULT_HASH_ITERATIONS = 390000
OTP_LENGTH = 6


def hash_password(password: str, *, iterations: int = DEFAULT_HASH_ITERATIONS) -> str:
    """使用 PBKDF2-SHA256 生成带盐口令哈希。"""
    salt = secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    salt_b64 = base64.b64encode(salt).decode("ascii")
    digest_b64 = base64.b64encode(digest).decode("ascii")
    return f"pbkdf2_sha256${iterations}${salt_b64}${digest_b64}"


def verify_password(password: str, password_hash: str) -> bool:
    """校验口令是否匹配，哈希格式异常一律视为不匹配。"""
    try:
        algorithm, iterations_text, salt_b64, expected_digest_b64 = password_hash.split("$", 3)
        if algorithm != "pbkdf2_sha256":
            return False
        iterations = int(iterations_text)
        salt = base64.b64decode(salt_b64.encode("ascii"))
        expected_digest = base64.b64decode(expected_digest_b64.encode("ascii"))
    except (ValueError, TypeError, binascii.Error):
        return False

    actual_digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return hmac.compare_digest(actual_digest, expected_digest)


def generate_otp(length: int = OTP_LENGTH) -> str:
    """生成定长数字验证码，允许前导 0。"""
    return "".join(str(secrets.randbelow(10)) for _ in range(length))


def hash_verification_code(code: str) -> str:
    """为找回密码链接生成一次性哈希。

    加入随机盐后再做 SHA-256，结果不可由 6 位验证码枚举反推，且可直接放入 URL 路径。
    """
    salt = secrets.token_hex(16)
    return hashlib.sha256(f"{salt}:{code}".encode("utf-8")).hexdigest()


def random_password() -> str:
    """第三方登录自动建号时使用的随机口令。"""
    return secrets.token_urlsafe(24)
