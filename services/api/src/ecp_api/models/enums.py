"""领域枚举定义。"""

from enum import StrEnum


class Role(StrEnum):
    """用户角色。"""

    USER = "USER"  # 普通买家，注册后默认角色。
    VENDOR = "VENDOR"  # 入驻商家。
    ADMIN = "ADMIN"  # 平台管理员。


class AccountStatus(StrEnum):
    """账号状态。"""

    ACTIVE = "ACTIVE"  # 正常可用。
    SUSPENDED = "SUSPENDED"  # 暂停使用，通常由运营人工处理。
    BANNED = "BANNED"  # 封禁。


class OAuthProviderName(StrEnum):
    """支持的第三方登录提供方。"""

    GOOGLE = "google"
    GITHUB = "github"
