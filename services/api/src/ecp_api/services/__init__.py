"""服务层能力导出集合。"""

from ecp_api.services.auth import AuthPolicy, AuthResult, AuthService, Identity, RegistrationResult
from ecp_api.services.email import BackgroundOtpNotifier, EmailSender, OtpNotifier
from ecp_api.services.local_auth import generate_otp, hash_password, verify_password
from ecp_api.services.oauth import OAUTH_PROVIDERS, OAuthClient, OAuthCredentials, OAuthIdentity, provision_oauth_user
from ecp_api.services.sessions import SessionManager
from ecp_api.services.storage import LocalFileStorage, StorageError, UploadedFile
from ecp_api.services.users import AccountService

__all__ = [
    "OAUTH_PROVIDERS",
    "AccountService",
    "AuthPolicy",
    "AuthResult",
    "AuthService",
    "BackgroundOtpNotifier",
    "EmailSender",
    "Identity",
    "LocalFileStorage",
    "OAuthClient",
    "OAuthCredentials",
    "OAuthIdentity",
    "OtpNotifier",
    "RegistrationResult",
    "SessionManager",
    "StorageError",
    "UploadedFile",
    "generate_otp",
    "hash_password",
    "provision_oauth_user",
    "verify_password",
]
