import hmac

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from creditsync.config import settings
from creditsync.core.exceptions import AuthenticationError

# Security scheme
security = HTTPBearer(auto_error=False)


def require_admin_token(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> str:
    """관리자 Bearer 토큰 검증 (ADMIN_API_TOKEN 미설정 시 모든 요청 거부)"""
    expected = settings.ADMIN_API_TOKEN
    if not expected:
        raise AuthenticationError("Admin API is disabled")
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthenticationError("Missing admin credentials")
    if not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        raise AuthenticationError("Invalid admin credentials")
    return "admin"
