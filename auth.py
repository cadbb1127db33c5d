"""Bearer credentials for API callers and the HTML session cookie.

Sign-in itself is handled by the hosted identity provider; it hands out
tokens signed with the shared ``BOARDING_AUTH_SECRET``. This module only
mints tokens for local use and verifies them on the way in.
"""

import sys
from typing import Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from config import get_settings

ACCESS_TOKEN_MAX_AGE_SECS = 30 * 24 * 3600
SESSION_COOKIE = "access_token"


class NotAuthenticated(Exception):
    pass


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(get_settings().auth_secret, salt="access-token")


def issue_access_token(user_id: int) -> str:
    return _serializer().dumps({"sub": user_id})


def user_id_from_token(token: Optional[str]) -> int:
    if not token:
        raise NotAuthenticated("Missing credentials")
    try:
        data = _serializer().loads(token, max_age=ACCESS_TOKEN_MAX_AGE_SECS)
    except SignatureExpired as exc:
        raise NotAuthenticated("Session expired") from exc
    except BadSignature as exc:
        raise NotAuthenticated("Invalid credentials") from exc

    user_id = data.get("sub") if isinstance(data, dict) else None
    if not isinstance(user_id, int) or user_id <= 0:
        raise NotAuthenticated("Invalid credentials")
    return user_id


def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


if __name__ == "__main__":
    print(issue_access_token(int(sys.argv[1]) if len(sys.argv) > 1 else 1))
