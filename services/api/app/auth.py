from typing import Optional

from fastapi import Header, HTTPException, Request
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from settings import settings

COOKIE_NAME = settings.session_cookie_name

serializer = URLSafeTimedSerializer(settings.session_secret, salt="followguard-admin-session")


def sign_session(admin_id: str) -> str:
    return serializer.dumps({"u": admin_id})


def verify_session(token: str, max_age_seconds: Optional[int] = None) -> Optional[dict]:
    try:
        return serializer.loads(token, max_age=max_age_seconds or settings.session_max_age_seconds)
    except (BadSignature, SignatureExpired):
        return None


def get_session_user(request: Request) -> Optional[str]:
    token = request.cookies.get(COOKIE_NAME)
    if not token:
        return None
    payload = verify_session(token)
    if not payload:
        return None
    return payload.get("u")


def require_admin(
    request: Request,
    x_admin_token: Optional[str] = Header(default=None),
    x_admin_id: Optional[str] = Header(default=None),
) -> str:
    """Resolve the acting admin id; it is written to the audit trail."""
    # 1) header token for scripts; X-Admin-Id names the operator
    if x_admin_token and x_admin_token == settings.admin_token:
        return (x_admin_id or "header_admin").strip()[:120] or "header_admin"

    # 2) signed cookie session
    user = get_session_user(request)
    if user:
        return user

    raise HTTPException(status_code=401, detail="Unauthorized")
