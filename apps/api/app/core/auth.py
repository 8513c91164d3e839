from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    email: str
    name: str | None = None


async def get_session_user(request: Request) -> AuthUser | None:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return None

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None

    subject = payload.get("sub")
    email = payload.get("email")
    if not subject or not isinstance(email, str) or not email:
        return None

    name = payload.get("name")
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = str(subject)
    return AuthUser(sub=str(subject), email=email.strip().lower(), name=name if isinstance(name, str) else None)
