from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from synergy_api.core.config import get_settings

ANONYMOUS = "anonymous"


@dataclass
class Caller:
    sub: str
    authenticated: bool


def bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "", 1) if auth_header.startswith("Bearer ") else ""


def resolve_caller(request: Request) -> Caller:
    """Read the caller's subject from an optional bearer JWT.

    Identity is only used to attribute audit entries and rate-limit buckets, so an
    absent or undecodable token falls back to the anonymous caller.
    """
    token = bearer_token(request)
    if not token:
        return Caller(sub=ANONYMOUS, authenticated=False)

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return Caller(sub=ANONYMOUS, authenticated=False)

    subject = payload.get("sub")
    if subject is None:
        return Caller(sub=ANONYMOUS, authenticated=False)
    return Caller(sub=str(subject), authenticated=True)


async def get_current_caller(request: Request) -> Caller:
    context = getattr(request.state, "context", None)
    if context is not None and context.user_id:
        return Caller(sub=context.user_id, authenticated=context.user_id != ANONYMOUS)
    return resolve_caller(request)
