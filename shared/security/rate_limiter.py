from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from .audit import Severity, client_ip, record_security_event
from .jwt_handler import verify_access_token


def user_id_or_ip(request: Request) -> str:
    """
    Key function for SlowAPI.
    Buckets authenticated callers by the JWT subject and everyone else by IP.
    """
    auth_header = request.headers.get("Authorization")

    if auth_header and auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1]
        payload = verify_access_token(token)
        if payload and "sub" in payload:
            return f"user:{payload['sub']}"

    return f"ip:{get_remote_address(request)}"


limiter = Limiter(key_func=user_id_or_ip)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Turns a slowapi rejection into a 429 and records it on the audit trail."""
    key = user_id_or_ip(request)
    await record_security_event(
        "rate_limit_exceeded",
        Severity.MEDIUM,
        request=request,
        user_id=key[len("user:"):] if key.startswith("user:") else None,
        details={"limit": str(exc.detail), "path": request.url.path, "ip": client_ip(request)},
        blocked=True,
    )
    return JSONResponse(
        status_code=429,
        content={"detail": {"code": "RATE_LIMITED", "message": f"Rate limit exceeded: {exc.detail}"}},
    )
