from fastapi import Depends, HTTPException, status, Request
from fastapi.security import OAuth2PasswordBearer, APIKeyHeader
from .jwt_handler import verify_access_token
from .api_key import verify_api_key
from .audit import Severity, record_security_event

# Defines the expected header format (Bearer <token>)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)

# Defines the expected internal service header
api_key_header = APIKeyHeader(name="X-Internal-API-Key", auto_error=False)


async def get_current_user(request: Request, token: str = Depends(oauth2_scheme)) -> str:
    """Dependency to validate JWT and return the user ID (sub)."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    payload = verify_access_token(token) if token else None
    user_id = payload.get("sub") if payload else None
    if user_id is None:
        await record_security_event(
            "unauthenticated_access",
            Severity.HIGH,
            request=request,
            details={"path": request.url.path, "token_present": bool(token)},
            blocked=True,
        )
        raise credentials_exception

    # Store in request state for downstream use (like rate limiting)
    request.state.user_id = str(user_id)
    return str(user_id)


async def verify_internal_api_key(api_key: str = Depends(api_key_header)) -> bool:
    """Dependency to validate service-to-service internal requests."""
    if not verify_api_key(api_key):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid or missing X-Internal-API-Key header"
        )
    return True
