import hmac

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from kinship.core.config import settings
from kinship.db.session import SessionLocal
from kinship.progression.engine import ProgressionEngine
from kinship.progression.feed import RedisChangeFeed
from kinship.progression.metrics import HttpMetricsSource
from kinship.progression.repo import SqlRelationshipStore

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)

_engine: ProgressionEngine | None = None


def build_engine() -> ProgressionEngine:
    return ProgressionEngine(
        store=SqlRelationshipStore(SessionLocal),
        metrics=HttpMetricsSource(settings.METRICS_BASE_URL, timeout=settings.METRICS_TIMEOUT_SECONDS),
        feed=RedisChangeFeed(),
        cooling_off_seconds=settings.COOLING_OFF_HOURS * 3600,
        retry_count=settings.CONFLICT_RETRY_COUNT,
        retry_delay=settings.CONFLICT_RETRY_DELAY,
    )


def get_engine() -> ProgressionEngine:
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def decode_party_id(token_value: str | None) -> str | None:
    if not token_value:
        return None
    try:
        payload = jwt.decode(token_value, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None
    sub = payload.get("sub")
    return str(sub) if sub is not None else None


async def get_current_party_id(
    request: Request,
    token: str | None = Depends(oauth2_scheme),
) -> str:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    token_value = token or request.cookies.get(settings.ACCESS_TOKEN_COOKIE_NAME)
    party_id = decode_party_id(token_value)
    if party_id is None:
        raise credentials_exception
    return party_id


def _verify_token(shared: str | None, token: str | None) -> None:
    """Simple shared-secret check."""
    if not shared:  # secret disabled
        return
    if not token:
        raise HTTPException(status_code=403, detail="Missing internal token")
    if not hmac.compare_digest(shared, token):
        raise HTTPException(status_code=403, detail="Invalid internal token")


async def require_internal_token(x_internal_token: str | None = Header(default=None)) -> None:
    _verify_token(settings.INTERNAL_API_TOKEN, x_internal_token)
