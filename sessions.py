import secrets
from typing import Optional

from fastapi import Request, Response

from cache import CacheManager
from config import SESSION_TTL_MINUTES
from models import DiscogsAuth

SESSION_COOKIE = "sid"


def get_session_id(request: Request) -> Optional[str]:
    """Get the visitor session id from the cookie"""
    sid = request.cookies.get(SESSION_COOKIE)
    if sid and len(sid) == 43:  # token_urlsafe(32)
        return sid
    return None


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


def set_session_cookie(response: Response, sid: str):
    """Set the session cookie for the lifetime of a session"""
    response.set_cookie(
        key=SESSION_COOKIE,
        value=sid,
        max_age=SESSION_TTL_MINUTES * 60,
        httponly=True,  # Prevent XSS
        samesite="lax",  # CSRF protection
        secure=False,  # Set to True if serving over HTTPS
    )


class SessionStore:
    """Per-visitor Discogs link, kept in process memory"""

    def __init__(self, cache_manager: Optional[CacheManager] = None):
        self.cache_manager = cache_manager or CacheManager(ttl_minutes=SESSION_TTL_MINUTES)

    def get_discogs_auth(self, sid: Optional[str]) -> Optional[DiscogsAuth]:
        if not sid:
            return None
        return self.cache_manager.get(f"session:{sid}:discogs")

    def set_discogs_auth(self, sid: str, auth: DiscogsAuth):
        self.cache_manager.set(f"session:{sid}:discogs", auth)

    def clear_discogs_auth(self, sid: Optional[str]):
        if sid:
            self.cache_manager.delete(f"session:{sid}:discogs")

    def cleanup(self) -> int:
        return len(self.cache_manager.cleanup())
