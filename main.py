from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, Tuple
import asyncio
import logging
import secrets
import traceback

from fastapi import FastAPI, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse

from cache import CacheManager
from collection import CollectionQuery, CollectionService
from config import (
    CACHE_CLEANUP_INTERVAL_SECONDS,
    CLIENT_URL,
    COLLECTION_CACHE_TTL_MINUTES,
    DEBUG,
    DEFAULT_PER_PAGE,
    DISCOGS_APP_DEMO_USERNAME,
    DISCOGS_TOKEN,
    HOST,
    LOG_LEVEL,
    MAX_PER_PAGE,
    OAUTH_STATE_TTL_MINUTES,
    PORT,
)
from discogs_client import DiscogsClient
from errors import AuthError, CollectionError, QueryValidationError, RateLimitedError
from models import CollectionResult, DiscogsAuth, Mode, SortField, SortOrder
from oauth_client import DiscogsOAuthClient
from search_index import SearchIndex
from sessions import SessionStore, get_session_id, new_session_id, set_session_cookie


logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Initialize components
cache_manager = CacheManager(ttl_minutes=COLLECTION_CACHE_TTL_MINUTES)
search_index = SearchIndex()
discogs_client = DiscogsClient()
oauth_client = DiscogsOAuthClient()
collection_service = CollectionService(cache_manager, search_index, discogs_client)
session_store = SessionStore()
oauth_states = CacheManager(ttl_minutes=OAUTH_STATE_TTL_MINUTES)


async def _cleanup_loop():
    """Sweep expired collection, session and OAuth state entries on a timer"""
    while True:
        await asyncio.sleep(CACHE_CLEANUP_INTERVAL_SECONDS)
        collection_service.cleanup()
        session_store.cleanup()
        oauth_states.cleanup()


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not DISCOGS_TOKEN or not DISCOGS_APP_DEMO_USERNAME:
        logger.warning(
            "DISCOGS_TOKEN and DISCOGS_APP_DEMO_USERNAME not set, demo mode will not work"
        )
    cleanup_task = asyncio.create_task(_cleanup_loop())

    yield

    cleanup_task.cancel()
    try:
        await cleanup_task
    except asyncio.CancelledError:
        pass
    await discogs_client.close()
    await oauth_client.close()


app = FastAPI(title="RecordShelf", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[CLIENT_URL],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


def no_store(payload: dict, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    response = JSONResponse(payload, status_code=status_code)
    response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitedError)
async def rate_limited_handler(request: Request, exc: RateLimitedError):
    logger.warning("Rate limited while serving %s", request.url.path)
    response = no_store(
        {
            "error": "rate_limited",
            "message": "Discogs is busy right now. Please try again in a few seconds.",
        },
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
    )
    if exc.retry_after:
        response.headers["Retry-After"] = str(int(exc.retry_after))
    return response


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    logger.warning("Discogs auth failed for %s: %s", request.url.path, exc)
    return no_store(
        {"error": "auth_required", "message": "Please reconnect your Discogs account."},
        status_code=status.HTTP_401_UNAUTHORIZED,
    )


@app.exception_handler(RequestValidationError)
@app.exception_handler(QueryValidationError)
async def validation_error_handler(request: Request, exc: Exception):
    if isinstance(exc, RequestValidationError):
        message = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'][1:])}: {error['msg']}"
            for error in exc.errors()
        )
    else:
        message = str(exc)
    return no_store(
        {"error": "invalid_request", "message": message},
        status_code=status.HTTP_400_BAD_REQUEST,
    )


@app.exception_handler(CollectionError)
@app.exception_handler(Exception)
async def internal_error_handler(request: Request, exc: Exception):
    logger.error(
        "Error serving %s", request.url.path, exc_info=(type(exc), exc, exc.__traceback__)
    )
    payload = {"error": "internal_error", "message": "Failed to load collection"}
    if DEBUG:
        payload["detail"] = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )
    return no_store(payload, status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


def ensure_session(request: Request) -> Tuple[str, bool]:
    """Session id for this visitor, and whether it was just created"""
    sid = get_session_id(request)
    if sid:
        return sid, False
    return new_session_id(), True


def build_query(
    request: Request,
    mode: Mode,
    page: int = 1,
    per_page: int = DEFAULT_PER_PAGE,
    folder: int = 0,
    sort: SortField = SortField.ADDED,
    order: SortOrder = SortOrder.DESC,
    search: Optional[str] = None,
    fuzzy: bool = False,
) -> CollectionQuery:
    sid = get_session_id(request)
    return CollectionQuery(
        mode=mode,
        page=page,
        per_page=per_page,
        folder_id=folder,
        sort=sort,
        order=order,
        search=search,
        fuzzy=fuzzy,
        owner_id=sid,
        discogs_auth=session_store.get_discogs_auth(sid),
    )


def collection_payload(result: CollectionResult) -> dict:
    return {
        "mode": result.mode.value,
        "discogsUsername": result.discogs_username,
        "releases": [release.model_dump(mode="json") for release in result.releases],
        "folders": [folder.model_dump(mode="json") for folder in result.folders],
        "pagination": result.pagination.model_dump(mode="json", exclude_none=True),
    }


@app.get("/api/collection")
async def api_collection(
    request: Request,
    mode: Mode = Mode.DEMO,
    page: int = Query(1, ge=1),
    per_page: int = Query(DEFAULT_PER_PAGE, alias="perPage", ge=1, le=MAX_PER_PAGE),
    folder: int = Query(0, ge=0),
    sort: SortField = SortField.ADDED,
    order: SortOrder = SortOrder.DESC,
    search: Optional[str] = None,
):
    """Page of the demo or linked collection, filtered when search is given"""
    query = build_query(request, mode, page, per_page, folder, sort, order, search)
    result = await collection_service.get_collection(query)
    return no_store(collection_payload(result))


@app.get("/api/collection/search")
async def api_collection_search(
    request: Request,
    q: str = Query(..., min_length=1),
    mode: Mode = Mode.DEMO,
    page: int = Query(1, ge=1),
    per_page: int = Query(DEFAULT_PER_PAGE, alias="perPage", ge=1, le=MAX_PER_PAGE),
    folder: int = Query(0, ge=0),
    sort: SortField = SortField.ADDED,
    order: SortOrder = SortOrder.DESC,
    fuzzy: bool = False,
):
    """Search the whole folder and return one page of matches"""
    if not q.strip():
        raise QueryValidationError("Search query is required")
    query = build_query(request, mode, page, per_page, folder, sort, order, q, fuzzy)
    result = await collection_service.get_collection(query)
    payload = collection_payload(result)
    payload["totalResults"] = result.pagination.items
    return no_store(payload)


@app.get("/api/collection/folders")
async def api_collection_folders(request: Request, mode: Mode = Mode.DEMO):
    folders = await collection_service.get_folders(build_query(request, mode))
    return no_store({"folders": [folder.model_dump(mode="json") for folder in folders]})


@app.post("/api/collection/refresh")
async def api_collection_refresh(
    request: Request, folder: int = Query(0, ge=0), mode: Mode = Mode.DEMO
):
    """Drop the cached folder and load it again from Discogs"""
    result = await collection_service.refresh_cache(build_query(request, mode, folder=folder))
    return no_store(
        {
            "success": result.success,
            "message": result.message,
            "cacheCleared": result.cache_cleared,
            "dataRefreshed": result.data_refreshed,
        }
    )


@app.post("/api/auth/discogs/request")
async def auth_discogs_request(request: Request):
    """Start linking a Discogs account, returns the URL the visitor has to approve"""
    sid, is_new = ensure_session(request)
    callback_url = str(request.url_for("auth_discogs_callback"))
    token = await oauth_client.get_request_token(callback_url)

    state_id = secrets.token_hex(16)
    oauth_states.set(
        token.oauth_token,
        {"state_id": state_id, "token_secret": token.oauth_token_secret, "sid": sid},
    )

    response = no_store({"authorizeUrl": token.authorize_url, "stateId": state_id})
    if is_new:
        set_session_cookie(response, sid)
    return response


@app.get("/api/auth/discogs/callback")
async def auth_discogs_callback(
    request: Request, oauth_token: str = Query(...), oauth_verifier: str = Query(...)
):
    """Finish linking: trade the approved token and store the link in the session"""
    state = oauth_states.get(oauth_token)
    if state is None:
        return no_store(
            {
                "error": "invalid_oauth_state",
                "message": "OAuth token not found or expired. Please restart the authorization flow.",
            },
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    access = await oauth_client.get_access_token(
        oauth_token, state["token_secret"], oauth_verifier
    )
    identity = await oauth_client.get_identity(access.access_token, access.access_token_secret)
    oauth_states.delete(oauth_token)

    sid = get_session_id(request) or state["sid"]
    session_store.set_discogs_auth(
        sid,
        DiscogsAuth(
            discogs_username=identity["username"],
            access_token=access.access_token,
            access_token_secret=access.access_token_secret,
            linked_at=datetime.now(timezone.utc),
        ),
    )

    response = RedirectResponse(
        f"{CLIENT_URL}/collection?discogs_connected=1", status_code=status.HTTP_302_FOUND
    )
    set_session_cookie(response, sid)
    return response


@app.get("/api/auth/discogs/status")
async def auth_discogs_status():
    configured = oauth_client.is_configured
    return no_store(
        {
            "configured": configured,
            "activeStates": len(oauth_states),
            "message": "OAuth is configured and ready"
            if configured
            else "OAuth credentials not configured. Set DISCOGS_CONSUMER_KEY and DISCOGS_CONSUMER_SECRET.",
        }
    )


def public_session(sid: str) -> dict:
    """Session data safe to hand to the frontend, tokens stripped"""
    auth = session_store.get_discogs_auth(sid)
    return {
        "id": sid,
        "discogs": {
            "isLinked": auth is not None,
            "username": auth.discogs_username if auth else None,
        },
    }


@app.get("/api/me")
async def api_me(request: Request):
    sid, is_new = ensure_session(request)
    response = no_store(public_session(sid))
    if is_new:
        set_session_cookie(response, sid)
    return response


@app.post("/api/me/discogs/unlink")
async def api_me_unlink(request: Request):
    sid, is_new = ensure_session(request)
    session_store.clear_discogs_auth(sid)
    response = no_store(
        {
            "success": True,
            "user": public_session(sid),
            "message": "Discogs account unlinked successfully",
        }
    )
    if is_new:
        set_session_cookie(response, sid)
    return response


def run():
    """Serve the API with uvicorn"""
    import uvicorn

    uvicorn.run("main:app", host=HOST, port=PORT, reload=DEBUG)
