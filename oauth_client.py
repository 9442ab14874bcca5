import base64
import hashlib
import hmac
import logging
import secrets
import time
from typing import Dict, Generator, NamedTuple, Optional
from urllib.parse import parse_qs, quote

import httpx

from config import (
    DISCOGS_API_URL,
    DISCOGS_AUTHORIZE_URL,
    DISCOGS_CONSUMER_KEY,
    DISCOGS_CONSUMER_SECRET,
    DISCOGS_USER_AGENT,
    REQUEST_TIMEOUT_SECONDS,
)
from errors import AuthError, UpstreamResponseError


logger = logging.getLogger(__name__)


def percent_encode(value: str) -> str:
    """RFC 3986 encoding as required for OAuth 1.0a"""
    return quote(str(value), safe="")


def sign_request(
    method: str,
    base_url: str,
    params: Dict[str, str],
    consumer_secret: str,
    token_secret: str = "",
) -> str:
    """HMAC-SHA1 signature over the OAuth 1.0a signature base string"""
    normalized = "&".join(
        f"{percent_encode(key)}={percent_encode(value)}"
        for key, value in sorted(params.items())
    )
    base_string = "&".join(
        [method.upper(), percent_encode(base_url), percent_encode(normalized)]
    )
    signing_key = f"{percent_encode(consumer_secret)}&{percent_encode(token_secret)}"
    digest = hmac.new(
        signing_key.encode("utf-8"), base_string.encode("utf-8"), hashlib.sha1
    ).digest()
    return base64.b64encode(digest).decode("ascii")


class OAuth1Auth(httpx.Auth):
    """Signs each outgoing request with an OAuth 1.0a Authorization header"""

    def __init__(
        self,
        consumer_key: str,
        consumer_secret: str,
        token: Optional[str] = None,
        token_secret: str = "",
        callback: Optional[str] = None,
        verifier: Optional[str] = None,
    ):
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.token = token
        self.token_secret = token_secret
        self.callback = callback
        self.verifier = verifier

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        if not self.consumer_key or not self.consumer_secret:
            raise AuthError("OAuth consumer credentials are not configured")

        oauth_params = {
            "oauth_consumer_key": self.consumer_key,
            "oauth_nonce": secrets.token_hex(16),
            "oauth_signature_method": "HMAC-SHA1",
            "oauth_timestamp": str(int(time.time())),
            "oauth_version": "1.0",
        }
        if self.token:
            oauth_params["oauth_token"] = self.token
        if self.callback:
            oauth_params["oauth_callback"] = self.callback
        if self.verifier:
            oauth_params["oauth_verifier"] = self.verifier

        url = request.url
        netloc = url.host if url.port is None else f"{url.host}:{url.port}"
        base_url = f"{url.scheme}://{netloc}{url.path}"
        signed_params = dict(oauth_params)
        signed_params.update(url.params.items())

        oauth_params["oauth_signature"] = sign_request(
            request.method, base_url, signed_params, self.consumer_secret, self.token_secret
        )
        request.headers["Authorization"] = "OAuth " + ", ".join(
            f'{percent_encode(key)}="{percent_encode(value)}"'
            for key, value in oauth_params.items()
        )
        yield request


class RequestToken(NamedTuple):
    oauth_token: str
    oauth_token_secret: str
    authorize_url: str


class AccessToken(NamedTuple):
    access_token: str
    access_token_secret: str


class DiscogsOAuthClient:
    """OAuth 1.0a handshake with Discogs for linking a visitor's account"""

    def __init__(
        self,
        consumer_key: str = DISCOGS_CONSUMER_KEY,
        consumer_secret: str = DISCOGS_CONSUMER_SECRET,
        base_url: str = DISCOGS_API_URL,
        authorize_url: str = DISCOGS_AUTHORIZE_URL,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.authorize_url = authorize_url
        self.client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            headers={"User-Agent": DISCOGS_USER_AGENT},
            transport=transport,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.consumer_key and self.consumer_secret)

    async def close(self):
        """Close the HTTP client"""
        await self.client.aclose()

    def _auth(self, **kwargs) -> OAuth1Auth:
        return OAuth1Auth(self.consumer_key, self.consumer_secret, **kwargs)

    @staticmethod
    def _check(response: httpx.Response):
        if response.status_code in (401, 403):
            raise AuthError("Discogs rejected the OAuth credentials")
        if response.is_error:
            raise UpstreamResponseError(response.status_code)

    async def get_request_token(self, callback_url: str) -> RequestToken:
        """Step 1: obtain a temporary token and the URL the visitor must approve"""
        response = await self.client.get(
            "/oauth/request_token",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            auth=self._auth(callback=callback_url),
        )
        self._check(response)
        data = parse_qs(response.text)
        token = data["oauth_token"][0]
        return RequestToken(
            oauth_token=token,
            oauth_token_secret=data["oauth_token_secret"][0],
            authorize_url=f"{self.authorize_url}?oauth_token={percent_encode(token)}",
        )

    async def get_access_token(self, token: str, token_secret: str, verifier: str) -> AccessToken:
        """Step 3: trade the approved request token for a long-lived access token"""
        response = await self.client.post(
            "/oauth/access_token",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            auth=self._auth(token=token, token_secret=token_secret, verifier=verifier),
        )
        self._check(response)
        data = parse_qs(response.text)
        return AccessToken(
            access_token=data["oauth_token"][0],
            access_token_secret=data["oauth_token_secret"][0],
        )

    async def get_identity(self, access_token: str, access_token_secret: str) -> Dict[str, str]:
        response = await self.client.get(
            "/oauth/identity",
            auth=self._auth(token=access_token, token_secret=access_token_secret),
        )
        self._check(response)
        data = response.json()
        logger.info("Linked Discogs identity %s", data.get("username"))
        return {"username": data["username"]}
