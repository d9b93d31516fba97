"""
Google service-account credential exchange.

Turns a service-account JSON blob into short-lived OAuth2 access tokens
(JWT-bearer grant, RFC 7523) for the Play Developer API.

Failures are typed:
- CredentialError: the blob itself is unusable (missing field, bad key)
- TokenExchangeError: the token endpoint answered with a non-2xx status
- CredentialNetworkError: the token endpoint could not be reached

No retries happen here; callers decide.
"""
import json
import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

import httpx
import jwt
from cryptography.hazmat.primitives import serialization

from flavr.core.config import settings


logger = logging.getLogger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
DEFAULT_TOKEN_URI = "https://oauth2.googleapis.com/token"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class CredentialError(Exception):
    """Service-account material is missing or malformed."""
    pass


class TokenExchangeError(CredentialError):
    """Token endpoint rejected the assertion or returned no token."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class CredentialNetworkError(CredentialError):
    """Token endpoint unreachable (timeout, DNS, connection reset)."""
    pass


@dataclass(frozen=True)
class ServiceAccountCredentials:
    client_email: str
    private_key: str
    token_uri: str = DEFAULT_TOKEN_URI
    private_key_id: Optional[str] = None
    project_id: Optional[str] = None

    @classmethod
    def from_json(cls, blob) -> "ServiceAccountCredentials":
        """
        Parse and validate a service-account key.

        Args:
            blob: raw JSON string/bytes or an already-decoded dict

        Raises:
            CredentialError: naming the offending field
        """
        if isinstance(blob, (str, bytes)):
            try:
                data = json.loads(blob)
            except ValueError as e:
                raise CredentialError(f"Service account key is not valid JSON: {e}")
        else:
            data = blob

        if not isinstance(data, dict):
            raise CredentialError("Service account key must be a JSON object")

        for field in ("client_email", "private_key", "token_uri"):
            if not data.get(field):
                raise CredentialError(f"Missing required field '{field}'")

        if data.get("type") is not None and data.get("type") != "service_account":
            raise CredentialError('Credential type must be "service_account"')

        if not _EMAIL_RE.match(data["client_email"]):
            raise CredentialError("Invalid client_email format")

        private_key = data["private_key"]
        try:
            serialization.load_pem_private_key(private_key.encode("utf-8"), password=None)
        except (ValueError, TypeError) as e:
            raise CredentialError(f"Invalid private key format: {e}")

        return cls(
            client_email=data["client_email"],
            private_key=private_key,
            token_uri=data["token_uri"],
            private_key_id=data.get("private_key_id"),
            project_id=data.get("project_id"),
        )


def create_signed_assertion(
    credentials: ServiceAccountCredentials,
    scopes: Iterable[str],
    lifetime_seconds: int = 3600,
    now: Optional[int] = None,
) -> str:
    """Build the RS256-signed JWT presented to the token endpoint."""
    issued_at = int(now if now is not None else time.time())
    payload = {
        "iss": credentials.client_email,
        "scope": " ".join(scopes),
        "aud": credentials.token_uri,
        "iat": issued_at,
        "exp": issued_at + lifetime_seconds,
    }
    headers = {"kid": credentials.private_key_id} if credentials.private_key_id else None
    try:
        return jwt.encode(payload, credentials.private_key, algorithm="RS256", headers=headers)
    except (ValueError, TypeError, jwt.PyJWTError) as e:
        raise CredentialError(f"Failed to sign assertion: {e}")


@dataclass(frozen=True)
class AccessToken:
    token: str
    expires_at: float  # epoch seconds


def exchange_assertion(
    credentials: ServiceAccountCredentials,
    assertion: str,
    client: Optional[httpx.Client] = None,
    now: Optional[float] = None,
) -> AccessToken:
    """POST the signed assertion to token_uri and return the access token."""
    owns_client = client is None
    http = client or httpx.Client(timeout=settings.PROVIDER_TIMEOUT_SECONDS)
    try:
        response = http.post(
            credentials.token_uri,
            data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
    except httpx.HTTPError as e:
        raise CredentialNetworkError(f"Token exchange request failed: {e}")
    finally:
        if owns_client:
            http.close()

    if response.status_code < 200 or response.status_code >= 300:
        body = response.text
        raise TokenExchangeError(
            f"Token exchange failed: {response.status_code} {body}",
            status_code=response.status_code,
            body=body,
        )

    try:
        data = response.json()
    except ValueError:
        raise TokenExchangeError("Token endpoint returned malformed JSON", status_code=response.status_code)

    access_token = data.get("access_token") if isinstance(data, dict) else None
    if not access_token:
        raise TokenExchangeError("No access token received", status_code=response.status_code)

    issued = now if now is not None else time.time()
    expires_in = int(data.get("expires_in") or 3600)
    return AccessToken(token=access_token, expires_at=issued + expires_in)


class GoogleAccessTokenProvider:
    """
    Per-process cached access token.

    A token is reused until fewer than refresh_margin_seconds remain, then
    exchanged again under the lock so concurrent callers trigger one exchange.
    """

    def __init__(
        self,
        credentials: ServiceAccountCredentials,
        scopes: Iterable[str] = (ANDROID_PUBLISHER_SCOPE,),
        client: Optional[httpx.Client] = None,
        refresh_margin_seconds: int = 300,
        time_fn: Callable[[], float] = time.time,
    ):
        self.credentials = credentials
        self.scopes = tuple(scopes)
        self.client = client
        self.refresh_margin_seconds = refresh_margin_seconds
        self.time_fn = time_fn
        self._token: Optional[AccessToken] = None
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, client: Optional[httpx.Client] = None) -> "GoogleAccessTokenProvider":
        if not settings.GOOGLE_SERVICE_ACCOUNT_KEY:
            raise CredentialError("GOOGLE_SERVICE_ACCOUNT_KEY not configured")
        return cls(ServiceAccountCredentials.from_json(settings.GOOGLE_SERVICE_ACCOUNT_KEY), client=client)

    def _is_fresh(self, now: float) -> bool:
        return self._token is not None and now < self._token.expires_at - self.refresh_margin_seconds

    def get_token(self) -> str:
        with self._lock:
            now = self.time_fn()
            if self._is_fresh(now):
                return self._token.token

            assertion = create_signed_assertion(self.credentials, self.scopes, now=int(now))
            self._token = exchange_assertion(self.credentials, assertion, client=self.client, now=now)
            logger.info(
                "[google_auth] access token refreshed",
                extra={"provider": "google", "expires_at": self._token.expires_at},
            )
            return self._token.token

    def invalidate(self) -> None:
        with self._lock:
            self._token = None
