"""REST client for Azure DevOps services and token lookup."""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Any, Final, Literal
from urllib.parse import urlsplit, urlunsplit

import requests

from . import utils
from .exceptions import (
    RelationshipValidationError,
    StoreError,
    StoreRejectedError,
    StoreUnavailableError,
    TransientStoreError,
)

if TYPE_CHECKING:
    from collections.abc import Iterator

# Module-wide logger
logger: logging.Logger = logging.getLogger(__name__)

API_VERSION: Final[str] = "7.1"
DEFAULT_TIMEOUT: Final[float] = 30.0

_TOKEN_ENV_VARS: Final[dict[str, str]] = {"source": "ADO_SOURCE_TOKEN", "target": "ADO_TARGET_TOKEN"}
_DEFAULT_TOKEN_PASS_PATHS: Final[dict[str, str]] = {
    "source": "azure-devops/source/token",
    "target": "azure-devops/target/token",
}

# Error codes the work item service uses when it rejects a link
LINK_VALIDATION_CODES: Final[tuple[str, ...]] = ("TF201036", "TF201065", "TF201063")
UNSUPPORTED_RESOURCE_MESSAGE: Final[str] = "Unrecognized Resource link"

CONTINUATION_HEADER: Final[str] = "x-ms-continuationtoken"


def get_token(side: Literal["source", "target"], pass_path: str | None = None) -> str | None:
    """Get an Azure DevOps token from pass path, env var ADO_<SIDE>_TOKEN, or default pass location."""
    # Try pass path first
    if pass_path:
        return utils.get_pass_value(pass_path)

    # Try environment variable
    token: str | None = os.environ.get(_TOKEN_ENV_VARS[side])
    if token:
        return token

    # Try default pass path
    try:
        return utils.get_pass_value(_DEFAULT_TOKEN_PASS_PATHS[side])
    except (ValueError, OSError, utils.PassError):
        logger.warning(f"No {side} Azure DevOps token specified nor found")
        return None


def release_host_url(collection_url: str) -> str:
    """Return the release management (vsrm) URL of an organisation.

    ``https://dev.azure.com/org`` becomes ``https://vsrm.dev.azure.com/org`` and
    ``https://org.visualstudio.com`` becomes ``https://org.vsrm.visualstudio.com``.
    Server installations serve releases from the collection URL itself.
    """
    parts = urlsplit(collection_url.rstrip("/"))
    host = parts.netloc
    if host == "dev.azure.com":
        host = "vsrm.dev.azure.com"
    elif host.endswith(".visualstudio.com") and ".vsrm." not in host:
        host = host.removesuffix(".visualstudio.com") + ".vsrm.visualstudio.com"
    return urlunsplit((parts.scheme, host, parts.path, "", ""))


def classify_error(response: requests.Response) -> StoreError:
    """Translate an HTTP error response into the store error hierarchy."""
    message = _error_message(response)
    status = response.status_code
    if status >= 500:
        return StoreUnavailableError(f"HTTP {status}: {message}")
    if any(code in message for code in LINK_VALIDATION_CODES):
        return RelationshipValidationError(message, status_code=status)
    if UNSUPPORTED_RESOURCE_MESSAGE.lower() in message.lower():
        return StoreRejectedError(message, status_code=status, resource_type_unsupported=True)
    return StoreRejectedError(f"HTTP {status}: {message}", status_code=status)


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text.strip() or response.reason or ""
    if isinstance(payload, dict) and payload.get("message"):
        return str(payload["message"])
    return response.text.strip()


class AzureDevOpsClient:
    """Thin REST client for one Azure DevOps project.

    Authenticates with a personal access token (basic auth, empty user name),
    sends ``api-version`` on every call and maps failures onto ``StoreError``
    subclasses. Release management calls go to the vsrm host.
    """

    collection_url: str
    project: str
    _session: requests.Session
    _timeout: float

    def __init__(
        self,
        collection_url: str,
        project: str,
        token: str | None,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.collection_url = collection_url.rstrip("/")
        self.project = project
        self._timeout = timeout
        self._session = session or requests.Session()
        if token:
            self._session.auth = ("", token)
        self._session.headers.update({"Accept": "application/json"})

    def url(self, path: str, *, project_scoped: bool = True, release: bool = False) -> str:
        base = release_host_url(self.collection_url) if release else self.collection_url
        if project_scoped:
            base = f"{base}/{self.project}"
        return f"{base}/{path.lstrip('/')}"

    def request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,  # noqa: ANN401 - JSON body
        content_type: str | None = None,
        project_scoped: bool = True,
        release: bool = False,
        api_version: str = API_VERSION,
    ) -> requests.Response:
        """Send a request and return the successful response.

        Raises:
            StoreUnavailableError: On connection errors, timeouts and 5xx responses
            StoreRejectedError: On 4xx responses
            TransientStoreError: On any other transport failure
        """
        url = self.url(path, project_scoped=project_scoped, release=release)
        headers = {"Content-Type": content_type} if content_type else None
        logger.debug(f"{method} {url}")
        try:
            response = self._session.request(
                method,
                url,
                params={"api-version": api_version, **(params or {})},
                json=json,
                headers=headers,
                timeout=self._timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            msg = f"{method} {url} failed: {e}"
            raise StoreUnavailableError(msg) from e
        except requests.RequestException as e:
            msg = f"{method} {url} failed: {e}"
            raise TransientStoreError(msg) from e

        if response.status_code >= 400:
            error = classify_error(response)
            logger.debug(f"{method} {url} returned {response.status_code}: {error}")
            raise error
        return response

    def get_json(self, path: str, **kwargs: Any) -> Any:  # noqa: ANN401
        response = self.request("GET", path, **kwargs)
        return response.json() if response.content else None

    def send_json(self, method: str, path: str, body: Any, **kwargs: Any) -> Any:  # noqa: ANN401
        response = self.request(method, path, json=body, **kwargs)
        return response.json() if response.content else None

    def get_all(self, path: str, *, params: dict[str, Any] | None = None, **kwargs: Any) -> list[dict[str, Any]]:
        """Return every item of a list endpoint, following continuation tokens."""
        return list(self._iter_pages(path, params=dict(params or {}), **kwargs))

    def _iter_pages(self, path: str, *, params: dict[str, Any], **kwargs: Any) -> Iterator[dict[str, Any]]:
        while True:
            response = self.request("GET", path, params=params, **kwargs)
            payload = response.json() if response.content else {}
            if isinstance(payload, list):
                yield from payload
                return
            yield from payload.get("value", [])
            token = response.headers.get(CONTINUATION_HEADER)
            if not token:
                return
            params["continuationToken"] = token
