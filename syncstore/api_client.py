"""Remote API adapters."""
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

from syncstore import settings
from syncstore.errors import (
    ApiError,
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    GoneError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ServerError,
    ValidationError,
)
from syncstore.logging_conf import logger
from syncstore.query import QueryParams

Json = Dict[str, Any]


class ApiAdapter(ABC):
    """Remote CRUD for one model type.

    Implementations raise NotFoundError (404), GoneError (410) and the
    other ApiError subclasses; NetworkError when no response arrived.
    """

    model_type: str = ""

    @abstractmethod
    def find_one(self, record_id: str, headers: Optional[Dict[str, str]] = None,
                 extra: Optional[Dict[str, Any]] = None) -> Json:
        """Fetch one record."""

    @abstractmethod
    def find_all(self, query: Optional[QueryParams] = None, headers: Optional[Dict[str, str]] = None,
                 extra: Optional[Dict[str, Any]] = None) -> List[Json]:
        """Fetch records matching the query."""

    @abstractmethod
    def create_one(self, payload: Json, headers: Optional[Dict[str, str]] = None,
                   extra: Optional[Dict[str, Any]] = None) -> Json:
        """Create a record and return the server's version."""

    @abstractmethod
    def update_one(self, payload: Json, headers: Optional[Dict[str, str]] = None,
                   extra: Optional[Dict[str, Any]] = None) -> Json:
        """Partially update a record and return the server's version."""

    @abstractmethod
    def replace_one(self, payload: Json, headers: Optional[Dict[str, str]] = None,
                    extra: Optional[Dict[str, Any]] = None) -> Json:
        """Fully replace a record and return the server's version."""

    @abstractmethod
    def delete_one(self, record_id: str, headers: Optional[Dict[str, str]] = None,
                   extra: Optional[Dict[str, Any]] = None) -> None:
        """Delete a record."""


def default_collection_name(model_type: str) -> str:
    """TodoItem -> todo_items"""
    snake = re.sub(r"(?<!^)(?=[A-Z])", "_", model_type).lower()
    return snake if snake.endswith("s") else f"{snake}s"


class UrlBuilder:
    """Builds collection and item URLs for a REST resource."""

    def __init__(self, base_url: str, collection: str):
        self.base_url = base_url.rstrip("/")
        self.collection = collection.strip("/")

    def collection_url(self) -> str:
        return f"{self.base_url}/{self.collection}"

    def item_url(self, record_id: str) -> str:
        return f"{self.collection_url()}/{quote(str(record_id), safe='')}"


class HeaderBuilder:
    """Default headers plus per-call overrides."""

    def __init__(self, token: Optional[str] = None, default_headers: Optional[Dict[str, str]] = None):
        self.headers = {"Accept": "application/json", "Content-Type": "application/json"}
        if token:
            self.headers["Authorization"] = f"Bearer {token}"
        self.headers.update(default_headers or {})

    def build(self, headers: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        merged = dict(self.headers)
        merged.update(headers or {})
        return merged


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After in seconds, from delta-seconds or an HTTP date."""
    if not value:
        return None
    value = value.strip()
    if value.isdigit():
        return float(value)
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def error_from_response(response: requests.Response) -> ApiError:
    """Map a non-2xx response to a typed error."""
    status = response.status_code
    try:
        body = response.json()
    except ValueError:
        body = None

    message = None
    field_errors = None
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        errors = body.get("errors")
        if isinstance(errors, dict):
            field_errors = {k: v if isinstance(v, list) else [str(v)] for k, v in errors.items()}
    message = message or f"{response.request.method if response.request else 'HTTP'} {response.url} failed"

    if status in (400, 422):
        return ValidationError(message, field_errors=field_errors, status_code=status)
    if status == 401:
        return AuthenticationError(message, status_code=status)
    if status == 403:
        return AuthorizationError(message, status_code=status)
    if status == 404:
        return NotFoundError(message)
    if status == 409:
        return ConflictError(message, status_code=status)
    if status == 410:
        return GoneError(message)
    if status == 429:
        return RateLimitError(message, retry_after=parse_retry_after(response.headers.get("Retry-After")))
    if status >= 500:
        return ServerError(message, status_code=status)
    return ApiError(message, status_code=status)


class RestApiAdapter(ApiAdapter):
    """JSON-over-HTTP adapter for a conventional REST collection.

    Makes exactly one request per call. Retries belong to the retry executor.
    """

    def __init__(self, model_type: str, base_url: Optional[str] = None, collection: Optional[str] = None,
                 token: Optional[str] = None, timeout: Optional[float] = None,
                 server_generated_id: bool = False, session: Optional[requests.Session] = None,
                 default_headers: Optional[Dict[str, str]] = None):
        self.model_type = model_type
        self.urls = UrlBuilder(base_url or settings.API_BASE_URL, collection or default_collection_name(model_type))
        self.header_builder = HeaderBuilder(token if token is not None else settings.API_TOKEN, default_headers)
        self.timeout = timeout or settings.API_TIMEOUT
        self.server_generated_id = server_generated_id
        self.session = session or requests.Session()

    def find_one(self, record_id, headers=None, extra=None):
        return self._unwrap(self._request("GET", self.urls.item_url(record_id), headers=headers))

    def find_all(self, query=None, headers=None, extra=None):
        params = query.to_http_params() if query else None
        body = self._request("GET", self.urls.collection_url(), headers=headers, params=params)
        body = self._unwrap(body)
        if isinstance(body, dict):
            for key in ("items", "results"):
                if isinstance(body.get(key), list):
                    return body[key]
        if not isinstance(body, list):
            raise ApiError(f"Expected a list from {self.urls.collection_url()}")
        return body

    def create_one(self, payload, headers=None, extra=None):
        body = dict(payload)
        if self.server_generated_id:
            body.pop("id", None)
        return self._unwrap(self._request("POST", self.urls.collection_url(), headers=headers, json=body))

    def update_one(self, payload, headers=None, extra=None):
        url = self.urls.item_url(payload["id"])
        return self._unwrap(self._request("PATCH", url, headers=headers, json=payload))

    def replace_one(self, payload, headers=None, extra=None):
        url = self.urls.item_url(payload["id"])
        return self._unwrap(self._request("PUT", url, headers=headers, json=payload))

    def delete_one(self, record_id, headers=None, extra=None):
        self._request("DELETE", self.urls.item_url(record_id), headers=headers)

    def _unwrap(self, body: Any) -> Any:
        if isinstance(body, dict) and set(body) == {"data"}:
            return body["data"]
        return body

    def _request(self, method: str, url: str, headers: Optional[Dict[str, str]] = None, **kwargs) -> Any:
        """Make one API request and decode the JSON body."""
        try:
            response = self.session.request(
                method=method, url=url, headers=self.header_builder.build(headers), timeout=self.timeout, **kwargs
            )
        except requests.exceptions.Timeout as e:
            raise NetworkError(f"{method} {url} timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"{method} {url} failed: {e}") from e

        if response.status_code >= 400:
            error = error_from_response(response)
            if isinstance(error, RateLimitError):
                logger.warning(f"Rate limited on {method} {url} (retry after {error.retry_after}s)")
            elif response.status_code >= 500:
                logger.warning(f"Server error {response.status_code} on {method} {url}")
            raise error

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ApiError(f"Invalid JSON from {method} {url}", status_code=response.status_code) from e
