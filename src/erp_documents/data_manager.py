"""Data access layer for the back-office document client.

This module provides low-level helpers that read from and write to the REST
backend. Business rules belong elsewhere.

It covers three concerns:

1. Configuration handling: finding and parsing ``config.ini``.
2. Session lifecycle: opening and closing the HTTP session bound to the
   configured backend.
3. Resource operations: listing, fetching, creating, replacing, deleting and
   status-patching individual records of one resource.

Every transport failure (connection error, timeout, non-2xx answer, body that
is not JSON) surfaces as :class:`~erp_documents.errors.RemoteError`.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import requests

from . import log
from .constants import TRAINING_CATEGORY_CODE, Resource
from .errors import RemoteError


CONFIG_FILE_NAME = "config.ini"
DEFAULT_TIMEOUT = 20.0


@dataclass(frozen=True)
class ConfigSettings:
    """Backend location and document rules read from ``config.ini``."""

    base_url: str
    timeout: float
    training_category_code: str = TRAINING_CATEGORY_CODE
    require_validated_offer: bool = False


@dataclass
class ApiSession:
    """Live connection to the backend: base URL, timeout and HTTP session."""

    base_url: str
    timeout: float
    http: requests.Session


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Return the ``config.ini`` that names the backend to talk to.

    An explicit path wins without being checked, so ``--config`` can point at
    a file that ``read_config`` will then reject. Otherwise the working
    directory and each of its ancestors are checked in turn and the nearest
    ``config.ini`` is used.

    Args:
        explicit_path (Path | None): Path given on the command line, if any.

    Returns:
        Path: Location of the configuration to load.

    Raises:
        FileNotFoundError: No ancestor of the working directory holds a
            ``config.ini``.
    """

    if explicit_path:
        return explicit_path

    here = Path.cwd()
    for directory in (here, *here.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(f"No {CONFIG_FILE_NAME} found above {here}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Parse the backend configuration at ``config_path`` (``~`` allowed).

    Only the file's presence is checked here; :func:`parse_settings` decides
    which entries are required.
    """

    resolved = config_path.expanduser().resolve()
    if not resolved.is_file():
        raise FileNotFoundError(f"Backend configuration missing: {resolved}")

    parser = configparser.ConfigParser()
    parser.read(resolved, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser) -> ConfigSettings:
    """Build :class:`ConfigSettings` from a parsed configuration.

    ``[Server] BaseUrl`` is mandatory. ``[Server] Timeout`` defaults to
    ``DEFAULT_TIMEOUT`` seconds, and the ``[Rules]`` section is optional as a
    whole: the training category falls back to ``TRAINING_CATEGORY_CODE`` and
    affairs may be derived from offers in any status unless
    ``RequireValidatedOffer`` is enabled.

    Args:
        parser (configparser.ConfigParser): Result of :func:`read_config`.

    Returns:
        ConfigSettings: Immutable settings with a normalized base URL.

    Raises:
        KeyError: If ``[Server] BaseUrl`` is missing.
        ValueError: If ``Timeout`` is not a positive number or
            ``RequireValidatedOffer`` is not a boolean.
    """

    try:
        base_url = parser.get("Server", "BaseUrl")
    except configparser.Error as exc:
        raise KeyError(f"[Server] BaseUrl is required: {exc}") from exc

    timeout = parser.getfloat("Server", "Timeout", fallback=DEFAULT_TIMEOUT)
    if timeout <= 0:
        raise ValueError(f"Timeout must be positive, got {timeout}")

    training_code = parser.get("Rules", "TrainingCategoryCode", fallback=TRAINING_CATEGORY_CODE)
    require_validated = parser.getboolean("Rules", "RequireValidatedOffer", fallback=False)

    return ConfigSettings(
        base_url=base_url.strip().rstrip("/"),
        timeout=timeout,
        training_category_code=training_code.strip().upper(),
        require_validated_offer=require_validated,
    )


def open_session(settings: ConfigSettings, http: Optional[requests.Session] = None) -> ApiSession:
    """Bind an HTTP session to the configured backend.

    Args:
        settings (ConfigSettings): Resolved configuration.
        http (requests.Session | None): Pre-built session, mainly for tests or
            callers that mount their own adapters. A new session is created
            when omitted.

    Returns:
        ApiSession: Session handle consumed by every resource operation.
    """

    http = http if http is not None else requests.Session()
    http.headers.setdefault("Accept", "application/json")
    log.debug("Opened API session for '%s'", settings.base_url)
    return ApiSession(base_url=settings.base_url, timeout=settings.timeout, http=http)


def close_session(session: ApiSession) -> None:
    """Release the pooled connections held by ``session``."""

    session.http.close()


def collection_url(session: ApiSession, resource: Resource) -> str:
    """Return ``{base}/{resource}/``."""

    return f"{session.base_url}/{resource.value}/"


def record_url(session: ApiSession, resource: Resource, record_id: int) -> str:
    """Return ``{base}/{resource}/{id}/``."""

    return f"{session.base_url}/{resource.value}/{record_id}/"


def status_url(session: ApiSession, resource: Resource, record_id: int) -> str:
    """Return ``{base}/{resource}/{id}/status``, the single status endpoint."""

    return f"{session.base_url}/{resource.value}/{record_id}/status"


def list_records(session: ApiSession, resource: Resource) -> List[Dict[str, Any]]:
    """``GET /{resource}/`` and return the array of raw records."""

    data = _request(session, "GET", collection_url(session, resource))
    if not isinstance(data, list):
        raise RemoteError(
            f"Expected a list of {resource.value}, got {type(data).__name__}",
            method="GET",
            url=collection_url(session, resource),
        )
    return data


def get_record(session: ApiSession, resource: Resource, record_id: int) -> Dict[str, Any]:
    """``GET /{resource}/{id}/`` and return the raw record."""

    return _expect_object(session, "GET", record_url(session, resource, record_id))


def create_record(session: ApiSession, resource: Resource, payload: Mapping[str, Any]) -> Dict[str, Any]:
    """``POST /{resource}/`` with a creation payload (no ``id``)."""

    body = {key: value for key, value in payload.items() if key != "id"}
    return _expect_object(session, "POST", collection_url(session, resource), body)


def update_record(
    session: ApiSession, resource: Resource, record_id: int, payload: Mapping[str, Any]
) -> Dict[str, Any]:
    """``PUT /{resource}/{id}/`` with a full replacement payload."""

    return _expect_object(session, "PUT", record_url(session, resource, record_id), dict(payload))


def delete_record(session: ApiSession, resource: Resource, record_id: int) -> None:
    """``DELETE /{resource}/{id}/``."""

    _request(session, "DELETE", record_url(session, resource, record_id))


def patch_status(
    session: ApiSession,
    resource: Resource,
    record_id: int,
    status: str,
    *,
    extra: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """``PATCH /{resource}/{id}/status`` with ``{"status": status}``.

    ``extra`` carries fields the status engine computed alongside the new
    status, such as ``date_validation``.
    """

    body: Dict[str, Any] = {"status": status}
    if extra:
        body.update(extra)
    return _expect_object(session, "PATCH", status_url(session, resource, record_id), body)


def _expect_object(
    session: ApiSession, method: str, url: str, body: Optional[Mapping[str, Any]] = None
) -> Dict[str, Any]:
    data = _request(session, method, url, body)
    if not isinstance(data, dict):
        raise RemoteError(
            f"Expected a JSON object from {method} {url}, got {type(data).__name__}",
            method=method,
            url=url,
        )
    return data


def _request(
    session: ApiSession, method: str, url: str, body: Optional[Mapping[str, Any]] = None
) -> Any:
    log.debug("%s %s", method, url)
    try:
        response = session.http.request(method, url, json=body, timeout=session.timeout)
    except requests.RequestException as exc:
        log.error("%s %s failed: %s", method, url, exc)
        raise RemoteError(f"{method} {url} failed: {exc}", method=method, url=url) from exc

    if not response.ok:
        log.error("%s %s answered %s", method, url, response.status_code)
        raise RemoteError(
            f"{method} {url} answered {response.status_code}: {_short_body(response)}",
            method=method,
            url=url,
            status_code=response.status_code,
        )

    if response.status_code == 204 or not response.content:
        return None
    try:
        return response.json()
    except ValueError as exc:
        raise RemoteError(
            f"{method} {url} returned a body that is not JSON",
            method=method,
            url=url,
            status_code=response.status_code,
        ) from exc


def _short_body(response: requests.Response, limit: int = 200) -> str:
    text = response.text or ""
    return text if len(text) <= limit else text[:limit] + "..."
