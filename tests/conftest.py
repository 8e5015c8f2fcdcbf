"""Shared pytest fixtures and utilities for the document client tests."""

from __future__ import annotations

import argparse
import copy
import itertools
import sys
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional
from unittest.mock import Mock

import pytest

# Make erp_documents importable from a plain checkout.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

candidate_str = str(SRC_DIR)
if candidate_str not in sys.path:
    sys.path.insert(0, candidate_str)

from erp_documents import cli, core_logic, data_manager  # noqa: E402
from erp_documents.constants import DocType, Resource  # noqa: E402
from erp_documents.errors import RemoteError  # noqa: E402

BASE_URL = "http://backend.test/api"
_CONFIG_TEMPLATE = (
    "[Server]\n"
    "BaseUrl = {base_url}\n"
    "Timeout = {timeout}\n\n"
    "[Rules]\n"
    "TrainingCategoryCode = {training_code}\n"
    "RequireValidatedOffer = {require_validated}\n"
)

# Fields the backend answers with an embedded object, and the resource behind them.
EMBEDDED_FIELDS: Dict[str, Resource] = {
    "entity": Resource.ENTITIES,
    "client": Resource.CLIENTS,
    "category": Resource.CATEGORIES,
    "produits": Resource.PRODUCTS,
    "sites": Resource.SITES,
    "offre": Resource.OFFRES,
    "proforma": Resource.PROFORMAS,
    "affaire": Resource.AFFAIRES,
    "produit": Resource.PRODUCTS,
    "formation": Resource.FORMATIONS,
    "participant": Resource.PARTICIPANTS,
}

DOC_TYPES = {member.value for member in DocType}


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Drop the src entry again once the session ends."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Checkout root (the directory holding pyproject.toml)."""

    return PROJECT_ROOT


@pytest.fixture
def config_factory(tmp_path: Path) -> Callable[..., Path]:
    """Provide a callable that writes ``config.ini`` files on demand."""

    def _create_config(
        *,
        base_url: str = BASE_URL + "/",
        timeout: float = 5,
        training_code: str = "FOR",
        require_validated: bool = False,
        directory: Optional[Path] = None,
    ) -> Path:
        target_dir = directory or tmp_path
        target_dir.mkdir(parents=True, exist_ok=True)
        config_path = target_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                base_url=base_url,
                timeout=timeout,
                training_code=training_code,
                require_validated=str(require_validated).lower(),
            )
        )
        return config_path

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., Path]) -> Path:
    """Convenience fixture returning a default config path."""

    return config_factory()


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


@dataclass
class InMemoryBackend:
    """Stand-in for the REST backend behind the ``data_manager`` functions.

    Rows are kept with bare identifiers, exactly as they are written, and are
    expanded into embedded objects when read back, like the real server does.
    ``calls`` records every operation as ``(method, resource, id)``.
    """

    rows: Dict[Resource, Dict[int, Dict[str, Any]]] = field(default_factory=dict)
    calls: List[tuple] = field(default_factory=list)
    fail_next: Optional[RemoteError] = None
    _ids: Iterator[int] = field(default_factory=lambda: itertools.count(1))
    _sequences: Dict[str, Iterator[int]] = field(default_factory=dict)

    def seed(self, resource: Resource, **body: Any) -> int:
        record_id = next(self._ids)
        row = {"id": record_id, **body}
        self._stamp(row)
        self.rows.setdefault(resource, {})[record_id] = row
        return record_id

    def raw(self, resource: Resource, record_id: int) -> Dict[str, Any]:
        return self.rows[resource][record_id]

    def expand(self, resource: Resource, record_id: int) -> Optional[Dict[str, Any]]:
        row = self.rows.get(resource, {}).get(record_id)
        if row is None:
            return None
        expanded = copy.deepcopy(row)
        for name, parent in EMBEDDED_FIELDS.items():
            if name not in expanded:
                continue
            value = expanded[name]
            if isinstance(value, list):
                expanded[name] = [item for item in (self.expand(parent, ref) for ref in value) if item]
            elif value is not None:
                expanded[name] = self.expand(parent, value)
        return expanded

    def _stamp(self, row: Dict[str, Any]) -> None:
        doc_type = row.get("doc_type")
        if doc_type in DOC_TYPES and not row.get("reference"):
            sequence = next(self._sequences.setdefault(doc_type, itertools.count(1)))
            row["sequence_number"] = sequence
            row["reference"] = f"{doc_type}-{sequence:04d}"
            row.setdefault("date_creation", "2024-01-15T09:00:00Z")

    def _check_failure(self) -> None:
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error

    # Replacements for the data_manager resource operations.

    def list_records(self, session, resource):
        self.calls.append(("GET", resource, None))
        self._check_failure()
        return [self.expand(resource, record_id) for record_id in self.rows.get(resource, {})]

    def get_record(self, session, resource, record_id):
        self.calls.append(("GET", resource, record_id))
        self._check_failure()
        found = self.expand(resource, record_id)
        if found is None:
            raise RemoteError(f"{resource.value} #{record_id} not found", status_code=404)
        return found

    def create_record(self, session, resource, payload):
        self.calls.append(("POST", resource, None))
        self._check_failure()
        record_id = self.seed(resource, **{key: value for key, value in payload.items() if key != "id"})
        return self.expand(resource, record_id)

    def update_record(self, session, resource, record_id, payload):
        self.calls.append(("PUT", resource, record_id))
        self._check_failure()
        row = self.rows[resource][record_id]
        row.update(payload)
        return self.expand(resource, record_id)

    def delete_record(self, session, resource, record_id):
        self.calls.append(("DELETE", resource, record_id))
        self._check_failure()
        self.rows.get(resource, {}).pop(record_id, None)

    def patch_status(self, session, resource, record_id, status, *, extra=None):
        self.calls.append(("PATCH", resource, record_id))
        self._check_failure()
        row = self.rows[resource][record_id]
        row["statut"] = status
        row.update(extra or {})
        return self.expand(resource, record_id)

    def methods(self, method: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == method]


@pytest.fixture
def backend(monkeypatch: pytest.MonkeyPatch) -> InMemoryBackend:
    """Route every ``data_manager`` resource operation to an in-memory backend."""

    fake = InMemoryBackend()
    for name in (
        "list_records",
        "get_record",
        "create_record",
        "update_record",
        "delete_record",
        "patch_status",
    ):
        monkeypatch.setattr(data_manager, name, getattr(fake, name))
    return fake


@pytest.fixture
def catalog(backend: InMemoryBackend) -> Dict[str, int]:
    """Seed one entity, one client with two sites, and a sales and a training product."""

    ids: Dict[str, int] = {}
    ids["entity"] = backend.seed(Resource.ENTITIES, code="ACM", name="Acme Formation")
    ids["other_entity"] = backend.seed(Resource.ENTITIES, code="BET", name="Beta Services")
    ids["client"] = backend.seed(Resource.CLIENTS, nom="Client Alpha", email="alpha@example.com")
    ids["other_client"] = backend.seed(Resource.CLIENTS, nom="Client Omega")
    ids["site"] = backend.seed(Resource.SITES, nom="Usine Nord", client=ids["client"])
    ids["site_b"] = backend.seed(Resource.SITES, nom="Usine Sud", client=ids["client"])
    ids["sales_category"] = backend.seed(Resource.CATEGORIES, code="VEN", name="Vente", entity=ids["entity"])
    ids["training_category"] = backend.seed(
        Resource.CATEGORIES, code="FOR", name="Formation", entity=ids["entity"]
    )
    ids["sales_product"] = backend.seed(
        Resource.PRODUCTS, code="VTE001", name="Audit", category=ids["sales_category"]
    )
    ids["training_product"] = backend.seed(
        Resource.PRODUCTS, code="EC101", name="Habilitation electrique", category=ids["training_category"]
    )
    return ids


@pytest.fixture
def seed_offre(backend: InMemoryBackend, catalog: Dict[str, int]) -> Callable[..., int]:
    """Factory seeding an offre directly in the backend."""

    def _seed(
        *,
        statut: str = "BROUILLON",
        produits: Optional[List[int]] = None,
        sites: Optional[List[int]] = None,
        entity: Optional[int] = None,
        client: Optional[int] = None,
    ) -> int:
        return backend.seed(
            Resource.OFFRES,
            entity=entity or catalog["entity"],
            client=client or catalog["client"],
            produits=produits if produits is not None else [catalog["sales_product"], catalog["training_product"]],
            sites=sites if sites is not None else [catalog["site"]],
            statut=statut,
            doc_type="OFF",
        )

    return _seed


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> data_manager.ConfigSettings:
    """Settings pointing at a fake backend URL."""

    return data_manager.ConfigSettings(base_url=BASE_URL, timeout=5.0)


@pytest.fixture
def session(settings: data_manager.ConfigSettings) -> data_manager.ApiSession:
    """Return an API session whose HTTP client is a mock."""

    return data_manager.ApiSession(base_url=settings.base_url, timeout=settings.timeout, http=Mock(name="http"))


@pytest.fixture
def context(
    settings: data_manager.ConfigSettings,
    session: data_manager.ApiSession,
) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and a mock session."""

    return core_logic.build_runtime_context(settings, session)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` so that ``now`` returns a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime(datetime):
            @classmethod
            def now(cls, tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


def make_response(status_code: int = 200, payload: Any = None, *, text: Optional[str] = None) -> Mock:
    """Build a mock ``requests.Response``."""

    response = Mock(name=f"response_{status_code}")
    response.status_code = status_code
    response.ok = 200 <= status_code < 400
    if payload is None and text is None:
        response.content = b""
        response.text = ""
    else:
        body = text if text is not None else repr(payload)
        response.content = body.encode("utf-8")
        response.text = body
    if text is not None and payload is None:
        response.json.side_effect = ValueError("not json")
    else:
        response.json.return_value = payload
    return response


@pytest.fixture
def response_factory() -> Callable[..., Mock]:
    return make_response


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """A bare erp-docs parser without sub-commands."""

    return argparse.ArgumentParser(prog="erp-docs", description="Document CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Sub-parser action attached to cli_parser."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Three no-op command specs for command-table tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]

