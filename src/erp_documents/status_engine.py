"""Document status engine.

Holds the single authoritative transition tables for the two status
vocabularies and the pure functions that validate and apply a transition.
Nothing here performs I/O: callers persist the returned record and refresh
dependent collections themselves.
"""

from __future__ import annotations

from dataclasses import fields, replace
from datetime import UTC, datetime
from typing import Mapping, Optional, TypeVar, Union

from . import log
from .constants import AffaireStatus, DocumentStatus
from .errors import InvalidTransitionError


Status = Union[DocumentStatus, AffaireStatus]
R = TypeVar("R")


DOCUMENT_TRANSITIONS: Mapping[DocumentStatus, frozenset[DocumentStatus]] = {
    DocumentStatus.BROUILLON: frozenset({DocumentStatus.ENVOYE}),
    DocumentStatus.ENVOYE: frozenset({DocumentStatus.VALIDE, DocumentStatus.REFUSE}),
    # Resubmission after refusal.
    DocumentStatus.REFUSE: frozenset({DocumentStatus.BROUILLON}),
    DocumentStatus.VALIDE: frozenset(),
}

AFFAIRE_TRANSITIONS: Mapping[AffaireStatus, frozenset[AffaireStatus]] = {
    AffaireStatus.EN_COURS: frozenset({AffaireStatus.TERMINEE, AffaireStatus.ANNULEE}),
    # Terminal states
    AffaireStatus.TERMINEE: frozenset(),
    AffaireStatus.ANNULEE: frozenset(),
}

# Only settled documents can be corrected by hand; affairs never.
OVERRIDABLE: frozenset[DocumentStatus] = frozenset({DocumentStatus.VALIDE, DocumentStatus.REFUSE})


def _table_for(status: Status) -> Mapping:
    if isinstance(status, DocumentStatus):
        return DOCUMENT_TRANSITIONS
    if isinstance(status, AffaireStatus):
        return AFFAIRE_TRANSITIONS
    raise TypeError(f"Unknown status vocabulary: {status!r}")


def _same_vocabulary(current: Status, requested: Status) -> bool:
    return type(current) is type(requested)


def legal_targets(current: Status) -> frozenset:
    """Return the statuses reachable from ``current`` in one step."""

    return _table_for(current).get(current, frozenset())


def can_transition(current: Status, requested: Status) -> bool:
    """Return ``True`` only for edges of the allowed transition graph.

    Self-loops are never allowed, and a document status can never move to an
    affair status (or the reverse).
    """

    if not _same_vocabulary(current, requested) or current == requested:
        return False
    return requested in legal_targets(current)


def check_transition(
    current: Status,
    requested: Status,
    *,
    override: bool = False,
    reason: Optional[str] = None,
) -> None:
    """Raise :class:`InvalidTransitionError` unless ``current -> requested`` is legal.

    ``override`` lets an operator correct a document that is already
    ``VALIDE`` or ``REFUSE``, for example re-opening one validated by
    mistake. It never applies to affairs, never permits a self-loop or a
    change of vocabulary, and every use is logged.
    """

    if can_transition(current, requested):
        return
    if override and current in OVERRIDABLE and _same_vocabulary(current, requested) and current != requested:
        log.warning(
            "Manual status override %s -> %s (reason: %s)",
            current.value,
            requested.value,
            reason or "none given",
        )
        return
    log.warning("Rejected status transition %s -> %s", _label(current), _label(requested))
    raise InvalidTransitionError(current, requested)


def apply_transition(
    record: R,
    requested: Status,
    *,
    now: Optional[datetime] = None,
    override: bool = False,
    reason: Optional[str] = None,
) -> R:
    """Return a copy of ``record`` moved to ``requested``.

    The input record is never modified. Entering ``VALIDE`` stamps
    ``date_validation`` with ``now`` (current UTC time by default) on records
    that carry that field; any other transition leaves it untouched.

    Raises:
        InvalidTransitionError: If the transition is not allowed and no
            override was requested.
    """

    current = getattr(record, "statut")
    check_transition(current, requested, override=override, reason=reason)

    changes = {"statut": requested}
    if requested == DocumentStatus.VALIDE and _has_field(record, "date_validation"):
        changes["date_validation"] = now if now is not None else datetime.now(UTC)
    return replace(record, **changes)


def _has_field(record: object, name: str) -> bool:
    return any(field.name == name for field in fields(record))


def _label(status: object) -> str:
    return getattr(status, "value", str(status))
