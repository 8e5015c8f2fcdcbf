"""Business logic layer for the back-office document client.

This module contains the rules that govern how commercial documents move
through their lifecycle and how one document is derived from another::

    Offre -> Affaire -> Formation -> Participant / AttestationFormation
    Offre -> Proforma -> Facture | Rapport

It consumes the collection stores for all I/O while ensuring every mutation
passes through the validation and derivation rules first, so that a rule
violation is raised before any request reaches the backend.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, date, datetime, time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from . import data_manager, log, records, status_engine
from .constants import (
    CATEGORY_CODE_PATTERN,
    ENTITY_CODE_PATTERN,
    PRODUCT_CODE_PATTERNS,
    TRAINING_CATEGORY_CODE,
    AffaireStatus,
    DocType,
    DocumentStatus,
    Resource,
)
from .errors import (
    IneligibleProductError,
    InvalidScheduleError,
    LineageMismatchError,
    MissingReferenceError,
    MissingSourceError,
    OrphanedReferenceError,
    RemoteError,
    ValidationError,
)
from .stores import CollectionStore, build_stores


DateLike = Union[date, datetime]

END_OF_DAY = time(23, 59, 59)


@dataclass(frozen=True)
class RuntimeContext:
    """Composition root: settings, API session and one store per resource."""

    settings: data_manager.ConfigSettings
    session: data_manager.ApiSession
    stores: Dict[Resource, CollectionStore] = field(default_factory=dict, repr=False, compare=False)

    def store(self, resource: Resource) -> CollectionStore:
        return self.stores[resource]


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` when provided, otherwise the current UTC time."""

    return candidate if candidate is not None else datetime.now(UTC)


def build_runtime_context(
    settings: data_manager.ConfigSettings,
    session: Optional[data_manager.ApiSession] = None,
) -> RuntimeContext:
    """Assemble the stores and their validators around one API session.

    Args:
        settings (data_manager.ConfigSettings): Resolved configuration.
        session (data_manager.ApiSession | None): Existing session to reuse.
            A new one is opened from ``settings`` when omitted.

    Returns:
        RuntimeContext: Context whose stores are still ``IDLE``; nothing is
            fetched until a caller asks for it.
    """

    session = session if session is not None else data_manager.open_session(settings)
    stores = build_stores(session, validators=WRITE_VALIDATORS)
    return RuntimeContext(settings=settings, session=session, stores=stores)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and open an API session.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Raises:
        FileNotFoundError: If the configuration file cannot be located.
        KeyError: When mandatory configuration options are missing.
    """

    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser)
    context = build_runtime_context(settings)
    log.info("Loaded runtime context for backend '%s'", settings.base_url)
    return context


def close_context(context: RuntimeContext) -> None:
    data_manager.close_session(context.session)


def load_all(context: RuntimeContext, resources: Optional[Iterable[Resource]] = None) -> None:
    """Trigger the initial load of the given stores (all of them by default)."""

    for resource in resources or Resource:
        context.store(resource).ensure_loaded()


def _current(context: RuntimeContext, resource: Resource, record_id: int) -> Any:
    """Return a record from its store, fetching it when it is not cached."""

    store = context.store(resource)
    record = store.get(record_id)
    if record is not None:
        return record
    try:
        return store.fetch_by_id(record_id)
    except RemoteError as exc:
        if exc.status_code == 404:
            log.warning("%s lookup failed for id '%s'", resource.value, record_id)
            raise MissingReferenceError(f"Unknown {resource.value} id: {record_id}") from exc
        raise


def _keep_status(payload: Any, current: Any) -> Any:
    """Return ``payload`` carrying the stored ``statut`` and ``date_validation``.

    Full-replacement updates never move a record through its lifecycle;
    only :func:`change_document_status` does.
    """

    if payload.statut != current.statut:
        log.warning(
            "Ignoring statut %s in update of #%s; use a status change instead",
            payload.statut.value,
            current.id,
        )
    kept = {"statut": current.statut}
    if hasattr(payload, "date_validation"):
        kept["date_validation"] = current.date_validation
    return replace(payload, **kept)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (tuple, list, set, frozenset)):
        return len(value) == 0
    return False


def _missing_fields(payload: Any, names: Sequence[str]) -> Dict[str, str]:
    return {name: "This field is required" for name in names if _is_blank(getattr(payload, name))}


def _raise_if_errors(errors: Mapping[str, str], what: str) -> None:
    if errors:
        log.warning("%s rejected: %s", what, ", ".join(sorted(errors)))
        raise ValidationError(errors)


def _check_code(errors: Dict[str, str], code: Optional[str], patterns: Sequence[Any], message: str) -> None:
    if _is_blank(code):
        errors["code"] = "This field is required"
    elif not any(pattern.match(code) for pattern in patterns):
        errors["code"] = message


def validate_entity(payload: records.EntityWrite) -> None:
    """Entities need a name and a code of exactly three uppercase letters."""

    errors = _missing_fields(payload, ("name",))
    _check_code(errors, payload.code, (ENTITY_CODE_PATTERN,), "Must be exactly 3 uppercase letters")
    _raise_if_errors(errors, "Entity")


def validate_client(payload: records.ClientWrite) -> None:
    _raise_if_errors(_missing_fields(payload, ("nom",)), "Client")


def validate_site(payload: records.SiteWrite) -> None:
    _raise_if_errors(_missing_fields(payload, ("nom", "client")), "Site")


def validate_category(payload: records.CategoryWrite) -> None:
    errors = _missing_fields(payload, ("name", "entity"))
    _check_code(errors, payload.code, (CATEGORY_CODE_PATTERN,), "Must be exactly 3 uppercase letters")
    _raise_if_errors(errors, "Category")


def validate_product(payload: records.ProductWrite) -> None:
    errors = _missing_fields(payload, ("name", "category"))
    _check_code(errors, payload.code, PRODUCT_CODE_PATTERNS, "Must match VTE<digits> or EC<digits>")
    _raise_if_errors(errors, "Product")


def check_schedule(
    start: Optional[DateLike],
    end: Optional[DateLike],
    *,
    start_field: str = "date_debut",
    end_field: str = "date_fin",
) -> None:
    """Raise :class:`InvalidScheduleError` when ``end`` precedes ``start``.

    Plain dates are compared as calendar days; datetimes are compared as
    instants, naive values being read as local time. A missing end is
    accepted.
    """

    if start is None or end is None:
        return
    if isinstance(start, datetime) and isinstance(end, datetime):
        too_early = _as_local(end) < _as_local(start)
    else:
        too_early = _as_local_date(end) < _as_local_date(start)
    if too_early:
        log.warning("Schedule rejected: %s ends before %s starts", end, start)
        raise InvalidScheduleError({end_field: f"Must not be earlier than {start_field}"})


# ---------------------------------------------------------------------------
# Offer aggregate
# ---------------------------------------------------------------------------


OFFRE_REQUIRED_FIELDS = ("entity", "client", "produits", "sites")


@dataclass
class OffreDraft:
    """Offer under construction in a form.

    The category filter only restricts which products can be *added*; choosing
    a category never removes products that were picked earlier, so a draft may
    mix categories.
    """

    entity: Optional[int] = None
    client: Optional[int] = None
    produits: List[int] = field(default_factory=list)
    sites: List[int] = field(default_factory=list)
    category_filter: Optional[int] = None

    def select_category(self, category_id: Optional[int]) -> None:
        self.category_filter = category_id

    def selectable_products(self, catalog: Iterable[records.Product]) -> List[records.Product]:
        """Products of ``catalog`` that may be added under the current filter."""

        if self.category_filter is None:
            return list(catalog)
        return [product for product in catalog if records.ref_id(product.category) == self.category_filter]

    def add_product(self, product: records.Product) -> None:
        if self.category_filter is not None and records.ref_id(product.category) != self.category_filter:
            raise ValidationError({"produits": f"Product {product.code} is outside the selected category"})
        if product.id not in self.produits:
            self.produits.append(product.id)

    def remove_product(self, product_id: int) -> None:
        self.produits = [existing for existing in self.produits if existing != product_id]

    def add_site(self, site_id: int) -> None:
        if site_id not in self.sites:
            self.sites.append(site_id)

    def remove_site(self, site_id: int) -> None:
        self.sites = [existing for existing in self.sites if existing != site_id]

    def to_payload(self) -> records.OffreWrite:
        return records.OffreWrite(
            entity=self.entity,
            client=self.client,
            produits=tuple(self.produits),
            sites=tuple(self.sites),
        )


def validate_offre(payload: records.OffreWrite) -> None:
    """Require entity, client, at least one product and at least one site.

    All missing fields are reported together.

    Raises:
        ValidationError: Listing every missing field.
    """

    _raise_if_errors(_missing_fields(payload, OFFRE_REQUIRED_FIELDS), "Offre")


def offre_missing_fields(offre: records.Offre) -> List[str]:
    """Return the completeness fields a persisted offer currently lacks."""

    return [name for name in OFFRE_REQUIRED_FIELDS if _is_blank(getattr(offre, name))]


def create_offre(
    context: RuntimeContext,
    draft: Union[OffreDraft, records.OffreWrite],
    *,
    timestamp: Optional[datetime] = None,
) -> records.Offre:
    """Validate and persist a new offer in ``BROUILLON``.

    Args:
        context (RuntimeContext): Runtime context providing the stores.
        draft (OffreDraft | records.OffreWrite): Offer content. Any status in
            the payload is ignored; new offers always start as drafts.
        timestamp (datetime | None): Modification time to record. Defaults
            to the current UTC time.

    Returns:
        records.Offre: The persisted offer with server-assigned ``id``,
            ``reference`` and ``sequence_number``.

    Raises:
        ValidationError: If entity, client, products or sites are missing.
        RemoteError: If the backend rejects the request.
    """

    payload = draft.to_payload() if isinstance(draft, OffreDraft) else draft
    validate_offre(payload)
    payload = replace(
        payload,
        statut=DocumentStatus.BROUILLON,
        doc_type=DocType.OFFRE.value,
        date_modification=_resolve_timestamp(timestamp),
        date_validation=None,
    )
    offre = context.store(Resource.OFFRES).create(payload)
    log.info("Created offre '%s' (#%s)", offre.reference, offre.id)
    return offre


def update_offre(
    context: RuntimeContext,
    offre_id: int,
    payload: records.OffreWrite,
    *,
    timestamp: Optional[datetime] = None,
) -> records.Offre:
    """Replace an offer and refresh its ``date_modification``.

    The modification time is refreshed on every successful call, even when
    no other field changed. The stored status and validation date are kept
    whatever the payload says.

    Raises:
        ValidationError: If entity, client, products or sites are missing.
        MissingReferenceError: If the offer does not exist.
    """

    validate_offre(payload)
    current = _current(context, Resource.OFFRES, offre_id)
    payload = replace(_keep_status(payload, current), date_modification=_resolve_timestamp(timestamp))
    return context.store(Resource.OFFRES).update(offre_id, payload)


def change_offre_status(
    context: RuntimeContext,
    offre_id: int,
    requested: DocumentStatus,
    *,
    override: bool = False,
    reason: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> records.Offre:
    """Move an offer to ``requested``; an incomplete draft cannot leave ``BROUILLON``.

    Raises:
        ValidationError: If the offer is still a draft and lacks entity,
            client, products or sites.
        InvalidTransitionError: If the status engine refuses the transition.
    """

    offre = _current(context, Resource.OFFRES, offre_id)
    if offre.statut == DocumentStatus.BROUILLON and requested != DocumentStatus.BROUILLON:
        missing = offre_missing_fields(offre)
        if missing:
            log.warning("Offre #%s cannot leave BROUILLON; missing %s", offre_id, ", ".join(missing))
            raise ValidationError({name: "Required before the offer leaves draft" for name in missing})
    return change_document_status(
        context,
        Resource.OFFRES,
        offre_id,
        requested,
        override=override,
        reason=reason,
        timestamp=timestamp,
    )


def change_document_status(
    context: RuntimeContext,
    resource: Resource,
    record_id: int,
    requested: Union[DocumentStatus, AffaireStatus],
    *,
    override: bool = False,
    reason: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> Any:
    """Validate a transition with the status engine and persist it.

    The engine computes the transitioned record locally (including
    ``date_validation`` when entering ``VALIDE``); the store then sends the
    status, and the validation date when it changed, to the backend.

    Raises:
        InvalidTransitionError: If the transition is not allowed.
        TypeError: If ``resource`` has no status.
        RemoteError: If the backend rejects the change.
    """

    store = context.store(resource)
    if not store.supports_status:
        raise TypeError(f"{resource.value} records have no status")
    record = _current(context, resource, record_id)
    transitioned = status_engine.apply_transition(
        record,
        requested,
        now=_resolve_timestamp(timestamp),
        override=override,
        reason=reason,
    )
    extra = None
    if getattr(transitioned, "date_validation", None) != getattr(record, "date_validation", None):
        extra = {"date_validation": transitioned.date_validation}
    return store.change_status(record_id, requested, extra=extra)


# ---------------------------------------------------------------------------
# Affair derivation
# ---------------------------------------------------------------------------


def _as_local(value: datetime) -> datetime:
    return value.astimezone() if value.tzinfo is None else value


def _as_local_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.astimezone().date() if value.tzinfo is not None else value.date()
    return value


def start_of_day(value: DateLike) -> datetime:
    """Local 00:00:00 of the day ``value`` falls on."""

    return datetime.combine(_as_local_date(value), time.min).astimezone()


def end_of_day(value: DateLike) -> datetime:
    """Local 23:59:59 of the day ``value`` falls on."""

    return datetime.combine(_as_local_date(value), END_OF_DAY).astimezone()


def derive_affaire(
    offre: Optional[records.Offre],
    start: DateLike,
    end: Optional[DateLike] = None,
    *,
    require_validated: bool = False,
) -> records.AffaireWrite:
    """Build the payload of an affair derived from ``offre``.

    Entity and client are copied from the offer by value. The start is
    normalized to the beginning of its day and the planned end, when given,
    to the end of its day.

    Args:
        offre (records.Offre | None): Source offer.
        start (date | datetime): Start of the engagement.
        end (date | datetime | None): Planned end.
        require_validated (bool): Refuse offers that are not ``VALIDE``.

    Raises:
        MissingSourceError: If ``offre`` is ``None``.
        InvalidScheduleError: If ``end`` falls on a day before ``start``.
        ValidationError: If ``require_validated`` is set and the offer is not
            validated.
    """

    if offre is None:
        log.warning("Affaire derivation attempted without an offre")
        raise MissingSourceError("An affaire must be derived from an offre")
    if require_validated and offre.statut != DocumentStatus.VALIDE:
        raise ValidationError({"offre": f"Offre {offre.reference} is not validated"})
    check_schedule(start, end, start_field="date_debut", end_field="date_fin_prevue")

    return records.AffaireWrite(
        offre=offre.id,
        entity=records.ref_id(offre.entity),
        client=records.ref_id(offre.client),
        date_debut=start_of_day(start),
        date_fin_prevue=end_of_day(end) if end is not None else None,
        statut=AffaireStatus.EN_COURS,
        doc_type=DocType.AFFAIRE.value,
    )


def validate_affaire(payload: records.AffaireWrite) -> None:
    errors = _missing_fields(payload, ("offre", "entity", "client", "date_debut"))
    _raise_if_errors(errors, "Affaire")
    check_schedule(payload.date_debut, payload.date_fin_prevue, end_field="date_fin_prevue")


def create_affaire(
    context: RuntimeContext,
    offre_id: int,
    start: DateLike,
    end: Optional[DateLike] = None,
) -> records.Affaire:
    """Derive an affair from a stored offer and persist it."""

    offre = _current(context, Resource.OFFRES, offre_id)
    payload = derive_affaire(
        offre,
        start,
        end,
        require_validated=context.settings.require_validated_offer,
    )
    affaire = context.store(Resource.AFFAIRES).create(payload)
    log.info("Created affaire '%s' from offre '%s'", affaire.reference, offre.reference)
    return affaire


def change_affaire_status(context: RuntimeContext, affaire_id: int, requested: AffaireStatus) -> records.Affaire:
    """Move an affair through ``EN_COURS -> TERMINEE | ANNULEE``."""

    return change_document_status(context, Resource.AFFAIRES, affaire_id, requested)


# ---------------------------------------------------------------------------
# Training derivation
# ---------------------------------------------------------------------------


def eligible_products(
    affaire: records.Affaire,
    training_code: str = TRAINING_CATEGORY_CODE,
) -> List[records.Product]:
    """Return the products of the affair's offer that belong to the training category."""

    if affaire.offre is None:
        return []
    return [
        product
        for product in affaire.offre.produits
        if product.category is not None and product.category.code == training_code
    ]


def derive_formation(
    affaire: Optional[records.Affaire],
    produit_id: Optional[int],
    start: datetime,
    end: datetime,
    titre: str,
    description: Optional[str] = None,
    *,
    training_code: str = TRAINING_CATEGORY_CODE,
) -> records.FormationWrite:
    """Build the payload of a training hosted by ``affaire``.

    Raises:
        MissingSourceError: If ``affaire`` is ``None``.
        IneligibleProductError: If ``produit_id`` is not one of
            :func:`eligible_products`; the message names the affair and its
            offer so the caller can explain what is missing upstream.
        InvalidScheduleError: If ``end`` is before ``start``.
        ValidationError: If ``titre`` is blank.
    """

    if affaire is None:
        raise MissingSourceError("A formation must be derived from an affaire")

    eligible = eligible_products(affaire, training_code)
    offre_ref = affaire.offre.reference if affaire.offre is not None else "?"
    if not eligible:
        log.warning("Affaire '%s' has no %s product", affaire.reference, training_code)
        raise IneligibleProductError(
            f"Affaire {affaire.reference} (offre {offre_ref}) has no product in category {training_code}"
        )
    if produit_id not in {product.id for product in eligible}:
        log.warning("Product #%s is not eligible for affaire '%s'", produit_id, affaire.reference)
        raise IneligibleProductError(
            f"Product #{produit_id} is not a {training_code} product of affaire "
            f"{affaire.reference} (offre {offre_ref})"
        )
    check_schedule(start, end)
    if _is_blank(titre):
        raise ValidationError({"titre": "This field is required"})

    return records.FormationWrite(
        titre=titre.strip(),
        affaire=affaire.id,
        produit=produit_id,
        date_debut=start,
        date_fin=end,
        description=description,
    )


def validate_formation(payload: records.FormationWrite) -> None:
    errors = _missing_fields(payload, ("titre", "affaire", "produit", "date_debut", "date_fin"))
    _raise_if_errors(errors, "Formation")
    check_schedule(payload.date_debut, payload.date_fin)


def create_formation(
    context: RuntimeContext,
    affaire_id: int,
    produit_id: int,
    start: datetime,
    end: datetime,
    titre: str,
    description: Optional[str] = None,
) -> records.Formation:
    """Derive a training from a stored affair and persist it."""

    affaire = _current(context, Resource.AFFAIRES, affaire_id)
    payload = derive_formation(
        affaire,
        produit_id,
        start,
        end,
        titre,
        description,
        training_code=context.settings.training_category_code,
    )
    formation = context.store(Resource.FORMATIONS).create(payload)
    log.info("Created formation '%s' for affaire '%s'", formation.titre, affaire.reference)
    return formation


def affaires_without_training_products(context: RuntimeContext) -> List[records.Affaire]:
    """Loaded affairs whose offer has no training product and so cannot host a training."""

    code = context.settings.training_category_code
    return [
        affaire
        for affaire in context.store(Resource.AFFAIRES).ensure_loaded()
        if not eligible_products(affaire, code)
    ]


# ---------------------------------------------------------------------------
# Participants
# ---------------------------------------------------------------------------


def validate_participant(payload: records.ParticipantWrite) -> None:
    _raise_if_errors(_missing_fields(payload, ("nom", "prenom", "formation")), "Participant")


def create_participant(
    context: RuntimeContext,
    formation_id: int,
    nom: str,
    prenom: str,
    *,
    email: Optional[str] = None,
    telephone: Optional[str] = None,
    fonction: Optional[str] = None,
) -> records.Participant:
    """Register a participant on an existing training."""

    formation = _current(context, Resource.FORMATIONS, formation_id)
    payload = records.ParticipantWrite(
        nom=nom,
        prenom=prenom,
        formation=formation.id,
        email=email,
        telephone=telephone,
        fonction=fonction,
    )
    return context.store(Resource.PARTICIPANTS).create(payload)


def participants_of(context: RuntimeContext, formation_id: int) -> List[records.Participant]:
    return [
        participant
        for participant in context.store(Resource.PARTICIPANTS).ensure_loaded()
        if records.ref_id(participant.formation) == formation_id
    ]


def participants_of_client(context: RuntimeContext, client_id: int) -> List[records.Participant]:
    """Return participants whose training belongs to an affair of ``client_id``.

    The client is reached through formation -> affaire; participants whose
    formation or affair is missing from the stores are left out.
    """

    affaires = {affaire.id: affaire for affaire in context.store(Resource.AFFAIRES).ensure_loaded()}
    formation_clients: Dict[int, Optional[int]] = {}
    for formation in context.store(Resource.FORMATIONS).ensure_loaded():
        affaire = affaires.get(records.ref_id(formation.affaire))
        formation_clients[formation.id] = records.ref_id(affaire.client) if affaire is not None else None
    return [
        participant
        for participant in context.store(Resource.PARTICIPANTS).ensure_loaded()
        if formation_clients.get(records.ref_id(participant.formation)) == client_id
    ]


def sites_of_client(context: RuntimeContext, client_id: int) -> List[records.Site]:
    return [site for site in context.store(Resource.SITES).ensure_loaded() if records.ref_id(site.client) == client_id]


# ---------------------------------------------------------------------------
# Proforma / invoice / report chain
# ---------------------------------------------------------------------------


def _parties(record: Any) -> tuple[Optional[int], Optional[int]]:
    return records.ref_id(record.entity), records.ref_id(record.client)


def ensure_same_parties(source: Any, payload: Any) -> None:
    """Refuse a derived payload whose entity or client differs from its source.

    Raises:
        LineageMismatchError: On any cross-entity or cross-client derivation.
    """

    source_entity, source_client = _parties(source)
    if (payload.entity, payload.client) != (source_entity, source_client):
        log.warning(
            "Party mismatch: source has entity=%s client=%s, payload has entity=%s client=%s",
            source_entity,
            source_client,
            payload.entity,
            payload.client,
        )
        raise LineageMismatchError(
            f"Derived document must keep entity #{source_entity} and client #{source_client}"
        )


def derive_proforma(offre: Optional[records.Offre]) -> records.ProformaWrite:
    if offre is None:
        raise MissingSourceError("A proforma must be derived from an offre")
    entity, client = _parties(offre)
    return records.ProformaWrite(entity=entity, client=client, offre=offre.id)


def derive_facture(proforma: Optional[records.Proforma]) -> records.FactureWrite:
    if proforma is None:
        raise MissingSourceError("A facture must be derived from a proforma")
    entity, client = _parties(proforma)
    return records.FactureWrite(entity=entity, client=client, proforma=proforma.id)


def derive_rapport(proforma: Optional[records.Proforma]) -> records.RapportWrite:
    if proforma is None:
        raise MissingSourceError("A rapport must be derived from a proforma")
    entity, client = _parties(proforma)
    return records.RapportWrite(entity=entity, client=client, proforma=proforma.id)


def validate_derived_document(payload: Any) -> None:
    source_field = "offre" if isinstance(payload, records.ProformaWrite) else "proforma"
    _raise_if_errors(
        _missing_fields(payload, ("entity", "client", source_field)),
        type(payload).__name__,
    )


def create_proforma(context: RuntimeContext, offre_id: int) -> records.Proforma:
    """Derive a proforma from a stored offer and persist it."""

    offre = _current(context, Resource.OFFRES, offre_id)
    proforma = context.store(Resource.PROFORMAS).create(derive_proforma(offre))
    log.info("Created proforma '%s' from offre '%s'", proforma.reference, offre.reference)
    return proforma


def create_facture(context: RuntimeContext, proforma_id: int) -> records.Facture:
    proforma = _current(context, Resource.PROFORMAS, proforma_id)
    facture = context.store(Resource.FACTURES).create(derive_facture(proforma))
    log.info("Created facture '%s' from proforma '%s'", facture.reference, proforma.reference)
    return facture


def create_rapport(context: RuntimeContext, proforma_id: int) -> records.Rapport:
    proforma = _current(context, Resource.PROFORMAS, proforma_id)
    rapport = context.store(Resource.RAPPORTS).create(derive_rapport(proforma))
    log.info("Created rapport '%s' from proforma '%s'", rapport.reference, proforma.reference)
    return rapport


# Field naming the source document of each derived resource.
SOURCE_FIELDS: Dict[Resource, tuple[str, Resource]] = {
    Resource.PROFORMAS: ("offre", Resource.OFFRES),
    Resource.FACTURES: ("proforma", Resource.PROFORMAS),
    Resource.RAPPORTS: ("proforma", Resource.PROFORMAS),
    Resource.AFFAIRES: ("offre", Resource.OFFRES),
    Resource.ATTESTATIONS: ("proforma", Resource.PROFORMAS),
}


def update_derived_document(context: RuntimeContext, resource: Resource, record_id: int, payload: Any) -> Any:
    """Replace a derived document, keeping it on its source's entity and client.

    Status and validation date stay as stored.

    Raises:
        LineageMismatchError: If the payload moves the document to another
            entity or client than its source.
    """

    source_field, source_resource = SOURCE_FIELDS[resource]
    source_id = getattr(payload, source_field)
    if source_id is None:
        raise MissingSourceError(f"{resource.value} payload has no {source_field}")
    source = _current(context, source_resource, source_id)
    ensure_same_parties(source, payload)
    payload = _keep_status(payload, _current(context, resource, record_id))
    return context.store(resource).update(record_id, payload)


# ---------------------------------------------------------------------------
# Certificate consistency
# ---------------------------------------------------------------------------


def check_certificate_lineage(
    proforma: Optional[records.Proforma],
    formation: Optional[records.Formation],
    participant: Optional[records.Participant],
) -> None:
    """Require the three references of a certificate to share one offer lineage.

    The training's affair must come from the same offer as the proforma, and
    the participant must attend that very training.

    Raises:
        LineageMismatchError: If either link does not hold or a link is
            missing altogether.
    """

    if proforma is None or formation is None or participant is None:
        raise LineageMismatchError("A certificate needs a proforma, a formation and a participant")

    proforma_offre = records.ref_id(proforma.offre)
    affaire = formation.affaire
    formation_offre = records.ref_id(affaire.offre) if affaire is not None else None
    if proforma_offre is None or formation_offre != proforma_offre:
        log.warning(
            "Lineage mismatch: formation #%s traces to offre #%s, proforma #%s to offre #%s",
            formation.id,
            formation_offre,
            proforma.id,
            proforma_offre,
        )
        raise LineageMismatchError(
            f"Formation #{formation.id} does not derive from the offre of proforma {proforma.reference}"
        )
    if records.ref_id(participant.formation) != formation.id:
        log.warning("Participant #%s does not attend formation #%s", participant.id, formation.id)
        raise LineageMismatchError(
            f"Participant #{participant.id} is not registered on formation #{formation.id}"
        )


def derive_attestation(
    proforma: records.Proforma,
    formation: records.Formation,
    participant: records.Participant,
    details_formation: str,
) -> records.AttestationFormationWrite:
    check_certificate_lineage(proforma, formation, participant)
    entity, client = _parties(proforma)
    return records.AttestationFormationWrite(
        entity=entity,
        client=client,
        proforma=proforma.id,
        formation=formation.id,
        participant=participant.id,
        details_formation=details_formation,
    )


def validate_attestation(payload: records.AttestationFormationWrite) -> None:
    errors = _missing_fields(payload, ("entity", "client", "proforma", "formation", "participant"))
    _raise_if_errors(errors, "AttestationFormation")


def create_attestation(
    context: RuntimeContext,
    proforma_id: int,
    formation_id: int,
    participant_id: int,
    details_formation: str = "",
) -> records.AttestationFormation:
    """Check the lineage of the three references and persist a certificate."""

    proforma = _current(context, Resource.PROFORMAS, proforma_id)
    formation = _current(context, Resource.FORMATIONS, formation_id)
    participant = _current(context, Resource.PARTICIPANTS, participant_id)
    payload = derive_attestation(proforma, formation, participant, details_formation)
    attestation = context.store(Resource.ATTESTATIONS).create(payload)
    log.info(
        "Created attestation '%s' for participant #%s of formation #%s",
        attestation.reference,
        participant.id,
        formation.id,
    )
    return attestation


# ---------------------------------------------------------------------------
# Referential integrity
# ---------------------------------------------------------------------------


_PARTY_LINKS = (("entity", Resource.ENTITIES), ("client", Resource.CLIENTS))

# Parent references of each resource, as (field, parent resource).
PARENT_LINKS: Dict[Resource, tuple[tuple[str, Resource], ...]] = {
    Resource.ENTITIES: (),
    Resource.CLIENTS: (),
    Resource.SITES: (("client", Resource.CLIENTS),),
    Resource.CATEGORIES: (("entity", Resource.ENTITIES),),
    Resource.PRODUCTS: (("category", Resource.CATEGORIES),),
    Resource.OFFRES: _PARTY_LINKS + (("produits", Resource.PRODUCTS), ("sites", Resource.SITES)),
    Resource.PROFORMAS: _PARTY_LINKS + (("offre", Resource.OFFRES),),
    Resource.FACTURES: _PARTY_LINKS + (("proforma", Resource.PROFORMAS),),
    Resource.RAPPORTS: _PARTY_LINKS + (("proforma", Resource.PROFORMAS),),
    Resource.AFFAIRES: _PARTY_LINKS + (("offre", Resource.OFFRES),),
    Resource.FORMATIONS: (("affaire", Resource.AFFAIRES), ("produit", Resource.PRODUCTS)),
    Resource.PARTICIPANTS: (("formation", Resource.FORMATIONS),),
    Resource.ATTESTATIONS: _PARTY_LINKS + (
        ("proforma", Resource.PROFORMAS),
        ("formation", Resource.FORMATIONS),
        ("participant", Resource.PARTICIPANTS),
    ),
}


def _linked_ids(record: Any, field_name: str) -> List[Optional[int]]:
    value = getattr(record, field_name)
    if isinstance(value, tuple):
        return [item.id for item in value]
    return [records.ref_id(value)]


def resolve_reference(
    context: RuntimeContext,
    parent: Resource,
    parent_id: Optional[int],
    *,
    resource: Resource,
    record_id: int,
    field_name: str,
) -> Any:
    """Look up ``parent_id`` in the parent store for a join at read time.

    Raises:
        OrphanedReferenceError: If the parent no longer resolves.
    """

    found = context.store(parent).get(parent_id) if parent_id is not None else None
    if found is None:
        error = OrphanedReferenceError(resource.value, record_id, field_name, parent_id)
        log.warning("%s", error)
        raise error
    return found


def join(context: RuntimeContext, resource: Resource, record: Any, field_name: str) -> Any:
    """Return the live parent record behind ``record.<field_name>``."""

    parent = dict(PARENT_LINKS[resource])[field_name]
    return resolve_reference(
        context,
        parent,
        records.ref_id(getattr(record, field_name)),
        resource=resource,
        record_id=record.id,
        field_name=field_name,
    )


def find_orphaned_references(context: RuntimeContext) -> List[OrphanedReferenceError]:
    """Scan the loaded stores for references whose parent no longer exists.

    Only links whose parent store has been loaded are checked; an unloaded
    store cannot tell a missing record from one that was never fetched.

    Returns:
        list[OrphanedReferenceError]: One entry per dangling reference, each
            also logged as a warning.
    """

    issues: List[OrphanedReferenceError] = []
    for resource, links in PARENT_LINKS.items():
        store = context.store(resource)
        if not store.loaded:
            continue
        for record in store.items:
            for field_name, parent in links:
                parent_store = context.store(parent)
                if not parent_store.loaded:
                    continue
                known = parent_store.ids()
                for parent_id in _linked_ids(record, field_name):
                    if parent_id is None or parent_id not in known:
                        issue = OrphanedReferenceError(resource.value, record.id, field_name, parent_id)
                        log.warning("Data integrity: %s", issue)
                        issues.append(issue)
    return issues


def dependents_of(context: RuntimeContext, resource: Resource, record_id: int) -> List[tuple[Resource, int, str]]:
    """Loaded records that reference ``resource #record_id``."""

    found: List[tuple[Resource, int, str]] = []
    for child, links in PARENT_LINKS.items():
        for field_name, parent in links:
            if parent != resource:
                continue
            for record in context.store(child).items:
                if record_id in _linked_ids(record, field_name):
                    found.append((child, record.id, field_name))
    return found


def delete_record(context: RuntimeContext, resource: Resource, record_id: int) -> List[tuple[Resource, int, str]]:
    """Delete a record without cascading.

    Dependents stay in place and become orphaned references; they are
    returned and logged so the caller can surface them.
    """

    dependents = dependents_of(context, resource, record_id)
    context.store(resource).delete(record_id)
    for child, child_id, field_name in dependents:
        log.warning(
            "%s #%s now references deleted %s #%s through '%s'",
            child.value,
            child_id,
            resource.value,
            record_id,
            field_name,
        )
    return dependents


WRITE_VALIDATORS: Dict[Resource, Callable[[Any], None]] = {
    Resource.ENTITIES: validate_entity,
    Resource.CLIENTS: validate_client,
    Resource.SITES: validate_site,
    Resource.CATEGORIES: validate_category,
    Resource.PRODUCTS: validate_product,
    Resource.OFFRES: validate_offre,
    Resource.PROFORMAS: validate_derived_document,
    Resource.FACTURES: validate_derived_document,
    Resource.RAPPORTS: validate_derived_document,
    Resource.AFFAIRES: validate_affaire,
    Resource.FORMATIONS: validate_formation,
    Resource.PARTICIPANTS: validate_participant,
    Resource.ATTESTATIONS: validate_attestation,
}
