"""Read and write record shapes for every backend resource.

The backend embeds related objects when it answers (``client: {id, nom}``)
but expects bare identifiers when it is written to (``client: 3``). Each
resource therefore has two dataclasses:

* a *read* record, built from server JSON by a ``deserialize_*`` function, and
* a *write* record, serialized into a request body by :func:`serialize`.

Converting a read record into the payload for an update call always goes
through :func:`to_write`, which dispatches to exactly one ``*_to_write``
function per resource.
"""

from __future__ import annotations

from dataclasses import dataclass, fields, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, TypeVar

from .constants import AffaireStatus, DocType, DocumentStatus, Resource


T = TypeVar("T")


# ---------------------------------------------------------------------------
# Reference registries
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Entity:
    """Legal entity owning documents and categories."""

    id: int
    code: str
    name: str


@dataclass(frozen=True)
class EntityWrite:
    code: str
    name: str


@dataclass(frozen=True)
class Client:
    """Contact record of a customer."""

    id: int
    nom: str
    email: Optional[str] = None
    telephone: Optional[str] = None
    adresse: Optional[str] = None


@dataclass(frozen=True)
class ClientWrite:
    nom: str
    email: Optional[str] = None
    telephone: Optional[str] = None
    adresse: Optional[str] = None


@dataclass(frozen=True)
class Site:
    """Physical location belonging to exactly one client."""

    id: int
    nom: str
    client: Optional[Client]
    localisation: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class SiteWrite:
    nom: str
    client: Optional[int]
    localisation: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class Category:
    """Product category owned by one entity."""

    id: int
    code: str
    name: str
    entity: Optional[Entity]


@dataclass(frozen=True)
class CategoryWrite:
    code: str
    name: str
    entity: Optional[int]


@dataclass(frozen=True)
class Product:
    """Sellable product classified under one category."""

    id: int
    code: str
    name: str
    category: Optional[Category]


@dataclass(frozen=True)
class ProductWrite:
    code: str
    name: str
    category: Optional[int]


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Offre:
    """Root commercial proposal."""

    id: int
    entity: Optional[Entity]
    client: Optional[Client]
    reference: str
    date_creation: Optional[datetime]
    statut: DocumentStatus
    doc_type: str
    sequence_number: int
    produits: tuple[Product, ...] = ()
    sites: tuple[Site, ...] = ()
    date_modification: Optional[datetime] = None
    date_validation: Optional[datetime] = None


@dataclass(frozen=True)
class OffreWrite:
    entity: Optional[int]
    client: Optional[int]
    produits: tuple[int, ...] = ()
    sites: tuple[int, ...] = ()
    statut: DocumentStatus = DocumentStatus.BROUILLON
    doc_type: str = DocType.OFFRE.value
    date_modification: Optional[datetime] = None
    date_validation: Optional[datetime] = None


@dataclass(frozen=True)
class Proforma:
    """Billing document derived from an offer."""

    id: int
    entity: Optional[Entity]
    client: Optional[Client]
    reference: str
    date_creation: Optional[datetime]
    statut: DocumentStatus
    doc_type: str
    sequence_number: int
    offre: Optional[Offre] = None
    date_validation: Optional[datetime] = None


@dataclass(frozen=True)
class ProformaWrite:
    entity: Optional[int]
    client: Optional[int]
    offre: Optional[int]
    statut: DocumentStatus = DocumentStatus.BROUILLON
    doc_type: str = DocType.PROFORMA.value
    date_validation: Optional[datetime] = None


@dataclass(frozen=True)
class Facture:
    """Invoice derived from a proforma."""

    id: int
    entity: Optional[Entity]
    client: Optional[Client]
    reference: str
    date_creation: Optional[datetime]
    statut: DocumentStatus
    doc_type: str
    sequence_number: int
    proforma: Optional[Proforma] = None
    date_validation: Optional[datetime] = None


@dataclass(frozen=True)
class FactureWrite:
    entity: Optional[int]
    client: Optional[int]
    proforma: Optional[int]
    statut: DocumentStatus = DocumentStatus.BROUILLON
    doc_type: str = DocType.FACTURE.value
    date_validation: Optional[datetime] = None


@dataclass(frozen=True)
class Rapport:
    """Report derived from a proforma."""

    id: int
    entity: Optional[Entity]
    client: Optional[Client]
    reference: str
    date_creation: Optional[datetime]
    statut: DocumentStatus
    doc_type: str
    sequence_number: int
    proforma: Optional[Proforma] = None
    date_validation: Optional[datetime] = None


@dataclass(frozen=True)
class RapportWrite:
    entity: Optional[int]
    client: Optional[int]
    proforma: Optional[int]
    statut: DocumentStatus = DocumentStatus.BROUILLON
    doc_type: str = DocType.RAPPORT.value
    date_validation: Optional[datetime] = None


@dataclass(frozen=True)
class Affaire:
    """Operational engagement derived from an offer."""

    id: int
    entity: Optional[Entity]
    client: Optional[Client]
    reference: str
    date_creation: Optional[datetime]
    statut: AffaireStatus
    doc_type: str
    sequence_number: int
    offre: Optional[Offre] = None
    date_debut: Optional[datetime] = None
    date_fin_prevue: Optional[datetime] = None


@dataclass(frozen=True)
class AffaireWrite:
    offre: Optional[int]
    entity: Optional[int]
    client: Optional[int]
    date_debut: datetime
    date_fin_prevue: Optional[datetime] = None
    statut: AffaireStatus = AffaireStatus.EN_COURS
    doc_type: str = DocType.AFFAIRE.value


@dataclass(frozen=True)
class Formation:
    """Scheduled training session derived from an affair."""

    id: int
    titre: str
    affaire: Optional[Affaire]
    produit: Optional[Product]
    date_debut: Optional[datetime]
    date_fin: Optional[datetime]
    description: Optional[str] = None


@dataclass(frozen=True)
class FormationWrite:
    titre: str
    affaire: Optional[int]
    produit: Optional[int]
    date_debut: datetime
    date_fin: datetime
    description: Optional[str] = None


@dataclass(frozen=True)
class Participant:
    """Person attending exactly one training."""

    id: int
    nom: str
    prenom: str
    formation: Optional[Formation]
    email: Optional[str] = None
    telephone: Optional[str] = None
    fonction: Optional[str] = None


@dataclass(frozen=True)
class ParticipantWrite:
    nom: str
    prenom: str
    formation: Optional[int]
    email: Optional[str] = None
    telephone: Optional[str] = None
    fonction: Optional[str] = None


@dataclass(frozen=True)
class AttestationFormation:
    """Completion certificate tying a proforma, a training and a participant."""

    id: int
    entity: Optional[Entity]
    client: Optional[Client]
    reference: str
    date_creation: Optional[datetime]
    statut: DocumentStatus
    doc_type: str
    sequence_number: int
    proforma: Optional[Proforma] = None
    formation: Optional[Formation] = None
    participant: Optional[Participant] = None
    details_formation: str = ""
    date_validation: Optional[datetime] = None


@dataclass(frozen=True)
class AttestationFormationWrite:
    entity: Optional[int]
    client: Optional[int]
    proforma: Optional[int]
    formation: Optional[int]
    participant: Optional[int]
    details_formation: str = ""
    statut: DocumentStatus = DocumentStatus.BROUILLON
    doc_type: str = DocType.ATTESTATION.value
    date_validation: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Deserialization (server JSON -> read records)
# ---------------------------------------------------------------------------


def parse_datetime(raw: object) -> Optional[datetime]:
    """Convert an ISO 8601 value from the API into a ``datetime``.

    ``None`` and empty strings stay ``None``; a trailing ``Z`` is accepted as
    UTC.
    """

    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    text = str(raw)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _nested(raw: Mapping[str, Any], key: str, loader: Callable[[Mapping[str, Any]], T]) -> Optional[T]:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise ValueError(f"Expected an embedded object for '{key}', got {value!r}")
    return loader(value)


def _nested_many(raw: Mapping[str, Any], key: str, loader: Callable[[Mapping[str, Any]], T]) -> tuple[T, ...]:
    values = raw.get(key) or ()
    result = []
    for value in values:
        if not isinstance(value, Mapping):
            raise ValueError(f"Expected embedded objects in '{key}', got {value!r}")
        result.append(loader(value))
    return tuple(result)


def _optional_text(raw: Mapping[str, Any], key: str) -> Optional[str]:
    value = raw.get(key)
    return str(value) if value is not None else None


def _document_fields(raw: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "id": raw["id"],
        "entity": _nested(raw, "entity", deserialize_entity),
        "client": _nested(raw, "client", deserialize_client),
        "reference": str(raw.get("reference") or ""),
        "date_creation": parse_datetime(raw.get("date_creation")),
        "statut": DocumentStatus(raw.get("statut", DocumentStatus.BROUILLON.value)),
        "doc_type": str(raw.get("doc_type") or ""),
        "sequence_number": int(raw.get("sequence_number") or 0),
        "date_validation": parse_datetime(raw.get("date_validation")),
    }


def deserialize_entity(raw: Mapping[str, Any]) -> Entity:
    return Entity(id=raw["id"], code=str(raw["code"]), name=str(raw.get("name") or ""))


def deserialize_client(raw: Mapping[str, Any]) -> Client:
    return Client(
        id=raw["id"],
        nom=str(raw.get("nom") or ""),
        email=_optional_text(raw, "email"),
        telephone=_optional_text(raw, "telephone"),
        adresse=_optional_text(raw, "adresse"),
    )


def deserialize_site(raw: Mapping[str, Any]) -> Site:
    return Site(
        id=raw["id"],
        nom=str(raw.get("nom") or ""),
        client=_nested(raw, "client", deserialize_client),
        localisation=_optional_text(raw, "localisation"),
        description=_optional_text(raw, "description"),
    )


def deserialize_category(raw: Mapping[str, Any]) -> Category:
    return Category(
        id=raw["id"],
        code=str(raw["code"]),
        name=str(raw.get("name") or ""),
        entity=_nested(raw, "entity", deserialize_entity),
    )


def deserialize_product(raw: Mapping[str, Any]) -> Product:
    return Product(
        id=raw["id"],
        code=str(raw["code"]),
        name=str(raw.get("name") or ""),
        category=_nested(raw, "category", deserialize_category),
    )


def deserialize_offre(raw: Mapping[str, Any]) -> Offre:
    return Offre(
        **_document_fields(raw),
        produits=_nested_many(raw, "produits", deserialize_product),
        sites=_nested_many(raw, "sites", deserialize_site),
        date_modification=parse_datetime(raw.get("date_modification")),
    )


def deserialize_proforma(raw: Mapping[str, Any]) -> Proforma:
    return Proforma(**_document_fields(raw), offre=_nested(raw, "offre", deserialize_offre))


def deserialize_facture(raw: Mapping[str, Any]) -> Facture:
    return Facture(**_document_fields(raw), proforma=_nested(raw, "proforma", deserialize_proforma))


def deserialize_rapport(raw: Mapping[str, Any]) -> Rapport:
    return Rapport(**_document_fields(raw), proforma=_nested(raw, "proforma", deserialize_proforma))


def deserialize_affaire(raw: Mapping[str, Any]) -> Affaire:
    return Affaire(
        id=raw["id"],
        entity=_nested(raw, "entity", deserialize_entity),
        client=_nested(raw, "client", deserialize_client),
        reference=str(raw.get("reference") or ""),
        date_creation=parse_datetime(raw.get("date_creation")),
        statut=AffaireStatus(raw.get("statut", AffaireStatus.EN_COURS.value)),
        doc_type=str(raw.get("doc_type") or DocType.AFFAIRE.value),
        sequence_number=int(raw.get("sequence_number") or 0),
        offre=_nested(raw, "offre", deserialize_offre),
        date_debut=parse_datetime(raw.get("date_debut")),
        date_fin_prevue=parse_datetime(raw.get("date_fin_prevue")),
    )


def deserialize_formation(raw: Mapping[str, Any]) -> Formation:
    return Formation(
        id=raw["id"],
        titre=str(raw.get("titre") or ""),
        affaire=_nested(raw, "affaire", deserialize_affaire),
        produit=_nested(raw, "produit", deserialize_product),
        date_debut=parse_datetime(raw.get("date_debut")),
        date_fin=parse_datetime(raw.get("date_fin")),
        description=_optional_text(raw, "description"),
    )


def deserialize_participant(raw: Mapping[str, Any]) -> Participant:
    return Participant(
        id=raw["id"],
        nom=str(raw.get("nom") or ""),
        prenom=str(raw.get("prenom") or ""),
        formation=_nested(raw, "formation", deserialize_formation),
        email=_optional_text(raw, "email"),
        telephone=_optional_text(raw, "telephone"),
        fonction=_optional_text(raw, "fonction"),
    )


def deserialize_attestation(raw: Mapping[str, Any]) -> AttestationFormation:
    return AttestationFormation(
        **_document_fields(raw),
        proforma=_nested(raw, "proforma", deserialize_proforma),
        formation=_nested(raw, "formation", deserialize_formation),
        participant=_nested(raw, "participant", deserialize_participant),
        details_formation=str(raw.get("details_formation") or ""),
    )


DESERIALIZERS: Dict[Resource, Callable[[Mapping[str, Any]], Any]] = {
    Resource.ENTITIES: deserialize_entity,
    Resource.CLIENTS: deserialize_client,
    Resource.SITES: deserialize_site,
    Resource.CATEGORIES: deserialize_category,
    Resource.PRODUCTS: deserialize_product,
    Resource.OFFRES: deserialize_offre,
    Resource.PROFORMAS: deserialize_proforma,
    Resource.FACTURES: deserialize_facture,
    Resource.RAPPORTS: deserialize_rapport,
    Resource.AFFAIRES: deserialize_affaire,
    Resource.FORMATIONS: deserialize_formation,
    Resource.PARTICIPANTS: deserialize_participant,
    Resource.ATTESTATIONS: deserialize_attestation,
}


# ---------------------------------------------------------------------------
# Serialization (write records -> request bodies)
# ---------------------------------------------------------------------------


def _serialize_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (tuple, list)):
        return [_serialize_value(item) for item in value]
    return value


def serialize(payload: Any) -> Dict[str, Any]:
    """Convert a write record into a JSON-compatible request body.

    Enumerations become their values, datetimes become ISO 8601 strings and
    identifier tuples become lists. Fields left at ``None`` are still sent so
    that a full replacement clears them on the server.
    """

    if not is_dataclass(payload):
        raise TypeError(f"Cannot serialize {type(payload).__name__}; expected a write record")
    return {field.name: _serialize_value(getattr(payload, field.name)) for field in fields(payload)}


def serialize_values(values: Mapping[str, Any]) -> Dict[str, Any]:
    """Apply the request-body conversions of :func:`serialize` to a plain mapping."""

    return {key: _serialize_value(value) for key, value in values.items()}


# ---------------------------------------------------------------------------
# Read -> write conversion
# ---------------------------------------------------------------------------


def ref_id(record: Any) -> Optional[int]:
    """Return the identifier of an embedded record, or ``None`` when absent."""

    return record.id if record is not None else None


def _ref_ids(records: Sequence[Any]) -> tuple[int, ...]:
    return tuple(record.id for record in records)


def entity_to_write(record: Entity) -> EntityWrite:
    return EntityWrite(code=record.code, name=record.name)


def client_to_write(record: Client) -> ClientWrite:
    return ClientWrite(
        nom=record.nom,
        email=record.email,
        telephone=record.telephone,
        adresse=record.adresse,
    )


def site_to_write(record: Site) -> SiteWrite:
    return SiteWrite(
        nom=record.nom,
        client=ref_id(record.client),
        localisation=record.localisation,
        description=record.description,
    )


def category_to_write(record: Category) -> CategoryWrite:
    return CategoryWrite(code=record.code, name=record.name, entity=ref_id(record.entity))


def product_to_write(record: Product) -> ProductWrite:
    return ProductWrite(code=record.code, name=record.name, category=ref_id(record.category))


def offre_to_write(record: Offre) -> OffreWrite:
    return OffreWrite(
        entity=ref_id(record.entity),
        client=ref_id(record.client),
        produits=_ref_ids(record.produits),
        sites=_ref_ids(record.sites),
        statut=record.statut,
        doc_type=record.doc_type or DocType.OFFRE.value,
        date_modification=record.date_modification,
        date_validation=record.date_validation,
    )


def proforma_to_write(record: Proforma) -> ProformaWrite:
    return ProformaWrite(
        entity=ref_id(record.entity),
        client=ref_id(record.client),
        offre=ref_id(record.offre),
        statut=record.statut,
        doc_type=record.doc_type or DocType.PROFORMA.value,
        date_validation=record.date_validation,
    )


def facture_to_write(record: Facture) -> FactureWrite:
    return FactureWrite(
        entity=ref_id(record.entity),
        client=ref_id(record.client),
        proforma=ref_id(record.proforma),
        statut=record.statut,
        doc_type=record.doc_type or DocType.FACTURE.value,
        date_validation=record.date_validation,
    )


def rapport_to_write(record: Rapport) -> RapportWrite:
    return RapportWrite(
        entity=ref_id(record.entity),
        client=ref_id(record.client),
        proforma=ref_id(record.proforma),
        statut=record.statut,
        doc_type=record.doc_type or DocType.RAPPORT.value,
        date_validation=record.date_validation,
    )


def affaire_to_write(record: Affaire) -> AffaireWrite:
    if record.date_debut is None:
        raise ValueError(f"Affaire #{record.id} has no start date")
    return AffaireWrite(
        offre=ref_id(record.offre),
        entity=ref_id(record.entity),
        client=ref_id(record.client),
        date_debut=record.date_debut,
        date_fin_prevue=record.date_fin_prevue,
        statut=record.statut,
        doc_type=record.doc_type or DocType.AFFAIRE.value,
    )


def formation_to_write(record: Formation) -> FormationWrite:
    if record.date_debut is None or record.date_fin is None:
        raise ValueError(f"Formation #{record.id} has an incomplete schedule")
    return FormationWrite(
        titre=record.titre,
        affaire=ref_id(record.affaire),
        produit=ref_id(record.produit),
        date_debut=record.date_debut,
        date_fin=record.date_fin,
        description=record.description,
    )


def participant_to_write(record: Participant) -> ParticipantWrite:
    return ParticipantWrite(
        nom=record.nom,
        prenom=record.prenom,
        formation=ref_id(record.formation),
        email=record.email,
        telephone=record.telephone,
        fonction=record.fonction,
    )


def attestation_to_write(record: AttestationFormation) -> AttestationFormationWrite:
    return AttestationFormationWrite(
        entity=ref_id(record.entity),
        client=ref_id(record.client),
        proforma=ref_id(record.proforma),
        formation=ref_id(record.formation),
        participant=ref_id(record.participant),
        details_formation=record.details_formation,
        statut=record.statut,
        doc_type=record.doc_type or DocType.ATTESTATION.value,
        date_validation=record.date_validation,
    )


WRITE_CONVERTERS: Dict[type, Callable[[Any], Any]] = {
    Entity: entity_to_write,
    Client: client_to_write,
    Site: site_to_write,
    Category: category_to_write,
    Product: product_to_write,
    Offre: offre_to_write,
    Proforma: proforma_to_write,
    Facture: facture_to_write,
    Rapport: rapport_to_write,
    Affaire: affaire_to_write,
    Formation: formation_to_write,
    Participant: participant_to_write,
    AttestationFormation: attestation_to_write,
}


def to_write(record: Any) -> Any:
    """Convert any read record into its write counterpart."""

    try:
        converter = WRITE_CONVERTERS[type(record)]
    except KeyError as exc:
        raise TypeError(f"No write conversion for {type(record).__name__}") from exc
    return converter(record)
