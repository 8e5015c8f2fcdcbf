"""Enumerations shared across the back-office document modules.

Centralises domain constants so that the transport layer, the business rules,
the collection stores and the CLI rely on a single source of truth for status
vocabularies, document type codes and REST resource names.
"""

from __future__ import annotations

import re
from enum import Enum


# Category code designating training products.
TRAINING_CATEGORY_CODE = "FOR"

ENTITY_CODE_PATTERN = re.compile(r"^[A-Z]{3}$")
CATEGORY_CODE_PATTERN = ENTITY_CODE_PATTERN
SALES_PRODUCT_CODE_PATTERN = re.compile(r"^VTE\d+$")
TRAINING_PRODUCT_CODE_PATTERN = re.compile(r"^EC\d+$")
PRODUCT_CODE_PATTERNS = (SALES_PRODUCT_CODE_PATTERN, TRAINING_PRODUCT_CODE_PATTERN)


class DocumentStatus(str, Enum):
    """Lifecycle shared by every document-bearing resource."""

    BROUILLON = "BROUILLON"
    ENVOYE = "ENVOYE"
    VALIDE = "VALIDE"
    REFUSE = "REFUSE"


class AffaireStatus(str, Enum):
    """Lifecycle of an affair, independent from document statuses."""

    EN_COURS = "EN_COURS"
    TERMINEE = "TERMINEE"
    ANNULEE = "ANNULEE"


class DocType(str, Enum):
    """Short discriminator codes used by the server to build references."""

    OFFRE = "OFF"
    PROFORMA = "PRF"
    FACTURE = "FAC"
    RAPPORT = "RAP"
    AFFAIRE = "AFF"
    ATTESTATION = "ATT"


class Resource(str, Enum):
    """Enumerate the REST resources exposed by the backend."""

    ENTITIES = "entities"
    CLIENTS = "clients"
    SITES = "sites"
    CATEGORIES = "categories"
    PRODUCTS = "products"
    OFFRES = "offres"
    PROFORMAS = "proformas"
    FACTURES = "factures"
    RAPPORTS = "rapports"
    AFFAIRES = "affaires"
    FORMATIONS = "formations"
    PARTICIPANTS = "participants"
    ATTESTATIONS = "attestation-formations"


REGISTRY_RESOURCES: tuple[Resource, ...] = (
    Resource.ENTITIES,
    Resource.CLIENTS,
    Resource.SITES,
    Resource.CATEGORIES,
    Resource.PRODUCTS,
)

# Resources whose records carry a ``statut`` that moves through a lifecycle.
STATUS_RESOURCES: tuple[Resource, ...] = (
    Resource.OFFRES,
    Resource.PROFORMAS,
    Resource.FACTURES,
    Resource.RAPPORTS,
    Resource.AFFAIRES,
    Resource.ATTESTATIONS,
)


__all__ = [
    "TRAINING_CATEGORY_CODE",
    "ENTITY_CODE_PATTERN",
    "CATEGORY_CODE_PATTERN",
    "SALES_PRODUCT_CODE_PATTERN",
    "TRAINING_PRODUCT_CODE_PATTERN",
    "PRODUCT_CODE_PATTERNS",
    "DocumentStatus",
    "AffaireStatus",
    "DocType",
    "Resource",
    "REGISTRY_RESOURCES",
    "STATUS_RESOURCES",
]
