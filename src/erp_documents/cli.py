"""Command-line entry points for the back-office document client.

Each sub-command is a :class:`CommandSpec`: a parser registrar plus an
executor that turns parsed arguments into one call on :mod:`core_logic` and
prints the resulting records. Nothing here enforces document rules.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .constants import STATUS_RESOURCES, AffaireStatus, DocumentStatus, Resource
from .errors import BusinessRuleViolation, RemoteError, ValidationError


@dataclass(frozen=True)
class CommandSpec:
    """One ``erp-docs`` sub-command: how to parse it and what to run."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]


RESOURCE_CHOICES = [member.value for member in Resource]
STATUS_RESOURCE_CHOICES = [member.value for member in Resource if member in STATUS_RESOURCES]
STATUS_CHOICES = [member.value for member in DocumentStatus] + [member.value for member in AffaireStatus]

EXIT_CODES: tuple[tuple[type[Exception] | tuple[type[Exception], ...], int], ...] = (
    (BusinessRuleViolation, 2),
    ((FileNotFoundError, KeyError), 3),
    (RemoteError, 4),
)


def build_parser() -> argparse.ArgumentParser:
    """Return the ``erp-docs`` parser with its global ``--config`` option."""
    parser = argparse.ArgumentParser(
        prog="erp-docs",
        description="Command-line tools for the back-office document backend.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the current directory by default).",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Attach every document command to ``parser`` and index them by name."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as derivations and status changes."""
    specs = {
        "set-status": register_set_status_command(subparsers),
        "new-affaire": register_new_affaire_command(subparsers),
        "new-proforma": register_new_proforma_command(subparsers),
        "new-facture": register_derived_from_proforma_command(subparsers, "new-facture", "facture"),
        "new-rapport": register_derived_from_proforma_command(subparsers, "new-rapport", "rapport"),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as listings and integrity reports."""
    specs = {
        "list": register_list_command(subparsers),
        "show": register_show_command(subparsers),
        "eligible-products": register_eligible_products_command(subparsers),
        "integrity": register_integrity_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_set_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``set-status``."""
    name = "set-status"
    help_text = "Move a document to another status."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("resource", choices=STATUS_RESOURCE_CHOICES)
        parser.add_argument("record_id", type=int)
        parser.add_argument("status", choices=STATUS_CHOICES)
        parser.add_argument("--override", action="store_true", help="Allow a transition outside the normal graph.")
        parser.add_argument("--reason", default=None, help="Why the override is needed.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_set_status)


def register_new_affaire_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``new-affaire``."""
    name = "new-affaire"
    help_text = "Derive an affaire from an offre."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--offre-id", type=int, required=True)
        parser.add_argument("--start", required=True, help="Start day (YYYY-MM-DD).")
        parser.add_argument("--end", default=None, help="Planned end day (YYYY-MM-DD).")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_new_affaire)


def register_new_proforma_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``new-proforma``."""
    name = "new-proforma"
    help_text = "Derive a proforma from an offre."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--offre-id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_new_proforma)


def register_derived_from_proforma_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
    name: str,
    kind: str,
) -> CommandSpec:
    """Register ``new-facture`` or ``new-rapport``, both derived from a proforma."""
    help_text = f"Derive a {kind} from a proforma."
    execute = run_new_facture if kind == "facture" else run_new_rapport

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--proforma-id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute)


def register_list_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``list``."""
    name = "list"
    help_text = "List the records of one resource."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("resource", choices=RESOURCE_CHOICES)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_list)


def register_show_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``show``."""
    name = "show"
    help_text = "Display a single record."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("resource", choices=RESOURCE_CHOICES)
        parser.add_argument("record_id", type=int)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_show)


def register_eligible_products_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``eligible-products``."""
    name = "eligible-products"
    help_text = "List the training products an affaire can host."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--affaire-id", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_eligible_products)


def register_integrity_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``integrity``."""
    name = "integrity"
    help_text = "Report references to records that no longer exist."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_integrity)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Open a backend session from ``config_path`` or the nearest ``config.ini``."""
    target = Path(config_path) if config_path is not None else None
    return core_logic.load_runtime_context(target)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Run the executor registered for ``args.command``."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Index ``specs`` by command name, refusing duplicates."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def parse_day(value: Optional[str]) -> Optional[date]:
    """Parse a ``YYYY-MM-DD`` argument; ``None`` passes through."""
    if value is None:
        return None
    return date.fromisoformat(value)


def parse_status(resource: Resource, value: str) -> Any:
    """Map a status string onto the vocabulary used by ``resource``.

    Raises:
        ValidationError: If ``value`` belongs to the other vocabulary.
    """
    vocabulary = AffaireStatus if resource == Resource.AFFAIRES else DocumentStatus
    try:
        return vocabulary(value)
    except ValueError:
        allowed = ", ".join(member.value for member in vocabulary)
        raise ValidationError({"status": f"{resource.value} accept {allowed}; got {value}"}) from None


def translate_set_status(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into a status change request."""
    resource = Resource(args.resource)
    return {
        "resource": resource,
        "record_id": args.record_id,
        "requested": parse_status(resource, args.status),
        "override": getattr(args, "override", False),
        "reason": getattr(args, "reason", None),
    }


def translate_new_affaire(args: argparse.Namespace) -> Mapping[str, Any]:
    """Translate CLI args into an affaire derivation request."""
    return {
        "offre_id": args.offre_id,
        "start": parse_day(args.start),
        "end": parse_day(args.end),
    }


def format_value(value: Any) -> str:
    """Render one field for terminal output; embedded records show their id."""
    if value is None:
        return "-"
    if isinstance(value, Enum):
        return str(value.value)
    if isinstance(value, datetime):
        return value.isoformat(timespec="seconds")
    if isinstance(value, tuple):
        return ",".join(format_value(item) for item in value)
    if hasattr(value, "id"):
        return f"#{value.id}"
    return str(value)


def format_record(record: Any) -> str:
    """Render a record as ``field=value`` pairs on one line."""
    fields = vars(record)
    return "  ".join(f"{name}={format_value(value)}" for name, value in fields.items())


def emit(lines: Iterable[str]) -> None:
    for line in lines:
        print(line)


def run_set_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute a status change through the status engine."""
    request = translate_set_status(args)
    resource = request["resource"]
    if resource == Resource.OFFRES:
        updated = core_logic.change_offre_status(
            context,
            request["record_id"],
            request["requested"],
            override=request["override"],
            reason=request["reason"],
        )
    else:
        updated = core_logic.change_document_status(context, **request)
    emit([format_record(updated)])
    return 0


def run_new_affaire(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the affaire derivation workflow in the BLL."""
    affaire = core_logic.create_affaire(context, **translate_new_affaire(args))
    emit([format_record(affaire)])
    return 0


def run_new_proforma(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the proforma derivation workflow in the BLL."""
    proforma = core_logic.create_proforma(context, args.offre_id)
    emit([format_record(proforma)])
    return 0


def run_new_facture(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    facture = core_logic.create_facture(context, args.proforma_id)
    emit([format_record(facture)])
    return 0


def run_new_rapport(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    rapport = core_logic.create_rapport(context, args.proforma_id)
    emit([format_record(rapport)])
    return 0


def run_list(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the listing workflow for one resource."""
    rows = context.store(Resource(args.resource)).fetch_all()
    emit(format_record(row) for row in rows)
    return 0


def run_show(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Fetch and display one record."""
    record = context.store(Resource(args.resource)).fetch_by_id(args.record_id)
    emit([format_record(record)])
    return 0


def run_eligible_products(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Display the training products of an affaire's offre."""
    affaire = context.store(Resource.AFFAIRES).fetch_by_id(args.affaire_id)
    products = core_logic.eligible_products(affaire, context.settings.training_category_code)
    if not products:
        log.warning("Affaire '%s' cannot host a formation", affaire.reference)
        return 0
    emit(f"{product.id}\t{product.code}\t{product.name}" for product in products)
    return 0


def run_integrity(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Load every collection and report dangling references.

    Returns ``0`` when the data is consistent and ``1`` otherwise so the
    command can gate scripts.
    """
    core_logic.load_all(context)
    issues = core_logic.find_orphaned_references(context)
    emit(str(issue) for issue in issues)
    return 1 if issues else 0


def handle_cli_error(error: Exception) -> int:
    """Log ``error`` and return the exit code for its category.

    Rule violations exit with 2, configuration problems with 3, backend
    failures with 4 and anything else with 1.
    """
    for category, code in EXIT_CODES:
        if isinstance(error, category):
            log.error("%s: %s", type(error).__name__, error)
            return code
    log.error("Unexpected failure: %s", error, exc_info=error)
    return 1


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point for ``erp-docs``; the backend session is always closed."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    context: Optional[core_logic.RuntimeContext] = None
    try:
        context = load_runtime_context(getattr(args, "config", None))
        return dispatch_command(context, args, command_table)
    except Exception as error:
        return handle_cli_error(error)
    finally:
        if context is not None:
            core_logic.close_context(context)
