"""Command-line entry points for the cropvault toolkit.

All orchestration in this module is limited to argparse wiring, translating
command-line arguments into the command objects consumed by the business
layer, and printing what comes back. Keeping the CLI thin ensures the same
parser configuration can be reused by tests, scripts, or any alternative
front-end.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping, MutableMapping, Optional, Sequence

from . import core_logic, log
from .allocation import AllocationRequest
from .constants import PaymentMethod, UserRole


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed.

    Only commands with ``writes`` set save the workbook after a successful
    run; read-only commands leave the file untouched.
    """

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    writes: bool = False


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="cropvault-cli",
        description="Command-line tools for the cropvault storage ledger.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (defaults to ./config.ini).",
    )
    parser.add_argument("--user-id", default=None, help="Act as this tenant (defaults to [Defaults] OwnerID).")
    parser.add_argument(
        "--role",
        choices=[member.value for member in UserRole],
        default=None,
        help="Caller role; admin and manager see every tenant.",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as inflows and payments."""
    specs = {
        "add-location": register_add_location_command(subparsers),
        "edit-location": register_edit_location_command(subparsers),
        "add-area": register_add_area_command(subparsers),
        "add-areas": register_add_areas_command(subparsers),
        "delete-area": register_delete_area_command(subparsers),
        "add-crop": register_add_crop_command(subparsers),
        "add-customer": register_add_customer_command(subparsers),
        "inflow": register_inflow_command(subparsers),
        "outflow": register_outflow_command(subparsers),
        "pay": register_pay_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as quotes and reports."""
    specs = {
        "quote": register_quote_command(subparsers),
        "stock": register_stock_command(subparsers),
        "dues": register_dues_command(subparsers),
        "usage": register_usage_command(subparsers),
        "labour": register_labour_command(subparsers),
        "summary": register_summary_command(subparsers),
        "payments": register_payments_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def parse_allocation(value: str) -> AllocationRequest:
    """Parse an ``AREA_ID=QUANTITY`` argument."""
    area_id, separator, quantity = value.rpartition("=")
    if not separator or not area_id.strip():
        raise argparse.ArgumentTypeError(f"Expected AREA_ID=QUANTITY, got '{value}'")
    try:
        return AllocationRequest(area_id=area_id.strip(), quantity=int(quantity))
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Quantity must be a whole number in '{value}'") from exc


def parse_money(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"Not a valid amount: '{value}'") from exc


def parse_date(value: str) -> datetime:
    """Parse ``YYYY-MM-DD`` into a UTC midnight timestamp."""
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=UTC)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"Expected YYYY-MM-DD, got '{value}'") from exc


def _payment_method_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--payment-method",
        choices=[member.value for member in PaymentMethod],
        default=None,
        help="Defaults to [Defaults] PaymentMethod.",
    )


def register_add_location_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-location``."""
    name = "add-location"
    help_text = "Register a storage location (warehouse)."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--capacity", type=int, required=True)
        parser.add_argument("--mobile", default="")
        parser.add_argument("--address", default="")
        parser.add_argument("--location-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_location, writes=True)


def register_add_area_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-area``."""
    name = "add-area"
    help_text = "Register a storage area inside a location."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--location-id", required=True)
        parser.add_argument("--name", required=True)
        parser.add_argument("--capacity", type=int, required=True)
        parser.add_argument("--area-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_area, writes=True)


def register_edit_location_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``edit-location``."""
    name = "edit-location"
    help_text = "Change the name, capacity, mobile number or address of a location."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--location-id", required=True)
        parser.add_argument("--name", default=None)
        parser.add_argument("--capacity", type=int, default=None)
        parser.add_argument("--mobile", default=None)
        parser.add_argument("--address", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_edit_location, writes=True)


def register_add_areas_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-areas``."""
    name = "add-areas"
    help_text = "Create areas such as a1..a4, b1..b4 in one step."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--location-id", required=True)
        parser.add_argument("--prefixes", required=True, help="Comma separated, e.g. 'a,b,c'.")
        parser.add_argument("--start", type=int, required=True)
        parser.add_argument("--end", type=int, required=True)
        parser.add_argument("--capacity", type=int, required=True)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_areas, writes=True)


def register_delete_area_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``delete-area``."""
    name = "delete-area"
    help_text = "Delete an empty area, or every area of a location."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        target = parser.add_mutually_exclusive_group(required=True)
        target.add_argument("--area-id", default=None)
        target.add_argument("--location-id", default=None, help="Delete all areas of this location.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_delete_area, writes=True)


def register_add_crop_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-crop``."""
    name = "add-crop"
    help_text = "Register a crop type with its 1, 6 and 12 month rates."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--rate-1", type=parse_money, required=True)
        parser.add_argument("--rate-6", type=parse_money, required=True)
        parser.add_argument("--rate-12", type=parse_money, required=True)
        parser.add_argument("--insurance", type=parse_money, default=Decimal("0"))
        parser.add_argument("--crop-type-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_crop, writes=True)


def register_add_customer_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-customer``."""
    name = "add-customer"
    help_text = "Register a customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--name", required=True)
        parser.add_argument("--mobile", default="")
        parser.add_argument("--customer-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_add_customer, writes=True)


def register_inflow_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``inflow``."""
    name = "inflow"
    help_text = "Receive bags into one or more storage areas."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--crop-type-id", required=True)
        parser.add_argument("--location-id", required=True)
        parser.add_argument(
            "--area",
            dest="areas",
            action="append",
            type=parse_allocation,
            required=True,
            metavar="AREA_ID=QUANTITY",
            help="Repeat for each area receiving bags.",
        )
        parser.add_argument("--labour-per-bag", type=parse_money, default=Decimal("0"))
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_inflow, writes=True)


def register_outflow_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``outflow``."""
    name = "outflow"
    help_text = "Withdraw bags from an inflow and bill them."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--inflow-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--amount-paid", type=parse_money, default=Decimal("0"))
        parser.add_argument("--cost-per-bag", type=parse_money, default=None, help="Override the scheduled rate.")
        _payment_method_argument(parser)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_outflow, writes=True)


def register_pay_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay``."""
    name = "pay"
    help_text = "Pay down a customer's outstanding bills, oldest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", required=True)
        parser.add_argument("--amount", type=parse_money, required=True)
        parser.add_argument(
            "--outflow-id",
            dest="outflow_ids",
            action="append",
            default=None,
            help="Restrict the payment to these bills; repeatable.",
        )
        _payment_method_argument(parser)
        parser.add_argument("--notes", dest="notes", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_pay, writes=True)


def register_quote_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``quote``."""
    name = "quote"
    help_text = "Price a withdrawal without recording it."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--inflow-id", required=True)
        parser.add_argument("--quantity", type=int, required=True)
        parser.add_argument("--cost-per-bag", type=parse_money, default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_quote)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    name = "stock"
    help_text = "Display live inflows and where their bags sit."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_stock_report)


def register_dues_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``dues``."""
    name = "dues"
    help_text = "Display outstanding balances per customer."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_dues_report)


def register_usage_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``usage``."""
    name = "usage"
    help_text = "Display capacity usage per location, or per area of one location."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--location-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_usage_report)


def register_labour_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``labour``."""
    name = "labour"
    help_text = "Display inflows with unbilled labour charges."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_labour_report)


def register_summary_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``summary``."""
    name = "summary"
    help_text = "Summarise inflows, potential revenue, and utilisation."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--start", type=parse_date, default=None, help="YYYY-MM-DD, inclusive.")
        parser.add_argument("--end", type=parse_date, default=None, help="YYYY-MM-DD, inclusive.")
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_summary_report)


def register_payments_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``payments``."""
    name = "payments"
    help_text = "Display payment history, newest first."

    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        parser.add_argument("--customer-id", default=None)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=run_payments_report)


def load_runtime_context(config_path: Optional[Path] = None) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    target = Path(config_path) if config_path is not None else Path.cwd() / "config.ini"
    return core_logic.load_runtime_context(target)


def resolve_identity(context: core_logic.RuntimeContext, args: argparse.Namespace) -> core_logic.CallerIdentity:
    """Combine ``--user-id``/``--role`` with the configured defaults."""
    default = core_logic.default_identity(context)
    user_id = getattr(args, "user_id", None) or default.user_id
    role = getattr(args, "role", None)
    return core_logic.CallerIdentity(user_id=user_id, role=UserRole(role) if role else default.role)


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def _method(args: argparse.Namespace) -> Optional[PaymentMethod]:
    value = getattr(args, "payment_method", None)
    return PaymentMethod(value) if value else None


def translate_add_location(args: argparse.Namespace) -> core_logic.AddLocationCommand:
    return core_logic.AddLocationCommand(
        location_name=args.name,
        capacity=args.capacity,
        mobile_number=args.mobile,
        address=args.address,
        location_id=args.location_id,
    )


def translate_add_area(args: argparse.Namespace) -> core_logic.AddAreaCommand:
    return core_logic.AddAreaCommand(
        location_id=args.location_id,
        area_name=args.name,
        capacity=args.capacity,
        area_id=args.area_id,
    )


def translate_edit_location(args: argparse.Namespace) -> core_logic.UpdateLocationCommand:
    return core_logic.UpdateLocationCommand(
        location_id=args.location_id,
        location_name=args.name,
        capacity=args.capacity,
        mobile_number=args.mobile,
        address=args.address,
    )


def translate_add_areas(args: argparse.Namespace) -> core_logic.AddAreasBulkCommand:
    """Split ``--prefixes`` on commas into a bulk area command."""
    return core_logic.AddAreasBulkCommand(
        location_id=args.location_id,
        prefixes=tuple(prefix.strip() for prefix in args.prefixes.split(",") if prefix.strip()),
        start_number=args.start,
        end_number=args.end,
        capacity=args.capacity,
    )


def translate_add_crop(args: argparse.Namespace) -> core_logic.AddCropTypeCommand:
    return core_logic.AddCropTypeCommand(
        crop_type_name=args.name,
        rates={1: args.rate_1, 6: args.rate_6, 12: args.rate_12},
        insurance=args.insurance,
        crop_type_id=args.crop_type_id,
    )


def translate_add_customer(args: argparse.Namespace) -> core_logic.AddCustomerCommand:
    return core_logic.AddCustomerCommand(
        customer_name=args.name,
        mobile_number=args.mobile,
        customer_id=args.customer_id,
    )


def translate_inflow(args: argparse.Namespace) -> core_logic.ReceiveInflowCommand:
    """Translate CLI args into an inflow command object."""
    return core_logic.ReceiveInflowCommand(
        customer_id=args.customer_id,
        crop_type_id=args.crop_type_id,
        location_id=args.location_id,
        allocations=tuple(args.areas),
        labour_charge_per_bag=args.labour_per_bag,
    )


def translate_outflow(args: argparse.Namespace) -> core_logic.SettleOutflowCommand:
    """Translate CLI args into a settlement command object."""
    return core_logic.SettleOutflowCommand(
        inflow_id=args.inflow_id,
        quantity=args.quantity,
        amount_paid=args.amount_paid,
        cost_per_bag_override=args.cost_per_bag,
        payment_method=_method(args),
        notes=args.notes,
    )


def translate_pay(args: argparse.Namespace) -> core_logic.PayDuesCommand:
    """Translate CLI args into a payment command object."""
    return core_logic.PayDuesCommand(
        customer_id=args.customer_id,
        amount=args.amount,
        outflow_ids=tuple(args.outflow_ids) if args.outflow_ids else None,
        payment_method=_method(args),
        notes=args.notes,
    )


def run_add_location(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-location workflow in the BLL."""
    location = core_logic.add_location(context, translate_add_location(args), resolve_identity(context, args))
    print(f"Added location {location.location_id} ({location.location_name}, {location.capacity} bags)")
    return 0


def run_add_area(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-area workflow in the BLL."""
    area = core_logic.add_area(context, translate_add_area(args), resolve_identity(context, args))
    print(f"Added area {area.area_id} ({area.area_name}, {area.capacity} bags)")
    return 0


def run_edit_location(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the edit-location workflow in the BLL."""
    location = core_logic.update_location(context, translate_edit_location(args), resolve_identity(context, args))
    print(f"Updated location {location.location_id} ({location.location_name}, {location.capacity} bags)")
    return 0


def run_add_areas(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the bulk area workflow in the BLL."""
    areas = core_logic.add_areas_bulk(context, translate_add_areas(args), resolve_identity(context, args))
    print(f"Added {len(areas)} areas: {', '.join(area.area_name for area in areas)}")
    return 0


def run_delete_area(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the area deletion workflow in the BLL."""
    identity = resolve_identity(context, args)
    if args.area_id is not None:
        removed = [core_logic.delete_area(context, args.area_id, identity)]
    else:
        removed = core_logic.delete_location_areas(context, args.location_id, identity)
    print(f"Deleted {len(removed)} areas")
    return 0


def run_add_crop(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-crop workflow in the BLL."""
    crop_type = core_logic.add_crop_type(context, translate_add_crop(args), resolve_identity(context, args))
    print(f"Added crop type {crop_type.crop_type_id} ({crop_type.crop_type_name})")
    return 0


def run_add_customer(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the add-customer workflow in the BLL."""
    customer = core_logic.add_customer(context, translate_add_customer(args), resolve_identity(context, args))
    print(f"Added customer {customer.customer_id} ({customer.customer_name})")
    return 0


def run_inflow(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the inflow workflow via the BLL and print the receipt."""
    receipt = core_logic.record_inflow(context, translate_inflow(args), resolve_identity(context, args))
    print(f"Receipt {receipt.receipt_number}: inflow {receipt.inflow.inflow_id} ({receipt.inflow.quantity} bags)")
    for line in receipt.lines:
        print(f"  {line.area_name}: {line.quantity} bags, labour {line.labour_share}")
    print(f"  Labour charge: {receipt.total}")
    return 0


def run_outflow(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the settlement workflow via the BLL and print the bill."""
    event = core_logic.record_outflow(context, translate_outflow(args), resolve_identity(context, args))
    outflow = event.outflow
    print(f"Invoice {event.receipt_number}: outflow {outflow.outflow_id} [{event.status}]")
    print(f"  {outflow.quantity_withdrawn} bags x {outflow.cost_per_bag} for {outflow.storage_duration} months")
    print(f"  Storage {outflow.storage_cost}, insurance {outflow.insurance_charge}, labour {outflow.labour_charge}")
    print(f"  Total {outflow.total_bill}, paid {outflow.amount_paid}, balance {outflow.balance_due}")
    return 0


def run_pay(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the payment workflow via the BLL and print one receipt per bill."""
    allocation = core_logic.record_payment(context, translate_pay(args), resolve_identity(context, args))
    for receipt in allocation.receipts:
        print(
            f"Receipt {receipt.receipt_number}: {receipt.payment.amount} to {receipt.outflow_id} "
            f"(balance {receipt.previous_balance} -> {receipt.new_balance})"
        )
    print(f"Total applied: {allocation.total_applied}")
    return 0


def run_quote(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the quote workflow without writing."""
    quote = core_logic.quote_outflow(
        context,
        args.inflow_id,
        args.quantity,
        resolve_identity(context, args),
        cost_per_bag_override=args.cost_per_bag,
    )
    print(f"{quote.quantity} bags for {quote.months} months at {quote.cost_per_bag} per bag")
    print(f"  Storage {quote.storage_cost}, insurance {quote.insurance_charge}, labour {quote.labour_charge}")
    print(f"  Total {quote.total_bill}")
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock reporting workflow."""
    for inflow in core_logic.list_inflows(context, resolve_identity(context, args)):
        placement = ", ".join(f"{allocation.area_id}={allocation.quantity}" for allocation in inflow.allocations)
        print(f"{inflow.inflow_id} {inflow.date_added:%Y-%m-%d} {inflow.customer_id} {inflow.quantity} bags [{placement}]")
    return 0


def run_dues_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the outstanding dues reporting workflow."""
    dues = core_logic.outstanding_dues(context, resolve_identity(context, args), customer_id=args.customer_id)
    for customer_id, balance in sorted(dues.items()):
        print(f"{customer_id}: {balance}")
    print(f"Total outstanding: {sum(dues.values(), Decimal('0.00'))}")
    return 0


def run_usage_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the capacity usage reporting workflow."""
    identity = resolve_identity(context, args)
    if args.location_id is not None:
        for area in core_logic.area_usage(context, args.location_id, identity):
            print(f"{area.area_name}: {area.used}/{area.capacity} bags ({area.percentage:.0f}%)")
        return 0
    for location in core_logic.location_usage(context, identity):
        print(f"{location.location_name}: {location.used}/{location.capacity} bags ({location.percentage:.0f}%)")
    return 0


def run_labour_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the labour register reporting workflow."""
    inflows = core_logic.labour_register(context, resolve_identity(context, args))
    for inflow in inflows:
        print(f"{inflow.inflow_id} {inflow.date_added:%Y-%m-%d} {inflow.customer_id} {inflow.quantity} bags: {inflow.labour_charge}")
    print(f"Total labour: {sum((inflow.labour_charge for inflow in inflows), Decimal('0.00'))}")
    return 0


def run_summary_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the storage summary reporting workflow."""
    end = args.end.replace(hour=23, minute=59, second=59, microsecond=999999) if args.end else None
    summary = core_logic.storage_summary(context, resolve_identity(context, args), start=args.start, end=end)
    print(f"Inflows: {summary.inflow_count}")
    print(f"Bags stored: {summary.total_bags}")
    print(f"Potential monthly revenue: {summary.potential_monthly_revenue}")
    print(f"Space utilisation: {summary.utilization:.1f}% of {summary.total_capacity} bags")
    for location in summary.locations:
        print(f"  {location.location_name}: {location.used}/{location.capacity}")
    return 0


def run_payments_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the payment history reporting workflow."""
    for payment in core_logic.payment_history(context, resolve_identity(context, args), customer_id=args.customer_id):
        print(f"{payment.date:%Y-%m-%d} {payment.payment_id} {payment.customer_id} {payment.amount} {payment.method.value}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(getattr(args, "config", None))
        core_logic.ensure_schema_version(context)
        exit_code = dispatch_command(context, args, command_table)
        spec = command_table.get(args.command)
        if exit_code == 0 and spec is not None and spec.writes:
            persist_workbook(context)
        return exit_code
    except Exception as error:  # pragma: no cover - centralised error handler tested separately
        return handle_cli_error(error)
