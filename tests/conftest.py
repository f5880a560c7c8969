"""Shared pytest fixtures and utilities for cropvault tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from cropvault import cli, constants, core_logic, data_manager  # noqa: E402
from cropvault.models import (  # noqa: E402
    AreaAllocation,
    BillingSnapshot,
    CropType,
    Inflow,
    Outflow,
    RateCard,
    StorageArea,
)
from cropvault.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_OWNER_ID = "U-OWNER"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "BusinessName = {business_name}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "OwnerID = {owner_id}\n"
    "Role = {role}\n"
    "PaymentMethod = Cash\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    owner_id: str
    schema_version: str
    business_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized master workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "master_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def master_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh master workbook ready for use in a test."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        business_name: str = "Green Valley Storage",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        owner_id: str = DEFAULT_OWNER_ID,
        role: str = "user",
    ) -> ConfigBundle:
        bundle_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_name
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=bundle_name)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                business_name=business_name,
                schema_version=schema_version,
                owner_id=owner_id,
                role=role,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            owner_id=owner_id,
            schema_version=schema_version,
            business_name=business_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load the runtime context for tests through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Return a fresh CLI parser instance for tests."""

    return argparse.ArgumentParser(prog="cropvault-cli", description="cropvault CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Return the subparser action used to register commands."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        business_name="Green Valley Storage",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_owner_id=DEFAULT_OWNER_ID,
    )


@pytest.fixture
def workbook() -> Mock:
    """Return a mock workbook object for business logic tests."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Assemble a runtime context from injected settings and workbook mocks."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply


# ---------------------------------------------------------------------------
# Domain record builders
# ---------------------------------------------------------------------------


@pytest.fixture
def potato() -> CropType:
    """Crop type priced 10 / 36 / 56 per bag with 2 per bag insurance."""

    return CropType(
        crop_type_id="CROP-POTATO",
        crop_type_name="Potato",
        rates=RateCard.from_mapping({1: "10", 6: "36", 12: "56"}),
        insurance=Decimal("2.00"),
        owner_id=DEFAULT_OWNER_ID,
    )


@pytest.fixture
def make_inflow() -> Callable[..., Inflow]:
    """Factory for inflows with allocations given as ``{area_id: quantity}``."""

    def _make(
        allocations: dict[str, int],
        *,
        inflow_id: str = "IN-1",
        owner_id: str = DEFAULT_OWNER_ID,
        customer_id: str = "CUST-1",
        crop_type_id: str = "CROP-POTATO",
        location_id: str = "LOC-1",
        date_added: datetime = datetime(2024, 1, 15, tzinfo=UTC),
        labour_charge: Decimal = Decimal("0.00"),
        version: int = 1,
    ) -> Inflow:
        return Inflow(
            inflow_id=inflow_id,
            owner_id=owner_id,
            customer_id=customer_id,
            crop_type_id=crop_type_id,
            location_id=location_id,
            date_added=date_added,
            allocations=tuple(AreaAllocation(area_id, quantity) for area_id, quantity in allocations.items()),
            labour_charge=labour_charge,
            version=version,
        )

    return _make


@pytest.fixture
def make_outflow() -> Callable[..., Outflow]:
    """Factory for storage-only outflows with a given total and amount paid."""

    def _make(
        outflow_id: str,
        total: str,
        *,
        paid: str = "0",
        date: datetime = datetime(2024, 3, 1, tzinfo=UTC),
        customer_id: str = "CUST-1",
        owner_id: str = DEFAULT_OWNER_ID,
        inflow_id: str = "IN-1",
    ) -> Outflow:
        total_bill = Decimal(total).quantize(Decimal("0.01"))
        amount_paid = Decimal(paid).quantize(Decimal("0.01"))
        return Outflow(
            outflow_id=outflow_id,
            inflow_id=inflow_id,
            owner_id=owner_id,
            customer_id=customer_id,
            date=date,
            quantity_withdrawn=10,
            storage_duration=1,
            cost_per_bag=Decimal("0.00"),
            storage_cost=total_bill,
            insurance_charge=Decimal("0.00"),
            labour_charge=Decimal("0.00"),
            total_bill=total_bill,
            amount_paid=amount_paid,
            balance_due=total_bill - amount_paid,
            snapshot=BillingSnapshot(customer_name="Asha"),
        )

    return _make


@pytest.fixture
def make_area() -> Callable[..., StorageArea]:
    def _make(area_id: str, capacity: int, *, location_id: str = "LOC-1", name: str | None = None) -> StorageArea:
        return StorageArea(
            area_id=area_id,
            area_name=name or area_id,
            location_id=location_id,
            capacity=capacity,
            owner_id=DEFAULT_OWNER_ID,
        )

    return _make
