"""Unit tests verifying the business logic layer with a mocked data access layer."""

from __future__ import annotations

import threading
from dataclasses import replace
from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import Mock

import pytest

from cropvault import constants, core_logic, data_manager
from cropvault.allocation import AllocationRequest
from cropvault.errors import BusinessRuleViolation, MissingReferenceError, StaleRecordError
from cropvault.models import Customer, Payment, StorageLocation

AS_OF = datetime(2024, 4, 15, tzinfo=UTC)
ADMIN = core_logic.CallerIdentity("U-ADMIN", constants.UserRole.ADMIN)
OUTSIDER = core_logic.CallerIdentity("U-OTHER")


@pytest.fixture
def dal(monkeypatch, potato, make_area):
    """Patch every sheet iterator with a mock and hand back the mocks."""

    mocks = {
        "iter_locations": Mock(
            return_value=[
                StorageLocation("LOC-1", "North", 200, "U-OWNER"),
                StorageLocation("LOC-2", "Elsewhere", 100, "U-OTHER"),
            ]
        ),
        "iter_areas": Mock(return_value=[make_area("A", 100, name="Bay A"), make_area("B", 50, name="Bay B")]),
        "iter_crop_types": Mock(return_value=[potato]),
        "iter_customers": Mock(
            return_value=[
                Customer("CUST-1", "Asha", "9000000000", "U-OWNER"),
                Customer("CUST-2", "Ravi", "", "U-OWNER"),
            ]
        ),
        "iter_inflows": Mock(return_value=[]),
        "iter_outflows": Mock(return_value=[]),
        "iter_payments": Mock(return_value=[]),
        "apply_change_set": Mock(name="apply_change_set"),
        "record_exists": Mock(return_value=False),
    }
    for name, mock in mocks.items():
        monkeypatch.setattr(data_manager, name, mock)
    return mocks


def _changes(dal) -> data_manager.ChangeSet:
    dal["apply_change_set"].assert_called_once()
    return dal["apply_change_set"].call_args.args[1]


# ---------------------------------------------------------------------------
# Runtime/context management
# ---------------------------------------------------------------------------


def test_load_runtime_context_returns_context(monkeypatch, tmp_path):
    """load_runtime_context should assemble settings and workbook into a context."""

    config_path = tmp_path / "config.ini"
    parser = Mock(name="parser")
    parsed_settings = data_manager.ConfigSettings(
        data_file=tmp_path / "master.xlsx",
        business_name="Storage",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_owner_id="U-OWNER",
    )
    workbook = Mock(name="workbook")

    find_config_file = Mock(return_value=config_path)
    read_config = Mock(return_value=parser)
    parse_settings = Mock(return_value=parsed_settings)
    open_workbook = Mock(return_value=workbook)

    monkeypatch.setattr(data_manager, "find_config_file", find_config_file)
    monkeypatch.setattr(data_manager, "read_config", read_config)
    monkeypatch.setattr(data_manager, "parse_settings", parse_settings)
    monkeypatch.setattr(data_manager, "open_workbook", open_workbook)
    monkeypatch.setattr(data_manager, "file_stamp", Mock(return_value=42))

    context = core_logic.load_runtime_context(config_path)

    assert context.settings is parsed_settings
    assert context.workbook is workbook
    assert context._stamps["workbook"] == 42
    find_config_file.assert_called_once_with(config_path)
    read_config.assert_called_once_with(config_path.resolve())
    parse_settings.assert_called_once_with(parser, base_path=config_path.resolve().parent)
    open_workbook.assert_called_once_with(parsed_settings.data_file)


def test_ensure_schema_version_rejects_mismatch(context):
    """Schema mismatches should surface a RuntimeError with clear messaging."""

    bad_settings = replace(context.settings, schema_version="0.9")
    bad_context = core_logic.RuntimeContext(settings=bad_settings, workbook=context.workbook)
    with pytest.raises(RuntimeError):
        core_logic.ensure_schema_version(bad_context)


def test_ensure_schema_version_accepts_expected(context):
    core_logic.ensure_schema_version(context)


def test_persist_context_checks_and_updates_stamp(monkeypatch, context):
    save_mock = Mock(return_value=99)
    monkeypatch.setattr(data_manager, "save_workbook", save_mock)
    context._stamps["workbook"] = 7

    core_logic.persist_context(context)

    save_mock.assert_called_once_with(context.workbook, destination=context.settings.data_file, expected_stamp=7)
    assert context._stamps["workbook"] == 99


def test_persist_context_propagates_stale_workbook(monkeypatch, context):
    monkeypatch.setattr(
        data_manager,
        "save_workbook",
        Mock(side_effect=StaleRecordError("wb", "modified by another process")),
    )

    with pytest.raises(StaleRecordError):
        core_logic.persist_context(context)


def test_refresh_context_reloads_from_disk(monkeypatch, settings):
    """refresh_context should discard cached state and load a new workbook."""

    new_workbook = Mock(name="fresh")
    refresh_mock = Mock(return_value=new_workbook)
    monkeypatch.setattr(data_manager, "refresh_workbook", refresh_mock)
    monkeypatch.setattr(data_manager, "file_stamp", Mock(return_value=5))
    context = core_logic.RuntimeContext(settings=settings, workbook=Mock(name="stale"))
    context._cache["customers"] = {"all": []}

    refreshed = core_logic.refresh_context(context)

    assert refreshed.workbook is new_workbook
    assert refreshed._cache == {}
    assert refreshed._stamps["workbook"] == 5
    refresh_mock.assert_called_once_with(settings.data_file)


# ---------------------------------------------------------------------------
# Identity and tenant scoping
# ---------------------------------------------------------------------------


def test_caller_identity_scopes_to_own_records():
    identity = core_logic.CallerIdentity("U-1")

    assert identity.owner_scope == frozenset({"U-1"})
    assert identity.can_see("U-1")
    assert not identity.can_see("U-2")


@pytest.mark.parametrize("role", [constants.UserRole.ADMIN, constants.UserRole.MANAGER])
def test_privileged_roles_see_every_tenant(role):
    identity = core_logic.CallerIdentity("U-1", role)

    assert identity.owner_scope is None
    assert identity.can_see("U-2")


def test_default_identity_comes_from_settings(context):
    assert core_logic.default_identity(context) == core_logic.CallerIdentity("U-OWNER", constants.UserRole.USER)


def test_list_locations_hides_other_tenants(dal, context):
    assert [row.location_id for row in core_logic.list_locations(context)] == ["LOC-1"]
    assert [row.location_id for row in core_logic.list_locations(context, ADMIN)] == ["LOC-1", "LOC-2"]


def test_list_locations_reuses_cache_between_calls(dal, context):
    core_logic.list_locations(context)
    core_logic.list_locations(context, ADMIN)

    dal["iter_locations"].assert_called_once_with(context.workbook)


def test_get_location_of_other_tenant_is_not_found(dal, context):
    with pytest.raises(MissingReferenceError) as excinfo:
        core_logic.get_location(context, "LOC-2")

    assert excinfo.value.kind is constants.ErrorKind.NOT_FOUND
    assert core_logic.get_location(context, "LOC-2", ADMIN).location_name == "Elsewhere"


def test_get_customer_missing_raises(dal, context):
    with pytest.raises(MissingReferenceError):
        core_logic.get_customer(context, "CUST-404")


def test_list_areas_requires_visible_location(dal, context):
    assert [area.area_id for area in core_logic.list_areas(context, "LOC-1")] == ["A", "B"]
    with pytest.raises(MissingReferenceError):
        core_logic.list_areas(context, "LOC-1", OUTSIDER)


def test_list_inflows_sorts_oldest_first(dal, context, make_inflow):
    dal["iter_inflows"].return_value = [
        make_inflow({"A": 1}, inflow_id="IN-new", date_added=datetime(2024, 3, 1, tzinfo=UTC)),
        make_inflow({"A": 1}, inflow_id="IN-old", date_added=datetime(2024, 1, 1, tzinfo=UTC)),
        make_inflow({"A": 1}, inflow_id="IN-foreign", owner_id="U-OTHER"),
    ]

    assert [row.inflow_id for row in core_logic.list_inflows(context)] == ["IN-old", "IN-new"]


# ---------------------------------------------------------------------------
# Master data
# ---------------------------------------------------------------------------


def test_add_location_appends_owned_record(monkeypatch, dal, context):
    append_mock = Mock()
    monkeypatch.setattr(data_manager, "append_location", append_mock)
    core_logic.list_locations(context)

    record = core_logic.add_location(
        context,
        core_logic.AddLocationCommand(" South ", 300, mobile_number="9", location_id="LOC-9"),
    )

    assert record == StorageLocation("LOC-9", "South", 300, "U-OWNER", mobile_number="9")
    append_mock.assert_called_once_with(context.workbook, record)
    assert "locations" not in context._cache


@pytest.mark.parametrize(("name", "capacity"), [("", 10), ("North", 0)])
def test_add_location_validates_input(monkeypatch, context, name, capacity):
    append_mock = Mock()
    monkeypatch.setattr(data_manager, "append_location", append_mock)

    with pytest.raises(ValueError):
        core_logic.add_location(context, core_logic.AddLocationCommand(name, capacity))
    append_mock.assert_not_called()


def test_add_area_inherits_location_owner(monkeypatch, dal, context):
    append_mock = Mock()
    monkeypatch.setattr(data_manager, "append_area", append_mock)

    record = core_logic.add_area(context, core_logic.AddAreaCommand("LOC-2", "Bay Z", 40, area_id="Z"), ADMIN)

    assert record.owner_id == "U-OTHER"
    assert record.location_id == "LOC-2"
    append_mock.assert_called_once_with(context.workbook, record)


def test_add_area_rejects_unknown_location(monkeypatch, dal, context):
    monkeypatch.setattr(data_manager, "append_area", Mock())
    with pytest.raises(MissingReferenceError):
        core_logic.add_area(context, core_logic.AddAreaCommand("LOC-404", "Bay", 10))


def test_add_crop_type_builds_rate_card(monkeypatch, context):
    append_mock = Mock()
    monkeypatch.setattr(data_manager, "append_crop_type", append_mock)

    record = core_logic.add_crop_type(
        context,
        core_logic.AddCropTypeCommand("Onion", {1: "8", 6: "30", 12: "50"}, Decimal("1.5")),
    )

    assert record.rates.half_yearly == Decimal("30.00")
    assert record.insurance == Decimal("1.50")
    assert record.crop_type_id.startswith("CROP")
    append_mock.assert_called_once_with(context.workbook, record)


def test_add_crop_type_rejects_negative_insurance(monkeypatch, context):
    monkeypatch.setattr(data_manager, "append_crop_type", Mock())
    with pytest.raises(ValueError):
        core_logic.add_crop_type(
            context,
            core_logic.AddCropTypeCommand("Onion", {1: "8", 6: "30", 12: "50"}, Decimal("-1")),
        )


def test_add_customer_appends_record(monkeypatch, context):
    append_mock = Mock()
    monkeypatch.setattr(data_manager, "append_customer", append_mock)

    record = core_logic.add_customer(context, core_logic.AddCustomerCommand("Meena", customer_id="CUST-7"))

    assert record == Customer("CUST-7", "Meena", "", "U-OWNER")
    append_mock.assert_called_once_with(context.workbook, record)


def test_update_location_keeps_unchanged_fields(monkeypatch, dal, context):
    update_mock = Mock()
    monkeypatch.setattr(data_manager, "update_location", update_mock)
    core_logic.list_locations(context)

    record = core_logic.update_location(
        context,
        core_logic.UpdateLocationCommand("LOC-1", location_name=" North Yard ", capacity=250, address="Ring Road"),
    )

    assert record == StorageLocation("LOC-1", "North Yard", 250, "U-OWNER", address="Ring Road")
    update_mock.assert_called_once_with(context.workbook, record)
    assert "locations" not in context._cache


def test_update_location_rejects_other_tenant_and_bad_capacity(monkeypatch, dal, context):
    update_mock = Mock()
    monkeypatch.setattr(data_manager, "update_location", update_mock)

    with pytest.raises(MissingReferenceError):
        core_logic.update_location(context, core_logic.UpdateLocationCommand("LOC-2", capacity=10))
    with pytest.raises(ValueError):
        core_logic.update_location(context, core_logic.UpdateLocationCommand("LOC-1", capacity=0))
    update_mock.assert_not_called()


def test_add_areas_bulk_builds_prefix_by_number_grid(monkeypatch, dal, context):
    append_mock = Mock()
    monkeypatch.setattr(data_manager, "append_area", append_mock)

    records = core_logic.add_areas_bulk(
        context,
        core_logic.AddAreasBulkCommand("LOC-1", ["a", " b ", ""], start_number=1, end_number=2, capacity=25),
    )

    assert [record.area_name for record in records] == ["a1", "a2", "b1", "b2"]
    assert {record.capacity for record in records} == {25}
    assert {record.owner_id for record in records} == {"U-OWNER"}
    assert len({record.area_id for record in records}) == 4
    assert append_mock.call_count == 4


@pytest.mark.parametrize(
    ("prefixes", "start", "end", "capacity"),
    [([" "], 1, 2, 10), (["a"], 3, 2, 10), (["a"], 1, 2, 0), (["a"], -1, 2, 10)],
)
def test_add_areas_bulk_validates_input(monkeypatch, dal, context, prefixes, start, end, capacity):
    append_mock = Mock()
    monkeypatch.setattr(data_manager, "append_area", append_mock)

    with pytest.raises(ValueError):
        core_logic.add_areas_bulk(context, core_logic.AddAreasBulkCommand("LOC-1", prefixes, start, end, capacity))
    append_mock.assert_not_called()


def test_delete_area_removes_empty_area(monkeypatch, dal, context, make_inflow):
    delete_mock = Mock()
    monkeypatch.setattr(data_manager, "delete_areas", delete_mock)
    dal["iter_inflows"].return_value = [make_inflow({"B": 5})]

    removed = core_logic.delete_area(context, "A")

    assert removed.area_name == "Bay A"
    delete_mock.assert_called_once_with(context.workbook, ["A"])


def test_delete_area_holding_bags_is_refused(monkeypatch, dal, context, make_inflow):
    delete_mock = Mock()
    monkeypatch.setattr(data_manager, "delete_areas", delete_mock)
    dal["iter_inflows"].return_value = [make_inflow({"A": 5})]

    with pytest.raises(BusinessRuleViolation) as excinfo:
        core_logic.delete_area(context, "A")

    assert excinfo.value.kind is constants.ErrorKind.AREA_IN_USE
    assert excinfo.value.error.detail["used"] == 5
    delete_mock.assert_not_called()


def test_delete_location_areas_is_all_or_nothing(monkeypatch, dal, context, make_inflow):
    delete_mock = Mock()
    monkeypatch.setattr(data_manager, "delete_areas", delete_mock)
    dal["iter_inflows"].return_value = [make_inflow({"B": 1})]

    with pytest.raises(BusinessRuleViolation):
        core_logic.delete_location_areas(context, "LOC-1")
    delete_mock.assert_not_called()

    dal["iter_inflows"].return_value = []
    removed = core_logic.delete_location_areas(context, "LOC-1")

    assert [area.area_id for area in removed] == ["A", "B"]
    delete_mock.assert_called_once_with(context.workbook, ["A", "B"])


# ---------------------------------------------------------------------------
# Inflows
# ---------------------------------------------------------------------------


def _inflow_command(*allocations, **kwargs):
    kwargs.setdefault("timestamp", datetime(2024, 1, 15, 10, 0, tzinfo=UTC))
    return core_logic.ReceiveInflowCommand(
        customer_id="CUST-1",
        crop_type_id="CROP-POTATO",
        location_id="LOC-1",
        allocations=[AllocationRequest(area_id, quantity) for area_id, quantity in allocations],
        **kwargs,
    )


def test_record_inflow_writes_inflow_and_returns_receipt(dal, context, make_inflow):
    dal["iter_inflows"].return_value = [make_inflow({"B": 40}, inflow_id="IN-0")]

    receipt = core_logic.record_inflow(
        context,
        _inflow_command(("A", 30), ("B", 10), labour_charge_per_bag=Decimal("2")),
    )

    (inflow,) = _changes(dal).new_inflows
    assert inflow.inflow_id == "IN20240115100000000000"
    assert inflow.quantity == 40
    assert inflow.labour_charge == Decimal("80.00")
    assert inflow.owner_id == "U-OWNER"
    assert receipt.inflow == inflow
    assert receipt.snapshot.customer_name == "Asha"
    assert receipt.snapshot.location_name == "North"
    assert [(line.area_name, line.labour_share) for line in receipt.lines] == [
        ("Bay A", Decimal("60.00")),
        ("Bay B", Decimal("20.00")),
    ]
    dal["iter_areas"].assert_any_call(context.workbook, location_id="LOC-1")


def test_record_inflow_rejects_when_any_area_lacks_room(dal, context, make_inflow):
    dal["iter_inflows"].return_value = [make_inflow({"B": 40}, inflow_id="IN-0")]

    with pytest.raises(BusinessRuleViolation) as excinfo:
        core_logic.record_inflow(context, _inflow_command(("A", 30), ("B", 11)))

    assert excinfo.value.kind is constants.ErrorKind.INSUFFICIENT_CAPACITY
    dal["apply_change_set"].assert_not_called()


def test_record_inflow_for_other_tenant_is_not_found(dal, context):
    with pytest.raises(MissingReferenceError):
        core_logic.record_inflow(context, _inflow_command(("A", 1)), OUTSIDER)
    dal["apply_change_set"].assert_not_called()


def test_record_inflow_rejects_negative_labour_rate(dal, context):
    with pytest.raises(ValueError):
        core_logic.record_inflow(context, _inflow_command(("A", 1), labour_charge_per_bag=Decimal("-1")))


def test_record_inflow_uses_current_time_when_not_given(dal, context, set_fixed_datetime):
    moment = set_fixed_datetime(datetime(2024, 2, 1, 8, 30, tzinfo=UTC))

    receipt = core_logic.record_inflow(context, _inflow_command(("A", 5), timestamp=None))

    assert receipt.inflow.date_added == moment
    assert receipt.receipt_number.startswith("IN20240201")


def test_capacity_ledger_counts_live_inflows(dal, context, make_inflow):
    dal["iter_inflows"].return_value = [make_inflow({"A": 25, "B": 5})]

    ledger = core_logic.capacity_ledger(context, "LOC-1")

    assert ledger.available("A") == 75
    assert ledger.available("B") == 45


# ---------------------------------------------------------------------------
# Outflows
# ---------------------------------------------------------------------------


def test_quote_outflow_prices_without_writing(dal, context, make_inflow):
    dal["iter_inflows"].return_value = [make_inflow({"A": 30})]

    quote = core_logic.quote_outflow(context, "IN-1", 10, as_of=AS_OF)

    assert quote.total_bill == Decimal("320.00")
    dal["apply_change_set"].assert_not_called()


def test_quote_outflow_rejects_more_than_held(dal, context, make_inflow):
    dal["iter_inflows"].return_value = [make_inflow({"A": 30})]

    with pytest.raises(BusinessRuleViolation) as excinfo:
        core_logic.quote_outflow(context, "IN-1", 31, as_of=AS_OF)
    assert excinfo.value.kind is constants.ErrorKind.EXCEEDS_STOCK


def test_record_outflow_partial_updates_inflow_and_records_payment(dal, context, make_inflow):
    inflow = make_inflow({"A": 30}, labour_charge=Decimal("40.00"))
    dal["iter_inflows"].return_value = [inflow]

    event = core_logic.record_outflow(
        context,
        core_logic.SettleOutflowCommand("IN-1", 10, amount_paid=Decimal("100"), timestamp=AS_OF),
    )

    changes = _changes(dal)
    assert changes.new_outflows == [event.outflow]
    assert event.outflow.outflow_id == "OUT20240415000000000000"
    assert event.outflow.total_bill == Decimal("360.00")
    assert event.outflow.balance_due == Decimal("260.00")
    assert event.outflow.snapshot.crop_type_name == "Potato"
    (remaining,) = changes.updated_inflows
    assert remaining.quantity == 20
    assert remaining.labour_charge == Decimal("0.00")
    assert changes.deleted_inflows == []
    (payment,) = changes.new_payments
    assert payment == event.payment
    assert payment.amount == Decimal("100.00")
    assert payment.method is constants.PaymentMethod.CASH


def test_record_outflow_full_withdrawal_deletes_inflow(dal, context, make_inflow):
    inflow = make_inflow({"A": 30})
    dal["iter_inflows"].return_value = [inflow]

    event = core_logic.record_outflow(context, core_logic.SettleOutflowCommand("IN-1", 30, timestamp=AS_OF))

    changes = _changes(dal)
    assert changes.deleted_inflows == [inflow]
    assert changes.updated_inflows == []
    assert changes.new_payments == []
    assert event.payment is None
    assert event.status == "Pending"


def test_record_outflow_exceeding_stock_writes_nothing(dal, context, make_inflow):
    dal["iter_inflows"].return_value = [make_inflow({"A": 30})]

    with pytest.raises(BusinessRuleViolation) as excinfo:
        core_logic.record_outflow(context, core_logic.SettleOutflowCommand("IN-1", 31, timestamp=AS_OF))

    assert excinfo.value.kind is constants.ErrorKind.EXCEEDS_STOCK
    dal["apply_change_set"].assert_not_called()


def test_record_outflow_overpayment_writes_nothing(dal, context, make_inflow):
    dal["iter_inflows"].return_value = [make_inflow({"A": 10})]

    with pytest.raises(BusinessRuleViolation) as excinfo:
        core_logic.record_outflow(
            context,
            core_logic.SettleOutflowCommand("IN-1", 10, amount_paid=Decimal("500"), timestamp=AS_OF),
        )

    assert excinfo.value.kind is constants.ErrorKind.OVER_PAYMENT
    dal["apply_change_set"].assert_not_called()


def test_record_outflow_unknown_inflow_is_not_found(dal, context):
    with pytest.raises(MissingReferenceError):
        core_logic.record_outflow(context, core_logic.SettleOutflowCommand("IN-404", 1, timestamp=AS_OF))


def test_record_outflow_reads_inflow_within_caller_scope(dal, context, make_inflow):
    dal["iter_inflows"].return_value = [make_inflow({"A": 30})]

    core_logic.record_outflow(context, core_logic.SettleOutflowCommand("IN-1", 5, timestamp=AS_OF))

    dal["iter_inflows"].assert_any_call(context.workbook, owner_ids=frozenset({"U-OWNER"}))


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


def test_record_payment_settles_oldest_bills_first(dal, context, make_outflow):
    dal["iter_outflows"].return_value = [
        make_outflow("OUT-2", "50", date=datetime(2024, 3, 1, tzinfo=UTC)),
        make_outflow("OUT-1", "100", date=datetime(2024, 2, 1, tzinfo=UTC)),
    ]

    allocation = core_logic.record_payment(
        context,
        core_logic.PayDuesCommand("CUST-1", Decimal("120"), timestamp=AS_OF),
    )

    changes = _changes(dal)
    assert {row.outflow_id: row.balance_due for row in changes.updated_outflows} == {
        "OUT-1": Decimal("0.00"),
        "OUT-2": Decimal("30.00"),
    }
    assert [payment.payment_id for payment in changes.new_payments] == [
        "PAY2024041500000000000000",
        "PAY2024041500000000000001",
    ]
    assert allocation.total_applied == Decimal("120.00")


def test_record_payment_unknown_bill_is_not_found(dal, context):
    with pytest.raises(MissingReferenceError):
        core_logic.record_payment(
            context,
            core_logic.PayDuesCommand("CUST-1", Decimal("10"), outflow_ids=["OUT-404"], timestamp=AS_OF),
        )
    dal["apply_change_set"].assert_not_called()


def test_record_payment_excess_is_rejected(dal, context, make_outflow):
    dal["iter_outflows"].return_value = [make_outflow("OUT-1", "100")]

    with pytest.raises(BusinessRuleViolation) as excinfo:
        core_logic.record_payment(context, core_logic.PayDuesCommand("CUST-1", Decimal("150"), timestamp=AS_OF))

    assert excinfo.value.kind is constants.ErrorKind.EXCESS_PAYMENT
    dal["apply_change_set"].assert_not_called()


def test_record_payment_for_unknown_customer_is_not_found(dal, context):
    with pytest.raises(MissingReferenceError):
        core_logic.record_payment(context, core_logic.PayDuesCommand("CUST-404", Decimal("10")))


def test_record_payment_rejects_bill_selected_twice(dal, context, make_outflow):
    dal["iter_outflows"].return_value = [make_outflow("OUT-1", "100")]

    with pytest.raises(BusinessRuleViolation) as excinfo:
        core_logic.record_payment(
            context,
            core_logic.PayDuesCommand("CUST-1", Decimal("150"), outflow_ids=["OUT-1", "OUT-1"], timestamp=AS_OF),
        )

    assert excinfo.value.kind is constants.ErrorKind.DUPLICATE_OUTFLOW
    assert excinfo.value.entity_id == "OUT-1"
    dal["apply_change_set"].assert_not_called()


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def test_outstanding_dues_sums_unpaid_balances(dal, context, make_outflow):
    dal["iter_outflows"].return_value = [
        make_outflow("OUT-1", "100"),
        make_outflow("OUT-2", "40", paid="40"),
        make_outflow("OUT-3", "30", customer_id="CUST-2"),
        make_outflow("OUT-4", "12.50", paid="2.50"),
        make_outflow("OUT-5", "99", owner_id="U-OTHER"),
    ]

    assert core_logic.outstanding_dues(context) == {"CUST-1": Decimal("110.00"), "CUST-2": Decimal("30.00")}
    assert core_logic.outstanding_dues(context, customer_id="CUST-2") == {"CUST-2": Decimal("30.00")}


def test_labour_register_lists_unbilled_labour_newest_first(dal, context, make_inflow):
    dal["iter_inflows"].return_value = [
        make_inflow({"A": 1}, inflow_id="IN-1", labour_charge=Decimal("5"), date_added=datetime(2024, 1, 1, tzinfo=UTC)),
        make_inflow({"A": 1}, inflow_id="IN-2", date_added=datetime(2024, 2, 1, tzinfo=UTC)),
        make_inflow({"A": 1}, inflow_id="IN-3", labour_charge=Decimal("7"), date_added=datetime(2024, 3, 1, tzinfo=UTC)),
    ]

    assert [row.inflow_id for row in core_logic.labour_register(context)] == ["IN-3", "IN-1"]


def test_payment_history_newest_first(dal, context):
    def _payment(payment_id, day, customer_id="CUST-1"):
        return Payment(payment_id, "OUT-1", customer_id, "U-OWNER", datetime(2024, 5, day, tzinfo=UTC), Decimal("1.00"))

    dal["iter_payments"].return_value = [_payment("PAY-1", 1), _payment("PAY-2", 3), _payment("PAY-3", 2, "CUST-2")]

    assert [row.payment_id for row in core_logic.payment_history(context)] == ["PAY-2", "PAY-3", "PAY-1"]
    assert [row.payment_id for row in core_logic.payment_history(context, customer_id="CUST-2")] == ["PAY-3"]


def test_area_usage_reports_used_and_available(dal, context, make_inflow):
    dal["iter_inflows"].return_value = [make_inflow({"A": 25})]

    usage = {row.area_id: (row.used, row.available) for row in core_logic.area_usage(context, "LOC-1")}

    assert usage == {"A": (25, 75), "B": (0, 50)}


def test_storage_summary_covers_inflows_in_range(dal, context, make_inflow):
    dal["iter_inflows"].return_value = [
        make_inflow({"A": 30}, inflow_id="IN-1", date_added=datetime(2024, 1, 10, tzinfo=UTC)),
        make_inflow({"B": 20}, inflow_id="IN-2", date_added=datetime(2024, 2, 10, tzinfo=UTC)),
        make_inflow({"A": 10}, inflow_id="IN-3", date_added=datetime(2024, 6, 10, tzinfo=UTC)),
    ]

    summary = core_logic.storage_summary(
        context,
        start=datetime(2024, 1, 1, tzinfo=UTC),
        end=datetime(2024, 3, 31, tzinfo=UTC),
    )

    assert summary.inflow_count == 2
    assert summary.total_bags == 50
    assert summary.potential_monthly_revenue == Decimal("500.00")
    assert summary.total_capacity == 200
    assert summary.utilization == pytest.approx(25.0)
    assert [row.used for row in summary.locations] == [60]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def test_generate_record_id_uses_timestamp():
    moment = datetime(2024, 1, 2, 3, 4, 5, 6, tzinfo=UTC)

    assert core_logic.generate_record_id(prefix="IN", when=moment) == "IN20240102030405000006"
    assert core_logic.generate_record_id(prefix="PAY", when=moment, sequence=3) == "PAY2024010203040500000603"


def test_generate_record_id_defaults_to_now(set_fixed_datetime):
    set_fixed_datetime(datetime(2024, 7, 1, tzinfo=UTC))
    assert core_logic.generate_record_id(prefix="OUT") == "OUT20240701000000000000"


def test_reserve_record_id_never_repeats_within_a_context(context):
    moment = datetime(2024, 1, 2, 3, 4, 5, tzinfo=UTC)

    first = core_logic.reserve_record_id(context, prefix="IN", when=moment)
    second = core_logic.reserve_record_id(context, prefix="IN", when=moment)
    third = core_logic.reserve_record_id(context, prefix="IN", when=moment)

    assert first == "IN20240102030405000000"
    assert second == "IN2024010203040500000000"
    assert third == "IN2024010203040500000001"


def test_reserve_record_id_skips_ids_already_stored(dal, context):
    dal["record_exists"].side_effect = lambda _wb, _sheet, _column, key: key == "OUT20240415000000000000"

    reserved = core_logic.reserve_record_id(
        context,
        prefix="OUT",
        when=AS_OF,
        sheet_name=data_manager.OUTFLOWS_SHEET,
        key_column="OutflowID",
    )

    assert reserved == "OUT2024041500000000000000"


def test_record_inflow_same_timestamp_gets_distinct_ids(dal, context):
    core_logic.record_inflow(context, _inflow_command(("A", 10)))
    core_logic.record_inflow(context, _inflow_command(("B", 10)))

    first, second = (call.args[1].new_inflows[0] for call in dal["apply_change_set"].call_args_list)
    assert first.inflow_id == "IN20240115100000000000"
    assert second.inflow_id == "IN2024011510000000000000"


def test_require_positive_quantity_rejects_nonpositive():
    with pytest.raises(ValueError):
        core_logic.require_positive_quantity(0)


def test_require_positive_quantity_accepts_positive():
    core_logic.require_positive_quantity(1)


def test_require_nonnegative_money_rejects_negative():
    with pytest.raises(ValueError):
        core_logic.require_nonnegative_money(Decimal("-0.01"))


def test_require_nonnegative_money_accepts_zero():
    core_logic.require_nonnegative_money(Decimal("0"))


@pytest.mark.parametrize("value", ["", "   "])
def test_require_name_rejects_blank(value):
    with pytest.raises(ValueError):
        core_logic.require_name(value)


def test_entity_locks_release_after_use():
    locks = core_logic.EntityLocks()

    with locks.hold("inflow:IN-1", "inflow:IN-1", "area:A"):
        pass

    lock = locks._lock_for("inflow:IN-1")
    assert lock.acquire(blocking=False)
    lock.release()


def test_entity_locks_block_second_holder():
    locks = core_logic.EntityLocks()
    entered = threading.Event()
    results = []

    def _contender():
        with locks.hold("outflow:OUT-1"):
            results.append("second")
        entered.set()

    with locks.hold("outflow:OUT-1"):
        worker = threading.Thread(target=_contender)
        worker.start()
        assert not entered.wait(timeout=0.1)
        results.append("first")

    worker.join(timeout=5)
    assert results == ["first", "second"]
