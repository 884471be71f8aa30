"""Demonstration script for the MES ledger."""

from __future__ import annotations

from pprint import pprint

from . import MESService, OrderType
from .errors import ReworkLimitExceeded


def main() -> None:
    mes = MESService()

    # Production: one order, two dispatches, one report each
    order = mes.create_work_order(
        36,
        customer_name="Hsinchu Fab 12",
        customer_site="Line B",
        product_model="R0-300",
        priority="high",
    )
    first = mes.create_dispatch(order.id, 18, station_name="Regen-01", operator_name="Lin")
    second = mes.create_dispatch(order.id, 18, station_name="Regen-02", operator_name="Chen")
    mes.start_dispatch(first.id)
    mes.start_dispatch(second.id)

    mes.create_report(first.id, good_qty=17, ng_qty=1, ng_details=[
        {"reason_id": "NG-03", "reason_name": "Scratch", "quantity": 1, "barcodes": ["E200-0007"]}
    ])
    mes.create_report(second.id, good_qty=18, ng_qty=0)

    order = mes.get_work_order(order.id)
    print("Work order")
    print(
        f" - {order.order_number}: {order.completed_qty}/{order.quantity}"
        f" ({order.good_qty} good, {order.ng_qty} NG) -> {order.status.value}"
    )
    for dispatch in mes.list_dispatches(work_order_id=order.id):
        print(
            f"   {dispatch.dispatch_number} @ {dispatch.station_name}:"
            f" {dispatch.completed_qty}/{dispatch.quantity} -> {dispatch.status.value}"
        )

    # Rework lineage: the NG unit gets one rework order, never a second one
    rework = mes.create_work_order(
        1, order_type=OrderType.REWORK, source_work_order_id=order.id
    )
    print(f"\nRework order {rework.order_number} (rework_count={rework.rework_count})")
    try:
        mes.create_work_order(1, order_type=OrderType.REWORK, source_work_order_id=rework.id)
    except ReworkLimitExceeded as exc:
        print(f" - second rework refused: {exc}")

    # The regenerated unit leaves with a new tag
    mes.record_epc_change(rework.id, "E280-0002", "E280-0001", operator_name="Lin")
    origin = mes.find_epc_last_record("E280-0002")
    print(f" - E280-0002 was written for work order {origin.order_number}")

    # Quality
    info = mes.get_outgassing_sample_info(order.id)
    print(
        f"\nOutgassing: {info.required_samples} samples required,"
        f" next #{info.next_sample_index} from units {info.next_batch_range}"
    )
    mes.create_outgassing_test(order.id, "PASS", rfid_code="E200-0003", test_value=0.8)

    summary = mes.import_aoi_csv(
        order.id,
        [
            {"serial_number": "E200-0001", "result": "pass"},
            {"serial_number": "E200-0007", "result": "damage", "pos_x": "12", "pos_y": "40"},
            {"serial_number": "E200-0007", "result": "damage", "pos_x": "13", "pos_y": "41"},
        ],
        operator_name="Wu",
    )
    print(f"AOI import: {summary.total_rows} rows -> {summary.unique_serials} units")

    # Warehouse
    item = mes.wms_inbound("A-01", order.id, 35, "PALLET-0001", "Huang")
    mes.wms_transfer(item.id, "B-02", "Huang", "Move to shipping lane")
    take = mes.create_stock_take("B-02", "Huang", [{"inventory_id": item.id, "actual_qty": 34}])
    print(
        f"\nStock take {take.stock_take.stock_take_number}:"
        f" {take.total_items} counted, {take.adjusted_items} adjusted"
    )
    mes.wms_outbound(item.id, "Huang", "Shipped")

    print("\nMovement ledger")
    for movement in reversed(mes.list_movements(barcode="PALLET-0001")):
        print(
            f" - {movement.movement_type.value:<10} {movement.from_location:>8} ->"
            f" {movement.to_location:<8} qty {movement.quantity:+d}  {movement.reason}"
        )

    print("\nLocation summary")
    pprint(mes.location_summary(["A-01", "B-02"]))


if __name__ == "__main__":  # pragma: no cover - manual execution
    main()
