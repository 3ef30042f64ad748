# freightdesk/cbm.py
from typing import Iterable, List, Tuple

from sqlmodel import Session, select

from .models import Carton, Console, ConsoleOrder, DimensionUnit, Order, utcnow

CM3_PER_CBM = 1_000_000

# factor that brings a length in the given unit to centimetres
TO_CM = {
    DimensionUnit.CM: 1.0,
    DimensionUnit.M: 100.0,
    DimensionUnit.MM: 0.1,
}


def carton_cbm(carton: Carton) -> float:
    """Cubic metres of one carton.

    Centimetre dimensions give exactly L x W x H / 1,000,000; metres and
    millimetres are converted to centimetres first.
    """
    length = carton.length or 0
    width = carton.width or 0
    height = carton.height or 0
    if not (length and width and height):
        return 0.0
    f = TO_CM.get(carton.dimension_unit or DimensionUnit.CM, 1.0)
    return (length * f) * (width * f) * (height * f) / CM3_PER_CBM


def order_cbm(order: Order) -> float:
    return sum(carton_cbm(c) for c in order.cartons)


def summarize_orders(orders: Iterable[Order]) -> Tuple[int, float]:
    """(declared cartons, cubic metres) over a set of orders."""
    cartons = 0
    cbm = 0.0
    for o in orders:
        cartons += o.total_cartons or 0
        cbm += order_cbm(o)
    return cartons, cbm


def console_orders(db: Session, console_id: int) -> List[Order]:
    return list(db.exec(
        select(Order)
        .join(ConsoleOrder, ConsoleOrder.order_id == Order.id)
        .where(ConsoleOrder.console_id == console_id)
        .order_by(Order.created_at)
    ).all())


def recompute_console_totals(db: Session, console: Console) -> Console:
    """Overwrite the stored totals with a fresh sum over every linked order."""
    db.flush()
    console.total_cartons, console.total_cbm = summarize_orders(console_orders(db, console.id))
    console.updated_at = utcnow()
    db.add(console)
    return console
