import pytest

from freightdesk.cbm import carton_cbm, summarize_orders
from freightdesk.models import Carton, Order


def carton(l, w, h, unit="cm"):
    return Carton(carton_serial_number="0000001", carton_index=1, order_id=1,
                  length=l, width=w, height=h, dimension_unit=unit)


def test_centimetre_carton_cbm_is_lwh_over_a_million():
    assert carton_cbm(carton(50, 40, 30)) == pytest.approx(0.06)


@pytest.mark.parametrize("dims", [(None, 40, 30), (50, 0, 30), (50, 40, None)])
def test_missing_dimension_counts_as_zero(dims):
    assert carton_cbm(carton(*dims)) == 0.0


def test_metre_and_millimetre_cartons_are_converted_before_dividing():
    assert carton_cbm(carton(0.5, 0.4, 0.3, "m")) == pytest.approx(0.06)
    assert carton_cbm(carton(500, 400, 300, "mm")) == pytest.approx(0.06)


def test_summarize_orders_uses_declared_cartons():
    a = Order(username="u", shipping_mark="A", destination_country="PK", total_cartons=3)
    a.cartons = [carton(50, 40, 30), carton(50, 40, 30)]
    b = Order(username="u", shipping_mark="B", destination_country="PK", total_cartons=1)
    b.cartons = [carton(100, 100, 100)]

    cartons, cbm = summarize_orders([a, b])
    assert cartons == 4
    assert cbm == pytest.approx(1.12)
