from freightdesk.models import Carton, Customer, Order, SalesAgent
from freightdesk.sequences import (
    format_customer_code, format_serial, next_agent_code, next_carton_serial,
    next_customer_number, next_customer_sequence,
)


def test_format_serial_pads_to_seven_digits():
    assert format_serial(1) == "0000001"
    assert format_serial(1234567) == "1234567"


def test_format_customer_code():
    assert format_customer_code("101", 1) == "10101"
    assert format_customer_code("102", 12) == "10212"
    assert format_customer_code("101", 123) == "101123"


def test_carton_serials_start_at_one_and_increase(db):
    serials = [next_carton_serial(db) for _ in range(3)]
    db.commit()
    assert serials == ["0000001", "0000002", "0000003"]


def test_carton_serial_continues_from_existing_rows(db):
    o = Order(username="acme", shipping_mark="SM", destination_country="PK", total_cartons=1)
    db.add(o); db.flush()
    db.add(Carton(carton_serial_number="0000041", carton_index=1, order_id=o.id))
    db.commit()

    assert next_carton_serial(db) == "0000042"
    assert next_carton_serial(db) == "0000043"


def test_rolled_back_allocation_is_reused(db):
    assert next_carton_serial(db) == "0000001"
    db.rollback()
    assert next_carton_serial(db) == "0000001"


def test_customer_numbers_are_global(db):
    db.add(Customer(name="A", phone_number="1", company_name="A", sequential_number=7))
    db.commit()
    assert next_customer_number(db) == 8
    assert next_customer_number(db) == 9


def test_agent_codes_start_at_101(db):
    assert next_agent_code(db) == "101"
    assert next_agent_code(db) == "102"


def test_agent_codes_continue_after_highest_existing(db):
    db.add(SalesAgent(name="X", email="x@e", phone_number="1", code="109"))
    db.add(SalesAgent(name="Y", email="y@e", phone_number="1", code="99"))
    db.commit()
    assert next_agent_code(db) == "110"


def test_customer_sequences_are_per_agent(db):
    assert next_customer_sequence(db, 1) == 1
    assert next_customer_sequence(db, 1) == 2
    assert next_customer_sequence(db, 2) == 1


def test_last_carton_serial_tracks_allocator(db):
    from freightdesk.sequences import last_carton_serial

    assert last_carton_serial(db) == 0
    next_carton_serial(db)
    next_carton_serial(db)
    assert last_carton_serial(db) == 2
