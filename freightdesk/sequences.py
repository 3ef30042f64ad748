# freightdesk/sequences.py
"""Sequential identifiers: carton serials, customer numbers, agent and customer codes.

Each sequence is a row in ``counters`` bumped inside the caller's transaction.
A missing row is seeded from the highest value already stored, so existing
data keeps counting from where it left off.
"""
import logging
from typing import Callable, Optional

from sqlalchemy import Integer, cast, func
from sqlmodel import Session, select

from .models import Carton, Counter, Customer, SalesAgent, utcnow

logger = logging.getLogger(__name__)

SERIAL_WIDTH = 7

CARTON_SERIAL = "carton_serial"
CUSTOMER_NUMBER = "customer_number"
SALES_AGENT_CODE = "sales_agent_code"

FIRST_AGENT_CODE = 101


def customer_code_counter(agent_id: int) -> str:
    return f"customer_code:{agent_id}"


def allocate(db: Session, name: str, start: int = 1,
             seed: Optional[Callable[[], Optional[int]]] = None) -> int:
    counter = db.exec(select(Counter).where(Counter.name == name).with_for_update()).first()
    if counter is None:
        current = seed() if seed else None
        counter = Counter(name=name, value=start - 1 if current is None else max(current, start - 1))
    counter.value += 1
    counter.updated_at = utcnow()
    db.add(counter); db.flush()
    logger.debug("allocated %s=%s", name, counter.value)
    return counter.value


def format_serial(n: int) -> str:
    return str(n).zfill(SERIAL_WIDTH)


def format_customer_code(agent_code: str, sequence: int) -> str:
    return f"{agent_code}{sequence:02d}"


# ---------- Instances ----------
def _highest_carton_serial(db: Session) -> Optional[int]:
    serial = db.exec(select(func.max(Carton.carton_serial_number))).first()
    return int(serial) if serial and serial.isdigit() else None


def next_carton_serial(db: Session) -> str:
    return format_serial(allocate(db, CARTON_SERIAL, 1, lambda: _highest_carton_serial(db)))


def last_carton_serial(db: Session) -> int:
    """Highest carton serial handed out so far, 0 before the first one."""
    counter = db.get(Counter, CARTON_SERIAL)
    if counter is not None:
        return counter.value
    return _highest_carton_serial(db) or 0


def next_customer_number(db: Session) -> int:
    return allocate(db, CUSTOMER_NUMBER, 1,
                    lambda: db.exec(select(func.max(Customer.sequential_number))).first())


def next_agent_code(db: Session) -> str:
    def highest():
        return db.exec(
            select(func.max(cast(SalesAgent.code, Integer))).where(SalesAgent.code.is_not(None))
        ).first()
    return str(allocate(db, SALES_AGENT_CODE, FIRST_AGENT_CODE, highest))


def next_customer_sequence(db: Session, agent_id: int) -> int:
    return allocate(
        db, customer_code_counter(agent_id), 1,
        lambda: db.exec(
            select(func.max(Customer.customer_sequence_number))
            .where(Customer.sales_agent_id == agent_id)
        ).first(),
    )
