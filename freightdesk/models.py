import datetime as dt
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import SQLModel, Field, Relationship
from werkzeug.security import check_password_hash, generate_password_hash


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role:
    ADMIN = "admin"
    USER = "user"
    SALES_AGENT = "sales_agent"


class ConsoleStatus:
    ACTIVE = "active"
    READY_FOR_LOADING = "ready_for_loading"


class LeadStatus:
    LEADS = "Leads"
    INQUIRY_RECEIVED = "Inquiry Received"
    QUOTATION_SENT = "Quotation Sent"
    NEGOTIATION = "Negotiation"
    WIN = "Win"

    ALL = (LEADS, INQUIRY_RECEIVED, QUOTATION_SENT, NEGOTIATION, WIN)


class LeadSource:
    META = "Meta"
    LINKEDIN = "LinkedIn"
    WHATSAPP = "WhatsApp"
    OTHERS = "Others"

    ALL = (META, LINKEDIN, WHATSAPP, OTHERS)


class DimensionUnit:
    CM = "cm"
    M = "m"
    MM = "mm"

    ALL = (CM, M, MM)


# ---------- Accounts ----------
class AppUser(SQLModel, table=True):
    __tablename__ = "app_users"

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    password_hash: str
    role: str = Field(default=Role.USER)
    created_at: datetime = Field(default_factory=utcnow)

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)


class SalesAgent(SQLModel, table=True):
    __tablename__ = "sales_agents"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    email: str
    phone_number: str
    username: Optional[str] = Field(default=None, index=True, unique=True)
    password_hash: Optional[str] = None
    code: Optional[str] = Field(default=None, unique=True)  # 101, 102, ...
    permissions: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def set_password(self, password: str) -> None:
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        # agents without a login have no hash
        return bool(self.password_hash) and check_password_hash(self.password_hash, password)


# ---------- Customers & leads ----------
class Customer(SQLModel, table=True):
    __tablename__ = "customers"
    __table_args__ = (UniqueConstraint("sales_agent_id", "customer_sequence_number"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    address: str = ""
    city: str = ""
    phone_number: str
    company_name: str
    sequential_number: Optional[int] = Field(default=None, unique=True)  # global, from 1
    customer_code: Optional[str] = Field(default=None, unique=True)      # agent code + 2 digits
    customer_sequence_number: Optional[int] = None                       # per agent, from 1
    sales_agent_id: Optional[int] = Field(default=None, foreign_key="sales_agents.id", index=True)
    lead_id: Optional[int] = Field(default=None, foreign_key="leads.id", unique=True)
    converted_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Lead(SQLModel, table=True):
    __tablename__ = "leads"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    number: str
    source: str
    status: str = Field(default=LeadStatus.LEADS, index=True)
    sales_agent_id: int = Field(foreign_key="sales_agents.id", index=True)
    converted: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    comments: List["LeadComment"] = Relationship(
        back_populates="lead",
        sa_relationship_kwargs={"cascade": "all, delete-orphan", "order_by": "LeadComment.created_at"},
    )


class LeadComment(SQLModel, table=True):
    __tablename__ = "lead_comments"

    id: Optional[int] = Field(default=None, primary_key=True)
    lead_id: int = Field(foreign_key="leads.id", index=True)
    sales_agent_id: int = Field(foreign_key="sales_agents.id")
    comment: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    lead: Optional[Lead] = Relationship(back_populates="comments")


# ---------- Orders, cartons, consoles ----------
class Order(SQLModel, table=True):
    __tablename__ = "orders"

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True)                   # booking user
    shipping_mark: str
    destination_country: str
    total_cartons: int                                  # declared count
    item_description: str = ""
    created_at: datetime = Field(default_factory=utcnow)

    cartons: List["Carton"] = Relationship(
        back_populates="order",
        sa_relationship_kwargs={"cascade": "all, delete-orphan", "order_by": "Carton.carton_index"},
    )


class Carton(SQLModel, table=True):
    __tablename__ = "cartons"

    id: Optional[int] = Field(default=None, primary_key=True)
    carton_serial_number: str = Field(index=True, unique=True)  # 0000001
    weight: Optional[float] = None
    length: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    dimension_unit: str = Field(default=DimensionUnit.CM)
    carton_index: int
    order_id: int = Field(foreign_key="orders.id", index=True)
    created_at: datetime = Field(default_factory=utcnow)

    order: Optional[Order] = Relationship(back_populates="cartons")


class Console(SQLModel, table=True):
    __tablename__ = "consoles"

    id: Optional[int] = Field(default=None, primary_key=True)
    console_number: str = Field(index=True, unique=True)
    container_number: str
    date: dt.date
    bl_number: str
    carrier: str
    so: str
    total_cartons: int = 0
    total_cbm: float = 0.0
    max_cbm: float = 68.0
    status: str = Field(default=ConsoleStatus.ACTIVE, index=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ConsoleOrder(SQLModel, table=True):
    __tablename__ = "console_orders"

    console_id: int = Field(foreign_key="consoles.id", primary_key=True)
    order_id: int = Field(foreign_key="orders.id", primary_key=True)
    created_at: datetime = Field(default_factory=utcnow)


# ---------- Trade documents ----------
class ImportInvoice(SQLModel, table=True):
    __tablename__ = "import_invoices"

    id: Optional[int] = Field(default=None, primary_key=True)
    invoice_no: str = Field(index=True)
    bill_to_name: str
    bill_to_address: Optional[str] = None
    bill_to_ntn: Optional[str] = None
    bill_to_phone: Optional[str] = None
    bill_to_email: Optional[str] = None
    ship_to_name: str
    ship_to_address: Optional[str] = None
    ship_to_ntn: Optional[str] = None
    ship_to_phone: Optional[str] = None
    ship_to_email: Optional[str] = None
    payment_terms: Optional[str] = None
    shipped_via: Optional[str] = None
    coo: Optional[str] = None                           # country of origin
    port_loading: Optional[str] = None
    port_discharge: Optional[str] = None
    shipping_terms: Optional[str] = None
    exporter_bank_name: Optional[str] = None
    exporter_bank_address: Optional[str] = None
    exporter_bank_swift: Optional[str] = None
    exporter_account_name: Optional[str] = None
    exporter_account_address: Optional[str] = None
    exporter_account_number: Optional[str] = None
    importer_bank_name: Optional[str] = None
    importer_bank_address: Optional[str] = None
    importer_bank_swift: Optional[str] = None
    importer_account_name: Optional[str] = None
    importer_account_address: Optional[str] = None
    importer_account_number: Optional[str] = None
    importer_iban_number: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    items: List["ImportInvoiceItem"] = Relationship(
        back_populates="invoice",
        sa_relationship_kwargs={"cascade": "all, delete-orphan", "order_by": "ImportInvoiceItem.item_order"},
    )


class ImportInvoiceItem(SQLModel, table=True):
    __tablename__ = "import_invoice_items"

    id: Optional[int] = Field(default=None, primary_key=True)
    invoice_id: int = Field(foreign_key="import_invoices.id", index=True)
    product_name: str
    hs_code: str
    unit: str
    no_of_units: float = 0
    unit_price: float = 0
    total_amount: float = 0
    item_order: int = 0

    invoice: Optional[ImportInvoice] = Relationship(back_populates="items")


class PackingList(SQLModel, table=True):
    __tablename__ = "packing_lists"

    id: Optional[int] = Field(default=None, primary_key=True)
    build_to: str
    ship_to: str
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    items: List["PackingListItem"] = Relationship(
        back_populates="packing_list",
        sa_relationship_kwargs={"cascade": "all, delete-orphan", "order_by": "PackingListItem.item_order"},
    )


class PackingListItem(SQLModel, table=True):
    __tablename__ = "packing_list_items"

    id: Optional[int] = Field(default=None, primary_key=True)
    packing_list_id: int = Field(foreign_key="packing_lists.id", index=True)
    product_name: str
    hs_code: str
    no_of_cartons: int = 0
    weight: float = 0
    net_weight: float = 0
    item_order: int = 0

    packing_list: Optional[PackingList] = Relationship(back_populates="items")


# ---------- Sequences ----------
class Counter(SQLModel, table=True):
    __tablename__ = "counters"

    name: str = Field(primary_key=True)                 # carton_serial, customer_code:<agent id>, ...
    value: int = 0
    updated_at: datetime = Field(default_factory=utcnow)
