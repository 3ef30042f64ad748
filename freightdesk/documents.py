"""Import invoices and packing lists: a header plus numbered product lines.

Lines arrive as ``products[i][field]`` form keys. PDFs are rendered by the
browser from the stored records.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlmodel import Session, select

from .auth import Permission, SessionData, get_current_session, require_permission
from .deps import get_session
from .errors import NotFound, ValidationFailed, action
from .forms import blank, clean, line_items, parse_int, parse_number
from .models import ImportInvoice, ImportInvoiceItem, PackingList, PackingListItem

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

INVOICE_OPTIONAL_FIELDS = (
    "bill_to_address", "bill_to_ntn", "bill_to_phone", "bill_to_email",
    "ship_to_address", "ship_to_ntn", "ship_to_phone", "ship_to_email",
    "payment_terms", "shipped_via", "coo", "port_loading", "port_discharge", "shipping_terms",
    "exporter_bank_name", "exporter_bank_address", "exporter_bank_swift",
    "exporter_account_name", "exporter_account_address", "exporter_account_number",
    "importer_bank_name", "importer_bank_address", "importer_bank_swift",
    "importer_account_name", "importer_account_address", "importer_account_number",
    "importer_iban_number",
)


async def form_data(request: Request):
    return await request.form()


def invoice_out(inv: ImportInvoice) -> dict:
    data = inv.model_dump()
    data["items"] = [i.model_dump() for i in inv.items]
    return data


def packing_list_out(pl: PackingList) -> dict:
    data = pl.model_dump()
    data["items"] = [i.model_dump() for i in pl.items]
    return data


# ---------- Import invoices ----------
def _invoice_items(form) -> list:
    items = []
    for idx, line in enumerate(line_items(form)):
        n = idx + 1
        if blank(line.get("product_name")) or blank(line.get("hs_code")) or blank(line.get("unit")):
            raise ValidationFailed(f"Product {n}: Product Name, HS Code, and Unit are required")
        units = parse_number(line.get("no_of_units"), f"Product {n}: Units")
        price = parse_number(line.get("unit_price"), f"Product {n}: Unit price")
        total = parse_number(line.get("total_amount"), f"Product {n}: Total amount")
        if units < 0 or price < 0 or total < 0:
            raise ValidationFailed(
                f"Product {n}: Units, unit price, and total amount must be non-negative numbers"
            )
        items.append(ImportInvoiceItem(
            product_name=line["product_name"].strip(),
            hs_code=line["hs_code"].strip(),
            unit=line["unit"].strip(),
            no_of_units=units,
            unit_price=price,
            total_amount=total,
            item_order=idx,
        ))
    if not items:
        raise ValidationFailed("At least one product is required")
    return items


@router.post("/import-invoices")
@action("An unexpected error occurred while creating import invoice")
def create_import_invoice(
    form=Depends(form_data),
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_permission(session, me, Permission.IMPORT_INVOICE)
    if blank(form.get("invoice_no")) or blank(form.get("bill_to_name")) or blank(form.get("ship_to_name")):
        raise ValidationFailed("Invoice No., Bill To Name, and Ship To Name are required")
    items = _invoice_items(form)

    inv = ImportInvoice(
        invoice_no=form.get("invoice_no").strip(),
        bill_to_name=form.get("bill_to_name").strip(),
        ship_to_name=form.get("ship_to_name").strip(),
        **{f: clean(form.get(f)) for f in INVOICE_OPTIONAL_FIELDS},
    )
    inv.items = items
    session.add(inv); session.commit(); session.refresh(inv)
    logger.info("import invoice %s created with %s lines", inv.invoice_no, len(items))
    return {"success": True, "invoice": invoice_out(inv)}


@router.get("/import-invoices")
@action("An unexpected error occurred while fetching import invoices")
def get_all_import_invoices(
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_permission(session, me, Permission.IMPORT_INVOICE)
    rows = session.exec(
        select(ImportInvoice).order_by(ImportInvoice.created_at.desc(), ImportInvoice.id.desc())
    ).all()
    return {"invoices": [invoice_out(i) for i in rows]}


@router.post("/import-invoices/{invoice_id}/delete")
@action("An unexpected error occurred while deleting import invoice")
def delete_import_invoice(
    invoice_id: int,
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_permission(session, me, Permission.IMPORT_INVOICE)
    inv = session.get(ImportInvoice, invoice_id)
    if not inv:
        raise NotFound("Import invoice not found")
    session.delete(inv); session.commit()
    logger.info("import invoice %s deleted", invoice_id)
    return {"success": True}


# ---------- Packing lists ----------
def _packing_items(form) -> list:
    items = []
    for idx, line in enumerate(line_items(form)):
        n = idx + 1
        if blank(line.get("hs_code")):
            raise ValidationFailed(f"Product {n}: Product Name and HS Code are required")
        cartons = parse_int(line.get("no_of_cartons"), f"Product {n}: Cartons") or 0
        weight = parse_number(line.get("weight"), f"Product {n}: Weight")
        net_weight = parse_number(line.get("net_weight"), f"Product {n}: Net weight")
        if cartons < 0 or weight < 0 or net_weight < 0:
            raise ValidationFailed(
                f"Product {n}: Cartons, weight, and net weight must be non-negative numbers"
            )
        items.append(PackingListItem(
            product_name=line["product_name"].strip(),
            hs_code=line["hs_code"].strip(),
            no_of_cartons=cartons,
            weight=weight,
            net_weight=net_weight,
            item_order=idx,
        ))
    if not items:
        raise ValidationFailed("At least one product is required")
    return items


@router.post("/packing-lists")
@action("An unexpected error occurred while creating packing list")
def create_packing_list(
    form=Depends(form_data),
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_permission(session, me, Permission.PACKING_LIST)
    if blank(form.get("build_to")) or blank(form.get("ship_to")):
        raise ValidationFailed("Build To and Ship To are required")
    items = _packing_items(form)

    pl = PackingList(build_to=form.get("build_to").strip(), ship_to=form.get("ship_to").strip())
    pl.items = items
    session.add(pl); session.commit(); session.refresh(pl)
    logger.info("packing list %s created with %s lines", pl.id, len(items))
    return {"success": True, "packingList": packing_list_out(pl)}


@router.get("/packing-lists")
@action("An unexpected error occurred while fetching packing lists")
def get_all_packing_lists(
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_permission(session, me, Permission.PACKING_LIST)
    rows = session.exec(select(PackingList).order_by(PackingList.created_at.desc(), PackingList.id.desc())).all()
    return {"packingLists": [packing_list_out(p) for p in rows]}


@router.post("/packing-lists/{packing_list_id}/delete")
@action("An unexpected error occurred while deleting packing list")
def delete_packing_list(
    packing_list_id: int,
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_permission(session, me, Permission.PACKING_LIST)
    pl = session.get(PackingList, packing_list_id)
    if not pl:
        raise NotFound("Packing list not found")
    session.delete(pl); session.commit()
    logger.info("packing list %s deleted", packing_list_id)
    return {"success": True}
