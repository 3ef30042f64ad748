import datetime as dt
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, Depends, Form, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from . import documents, sales
from .auth import (
    DASHBOARDS, Permission, SessionData, authenticate, create_session_token, ensure_username_free,
    get_current_session, read_session_token, require_permission, require_role,
)
from .cbm import console_orders, order_cbm, recompute_console_totals, summarize_orders
from .deps import configure_logging, get_session, init_db, settings
from .errors import Conflict, NotFound, ValidationFailed, action, error_result
from .forms import blank
from .models import (
    AppUser, Carton, Console, ConsoleOrder, ConsoleStatus, DimensionUnit, Order, Role, utcnow,
)
from .sequences import SERIAL_WIDTH, format_serial, last_carton_serial, next_carton_serial

logger = logging.getLogger(__name__)

BASE_DIR = Path(__file__).resolve().parent


# ---------- Lifecycle ----------
@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db()
    yield


app = FastAPI(title="FreightDesk", lifespan=lifespan)
app.mount("/static", StaticFiles(directory=str(BASE_DIR / "static")), name="static")
templates = Jinja2Templates(directory=str(BASE_DIR / "templates"))

app.include_router(sales.router)
app.include_router(documents.router)


# ---------- Helpers ----------
def order_out(o: Order, with_cbm: bool = False) -> dict:
    data = o.model_dump()
    data["cartons"] = [c.model_dump() for c in o.cartons]
    if with_cbm:
        data["cbm"] = order_cbm(o)
    return data


@app.exception_handler(RequestValidationError)
async def payload_error(request: Request, exc: RequestValidationError):
    logger.info("bad payload on %s: %s", request.url.path, exc.errors())
    return JSONResponse(error_result("Invalid request payload", "validation"), status_code=422)


# ---------- Route protection ----------
PUBLIC_PREFIXES = ("/api", "/static")


@app.middleware("http")
async def protect_routes(request: Request, call_next):
    path = request.url.path
    if path.startswith(PUBLIC_PREFIXES):
        return await call_next(request)

    me = read_session_token(request.cookies.get(settings.SESSION_COOKIE))
    if path == "/":
        return RedirectResponse(url="/login", status_code=302)
    if path.startswith("/admin") and (not me or me.role != Role.ADMIN):
        return RedirectResponse(url="/login", status_code=302)
    if path.startswith("/user") and (not me or me.role not in (Role.USER, Role.ADMIN)):
        return RedirectResponse(url="/login", status_code=302)
    if path.startswith("/sales-agent") and (not me or me.role not in (Role.SALES_AGENT, Role.ADMIN)):
        return RedirectResponse(url="/login", status_code=302)
    if path == "/login" and me:
        return RedirectResponse(url=DASHBOARDS[me.role], status_code=302)
    return await call_next(request)


# ---------- Pages ----------
def _login_page(request: Request, error: Optional[str] = None):
    return templates.TemplateResponse(request, "login.html", {"error": error})


@app.get("/login", response_class=HTMLResponse)
def login_form(request: Request):
    return _login_page(request)


@app.post("/login")
def login(
    request: Request,
    username: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    session: Session = Depends(get_session),
):
    if blank(username) or blank(password):
        return _login_page(request, "Username and password are required")
    try:
        role = authenticate(session, username, password)
    except SQLAlchemyError:
        logger.exception("login lookup failed")
        return _login_page(request, "Login failed. Please try again.")
    if not role:
        logger.info("failed login for %s", username)
        return _login_page(request, "Invalid username or password")

    token = create_session_token(username, role)
    resp = RedirectResponse(url=DASHBOARDS[role], status_code=303)
    resp.set_cookie(
        settings.SESSION_COOKIE, token,
        max_age=settings.SESSION_TTL_MINUTES * 60,
        httponly=True,
        secure=settings.COOKIE_SECURE,
        samesite="lax",
    )
    logger.info("%s logged in as %s", username, role)
    return resp


@app.post("/logout")
def logout():
    resp = RedirectResponse(url="/login", status_code=303)
    resp.delete_cookie(settings.SESSION_COOKIE)
    return resp


@app.get("/admin/dashboard", response_class=HTMLResponse)
def admin_dashboard(request: Request, me: Optional[SessionData] = Depends(get_current_session)):
    return templates.TemplateResponse(request, "dashboard.html", {"me": me, "portal": "Admin"})


@app.get("/user/dashboard", response_class=HTMLResponse)
def user_dashboard(request: Request, me: Optional[SessionData] = Depends(get_current_session)):
    return templates.TemplateResponse(request, "dashboard.html", {"me": me, "portal": "Customer"})


@app.get("/sales-agent/dashboard", response_class=HTMLResponse)
def sales_agent_dashboard(request: Request, me: Optional[SessionData] = Depends(get_current_session)):
    return templates.TemplateResponse(request, "dashboard.html", {"me": me, "portal": "Sales agent"})


# ---------- Orders (customer booking) ----------
class OrderIn(BaseModel):
    shipping_mark: Optional[str] = None
    destination_country: Optional[str] = None
    total_cartons: Optional[int] = None
    item_description: Optional[str] = ""


class CartonIn(BaseModel):
    carton_serial_number: Optional[str] = None      # allocated server-side when missing
    weight: Optional[float] = None
    length: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    dimension_unit: str = DimensionUnit.CM
    carton_index: Optional[int] = None


class BookOrderPayload(BaseModel):
    order: OrderIn
    cartons: List[CartonIn] = []


@app.post("/api/orders/next-serial")
@action("Unable to generate serial number")
def get_next_carton_serial(
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_role(me, Role.USER)
    serial = next_carton_serial(session)
    session.commit()
    return {"serial": serial}


@app.post("/api/orders")
@action("Unable to create order", conflict="Carton serial number already exists")
def create_order_with_cartons(
    payload: BookOrderPayload,
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_role(me, Role.USER)
    o = payload.order
    if blank(o.shipping_mark):
        raise ValidationFailed("Shipping mark is required")
    if blank(o.destination_country):
        raise ValidationFailed("Destination country is required")
    if not o.total_cartons or o.total_cartons < 1:
        raise ValidationFailed("Total cartons must be at least 1")
    if len(payload.cartons) != o.total_cartons:
        raise ValidationFailed("Total cartons must match the number of cartons")

    order = Order(
        username=me.username,
        shipping_mark=o.shipping_mark.strip(),
        destination_country=o.destination_country.strip(),
        total_cartons=o.total_cartons,
        item_description=(o.item_description or "").strip(),
    )
    session.add(order); session.flush()

    for i, c in enumerate(payload.cartons, start=1):
        if c.dimension_unit not in DimensionUnit.ALL:
            raise ValidationFailed(f"Carton {i}: dimension unit must be one of cm, m, mm")
        for label, value in (("weight", c.weight), ("length", c.length), ("width", c.width), ("height", c.height)):
            if value is not None and value < 0:
                raise ValidationFailed(f"Carton {i}: {label} must not be negative")
        serial = (c.carton_serial_number or "").strip()
        if serial:
            if not serial.isdigit() or len(serial) > SERIAL_WIDTH:
                raise ValidationFailed(f"Carton {i}: invalid serial number")
            n = int(serial)
            # only serials already handed out by next-serial may be sent back
            if n < 1 or n > last_carton_serial(session):
                raise ValidationFailed(f"Carton {i}: serial number {format_serial(n)} has not been issued")
            serial = format_serial(n)
            if session.exec(select(Carton.id).where(Carton.carton_serial_number == serial)).first():
                raise Conflict("Carton serial number already exists")
        else:
            serial = next_carton_serial(session)
        session.add(Carton(
            carton_serial_number=serial,
            weight=c.weight, length=c.length, width=c.width, height=c.height,
            dimension_unit=c.dimension_unit,
            carton_index=c.carton_index or i,
            order_id=order.id,
        ))

    session.commit(); session.refresh(order)
    logger.info("order %s booked by %s with %s cartons", order.id, me.username, order.total_cartons)
    return {"orderId": order.id, "cartons": [c.model_dump() for c in order.cartons]}


@app.get("/api/orders/history")
@action("Unable to load orders")
def get_order_history(
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_role(me, Role.USER)
    orders = session.exec(
        select(Order).where(Order.username == me.username).order_by(Order.created_at.desc(), Order.id.desc())
    ).all()
    return {"orders": [order_out(o) for o in orders]}


@app.get("/api/admin/orders")
@action("Unable to load orders")
def get_all_orders_for_admin(
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_permission(session, me, Permission.ORDERS)
    orders = session.exec(select(Order).order_by(Order.created_at.desc(), Order.id.desc())).all()
    return {"orders": [order_out(o, with_cbm=True) for o in orders]}


@app.get("/api/admin/notifications")
@action("Unable to load notifications")
def get_admin_notifications(
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_permission(session, me, Permission.ORDERS)
    orders = session.exec(select(Order).order_by(Order.created_at.desc(), Order.id.desc()).limit(20)).all()
    return {"notifications": [
        {"id": o.id, "username": o.username, "shipping_mark": o.shipping_mark,
         "total_cartons": o.total_cartons, "created_at": o.created_at}
        for o in orders
    ]}


# ---------- Consoles ----------
class ConsoleIn(BaseModel):
    console_number: Optional[str] = None
    container_number: Optional[str] = None
    date: Optional[dt.date] = None
    bl_number: Optional[str] = None
    carrier: Optional[str] = None
    so: Optional[str] = None
    total_cartons: int = 0
    total_cbm: float = 0


class AssignOrdersPayload(BaseModel):
    order_ids: List[int] = []


def _get_console(session: Session, console_id: int) -> Console:
    c = session.get(Console, console_id)
    if not c:
        raise NotFound("Console not found")
    return c


@app.post("/api/consoles")
@action("Failed to create console", conflict="Console number already exists")
def create_console(
    payload: ConsoleIn,
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_permission(session, me, Permission.CONSOLE)
    required = (
        ("console_number", "Console number is required"),
        ("container_number", "Container number is required"),
        ("date", "Date is required"),
        ("bl_number", "BL number is required"),
        ("carrier", "Carrier is required"),
        ("so", "SO is required"),
    )
    for field, message in required:
        value = getattr(payload, field)
        if value is None or (isinstance(value, str) and not value.strip()):
            raise ValidationFailed(message)

    max_cbm = settings.MAX_CONSOLE_CBM
    if payload.total_cbm < 0 or payload.total_cbm > max_cbm:
        raise ValidationFailed(f"Total CBM must be between 0 and {max_cbm:g}")
    if payload.total_cartons < 0:
        raise ValidationFailed("Total cartons must not be negative")

    number = payload.console_number.strip()
    if session.exec(select(Console).where(Console.console_number == number)).first():
        raise Conflict("Console number already exists")

    c = Console(
        console_number=number,
        container_number=payload.container_number.strip(),
        date=payload.date,
        bl_number=payload.bl_number.strip(),
        carrier=payload.carrier.strip(),
        so=payload.so.strip(),
        total_cartons=payload.total_cartons or 0,
        total_cbm=payload.total_cbm or 0,
        max_cbm=max_cbm,
        status=ConsoleStatus.ACTIVE,
    )
    session.add(c); session.commit(); session.refresh(c)
    logger.info("console %s created", c.console_number)
    return {"console": c.model_dump()}


@app.get("/api/consoles")
@action("Failed to fetch consoles")
def get_all_consoles(
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_permission(session, me, Permission.CONSOLE)
    rows = session.exec(
        select(Console).where(Console.status == ConsoleStatus.ACTIVE)
        .order_by(Console.created_at.desc(), Console.id.desc())
    ).all()
    return {"consoles": [c.model_dump() for c in rows]}


@app.get("/api/consoles/ready-for-loading")
@action("Failed to fetch consoles")
def get_ready_for_loading_consoles(
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_permission(session, me, Permission.CONSOLE)
    rows = session.exec(
        select(Console).where(Console.status == ConsoleStatus.READY_FOR_LOADING)
        .order_by(Console.created_at.desc(), Console.id.desc())
    ).all()
    return {"consoles": [c.model_dump() for c in rows]}


@app.post("/api/consoles/{console_id}/ready-for-loading")
@action("Failed to mark console as ready for loading")
def mark_console_ready_for_loading(
    console_id: int,
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_permission(session, me, Permission.CONSOLE)
    c = _get_console(session, console_id)
    c.status = ConsoleStatus.READY_FOR_LOADING
    c.updated_at = utcnow()
    session.add(c); session.commit(); session.refresh(c)
    logger.info("console %s ready for loading", c.console_number)
    return {"console": c.model_dump()}


@app.get("/api/consoles/{console_id}")
@action("Failed to fetch console")
def get_console_with_orders(
    console_id: int,
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_permission(session, me, Permission.CONSOLE)
    c = _get_console(session, console_id)
    return {"console": c.model_dump(), "orders": [order_out(o, with_cbm=True) for o in console_orders(session, c.id)]}


@app.post("/api/consoles/{console_id}/orders")
@action("Failed to assign orders", conflict="One or more orders are already assigned to this console")
def assign_orders_to_console(
    console_id: int,
    payload: AssignOrdersPayload,
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_permission(session, me, Permission.CONSOLE)
    ids = list(dict.fromkeys(payload.order_ids))
    if not ids:
        raise ValidationFailed("Console ID and at least one order ID required")
    c = _get_console(session, console_id)

    to_add = session.exec(select(Order).where(Order.id.in_(ids))).all()
    missing = set(ids) - {o.id for o in to_add}
    if missing:
        raise NotFound(f"Orders not found: {', '.join(str(i) for i in sorted(missing))}")

    linked = session.exec(
        select(ConsoleOrder.order_id)
        .where(ConsoleOrder.console_id == c.id, ConsoleOrder.order_id.in_(ids))
    ).all()
    if linked:
        raise Conflict("One or more orders are already assigned to this console")

    _, projected_cbm = summarize_orders(console_orders(session, c.id) + list(to_add))
    if projected_cbm > c.max_cbm:
        raise ValidationFailed(
            f"Total CBM ({projected_cbm:.3f}) exceeds maximum capacity ({c.max_cbm:g})"
        )

    for o in to_add:
        session.add(ConsoleOrder(console_id=c.id, order_id=o.id))
    recompute_console_totals(session, c)
    # link rows and totals land in the same commit
    session.commit(); session.refresh(c)
    logger.info("console %s: +%s orders, %s cartons, %.3f cbm",
                c.console_number, len(to_add), c.total_cartons, c.total_cbm)
    return {"success": True, "console": c.model_dump()}


# ---------- Dashboard ----------
@app.get("/api/admin/dashboard-stats")
@action("Unable to load dashboard statistics")
def get_dashboard_stats(
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_permission(session, me, Permission.DASHBOARD)
    total_users = session.exec(select(func.count()).select_from(AppUser).where(AppUser.role == Role.USER)).one()
    orders = session.exec(select(Order)).all()
    assigned = set(session.exec(select(ConsoleOrder.order_id)).all())

    total_cartons, total_cbm = summarize_orders(orders)
    cartons_in, cbm_in = summarize_orders(o for o in orders if o.id in assigned)

    consoles = session.exec(select(Console)).all()
    return {"stats": {
        "totalUsers": total_users,
        "totalOrders": len(orders),
        "assignedOrdersCount": len(assigned),
        "unassignedOrdersCount": len(orders) - len(assigned),
        "totalCbm": total_cbm,
        "totalConsoles": len(consoles),
        "activeConsoles": sum(1 for c in consoles if c.status == ConsoleStatus.ACTIVE),
        "readyForLoadingConsoles": sum(1 for c in consoles if c.status == ConsoleStatus.READY_FOR_LOADING),
        "totalCartons": total_cartons,
        "cartonsInConsoles": cartons_in,
        "remainingCartons": total_cartons - cartons_in,
        "cbmInConsoles": cbm_in,
    }}


# ---------- App users (admin) ----------
@app.post("/api/users")
@action(conflict="Username already exists")
def create_user(
    username: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_role(me, Role.ADMIN)
    if blank(username) or blank(password):
        raise ValidationFailed("Username and password are required")
    username = username.strip()
    ensure_username_free(session, username)
    u = AppUser(username=username, role=Role.USER)
    u.set_password(password)
    session.add(u); session.commit(); session.refresh(u)
    logger.info("user %s created", u.username)
    return {"success": True, "user": {"id": u.id, "username": u.username, "role": u.role}}


@app.get("/api/users")
@action("Unable to load users")
def get_all_users(
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_role(me, Role.ADMIN)
    users = session.exec(select(AppUser).order_by(AppUser.created_at.desc(), AppUser.id.desc())).all()
    return {"users": [
        {"id": u.id, "username": u.username, "role": u.role, "created_at": u.created_at} for u in users
    ]}


@app.post("/api/users/{user_id}/update")
@action(conflict="Username already exists")
def update_user(
    user_id: int,
    username: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_role(me, Role.ADMIN)
    if blank(username) or blank(password):
        raise ValidationFailed("User id, username, and password are required")
    u = session.get(AppUser, user_id)
    if not u:
        raise NotFound("User not found")
    username = username.strip()
    ensure_username_free(session, username, user_id=u.id)
    u.username = username
    u.set_password(password)
    session.add(u); session.commit()
    return {"success": True}


@app.post("/api/users/{user_id}/delete")
@action()
def delete_user(
    user_id: int,
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_role(me, Role.ADMIN)
    u = session.get(AppUser, user_id)
    if not u:
        raise NotFound("User not found")
    session.delete(u); session.commit()
    logger.info("user %s deleted", u.username)
    return {"success": True}
