import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Form
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from .auth import (
    Permission, SessionData, ensure_username_free, get_current_session, parse_permissions,
    require_agent, require_permission, require_role,
)
from .deps import get_session
from .errors import BackendUnavailable, Conflict, NotFound, Unauthorized, ValidationFailed, action, error_result
from .forms import blank, clean, parse_int
from .models import Counter, Customer, Lead, LeadComment, LeadSource, LeadStatus, Role, SalesAgent, utcnow
from .sequences import (
    customer_code_counter, format_customer_code, next_agent_code,
    next_customer_number, next_customer_sequence,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ---------- Helpers ----------
def agent_out(a: SalesAgent) -> dict:
    return a.model_dump(exclude={"password_hash"})


def agent_summary(a: Optional[SalesAgent]) -> Optional[dict]:
    if not a:
        return None
    return {"id": a.id, "name": a.name, "username": a.username, "email": a.email, "code": a.code}


def lead_summary(l: Optional[Lead]) -> Optional[dict]:
    if not l:
        return None
    return {"id": l.id, "name": l.name, "number": l.number, "source": l.source}


def assign_customer(session: Session, agent: SalesAgent, customer: Customer) -> Customer:
    """Give the customer the agent's next sequence and code."""
    seq = next_customer_sequence(session, agent.id)
    customer.sales_agent_id = agent.id
    customer.customer_sequence_number = seq
    customer.customer_code = format_customer_code(agent.code, seq)
    customer.updated_at = utcnow()
    session.add(customer)
    return customer


def _get_customer(session: Session, customer_id: int) -> Customer:
    c = session.get(Customer, customer_id)
    if not c:
        raise NotFound("Customer not found")
    return c


def _get_agent(session: Session, agent_id: int) -> SalesAgent:
    a = session.get(SalesAgent, agent_id)
    if not a:
        raise NotFound("Sales agent not found")
    return a


def _own_lead(session: Session, agent: SalesAgent, lead_id: int) -> Lead:
    lead = session.get(Lead, lead_id)
    if not lead:
        raise NotFound("Lead not found")
    if lead.sales_agent_id != agent.id:
        raise Unauthorized("Unauthorized: Lead does not belong to you")
    return lead


def _customer_fields(name, address, city, phone_number, company_name) -> dict:
    values = dict(name=name, address=address, city=city, phone_number=phone_number, company_name=company_name)
    if any(blank(v) for v in values.values()):
        raise ValidationFailed("All fields are required")
    return {k: v.strip() for k, v in values.items()}


# ---------- Customers ----------
@router.post("/customers")
@action(conflict="Customer already exists")
def create_customer(
    name: Optional[str] = Form(None),
    address: Optional[str] = Form(None),
    city: Optional[str] = Form(None),
    phone_number: Optional[str] = Form(None),
    company_name: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_permission(session, me, Permission.CUSTOMERS)
    fields = _customer_fields(name, address, city, phone_number, company_name)
    c = Customer(**fields, sequential_number=next_customer_number(session))
    session.add(c); session.commit(); session.refresh(c)
    logger.info("customer %s created with number %s", c.id, c.sequential_number)
    return {"success": True, "customer": c.model_dump()}


@router.get("/customers")
@action()
def get_all_customers(
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_permission(session, me, Permission.CUSTOMERS)
    rows = session.exec(select(Customer).order_by(Customer.created_at.desc(), Customer.id.desc())).all()
    return {"customers": [c.model_dump() for c in rows]}


@router.post("/customers/{customer_id}/update")
@action()
def update_customer(
    customer_id: int,
    name: Optional[str] = Form(None),
    address: Optional[str] = Form(None),
    city: Optional[str] = Form(None),
    phone_number: Optional[str] = Form(None),
    company_name: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_permission(session, me, Permission.CUSTOMERS)
    fields = _customer_fields(name, address, city, phone_number, company_name)
    c = _get_customer(session, customer_id)
    for k, v in fields.items():
        setattr(c, k, v)
    c.updated_at = utcnow()
    session.add(c); session.commit()
    return {"success": True}


@router.post("/customers/{customer_id}/delete")
@action()
def delete_customer(
    customer_id: int,
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_permission(session, me, Permission.CUSTOMERS)
    c = _get_customer(session, customer_id)
    session.delete(c); session.commit()
    logger.info("customer %s deleted", customer_id)
    return {"success": True}


@router.get("/customers/assignments")
@action()
def get_all_customers_with_assignments(
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_role(me, Role.ADMIN)
    agents = {a.id: a for a in session.exec(select(SalesAgent)).all()}
    rows = session.exec(select(Customer).order_by(Customer.created_at.desc(), Customer.id.desc())).all()
    return {"customers": [
        {**c.model_dump(), "sales_agent": agent_summary(agents.get(c.sales_agent_id))} for c in rows
    ]}


@router.get("/customers/serial-numbers")
@action()
def get_all_serial_numbers(
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_permission(session, me, Permission.CUSTOMERS)
    agents = {a.id: a for a in session.exec(select(SalesAgent)).all()}
    rows = session.exec(
        select(Customer).where(Customer.sequential_number.is_not(None)).order_by(Customer.sequential_number)
    ).all()
    return {"serialNumbers": [
        {
            "sequential_number": c.sequential_number,
            "customer_id": c.id,
            "name": c.name,
            "customer_code": c.customer_code,
            "sales_agent_id": c.sales_agent_id,
            "sales_agent_name": agents[c.sales_agent_id].name if c.sales_agent_id in agents else None,
        }
        for c in rows
    ]}


@router.get("/customers/serial-ranges")
@action()
def get_serial_ranges_with_assignments(
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    """Contiguous runs of customer numbers that share an assignment."""
    require_permission(session, me, Permission.CUSTOMERS)
    agents = {a.id: a for a in session.exec(select(SalesAgent)).all()}
    rows = session.exec(
        select(Customer).where(Customer.sequential_number.is_not(None)).order_by(Customer.sequential_number)
    ).all()

    ranges: List[dict] = []
    for c in rows:
        last = ranges[-1] if ranges else None
        if last and last["sales_agent_id"] == c.sales_agent_id and last["to"] + 1 == c.sequential_number:
            last["to"] = c.sequential_number
            last["count"] += 1
            continue
        agent = agents.get(c.sales_agent_id)
        ranges.append({
            "from": c.sequential_number,
            "to": c.sequential_number,
            "count": 1,
            "sales_agent_id": c.sales_agent_id,
            "sales_agent_name": agent.name if agent else None,
            "sales_agent_code": agent.code if agent else None,
        })
    return {"ranges": ranges}


# ---------- Sales agents (admin) ----------
@router.post("/sales-agents")
@action(conflict="Sales agent username or code already exists")
def create_sales_agent(
    name: Optional[str] = Form(None),
    email: Optional[str] = Form(None),
    phone_number: Optional[str] = Form(None),
    username: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    permissions: List[str] = Form([]),
    from_seq: Optional[str] = Form(None),
    to_seq: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_role(me, Role.ADMIN)
    if blank(name) or blank(email) or blank(phone_number):
        raise ValidationFailed("Name, email, and phone number are required")
    if blank(username) != blank(password):
        raise ValidationFailed("Username and password must be provided together")

    start = parse_int(from_seq, "From sequence")
    end = parse_int(to_seq, "To sequence")
    if (start is None) != (end is None):
        raise ValidationFailed("Both From and To sequence are required to assign a range")
    if start is not None:
        if start > end:
            raise ValidationFailed("From sequence must be less than or equal to To sequence")
        if start < 1 or end < 1:
            raise ValidationFailed("Sequence numbers must be positive")

    login = clean(username)
    if login:
        ensure_username_free(session, login)

    agent = SalesAgent(
        name=name.strip(),
        email=email.strip(),
        phone_number=phone_number.strip(),
        username=login,
        code=next_agent_code(session),
        permissions=parse_permissions(permissions),
    )
    if login:
        agent.set_password(password)
    session.add(agent); session.flush()

    if start is not None:
        in_range = session.exec(
            select(Customer)
            .where(Customer.sequential_number >= start, Customer.sequential_number <= end)
            .order_by(Customer.sequential_number)
        ).all()
        if not in_range:
            raise ValidationFailed(f"No customers found in sequence range {start}-{end}")

        taken = [c for c in in_range if c.sales_agent_id is not None]
        if taken:
            holders = {a.id: a.name for a in session.exec(
                select(SalesAgent).where(SalesAgent.id.in_({c.sales_agent_id for c in taken}))
            ).all()}
            # nothing has been committed; the session is discarded with the agent row
            return {
                **error_result("Some customers in this range are already assigned to other agents", "conflict"),
                "details": [
                    {"customerId": c.id, "agentName": holders.get(c.sales_agent_id, "Unknown")} for c in taken
                ],
            }
        for c in in_range:
            assign_customer(session, agent, c)

    session.commit(); session.refresh(agent)
    logger.info("sales agent %s created with code %s", agent.name, agent.code)
    return {"success": True, "salesAgent": agent_out(agent)}


@router.get("/sales-agents")
@action()
def get_all_sales_agents(
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_role(me, Role.ADMIN)
    rows = session.exec(select(SalesAgent).order_by(SalesAgent.created_at.desc(), SalesAgent.id.desc())).all()
    return {"salesAgents": [agent_out(a) for a in rows]}


@router.get("/sales-agents/me")
@action()
def get_my_sales_agent_profile(
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    agent = require_agent(session, me)
    return {"salesAgent": agent_out(agent)}


@router.post("/sales-agents/{agent_id}/update")
@action(conflict="Username already exists")
def update_sales_agent(
    agent_id: int,
    name: Optional[str] = Form(None),
    email: Optional[str] = Form(None),
    phone_number: Optional[str] = Form(None),
    username: Optional[str] = Form(None),
    password: Optional[str] = Form(None),
    permissions: Optional[List[str]] = Form(None),
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_role(me, Role.ADMIN)
    if blank(name) or blank(email) or blank(phone_number):
        raise ValidationFailed("All fields are required")
    agent = _get_agent(session, agent_id)

    agent.name = name.strip()
    agent.email = email.strip()
    agent.phone_number = phone_number.strip()
    if not blank(username):
        ensure_username_free(session, username.strip(), agent_id=agent.id)
        agent.username = username.strip()
    if not blank(password):
        agent.set_password(password)
    if permissions is not None:
        agent.permissions = parse_permissions(permissions)
    agent.updated_at = utcnow()
    session.add(agent); session.commit(); session.refresh(agent)
    return {"success": True, "salesAgent": agent_out(agent)}


@router.post("/sales-agents/{agent_id}/delete")
@action()
def delete_sales_agent(
    agent_id: int,
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_role(me, Role.ADMIN)
    agent = _get_agent(session, agent_id)

    for c in session.exec(select(Customer).where(Customer.sales_agent_id == agent.id)).all():
        c.sales_agent_id = None
        c.customer_sequence_number = None
        c.customer_code = None
        session.add(c)
    leads = session.exec(select(Lead).where(Lead.sales_agent_id == agent.id)).all()
    lead_ids = [l.id for l in leads]
    if lead_ids:
        for c in session.exec(select(Customer).where(Customer.lead_id.in_(lead_ids))).all():
            c.lead_id = None
            session.add(c)
    session.flush()
    for l in leads:
        session.delete(l)
    counter = session.get(Counter, customer_code_counter(agent.id))
    if counter:
        session.delete(counter)
    session.delete(agent); session.commit()
    logger.info("sales agent %s deleted with %s leads", agent_id, len(lead_ids))
    return {"success": True}


@router.post("/sales-agents/{agent_id}/allocate-customers")
@action(conflict="Some customers are already assigned to sales agents")
def allocate_customers_to_sales_agent(
    agent_id: int,
    customer_ids: List[int] = Form([]),
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_role(me, Role.ADMIN)
    ids = list(dict.fromkeys(customer_ids))
    if not ids:
        raise ValidationFailed("Sales agent ID and at least one customer ID are required")
    agent = _get_agent(session, agent_id)
    if not agent.code:
        raise ValidationFailed("Sales agent code is missing. Please update the sales agent.")

    found = {c.id: c for c in session.exec(select(Customer).where(Customer.id.in_(ids))).all()}
    missing = [i for i in ids if i not in found]
    if missing:
        raise NotFound(f"Customers not found: {', '.join(str(i) for i in missing)}")
    if any(c.sales_agent_id is not None for c in found.values()):
        raise Conflict("Some customers are already assigned to sales agents")

    for i in ids:
        assign_customer(session, agent, found[i])
    session.commit()
    logger.info("allocated %s customers to agent %s", len(ids), agent.code)
    return {"success": True, "allocated": len(ids)}


# ---------- Leads ----------
class LeadStatusPayload(BaseModel):
    status: Optional[str] = None


@router.post("/leads")
@action()
def create_lead(
    name: Optional[str] = Form(None),
    number: Optional[str] = Form(None),
    source: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_role(me, Role.SALES_AGENT)
    if blank(name) or blank(number) or blank(source):
        raise ValidationFailed("Name, number, and source are required")
    source = source.strip()
    if source not in LeadSource.ALL:
        raise ValidationFailed(f"Invalid source. Must be one of: {', '.join(LeadSource.ALL)}")
    agent = require_agent(session, me)

    lead = Lead(name=name.strip(), number=number.strip(), source=source, sales_agent_id=agent.id)
    session.add(lead); session.commit(); session.refresh(lead)
    logger.info("lead %s created by %s", lead.id, agent.username)
    return {"success": True, "lead": lead.model_dump()}


@router.get("/leads")
@action()
def get_all_leads_for_sales_agent(
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    agent = require_agent(session, me)
    rows = session.exec(
        select(Lead).where(Lead.sales_agent_id == agent.id).order_by(Lead.created_at.desc(), Lead.id.desc())
    ).all()
    return {"leads": [l.model_dump() for l in rows]}


@router.get("/admin/leads")
@action()
def get_all_leads_for_admin(
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_role(me, Role.ADMIN)
    agents = {a.id: a for a in session.exec(select(SalesAgent)).all()}
    rows = session.exec(select(Lead).order_by(Lead.created_at.desc(), Lead.id.desc())).all()
    return {"leads": [
        {**l.model_dump(), "sales_agents": agent_summary(agents.get(l.sales_agent_id))} for l in rows
    ]}


@router.post("/leads/{lead_id}/status")
@action()
def update_lead_status(
    lead_id: int,
    payload: LeadStatusPayload,
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    # any stage may be set at any time; only conversion looks at the stage
    agent = require_agent(session, me)
    if payload.status not in LeadStatus.ALL:
        raise ValidationFailed(f"Invalid status. Must be one of: {', '.join(LeadStatus.ALL)}")
    lead = _own_lead(session, agent, lead_id)
    lead.status = payload.status
    lead.updated_at = utcnow()
    session.add(lead); session.commit(); session.refresh(lead)
    return {"success": True, "lead": lead.model_dump()}


# ---------- Lead comments ----------
def _own_comment(session: Session, agent: SalesAgent, comment_id: int) -> LeadComment:
    c = session.get(LeadComment, comment_id)
    if not c:
        raise NotFound("Comment not found")
    if c.sales_agent_id != agent.id:
        raise Unauthorized("Unauthorized: Comment does not belong to you")
    return c


@router.get("/leads/{lead_id}/comments")
@action()
def get_lead_comments(
    lead_id: int,
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    if me is not None and me.role == Role.ADMIN:
        lead = session.get(Lead, lead_id)
        if not lead:
            raise NotFound("Lead not found")
    else:
        lead = _own_lead(session, require_agent(session, me), lead_id)
    return {"comments": [c.model_dump() for c in lead.comments]}


@router.post("/leads/{lead_id}/comments")
@action()
def create_lead_comment(
    lead_id: int,
    comment: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    agent = require_agent(session, me)
    if blank(comment):
        raise ValidationFailed("Comment is required")
    lead = _own_lead(session, agent, lead_id)
    c = LeadComment(lead_id=lead.id, sales_agent_id=agent.id, comment=comment.strip())
    session.add(c); session.commit(); session.refresh(c)
    return {"success": True, "comment": c.model_dump()}


@router.post("/lead-comments/{comment_id}/update")
@action()
def update_lead_comment(
    comment_id: int,
    comment: Optional[str] = Form(None),
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    agent = require_agent(session, me)
    if blank(comment):
        raise ValidationFailed("Comment is required")
    c = _own_comment(session, agent, comment_id)
    c.comment = comment.strip()
    c.updated_at = utcnow()
    session.add(c); session.commit(); session.refresh(c)
    return {"success": True, "comment": c.model_dump()}


@router.post("/lead-comments/{comment_id}/delete")
@action()
def delete_lead_comment(
    comment_id: int,
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    agent = require_agent(session, me)
    c = _own_comment(session, agent, comment_id)
    session.delete(c); session.commit()
    return {"success": True}


# ---------- Lead -> customer ----------
@router.post("/leads/{lead_id}/convert")
@action(conflict="Customer already exists for this lead")
def convert_lead_to_customer(
    lead_id: int,
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    agent = require_agent(session, me)
    if not agent.code:
        raise ValidationFailed("Sales agent code is not set. Please contact admin.")
    lead = _own_lead(session, agent, lead_id)
    if lead.converted:
        raise Conflict("Lead has already been converted to customer")
    if lead.status != LeadStatus.WIN:
        raise ValidationFailed("Lead must be in Win status before conversion")
    if session.exec(select(Customer).where(Customer.lead_id == lead.id)).first():
        raise Conflict("Customer already exists for this lead")

    customer = Customer(
        name=lead.name,
        phone_number=lead.number,
        company_name=lead.name,                     # edited later
        sequential_number=next_customer_number(session),
        lead_id=lead.id,
        converted_at=utcnow(),
    )
    assign_customer(session, agent, customer)
    session.flush()

    try:
        lead.converted = True
        lead.updated_at = utcnow()
        session.add(lead); session.flush()
    except SQLAlchemyError:
        logger.exception("lead %s: flag update failed, dropping customer", lead_id)
        # rolls back the customer insert together with the failed update
        session.rollback()
        raise BackendUnavailable("Failed to mark lead as converted")

    session.commit(); session.refresh(customer)
    logger.info("lead %s converted to customer %s", lead_id, customer.customer_code)
    return {"success": True, "customer": customer.model_dump()}


def _converted_out(c: Customer, agents: dict, leads: dict) -> dict:
    return {
        "id": c.id,
        "name": c.name,
        "phone_number": c.phone_number,
        "customer_id_formatted": c.customer_code,
        "sales_agent_id": c.sales_agent_id,
        "lead_id": c.lead_id,
        "converted_at": c.converted_at,
        "created_at": c.created_at,
        "sales_agents": agent_summary(agents.get(c.sales_agent_id)),
        "leads": lead_summary(leads.get(c.lead_id)),
    }


@router.get("/converted-customers")
@action()
def get_all_converted_customers_for_sales_agent(
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    agent = require_agent(session, me)
    rows = session.exec(
        select(Customer)
        .where(Customer.sales_agent_id == agent.id, Customer.lead_id.is_not(None))
        .order_by(Customer.converted_at.desc())
    ).all()
    leads = {l.id: l for l in session.exec(select(Lead).where(Lead.sales_agent_id == agent.id)).all()}
    return {"customers": [_converted_out(c, {agent.id: agent}, leads) for c in rows]}


@router.get("/admin/converted-customers")
@action()
def get_all_converted_customers_for_admin(
    session: Session = Depends(get_session),
    me: Optional[SessionData] = Depends(get_current_session),
):
    require_role(me, Role.ADMIN)
    rows = session.exec(
        select(Customer).where(Customer.lead_id.is_not(None)).order_by(Customer.converted_at.desc())
    ).all()
    agents = {a.id: a for a in session.exec(select(SalesAgent)).all()}
    leads = {l.id: l for l in session.exec(select(Lead)).all()}
    return {"customers": [_converted_out(c, agents, leads) for c in rows]}
