import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from freightdesk.models import Customer, Lead


def new_lead(client, name="Bilal Imports", source="Meta"):
    r = client.post("/api/leads", data={"name": name, "number": "0321-5550000", "source": source}).json()
    assert r["success"], r
    return r["lead"]


def win(client, lead_id):
    return client.post(f"/api/leads/{lead_id}/status", json={"status": "Win"}).json()


def test_lead_starts_in_leads_stage(agent):
    lead = new_lead(agent)
    assert lead["status"] == "Leads"
    assert lead["converted"] is False
    assert [l["id"] for l in agent.get("/api/leads").json()["leads"]] == [lead["id"]]


def test_lead_validation(agent):
    r = agent.post("/api/leads", data={"name": "X", "number": "", "source": "Meta"}).json()
    assert r == {"error": "Name, number, and source are required", "kind": "validation"}
    r = agent.post("/api/leads", data={"name": "X", "number": "1", "source": "TikTok"}).json()
    assert r["error"] == "Invalid source. Must be one of: Meta, LinkedIn, WhatsApp, Others"


def test_only_agents_create_leads(admin, user):
    body = {"name": "X", "number": "1", "source": "Meta"}
    assert admin.post("/api/leads", data=body).json()["kind"] == "auth"
    assert user.post("/api/leads", data=body).json()["kind"] == "auth"


def test_status_can_jump_between_stages(agent):
    lead = new_lead(agent)
    for status in ("Negotiation", "Inquiry Received", "Win"):
        r = agent.post(f"/api/leads/{lead['id']}/status", json={"status": status}).json()
        assert r["lead"]["status"] == status
    r = agent.post(f"/api/leads/{lead['id']}/status", json={"status": "Lost"}).json()
    assert r["kind"] == "validation"


def test_agents_only_see_and_touch_their_own_leads(agent, make_agent, make_client):
    lead = new_lead(agent)
    make_agent(username="omar", code="102", name="Omar")
    omar = make_client("omar", "pw")

    assert omar.get("/api/leads").json() == {"leads": []}
    r = omar.post(f"/api/leads/{lead['id']}/status", json={"status": "Win"}).json()
    assert r == {"error": "Unauthorized: Lead does not belong to you", "kind": "auth"}
    assert omar.get(f"/api/leads/{lead['id']}/comments").json()["kind"] == "auth"


def test_admin_sees_all_leads_with_agent(admin, agent):
    new_lead(agent)
    leads = admin.get("/api/admin/leads").json()["leads"]
    assert leads[0]["sales_agents"]["name"] == "Sara"
    assert leads[0]["sales_agents"]["code"] == "101"


# ---------- Comments ----------
def test_comment_lifecycle(agent, admin):
    lead = new_lead(agent)
    c = agent.post(f"/api/leads/{lead['id']}/comments", data={"comment": " called back "}).json()["comment"]
    assert c["comment"] == "called back"

    r = agent.post(f"/api/lead-comments/{c['id']}/update", data={"comment": "sent quote"}).json()
    assert r["comment"]["comment"] == "sent quote"
    assert [x["comment"] for x in admin.get(f"/api/leads/{lead['id']}/comments").json()["comments"]] == ["sent quote"]

    assert agent.post(f"/api/lead-comments/{c['id']}/delete").json() == {"success": True}
    assert agent.get(f"/api/leads/{lead['id']}/comments").json() == {"comments": []}


def test_comment_must_not_be_blank(agent):
    lead = new_lead(agent)
    r = agent.post(f"/api/leads/{lead['id']}/comments", data={"comment": "   "}).json()
    assert r == {"error": "Comment is required", "kind": "validation"}


def test_comments_belong_to_their_author(agent, make_agent, make_client):
    lead = new_lead(agent)
    c = agent.post(f"/api/leads/{lead['id']}/comments", data={"comment": "mine"}).json()["comment"]
    make_agent(username="omar", code="102")
    omar = make_client("omar", "pw")
    r = omar.post(f"/api/lead-comments/{c['id']}/update", data={"comment": "theirs"}).json()
    assert r == {"error": "Unauthorized: Comment does not belong to you", "kind": "auth"}
    assert omar.post(f"/api/lead-comments/{c['id']}/delete").json()["kind"] == "auth"


# ---------- Conversion ----------
def test_conversion_requires_win(agent):
    lead = new_lead(agent)
    r = agent.post(f"/api/leads/{lead['id']}/convert").json()
    assert r == {"error": "Lead must be in Win status before conversion", "kind": "validation"}


def test_convert_won_lead(agent, admin):
    lead = new_lead(agent)
    win(agent, lead["id"])

    r = agent.post(f"/api/leads/{lead['id']}/convert").json()
    customer = r["customer"]
    assert customer["customer_code"] == "10101"
    assert customer["sequential_number"] == 1
    assert customer["lead_id"] == lead["id"]
    assert customer["company_name"] == "Bilal Imports"

    assert agent.get("/api/leads").json()["leads"][0]["converted"] is True
    again = agent.post(f"/api/leads/{lead['id']}/convert").json()
    assert again == {"error": "Lead has already been converted to customer", "kind": "conflict"}

    mine = agent.get("/api/converted-customers").json()["customers"]
    assert mine[0]["customer_id_formatted"] == "10101"
    assert mine[0]["leads"]["source"] == "Meta"
    everyone = admin.get("/api/admin/converted-customers").json()["customers"]
    assert everyone[0]["sales_agents"]["username"] == "sara"


def test_second_conversion_takes_next_code(agent):
    for name in ("First", "Second"):
        lead = new_lead(agent, name)
        win(agent, lead["id"])
        agent.post(f"/api/leads/{lead['id']}/convert")
    codes = [c["customer_id_formatted"] for c in agent.get("/api/converted-customers").json()["customers"]]
    assert sorted(codes) == ["10101", "10102"]


def test_existing_customer_for_lead_blocks_conversion(agent, engine):
    lead = new_lead(agent)
    win(agent, lead["id"])
    with Session(engine) as s:
        s.add(Customer(name="Pre", phone_number="1", company_name="Pre", lead_id=lead["id"]))
        s.commit()
    r = agent.post(f"/api/leads/{lead['id']}/convert").json()
    assert r == {"error": "Customer already exists for this lead", "kind": "conflict"}


def test_agent_without_code_cannot_convert(make_agent, make_client):
    make_agent(username="nocode", code=None)
    client = make_client("nocode", "pw")
    r = client.post("/api/leads/1/convert").json()
    assert r == {"error": "Sales agent code is not set. Please contact admin.", "kind": "validation"}


def test_failed_flag_update_drops_the_customer(agent, engine, monkeypatch):
    lead = new_lead(agent)
    win(agent, lead["id"])

    real_flush = Session.flush

    def flaky_flush(self, *args, **kwargs):
        pending = [o for o in self.dirty if isinstance(o, Lead) and o.converted]
        if pending:
            raise OperationalError("UPDATE leads", {}, Exception("database is locked"))
        return real_flush(self, *args, **kwargs)

    monkeypatch.setattr(Session, "flush", flaky_flush)
    r = agent.post(f"/api/leads/{lead['id']}/convert").json()
    monkeypatch.setattr(Session, "flush", real_flush)

    assert r == {"error": "Failed to mark lead as converted", "kind": "backend"}
    with Session(engine) as s:
        assert s.exec(select(Customer)).all() == []
        assert s.get(Lead, lead["id"]).converted is False


@pytest.mark.parametrize("path", ["/api/leads", "/api/converted-customers", "/api/sales-agents/me"])
def test_agent_views_refuse_other_roles(user, path):
    assert user.get(path).json()["kind"] == "auth"
