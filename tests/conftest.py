import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

from freightdesk.deps import get_session, settings
from freightdesk.main import app
from freightdesk.models import AppUser, Carton, Order, SalesAgent


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def make_client(engine):
    def override():
        with Session(engine) as session:
            yield session

    app.dependency_overrides[get_session] = override

    def _make(username=None, password=None):
        client = TestClient(app)
        if username:
            r = client.post("/login", data={"username": username, "password": password}, follow_redirects=False)
            assert r.status_code == 303, r.text
            assert settings.SESSION_COOKIE in r.cookies
        return client

    yield _make
    app.dependency_overrides.clear()


@pytest.fixture
def anon(make_client):
    return make_client()


@pytest.fixture
def admin(make_client):
    return make_client(settings.ADMIN_USERNAME, settings.ADMIN_PASSWORD)


@pytest.fixture
def make_user(engine):
    def _make(username="acme", password="secret"):
        with Session(engine) as s:
            u = AppUser(username=username)
            u.set_password(password)
            s.add(u); s.commit()
        return username, password
    return _make


@pytest.fixture
def user(make_client, make_user):
    return make_client(*make_user())


@pytest.fixture
def make_agent(engine):
    def _make(username="sara", password="pw", code="101", permissions=(), name="Sara"):
        with Session(engine) as s:
            a = SalesAgent(
                name=name, email=f"{username}@example.com", phone_number="0300",
                username=username, code=code, permissions=list(permissions),
            )
            a.set_password(password)
            s.add(a); s.commit(); s.refresh(a)
            return a.id
    return _make


@pytest.fixture
def agent(make_client, make_agent):
    make_agent()
    return make_client("sara", "pw")


@pytest.fixture
def make_order(engine):
    """Insert an order directly with cartons of the given (l, w, h) in cm."""
    counter = {"serial": 9000000}

    def _make(dims=((50, 40, 30),), username="acme", total_cartons=None):
        with Session(engine) as s:
            o = Order(
                username=username, shipping_mark="SM-1", destination_country="PK",
                total_cartons=total_cartons if total_cartons is not None else len(dims),
            )
            s.add(o); s.flush()
            for i, (l, w, h) in enumerate(dims, start=1):
                counter["serial"] += 1
                s.add(Carton(
                    carton_serial_number=str(counter["serial"]),
                    length=l, width=w, height=h, carton_index=i, order_id=o.id,
                ))
            s.commit()
            return o.id
    return _make
