import csv
from io import StringIO

import pytest
from fastapi.testclient import TestClient
from itsdangerous import URLSafeTimedSerializer
from sqlalchemy.orm import sessionmaker

import sso
from auth import SESSION_COOKIE, issue_session_token
from config import get_settings
from database import Base, build_engine, get_db
from main import app
from models import UserRole
from schemas import UserIn
from services import UserService
from sso import FLOW_COOKIE


@pytest.fixture()
def env():
    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with SessionLocal() as db:
        users = UserService(db)
        admin = users.create(
            UserIn(email="admin@example.com", name="Admin", role=UserRole.admin)
        )
        member = users.create(UserIn(email="member@example.com", name="Member"))
    client = TestClient(app)
    yield client, admin, member
    app.dependency_overrides.clear()


def auth_headers(user) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_session_token(user)}"}


def test_health_is_public(env) -> None:
    client, _, _ = env
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.text == "Healthy"


def test_api_requires_a_session(env) -> None:
    client, _, member = env
    assert client.get("/api/categories").status_code == 401
    assert (
        client.get("/api/categories", headers={"Authorization": "Bearer nope"}).status_code
        == 401
    )
    client.cookies.set(SESSION_COOKIE, issue_session_token(member))
    assert client.get("/api/categories").status_code == 200
    me = client.get("/auth/me").json()
    assert me["email"] == "member@example.com"
    assert me["isActive"] is True


def test_user_admin_routes_need_admin_role(env) -> None:
    client, admin, member = env
    assert client.get("/api/users", headers=auth_headers(member)).status_code == 403
    resp = client.get("/api/users", headers=auth_headers(admin))
    assert resp.status_code == 200
    assert {u["email"] for u in resp.json()} == {
        "admin@example.com",
        "member@example.com",
    }

    resp = client.delete(f"/api/users/{admin.id}", headers=auth_headers(admin))
    assert resp.status_code == 400
    resp = client.patch(
        f"/api/users/{member.id}/status",
        json={"isActive": False},
        headers=auth_headers(admin),
    )
    assert resp.status_code == 200
    assert resp.json()["isActive"] is False
    assert client.get("/api/categories", headers=auth_headers(member)).status_code == 401


def test_expense_crud_and_listing(env) -> None:
    client, _, member = env
    headers = auth_headers(member)

    resp = client.post(
        "/api/categories", json={"name": "Office", "color": "#10b981"}, headers=headers
    )
    assert resp.status_code == 201
    category_id = resp.json()["id"]
    assert (
        client.post("/api/categories", json={"name": "office"}, headers=headers).status_code
        == 400
    )

    for description, amount, day in [
        ("Lunch", 12.5, "2024-01-05"),
        ("Toner", 80, "2024-01-20"),
        ("Zero", 0, "2024-02-01"),
    ]:
        resp = client.post(
            "/api/expenses",
            json={
                "description": description,
                "amount": amount,
                "categoryId": category_id,
                "date": day,
            },
            headers=headers,
        )
        assert resp.status_code == 201
    body = resp.json()
    assert body["category"]["name"] == "Office"
    assert body["amount"] == 0

    resp = client.get("/api/expenses?limit=2&offset=0", headers=headers)
    page = resp.json()
    assert page["totalCount"] == 3
    assert page["hasMore"] is True
    assert [e["description"] for e in page["expenses"]] == ["Zero", "Toner"]

    resp = client.get("/api/expenses?limit=2&offset=2", headers=headers)
    assert resp.json()["hasMore"] is False

    resp = client.get("/api/expenses?maxAmount=0", headers=headers)
    assert [e["description"] for e in resp.json()["expenses"]] == ["Zero"]

    expense_id = page["expenses"][1]["id"]
    resp = client.put(
        f"/api/expenses/{expense_id}", json={"amount": 75.25}, headers=headers
    )
    assert resp.status_code == 200
    assert resp.json()["amount"] == 75.25
    assert client.delete(f"/api/expenses/{expense_id}", headers=headers).status_code == 204
    assert client.get(f"/api/expenses/{expense_id}", headers=headers).status_code == 404


@pytest.mark.parametrize(
    "query",
    [
        "minAmount=abc",
        "maxAmount=NaN",
        "categoryId=x",
        "startDate=2024-13-01",
        "startDate=2024-01-05junk",
        "limit=0",
    ],
)
def test_malformed_filters_are_rejected(env, query) -> None:
    client, _, member = env
    resp = client.get(f"/api/expenses?{query}", headers=auth_headers(member))
    assert resp.status_code == 400


def test_expense_validation_errors(env) -> None:
    client, _, member = env
    headers = auth_headers(member)
    resp = client.post(
        "/api/expenses",
        json={"description": "x", "amount": -1, "categoryId": 1, "date": "2024-01-01"},
        headers=headers,
    )
    assert resp.status_code == 422
    resp = client.post(
        "/api/expenses",
        json={"description": "x", "amount": 1, "categoryId": 999, "date": "2024-01-01"},
        headers=headers,
    )
    assert resp.status_code == 400


def test_wallet_and_analytics_routes(env) -> None:
    client, _, member = env
    headers = auth_headers(member)

    assert client.get("/api/current-expense-wallet", headers=headers).status_code == 404
    resp = client.post(
        "/api/expense-wallets",
        json={"amount": 1000, "date": "2024-01-01", "description": "Q1"},
        headers=headers,
    )
    assert resp.status_code == 201
    assert client.get("/api/current-expense-wallet", headers=headers).json()["amount"] == 1000

    category_id = client.post(
        "/api/categories", json={"name": "Travel"}, headers=headers
    ).json()["id"]
    client.post(
        "/api/expenses",
        json={
            "description": "Cab",
            "amount": 250,
            "categoryId": category_id,
            "date": "2024-01-10",
        },
        headers=headers,
    )

    summary = client.get("/api/analytics/budget-summary/1/2024", headers=headers).json()
    assert summary["remainingAmount"] == 750
    assert summary["monthlyBudget"] == 1000
    assert summary["percentageUsed"] == 25
    assert "daysLeft" in summary

    assert (
        client.get("/api/analytics/budget-summary/13/2024", headers=headers).status_code
        == 400
    )
    assert (
        client.get("/api/analytics/budget-summary/abc/2024", headers=headers).status_code
        == 400
    )

    overall = client.get("/api/analytics/wallet-summary", headers=headers).json()
    assert overall["totalExpenses"] == 250

    rows = client.get(
        "/api/analytics/category-breakdown?month=1&year=2024", headers=headers
    ).json()
    assert rows == [
        {
            "id": category_id,
            "name": "Travel",
            "color": "#3b82f6",
            "description": None,
            "isActive": True,
            "totalAmount": 250,
            "expenseCount": 1,
            "percentage": 100,
        }
    ]
    assert (
        client.get(
            "/api/analytics/category-breakdown?month=1", headers=headers
        ).status_code
        == 400
    )
    assert client.get("/api/analytics/expense-trends/0", headers=headers).status_code == 400


def test_csv_export_route(env) -> None:
    client, _, member = env
    headers = auth_headers(member)
    category_id = client.post(
        "/api/categories", json={"name": "Meals"}, headers=headers
    ).json()["id"]
    client.post(
        "/api/expenses",
        json={
            "description": 'Team "offsite" lunch',
            "amount": 99.9,
            "categoryId": category_id,
            "date": "2024-03-03",
        },
        headers=headers,
    )

    resp = client.get("/api/export/csv?categoryId=%d" % category_id, headers=headers)
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    rows = list(csv.reader(StringIO(resp.text)))
    assert rows[1] == ["2024-03-03", 'Team "offsite" lunch', "Meals", "", "99.90", ""]


def test_upload_then_import(env, tmp_path, monkeypatch) -> None:
    client, _, member = env
    headers = auth_headers(member)
    monkeypatch.setattr(get_settings(), "upload_dir", tmp_path)

    resp = client.post(
        "/api/uploadfile",
        files={
            "file": (
                "march.csv",
                b"Date,Description,Amount,Category\n2024-03-04,Taxi,18,Travel\n",
                "text/csv",
            )
        },
        headers=headers,
    )
    assert resp.status_code == 201
    upload = resp.json()
    assert upload["originalName"] == "march.csv"
    assert upload["path"] == f"/uploads/{upload['savedAs']}"
    assert (tmp_path / upload["savedAs"]).is_file()

    resp = client.post(
        "/api/expenses/import-excel", json={"filePath": upload["path"]}, headers=headers
    )
    assert resp.status_code == 200
    assert resp.json() == {"total": 1, "successful": 1, "failed": 0, "errors": []}

    resp = client.post(
        "/api/expenses/import-excel",
        json={"filePath": "../../etc/passwd.csv"},
        headers=headers,
    )
    assert resp.status_code == 400
    assert client.post("/api/uploadfile", headers=headers).status_code == 400


def test_forged_session_token_is_refused(env) -> None:
    client, admin, _ = env
    forged = URLSafeTimedSerializer(
        "5d0c2f7e94a1b8c36e72d4a9f03b1e6c8a75d2e490fb3c16a8e27d95b4c0f61a",
        salt="session-token",
    ).dumps({"u": admin.id})
    resp = client.get("/api/users", headers={"Authorization": f"Bearer {forged}"})
    assert resp.status_code == 401


class FakeMsalApp:
    def __init__(self, claims) -> None:
        self.claims = claims

    def initiate_auth_code_flow(self, scopes, redirect_uri=None):
        return {
            "state": "st-1",
            "code_verifier": "verifier",
            "redirect_uri": redirect_uri,
            "scope": scopes,
            "auth_uri": "https://login.example/authorize?state=st-1",
        }

    def acquire_token_by_auth_code_flow(self, flow, auth_response):
        if auth_response.get("state") != flow["state"]:
            raise ValueError("state mismatch")
        if "error" in auth_response:
            return {"error": auth_response["error"]}
        return {"access_token": "at", "id_token_claims": self.claims}


@pytest.fixture()
def fake_sso(monkeypatch):
    settings = get_settings()
    monkeypatch.setattr(settings, "sso_client_id", "client-id")
    monkeypatch.setattr(settings, "sso_client_secret", "client-secret")

    def install(claims):
        monkeypatch.setattr(sso, "_build_app", lambda _settings: FakeMsalApp(claims))

    return install


def test_sign_in_round_trip_sets_session(env, fake_sso) -> None:
    client, _, member = env
    fake_sso({"oid": "oid-m", "preferred_username": "member@example.com", "name": "Mem"})

    resp = client.get("/auth/signin?next=/expenses", follow_redirects=False)
    assert resp.status_code == 302
    assert resp.headers["location"] == "https://login.example/authorize?state=st-1"
    assert FLOW_COOKIE in resp.cookies

    resp = client.get("/auth/redirect?code=abc&state=st-1", follow_redirects=False)
    assert resp.status_code == 302
    assert resp.headers["location"] == "/expenses"
    assert SESSION_COOKIE in resp.cookies

    me = client.get("/auth/me").json()
    assert me["id"] == member.id
    assert me["name"] == "Mem"


def test_sign_in_redirect_failures(env, fake_sso) -> None:
    client, _, _ = env
    fake_sso({"oid": "oid-x", "preferred_username": "mallory@example.com"})

    # no pending flow
    assert client.get("/auth/redirect?code=abc&state=st-1").status_code == 400

    client.get("/auth/signin", follow_redirects=False)
    assert client.get("/auth/redirect?code=abc&state=other").status_code == 400
    assert client.get("/auth/redirect?state=st-1&error=access_denied").status_code == 502
    resp = client.get("/auth/redirect?code=abc&state=st-1")
    assert resp.status_code == 403
    assert "not authorized" in resp.json()["detail"]


def test_sign_in_needs_client_credentials(env) -> None:
    client, _, _ = env
    assert client.get("/auth/signin", follow_redirects=False).status_code == 503
