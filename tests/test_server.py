import pytest
from fastapi.testclient import TestClient

from gatepass.config import Settings
from gatepass.model.ticketstore import new_store
from gatepass.server import create_app
from gatepass.tokens import TokenCodec
from tests.helpers import SECRET, RecordingMailer, StaticRenderer

ADMIN = {"X-Admin-Token": "let-me-in"}


@pytest.fixture
def settings(tmp_path):
    return Settings(
        ticket_secret=SECRET,
        database_url=f"sqlite:///{tmp_path / 'server.db'}",
        event_id="e1",
        event_name="Test Fest",
        mail_enabled=False,
        admin_token="let-me-in",
        debug_endpoints=True,
    )


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def client(settings, mailer):
    app = create_app(settings, renderer=StaticRenderer(), mailer=mailer)
    with TestClient(app) as c:
        yield c


def paid(client, order_id="A1", quantity=2, **extra):
    return client.post("/api/webhook/paid", json={
        "orderid": order_id, "email": "Fan@Example.com", "name": "Fan",
        "quantity": quantity, **extra,
    })


def test_ping_and_bind_handshake(client, mailer):
    assert client.get("/api/webhook/paid").json() == {"ok": True,
                                                      "ping": True}
    assert client.head("/api/webhook/paid").status_code == 200
    r = client.post("/api/webhook/paid?bind=1", content=b"")
    assert r.json() == {"ok": True, "bind": True}
    assert mailer.calls == 0


def test_webhook_issues_once(client, mailer):
    r = paid(client)
    assert r.status_code == 200
    assert r.json() == {"ok": True, "issued": 2, "order_id": "A1"}
    assert [e.to for e in mailer.sent] == ["fan@example.com"] * 2

    r = paid(client)
    assert r.status_code == 200
    assert r.json() == {"ok": True, "issued": 0, "order_id": "A1",
                        "existing": 2}
    assert len(mailer.sent) == 2


def test_form_webhook(client, mailer):
    r = client.post("/api/webhook/paid", data={
        "Email": "a@b.com",
        "payment": '{"orderid": "F9", "products": [{"quantity": 1}]}',
    })
    assert r.json()["issued"] == 1
    assert mailer.tokens()[0].split(".")[1:3] == ["F9", "e1"]


@pytest.mark.parametrize("body, error", [
    ({"email": "a@b.com"}, "NO_ORDER_ID"),
    ({"orderid": "A1"}, "NO_EMAIL"),
])
def test_webhook_payload_errors(client, body, error):
    r = client.post("/api/webhook/paid", json=body)
    assert r.status_code == 400
    assert r.json()["error"] == error


def test_webhook_bad_json(client):
    r = client.post("/api/webhook/paid", content=b"{oops",
                    headers={"content-type": "application/json"})
    assert r.status_code == 400
    assert r.json()["error"] == "BAD_JSON"


def test_webhook_rejects_unsignable_order_id(client, mailer):
    r = paid(client, order_id="a.b")
    assert r.status_code == 400
    assert r.json()["error"] == "INVALID_INPUT"
    assert mailer.calls == 0


def test_validate_admits_once(client, mailer):
    paid(client, quantity=1)
    token = mailer.tokens()[0]

    first = client.post("/api/validate", json={"token": token})
    assert first.status_code == 200
    body = first.json()
    assert body["valid"] is True and body["used"] is False
    assert body["order_id"] == "A1" and body["name"] == "Fan"
    assert body["tid"] == token.split(".")[0]

    second = client.post("/api/validate", json={"token": token})
    assert second.status_code == 200
    again = second.json()
    assert again["valid"] is False
    assert again["error"] == "ALREADY_USED"
    assert again["used_at"] == body["used_at"]


def test_validate_accepts_raw_text(client, mailer):
    paid(client, quantity=1)
    r = client.post("/api/validate", content=mailer.tokens()[0] + "\n",
                    headers={"content-type": "text/plain"})
    assert r.json()["valid"] is True


def test_validate_rejections(client):
    codec = TokenCodec(SECRET)
    cases = [
        ({"token": "not-a-token"}, "BAD_TOKEN"),
        ({"token": TokenCodec("other").mint("t", "o", "e1")}, "SIGN_INVALID"),
        ({"token": codec.mint("ghost", "o", "e1")}, "NOT_FOUND"),
        ({}, "NO_TOKEN"),
    ]
    for body, error in cases:
        r = client.post("/api/validate", json=body)
        assert r.status_code == 400, error
        assert r.json()["error"] == error
        assert r.json()["ok"] is False


def test_admin_requires_token(client):
    paid(client)
    assert client.get("/api/orders/A1/tickets").status_code == 401
    r = client.get("/api/orders/A1/tickets",
                   headers={"X-Admin-Token": "nope"})
    assert r.status_code == 401
    assert client.get("/api/orders/B2/tickets",
                      headers=ADMIN).status_code == 404

    r = client.get("/api/orders/A1/tickets", headers=ADMIN)
    assert r.status_code == 200
    items = r.json()["items"]
    assert [t["seq"] for t in items] == [1, 2]
    assert {t["delivery"] for t in items} == {"sent"}
    assert all("signature" not in t for t in items)


def test_admin_disabled_without_token(settings, mailer):
    s = Settings(ticket_secret=SECRET, database_url=settings.database_url,
                 mail_enabled=False)
    with TestClient(create_app(s, renderer=StaticRenderer(),
                               mailer=mailer)) as c:
        r = c.get("/api/orders/A1/tickets", headers=ADMIN)
        assert r.status_code == 404


def test_delivery_failure_then_redeliver(client, mailer):
    mailer.fail_on = 1
    r = paid(client, order_id="D1", quantity=1)
    assert r.status_code == 500
    body = r.json()
    assert body["error"] == "DELIVERY_FAILED"
    assert body["step"] == "deliver"
    assert body["issued"] == 1

    # the provider retries: ticket exists, nothing new is minted
    assert paid(client, order_id="D1", quantity=1).json()["existing"] == 1

    r = client.get("/api/orders/D1/tickets", headers=ADMIN)
    assert r.json()["items"][0]["delivery"] == "failed"

    r = client.post("/api/orders/D1/redeliver", headers=ADMIN)
    assert r.json() == {"ok": True, "order_id": "D1", "tickets": 1,
                        "redelivered": 1}
    assert len(mailer.sent) == 1

    r = client.post("/api/orders/D1/redeliver", headers=ADMIN)
    assert r.json()["redelivered"] == 0


def test_debug_echo(client):
    r = client.post("/api/debug/webhook-echo",
                    json={"b": 1, "payment": {"orderid": "1"}})
    body = r.json()
    assert body["keys"] == ["b", "payment"]
    assert body["paymentKeys"] == ["orderid"]
    assert body["sample"]["b"] == 1


def test_debug_echo_disabled(settings, mailer):
    s = Settings(ticket_secret=SECRET, database_url=settings.database_url,
                 mail_enabled=False)
    with TestClient(create_app(s, renderer=StaticRenderer(),
                               mailer=mailer)) as c:
        assert c.post("/api/debug/webhook-echo", json={}).status_code == 404


def test_order_claimed_elsewhere_is_a_retryable_conflict(client, mailer):
    state = client.app.state

    async def claim_elsewhere():
        async with state.SessionAsync() as session:
            store = new_store("sql", db=session, gated=state.gated)
            return await store.claim_order("P1", "e1")

    assert client.portal.call(claim_elsewhere) is True
    r = paid(client, order_id="P1")
    assert r.status_code == 409
    assert r.json()["error"] == "IN_PROGRESS"
    assert mailer.calls == 0


def test_negative_quantity_issues_one(client, mailer):
    r = paid(client, order_id="N1", quantity=-2)
    assert r.json()["issued"] == 1
    assert len(mailer.sent) == 1
