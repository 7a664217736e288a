from datetime import datetime, timezone

import pytest

from conftest import GENERAL_TEXT, PLAN_TEXT, FakeScenario, random_phone
from app.core.responses import PLAN_REPLY_PREFIX
from app.db.models import DailyLog, Message, User


def _form(phone: str, body: str, name: str = "") -> dict[str, str]:
    return {
        "From": f"whatsapp:{phone}",
        "Body": body,
        "MessageSid": "SM0001",
        "ProfileName": name,
        "WaId": phone.lstrip("+"),
    }


def _user(db_session, phone: str) -> User:
    db_session.expire_all()
    return db_session.query(User).filter(User.phone == phone).first()


def test_health_and_banner(client) -> None:
    assert client.get("/health").json() == {"status": "healthy"}
    banner = client.get("/").json()
    assert banner["status"] == "WhatsApp Coach API is running"
    assert banner["version"] == "1.0.0"
    assert client.get("/webhooks/whatsapp").json() == {"status": "WhatsApp webhook endpoint is active"}


def test_webhook_checkin_end_to_end(client, override_services, fake_gateway, db_session) -> None:
    override_services(FakeScenario.OK)
    phone = random_phone()
    response = client.post(
        "/webhooks/whatsapp",
        data=_form(phone, "Sleep 6.5h | Mood 5 | Energy 4 | Notes: rough night", name="Sam"),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "success"
    assert body["message_sid"].startswith("SM")

    user = _user(db_session, phone)
    assert user is not None
    assert user.name == "Sam"
    messages = db_session.query(Message).filter(Message.user_id == user.id).order_by(Message.id).all()
    assert [m.direction for m in messages] == ["inbound", "outbound"]
    assert messages[0].body == "Sleep 6.5h | Mood 5 | Energy 4 | Notes: rough night"

    logs = db_session.query(DailyLog).filter(DailyLog.user_id == user.id).all()
    assert len(logs) == 1
    assert logs[0].log_date == datetime.now(timezone.utc).date()
    assert '"sleep_hours":6.5' in logs[0].morning_payload_json
    assert logs[0].plan_text == PLAN_TEXT

    sent_to, sent_text = fake_gateway.sent[-1]
    assert sent_to == phone
    assert sent_text == PLAN_REPLY_PREFIX + PLAN_TEXT
    assert sent_text.startswith("Good morning!")


def test_webhook_general_message(client, override_services, fake_gateway, db_session) -> None:
    override_services(FakeScenario.NOT_A_CHECKIN)
    phone = random_phone()
    response = client.post("/webhooks/whatsapp", data=_form(phone, "hey, how's it going"))
    assert response.status_code == 200

    user = _user(db_session, phone)
    assert db_session.query(DailyLog).filter(DailyLog.user_id == user.id).count() == 0
    assert fake_gateway.sent[-1][1] == GENERAL_TEXT


def test_webhook_accepts_json_payload(client, override_services) -> None:
    override_services(FakeScenario.OK)
    response = client.post("/webhooks/whatsapp", json=_form(random_phone(), "hello there"))
    assert response.status_code == 200
    assert response.json()["status"] == "success"


def test_root_post_delegates_to_webhook(client, override_services, db_session) -> None:
    override_services(FakeScenario.OK)
    phone = random_phone()
    response = client.post("/", data=_form(phone, "Sleep 7h | Mood 8 | Energy 6 | Notes: good day"))
    assert response.status_code == 200
    user = _user(db_session, phone)
    assert db_session.query(DailyLog).filter(DailyLog.user_id == user.id).count() == 1


def test_webhook_rejects_missing_fields(client, override_services, fake_gateway) -> None:
    override_services(FakeScenario.OK)
    response = client.post("/webhooks/whatsapp", data={"From": "whatsapp:+15550100"})
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid message data"}
    assert fake_gateway.sent == []


@pytest.mark.parametrize(
    "content",
    [b'{"From": "+15550100", "Body": "\xff\xfe"}', b"{\"From\": \"+15550100\",", b"[1, 2]"],
)
def test_webhook_unusable_json_body_is_rejected(client, override_services, fake_gateway, content: bytes) -> None:
    override_services(FakeScenario.OK)
    response = client.post(
        "/webhooks/whatsapp", content=content, headers={"content-type": "application/json"}
    )
    assert response.status_code == 400
    assert response.json() == {"error": "Invalid message data"}
    assert fake_gateway.sent == []


def test_webhook_generation_outage_still_replies(client, override_services, fake_gateway) -> None:
    override_services(FakeScenario.TIMEOUT)
    response = client.post("/webhooks/whatsapp", data=_form(random_phone(), "hello"))
    assert response.status_code == 200
    assert "Sleep __h | Mood __ | Energy __ | Notes: __" in fake_gateway.sent[-1][1]


def test_webhook_send_failure_reports_null_sid(client, override_services, fake_gateway) -> None:
    override_services(FakeScenario.OK)
    fake_gateway.fail_send = True
    response = client.post("/webhooks/whatsapp", data=_form(random_phone(), "hello"))
    assert response.status_code == 200
    assert response.json() == {"status": "success", "message_sid": None}


def test_webhook_persistence_failure_is_generic_500(client, app, override_services) -> None:
    from app.db.session import get_db

    override_services(FakeScenario.OK)

    class BrokenSession:
        def query(self, *args, **kwargs):
            raise RuntimeError("disk I/O error at /var/data/secret.db")

    app.dependency_overrides[get_db] = lambda: BrokenSession()
    response = client.post("/webhooks/whatsapp", data=_form(random_phone(), "hello"))
    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error"}
    assert "secret" not in response.text
