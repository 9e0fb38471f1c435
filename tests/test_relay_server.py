import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from chainsignal.identity import NULL_ADDRESS
from chainsignal.relay.server import app, reset_state
from chainsignal.utils.serialization import b64encode_text

ALICE = "0x52908400098527886E0F7030069857D2E4169EE7"
BOB = "0x8617E340B3D01FA5F11F306F4090FD50E238070D"


@pytest.fixture(autouse=True)
def clean_state():
    reset_state()
    yield
    reset_state()


def submit(client, recipient=BOB, data=b"sealed", sender=ALICE):
    return client.post(
        "/relay/submit",
        json={"sender": sender, "recipient": recipient, "data": b64encode_text(data)},
    )


def test_submit_appends_record():
    with TestClient(app) as client:
        response = submit(client)
        assert response.status_code == 200
        assert response.json() == {"ok": True, "index": 0}

        events = client.get("/relay/events").json()["events"]
        assert events == [
            {"index": 0, "sender": ALICE, "recipient": BOB, "data": b64encode_text(b"sealed")}
        ]
        assert client.get("/relay/status").json() == {"events": 1, "clients": 0}


@pytest.mark.parametrize(
    "recipient,data,error",
    [
        (NULL_ADDRESS, b"sealed", "null address"),
        (BOB, b"", "payload must not be empty"),
        ("0x1234", b"sealed", "invalid ledger address"),
    ],
)
def test_submit_rejects_invalid_records(recipient, data, error):
    with TestClient(app) as client:
        response = submit(client, recipient=recipient, data=data)
        assert response.status_code == 400
        assert response.json()["ok"] is False
        assert error in response.json()["error"]
        assert client.get("/relay/status").json()["events"] == 0


def test_submit_rejects_undecodable_data():
    with TestClient(app) as client:
        response = client.post("/relay/submit", json={"sender": ALICE, "recipient": BOB, "data": "***"})
        assert response.status_code == 400


def test_events_filter_by_recipient_and_offset():
    with TestClient(app) as client:
        submit(client, recipient=BOB, data=b"1")
        submit(client, recipient=ALICE, data=b"2", sender=BOB)
        submit(client, recipient=BOB, data=b"3")

        to_bob = client.get("/relay/events", params={"recipient": BOB.lower()}).json()["events"]
        assert [e["index"] for e in to_bob] == [0, 2]
        later = client.get("/relay/events", params={"since": 1}).json()["events"]
        assert [e["index"] for e in later] == [1, 2]


def test_websocket_submit_is_acked_and_broadcast():
    with TestClient(app) as client:
        with client.websocket_connect("/relay") as alice, client.websocket_connect("/relay") as bob:
            alice.send_json({"type": "hello", "address": ALICE.lower()})
            assert alice.receive_json() == {"type": "hello", "address": ALICE, "events": 0}
            bob.send_json({"type": "hello", "address": BOB})
            assert bob.receive_json()["address"] == BOB

            alice.send_json({"type": "submit", "id": 7, "recipient": BOB, "data": b64encode_text(b"x")})
            event = alice.receive_json()
            assert event["type"] == "event"
            assert alice.receive_json() == {"type": "ack", "id": 7, "ok": True, "index": 0}

            seen_by_bob = bob.receive_json()
            assert seen_by_bob == event
            assert seen_by_bob["sender"] == ALICE

            alice.send_json({"type": "submit", "id": 8, "recipient": NULL_ADDRESS, "data": "eA=="})
            nack = alice.receive_json()
            assert nack["id"] == 8
            assert nack["ok"] is False


@pytest.mark.parametrize(
    "send",
    [
        lambda ws: ws.send_text("not json"),
        lambda ws: ws.send_json([{"type": "hello", "address": ALICE}]),
        lambda ws: ws.send_bytes(b"\xff\x00"),
        lambda ws: ws.send_json({"type": "hello", "address": "0x1234"}),
    ],
)
def test_bad_hello_closes_with_4000(send):
    with TestClient(app) as client:
        with client.websocket_connect("/relay") as ws:
            send(ws)
            with pytest.raises(WebSocketDisconnect) as excinfo:
                ws.receive_json()
            assert excinfo.value.code == 4000


def test_malformed_frame_after_hello_closes_with_4000():
    with TestClient(app) as client:
        with client.websocket_connect("/relay") as ws:
            ws.send_json({"type": "hello", "address": ALICE})
            assert ws.receive_json()["address"] == ALICE
            ws.send_json({"type": "ping"})
            ws.send_text("[1, 2]")
            with pytest.raises(WebSocketDisconnect) as excinfo:
                ws.receive_json()
            assert excinfo.value.code == 4000
        assert submit(client).json()["index"] == 0
