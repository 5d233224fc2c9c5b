"""/ws 라우트와 HTTP 엔드포인트 통합 테스트 (FastAPI TestClient)."""

import asyncio

import pytest
from fastapi.testclient import TestClient

from app import app
from conftest import FakeConnection
from routes.signaling import init_relay, websocket_endpoint


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def receive_until(ws, event_type: str) -> dict:
    while True:
        message = ws.receive_json()
        if message["type"] == event_type:
            return message


def test_two_participants_on_same_frequency(client):
    with client.websocket_connect("/ws") as ws_a:
        a = ws_a.receive_json()["data"]["participant"]
        ws_a.send_json({"type": "join-channel", "data": {"channelKey": "101.5"}})
        assert ws_a.receive_json() == {"type": "joined", "data": {"channelKey": "101.5", "memberCount": 1}}
        assert ws_a.receive_json() == {"type": "channel-update", "data": {"memberCount": 1}}

        with client.websocket_connect("/ws") as ws_b:
            b = ws_b.receive_json()["data"]["participant"]
            ws_b.send_json({"type": "join-channel", "data": {"channelKey": "101.5"}})
            assert ws_b.receive_json()["data"] == {"channelKey": "101.5", "memberCount": 2}

            assert ws_a.receive_json() == {"type": "participant-joined", "data": {"participant": b}}
            assert ws_a.receive_json() == {"type": "channel-update", "data": {"memberCount": 2}}

            # A → B 시그널 전달
            payload = {"type": "offer", "sdp": "v=0"}
            ws_a.send_json({"type": "signal", "data": {"target": b, "payload": payload}})
            assert receive_until(ws_b, "signal")["data"] == {"sender": a, "payload": payload}

            response = client.get("/api/channels")
            assert response.json()["channels"][0]["channelKey"] == "101.5"
            assert response.json()["channels"][0]["memberCount"] == 2

        assert ws_a.receive_json() == {"type": "participant-left", "data": {"participant": b}}
        assert ws_a.receive_json() == {"type": "channel-update", "data": {"memberCount": 1}}

    assert client.get("/api/channels").json() == {"channels": []}


def test_scan_over_websocket(client):
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_json({"type": "join-channel", "data": {"channelKey": "88.1"}})
        ws.send_json({"type": "scan-channels", "requestId": "scan-1"})

        response = receive_until(ws, "scan-results")
        assert response["requestId"] == "scan-1"
        assert [c["channelKey"] for c in response["data"]["channels"]] == ["88.1"]


def test_invalid_json_keeps_connection_open(client):
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_text("{not json")
        assert ws.receive_json()["type"] == "error"

        ws.send_json({"type": "join-channel", "data": {"channelKey": "lobby"}})
        assert ws.receive_json()["type"] == "joined"


def test_http_endpoints(client):
    assert client.get("/").json()["status"] == "ok"

    health = client.get("/api/health").json()
    assert health["status"] == "ok"
    assert health["channels"] == 0

    ice_servers = client.get("/api/ice-servers").json()
    assert {"urls": "stun:stun.l.google.com:19302"} in ice_servers


class SlowConnection(FakeConnection):
    """send_json마다 이벤트 루프에 양보하는 연결."""

    async def send_json(self, data):
        await asyncio.sleep(0)
        await super().send_json(data)


class IdleSocket(SlowConnection):
    """accept 후 아무것도 받지 않는 WebSocket."""

    async def accept(self):
        pass

    async def receive_text(self):
        await asyncio.Event().wait()


async def test_cancelled_endpoint_still_notifies_channel(relay):
    socket = IdleSocket()
    listener = SlowConnection()
    listener_id = await relay.connect(listener)
    await relay.handle(listener_id, {"type": "join-channel", "data": {"channelKey": "101.5"}})

    init_relay(relay)
    try:
        endpoint = asyncio.create_task(websocket_endpoint(socket))
        while not socket.of_type("connected"):
            await asyncio.sleep(0)
        participant = socket.of_type("connected")[0]["data"]["participant"]
        await relay.handle(participant, {"type": "join-channel", "data": {"channelKey": "101.5"}})

        # 서버 종료처럼 취소가 반복해서 전달되는 경우
        endpoint.cancel()
        await asyncio.sleep(0)
        endpoint.cancel()
        with pytest.raises(asyncio.CancelledError):
            await endpoint

        for _ in range(10):
            await asyncio.sleep(0)
    finally:
        init_relay(None)

    assert listener.of_type("participant-left")[-1]["data"] == {"participant": participant}
    assert listener.of_type("channel-update")[-1]["data"] == {"memberCount": 1}
