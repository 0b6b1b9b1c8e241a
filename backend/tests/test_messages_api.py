import asyncio

from fastapi.testclient import TestClient

from roomchat.database import Base


def test_sent_message_shows_up_in_history(client: TestClient, app, users):
    gateway = app.state.gateway

    async def emit(session_id, event, data):
        pass

    async def scenario():
        await gateway.connect(emit, session_id="s1")
        await gateway.join_room("s1", "r1", "u1")
        await gateway.send_message("s1", "r1", "u1", "hello", "text")
        await gateway.disconnect("s1")

    asyncio.run(scenario())

    r = client.get("/messages/r1")
    assert r.status_code == 200
    body = r.json()
    assert len(body) == 1
    assert body[0]["content"] == "hello"
    assert body[0]["type"] == "text"
    assert body[0]["roomId"] == "r1"
    assert body[0]["senderId"] == "u1"
    assert body[0]["sender"]["username"] == "alice"
    assert body[0]["sender"]["displayName"] == "Alice"
    assert "createdAt" in body[0]


def test_history_is_ordered_and_paged(client: TestClient, app, users):
    store = app.state.store
    ids = [store.append("r1", "u2", f"m{i}").id for i in range(4)]

    r = client.get("/messages/r1", params={"limit": 2})
    assert r.status_code == 200
    assert [m["id"] for m in r.json()] == ids[2:]

    r = client.get("/messages/r1", params={"limit": 2, "before": ids[2]})
    assert [m["id"] for m in r.json()] == ids[:2]
    assert r.json()[0]["sender"]["profilePic"] == "https://img.example/bob.png"


def test_unknown_sender_is_left_unresolved(client: TestClient, app):
    app.state.store.append("r1", "ghost", "boo")
    body = client.get("/messages/r1").json()
    assert body[0]["senderId"] == "ghost"
    assert body[0]["sender"] is None


def test_empty_room(client: TestClient):
    r = client.get("/messages/quiet")
    assert r.status_code == 200
    assert r.json() == []


def test_bad_paging_is_a_client_error(client: TestClient):
    assert client.get("/messages/r1", params={"limit": 0}).status_code == 400
    assert client.get("/messages/r1", params={"before": 12345}).status_code == 400


def test_store_failure_is_500(client: TestClient, engine):
    Base.metadata.drop_all(bind=engine)
    r = client.get("/messages/r1")
    assert r.status_code == 500
    assert r.json() == {"detail": "Error fetching messages"}
