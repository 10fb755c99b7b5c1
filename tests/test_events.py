import asyncio
import threading

import pytest
from starlette.websockets import WebSocketDisconnect

from events import Event, PollingTransport, PushTransport, chat_topic, create_transport, parse_topic
from schemas import MessageCreate
from store import utcnow


def test_parse_topic():
    assert parse_topic("chat:c1") == ("chat", "c1")
    assert parse_topic("user:u1:chats") == ("chats", "u1")
    assert parse_topic("user:u1:notifications") == ("notifications", "u1")
    for bad in ("chat:", "user:u1", "user:u1:orders", "orders:1"):
        with pytest.raises(ValueError):
            parse_topic(bad)


def test_create_transport(store):
    assert isinstance(create_transport("push", store), PushTransport)
    assert isinstance(create_transport("polling", store), PollingTransport)
    assert isinstance(create_transport("carrier-pigeon", store), PollingTransport)


def test_polling_reports_created_updated_deleted(store):
    transport = PollingTransport(store, {"chat": 0.01})

    async def scenario():
        stream = transport.subscribe(chat_topic("c1"))

        async def next_event():
            return await asyncio.wait_for(stream.__anext__(), 2)

        pending = asyncio.create_task(next_event())
        await asyncio.sleep(0.05)
        msg = store.insert("message", {"chatId": "c1", "content": {"kind": "text", "text": "hi"}, "timestamp": utcnow()})
        created = await pending

        store.update("message", msg["id"], set={"status": "READ"})
        updated = await next_event()

        store.delete("message", msg["id"])
        deleted = await next_event()
        await stream.aclose()
        return msg, created, updated, deleted

    msg, created, updated, deleted = asyncio.run(scenario())
    assert created.type == "message.created"
    assert created.payload["id"] == msg["id"]
    assert updated.type == "message.updated"
    assert updated.payload["status"] == "READ"
    assert deleted.type == "message.deleted"
    assert deleted.payload == {"id": msg["id"]}


def test_polling_ignores_existing_documents(store):
    store.insert("notification", {"userId": "u1", "title": "old"})
    transport = PollingTransport(store, {"notifications": 0.01})

    async def scenario():
        stream = transport.subscribe("user:u1:notifications")
        pending = asyncio.create_task(asyncio.wait_for(stream.__anext__(), 2))
        await asyncio.sleep(0.05)
        store.insert("notification", {"userId": "u1", "title": "new"})
        event = await pending
        await stream.aclose()
        return event

    event = asyncio.run(scenario())
    assert event.payload["title"] == "new"


def test_push_delivers_to_subscribers_of_topic_only():
    transport = PushTransport()

    async def scenario():
        mine = transport.subscribe("chat:c1")
        other = transport.subscribe("chat:c2")
        transport.publish(Event(topic="chat:c1", type="message.created", payload={"id": "m1"}))
        # publishing from a worker thread lands on the subscriber's loop
        thread = threading.Thread(target=transport.publish,
                                  args=(Event(topic="chat:c1", type="message.created", payload={"id": "m2"}),))
        thread.start()
        thread.join()
        first = await asyncio.wait_for(mine.__anext__(), 1)
        second = await asyncio.wait_for(mine.__anext__(), 1)
        assert other.queue.empty()
        await mine.aclose()
        await other.aclose()
        return first, second

    first, second = asyncio.run(scenario())
    assert [first.payload["id"], second.payload["id"]] == ["m1", "m2"]
    assert transport.subscriber_count("chat:c1") == 0


def test_push_receives_service_events(services, make_user):
    a, b = make_user(), make_user()
    chat = services.chats.get_or_create_chat(a["id"], b["id"], a)

    async def scenario():
        sub = services.chats.transport.subscribe(chat_topic(chat["id"]))
        services.chats.send_message(MessageCreate(chat_id=chat["id"], content="Salom"), a)
        event = await asyncio.wait_for(sub.__anext__(), 1)
        await sub.aclose()
        return event

    event = asyncio.run(scenario())
    assert event.type == "message.created"
    assert event.payload["content"]["text"] == "Salom"


def test_websocket_streams_chat_events(client, signup):
    a, a_headers = signup()
    b, _ = signup("WORKER")
    chat = client.post("/chats", json={"participantIds": [a["id"], b["id"]]}, headers=a_headers).json()
    token = a_headers["Authorization"].split()[1]
    topic = chat_topic(chat["id"])

    with client.websocket_connect(f"/ws/events?topic={topic}&token={token}") as ws:
        assert ws.receive_json() == {"type": "subscribed", "topic": topic}
        resp = client.post("/messages", json={"chatId": chat["id"], "content": "Qachon kelasiz?"}, headers=a_headers)
        assert resp.status_code == 200
        event = ws.receive_json()

    assert event["type"] == "message.created"
    assert event["topic"] == topic
    assert event["payload"]["content"] == {"kind": "text", "text": "Qachon kelasiz?"}


def test_websocket_rejects_bad_token(client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/ws/events?topic=chat:abc&token=nope"):
            pass
    assert exc.value.code == 4401


def test_websocket_rejects_foreign_topic(client, signup):
    a, _ = signup()
    _, b_headers = signup()
    token = b_headers["Authorization"].split()[1]
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(f"/ws/events?topic=user:{a['id']}:notifications&token={token}"):
            pass
    assert exc.value.code == 4403


def test_polling_chat_list_uses_registered_view(services, make_user):
    a, b = make_user(name="Aziz"), make_user()
    transport = PollingTransport(services.store, {"chats": 0.01})
    transport.register_view("chats", services.chats.view)

    async def scenario():
        stream = transport.subscribe(f"user:{b['id']}:chats")

        async def next_event():
            return await asyncio.wait_for(stream.__anext__(), 2)

        pending = asyncio.create_task(next_event())
        await asyncio.sleep(0.05)
        chat = services.chats.get_or_create_chat(a["id"], b["id"], a)
        created = await pending
        services.chats.send_message(MessageCreate(chat_id=chat["id"], content="Salom"), a)
        updated = await next_event()
        while updated.payload["lastMessage"] is None:
            updated = await next_event()
        await stream.aclose()
        return created, updated

    created, updated = asyncio.run(scenario())
    assert created.type == "chat.created"
    assert created.payload["unreadCount"] == 0
    assert {p["name"] for p in created.payload["participantProfiles"]} >= {"Aziz"}
    assert updated.payload["unreadCount"] == 1
    assert updated.payload["lastMessage"]["content"]["text"] == "Salom"
