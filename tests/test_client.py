import threading

import pytest

from client import ApiClient, ApiError, Poller


@pytest.fixture
def api(client):
    return ApiClient(base_url="", session=client)


def register(api, role="CUSTOMER", email="client@mail.uz", **extra):
    return api.register({"name": "Kamola", "phone": "+998935551122", "email": email,
                         "password": "secret123", "role": role, **extra})


def test_register_caches_current_user(api):
    user = register(api)
    assert api.token
    assert api.current_user()["id"] == user["id"]


def test_login_and_logout(api, client):
    register(api)
    api.logout()
    assert api.current_user() is None
    user = api.login("client@mail.uz", "secret123")
    assert api.current_user(refresh=True)["id"] == user["id"]
    with pytest.raises(ApiError) as exc:
        ApiClient(base_url="", session=client).login("client@mail.uz", "nope")
    assert exc.value.status == 401


def test_unauthorized_response_drops_session(api, store):
    user = register(api)
    store.delete("user", user["id"])
    assert api.current_user(refresh=True) is None
    assert api.token is None


def test_errors_carry_status_and_detail(api):
    register(api)
    with pytest.raises(ApiError) as exc:
        api.get_order("000000000000000000000000")
    assert exc.value.status == 404
    assert exc.value.detail == "Order not found"


def test_update_own_profile_refreshes_cache(api):
    user = register(api, role="WORKER")
    api.update_user(user["id"], {"skills": ["welding"]})
    assert api.current_user()["skills"] == ["welding"]


def test_order_and_chat_roundtrip(client):
    customer = ApiClient(base_url="", session=client)
    worker = ApiClient(base_url="", session=client)
    c = register(customer, email="c@mail.uz")
    w = register(worker, role="WORKER", email="w@mail.uz")

    order = customer.create_order({"title": "Fix roof", "category": "roofing", "price": 200000})
    worker.accept_order(order["id"])
    worker.start_order(order["id"])
    assert worker.complete_order(order["id"])["status"] == "COMPLETED"
    assert worker.current_user(refresh=True)["balance"] == 180000
    assert customer.submit_review(order["id"], 5)["review"]["rating"] == 5

    chat = customer.get_or_create_chat(c["id"], w["id"])
    customer.send_message(chat["id"], "Rahmat!")
    [inbox] = worker.get_user_chats()
    assert inbox["unreadCount"] == 1
    assert [m["content"]["text"] for m in worker.get_chat_messages(chat["id"])] == ["Rahmat!"]
    worker.mark_chat_as_read(chat["id"])
    assert worker.get_user_chats()[0]["unreadCount"] == 0
    assert any(n["type"] == "PAYMENT" for n in worker.get_notifications())


def test_poller_delivers_until_stopped():
    calls = []
    enough = threading.Event()

    def on_result(result):
        calls.append(result)
        if len(calls) >= 3:
            enough.set()

    poller = Poller(lambda: len(calls), on_result, interval=0.01)
    with poller:
        assert enough.wait(2)
    assert not poller.running
    seen = len(calls)
    enough.wait(0.05)
    assert len(calls) == seen


def test_poller_reports_errors_and_keeps_going():
    errors = []
    failed_twice = threading.Event()

    def fetch():
        raise ApiError(503, "Service unavailable")

    def on_error(e):
        errors.append(e)
        if len(errors) >= 2:
            failed_twice.set()

    poller = Poller(fetch, lambda _: None, interval=0.01, on_error=on_error).start()
    try:
        assert failed_twice.wait(2)
    finally:
        poller.stop(timeout=1)
    assert errors[0].status == 503


def test_upload_file_and_attach_it(api, client):
    me = register(api)
    other = register(ApiClient(base_url="", session=client), email="other@mail.uz")
    uploaded = api.upload_file("receipt.jpg", b"\xff\xd8 jpeg", "image/jpeg")
    assert uploaded["name"] == "receipt.jpg"
    assert uploaded["size"] == 7
    chat = api.get_or_create_chat(me["id"], other["id"])
    attachment = {"name": uploaded["name"], "url": uploaded["url"], "type": uploaded["type"]}
    sent = api.send_message(chat["id"], {"kind": "attachment"}, attachments=[attachment])
    assert sent["attachments"] == [attachment]
