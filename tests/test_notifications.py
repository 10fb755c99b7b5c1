from datetime import timedelta

import pytest

from errors import ForbiddenError, NotFoundError


def test_create_and_list_newest_first(services, make_user):
    user = make_user()
    welcome = services.notifications.create(user["id"], "SYSTEM", "Welcome", "Hello")
    services.store.update("notification", welcome["id"], set={"createdAt": welcome["createdAt"] - timedelta(minutes=1)})
    latest = services.notifications.create(user["id"], "ORDER", "Order accepted", "Ali accepted", "o1")
    listed = services.notifications.list_for_user(user["id"], user)
    assert len(listed) == 2
    assert listed[0]["id"] == latest["id"]
    assert listed[0]["isRead"] is False
    assert listed[0]["relatedId"] == "o1"


def test_only_owner_or_admin_reads(services, make_user):
    user, other = make_user(), make_user()
    note = services.notifications.create(user["id"], "SYSTEM", "t", "m")
    with pytest.raises(ForbiddenError):
        services.notifications.list_for_user(user["id"], other)
    with pytest.raises(ForbiddenError):
        services.notifications.mark_read(note["id"], other)
    assert services.notifications.list_for_user(user["id"], make_user("ADMIN"))


def test_mark_read_and_unread_count(services, make_user):
    user = make_user()
    first = services.notifications.create(user["id"], "SYSTEM", "a", "a")
    services.notifications.create(user["id"], "SYSTEM", "b", "b")
    services.notifications.create(user["id"], "SYSTEM", "c", "c")
    assert services.notifications.unread_count(user["id"]) == 3

    assert services.notifications.mark_read(first["id"], user)["isRead"] is True
    assert services.notifications.unread_count(user["id"]) == 2

    assert services.notifications.mark_all_read(user["id"], user) == 2
    assert services.notifications.unread_count(user["id"]) == 0


def test_delete(services, make_user):
    user = make_user()
    note = services.notifications.create(user["id"], "SYSTEM", "t", "m")
    services.notifications.delete(note["id"], user)
    with pytest.raises(NotFoundError):
        services.notifications.delete(note["id"], user)


def test_ban_sends_system_notification(services, make_user):
    user = make_user("WORKER")
    services.users.ban_user(user["id"], "ban", "Fake reviews")
    [note] = services.notifications.list_for_user(user["id"], user)
    assert note["type"] == "SYSTEM"
    assert note["message"] == "Fake reviews"
