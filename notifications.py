from typing import List, Optional

from auth import is_admin
from errors import ForbiddenError, NotFoundError
from events import Event, Transport, user_notifications_topic
from schemas import Notification as NotificationSchema, NotificationType
from store import Store


class NotificationService:
    def __init__(self, store: Store, transport: Transport):
        self.store = store
        self.transport = transport

    def create(self, user_id: str, type: NotificationType, title: str, message: str, related_id: Optional[str] = None) -> dict:
        notification = NotificationSchema(user_id=user_id, type=type, title=title, message=message, related_id=related_id)
        doc = self.store.insert("notification", notification.doc())
        self.transport.publish(Event(topic=user_notifications_topic(user_id), type="notification.created", payload=doc))
        return doc

    def _owned(self, notification_id: str, actor: dict) -> dict:
        doc = self.store.get("notification", notification_id)
        if doc is None:
            raise NotFoundError("Notification not found")
        if doc["userId"] != actor["id"] and not is_admin(actor):
            raise ForbiddenError("Not your notification")
        return doc

    def _check_reader(self, user_id: str, actor: dict) -> None:
        if user_id != actor["id"] and not is_admin(actor):
            raise ForbiddenError("Not your notifications")

    def list_for_user(self, user_id: str, actor: dict) -> List[dict]:
        self._check_reader(user_id, actor)
        return self.store.find("notification", {"userId": user_id}, sort=[("createdAt", -1)])

    def unread_count(self, user_id: str) -> int:
        return self.store.count("notification", {"userId": user_id, "isRead": False})

    def mark_read(self, notification_id: str, actor: dict) -> dict:
        doc = self._owned(notification_id, actor)
        updated = self.store.update("notification", notification_id, set={"isRead": True})
        self.transport.publish(Event(topic=user_notifications_topic(doc["userId"]), type="notification.updated", payload=updated))
        return updated

    def mark_all_read(self, user_id: str, actor: dict) -> int:
        self._check_reader(user_id, actor)
        return self.store.update_many("notification", {"userId": user_id, "isRead": False}, {"isRead": True})

    def delete(self, notification_id: str, actor: dict) -> None:
        doc = self._owned(notification_id, actor)
        self.store.delete("notification", notification_id)
        self.transport.publish(Event(topic=user_notifications_topic(doc["userId"]), type="notification.deleted", payload={"id": notification_id}))
