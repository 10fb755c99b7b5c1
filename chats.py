"""
Two-party chats and their message history.

A chat is identified by the unordered pair of its participants (``pairKey``),
so get-or-create returns the same chat whichever side opens it. Each chat
caches its most recent message and keeps an unread counter per participant.
"""
import logging
from typing import List

from auth import is_admin, user_summary
from errors import ForbiddenError, NotFoundError, ValidationError
from events import Event, Transport, chat_topic, parse_topic, user_chats_topic
from notifications import NotificationService
from schemas import Chat as ChatSchema, Message as MessageSchema, MessageCreate
from store import Store, utcnow

logger = logging.getLogger(__name__)


def pair_key(user_a: str, user_b: str) -> str:
    return ":".join(sorted((user_a, user_b)))


def preview(message: dict) -> str:
    content = message.get("content") or {}
    kind = content.get("kind")
    if kind == "text":
        text = content.get("text", "")
    elif kind == "reply":
        text = content.get("body", "")
    elif kind == "location":
        text = "Shared a location"
    else:
        text = "Sent an attachment"
    return text if len(text) <= 80 else text[:77] + "..."


class ChatService:
    def __init__(self, store: Store, notifications: NotificationService, transport: Transport):
        self.store = store
        self.notifications = notifications
        self.transport = transport

    def view(self, chat: dict, user_id: str) -> dict:
        """Chat as seen by one participant: their unread count plus participant summaries."""
        view = dict(chat)
        view["unreadCount"] = chat.get("unreadCounts", {}).get(user_id, 0)
        view["participantProfiles"] = [user_summary(self.store.get("user", uid)) or {"id": uid} for uid in chat["participants"]]
        return view

    def _publish_chat(self, chat: dict, event_type: str) -> None:
        for uid in chat["participants"]:
            self.transport.publish(Event(topic=user_chats_topic(uid), type=event_type, payload=self.view(chat, uid)))

    def get_or_create_chat(self, user_a: str, user_b: str, actor: dict) -> dict:
        if user_a == user_b:
            raise ValidationError("A chat needs two different participants")
        if actor["id"] not in (user_a, user_b) and not is_admin(actor):
            raise ForbiddenError("You can only open your own chats")
        for uid in (user_a, user_b):
            if self.store.get("user", uid) is None:
                raise NotFoundError("User not found")
        chat = ChatSchema(participants=[user_a, user_b], pair_key=pair_key(user_a, user_b),
                          unread_counts={user_a: 0, user_b: 0})
        doc, created = self.store.find_or_insert("chat", {"pairKey": chat.pair_key}, chat.doc())
        if created:
            logger.info(f"Chat {doc['id']} opened between {user_a} and {user_b}")
            self._publish_chat(doc, "chat.created")
        return self.view(doc, actor["id"])

    def list_user_chats(self, user_id: str, actor: dict) -> List[dict]:
        if user_id != actor["id"] and not is_admin(actor):
            raise ForbiddenError("Not your chats")
        chats = self.store.find("chat", {"participants": user_id}, sort=[("updatedAt", -1)])
        return [self.view(c, user_id) for c in chats]

    def _chat_for(self, chat_id: str, actor: dict) -> dict:
        chat = self.store.get("chat", chat_id)
        if chat is None or (actor["id"] not in chat["participants"] and not is_admin(actor)):
            raise NotFoundError("Chat not found")
        return chat

    def send_message(self, body: MessageCreate, sender: dict) -> dict:
        if body.sender_id and body.sender_id != sender["id"]:
            raise ForbiddenError("You can only send messages as yourself")
        chat = self.store.get("chat", body.chat_id)
        if chat is None or sender["id"] not in chat["participants"]:
            raise NotFoundError("Chat not found")
        recipients = [uid for uid in chat["participants"] if uid != sender["id"]]
        for uid in recipients:
            recipient = self.store.get("user", uid)
            if recipient and sender["id"] in recipient.get("blockedUsers", []):
                raise ForbiddenError("You cannot message this user")

        if body.content.kind == "reply":
            quoted = self.store.get("message", body.content.quoted_message_id)
            if quoted is None or quoted["chatId"] != chat["id"]:
                raise ValidationError("Quoted message is not part of this chat")

        message = MessageSchema(
            chat_id=chat["id"],
            sender_id=sender["id"],
            content=body.content.doc(),
            attachments=body.attachments,
            timestamp=utcnow(),
        )
        doc = self.store.insert("message", message.doc())
        self.store.update("chat", chat["id"], inc={f"unreadCounts.{uid}": 1 for uid in recipients})
        updated_chat = self._advance_last_message(chat["id"], doc) or self.store.get("chat", chat["id"])

        self.transport.publish(Event(topic=chat_topic(chat["id"]), type="message.created", payload=doc))
        if updated_chat:
            self._publish_chat(updated_chat, "chat.updated")
        for uid in recipients:
            self.notifications.create(uid, "MESSAGE", f"New message from {sender['name']}", preview(doc), chat["id"])
        return doc

    def _advance_last_message(self, chat_id: str, message: dict):
        # lastMessage only moves forward in timestamp order
        for guard in ({"lastMessage.timestamp": {"$lt": message["timestamp"]}}, {"lastMessage": None}):
            updated = self.store.update("chat", chat_id, set={"lastMessage": message}, expected=guard)
            if updated is not None:
                return updated
        return None

    def get_chat_messages(self, chat_id: str, actor: dict) -> List[dict]:
        self._chat_for(chat_id, actor)
        return self.store.find("message", {"chatId": chat_id}, sort=[("timestamp", 1)])

    def mark_delivered(self, chat_id: str, user: dict) -> int:
        self._chat_for(chat_id, user)
        count = self.store.update_many("message", {"chatId": chat_id, "senderId": {"$ne": user["id"]}, "status": "SENT"},
                                       {"status": "DELIVERED"})
        if count:
            self.transport.publish(Event(topic=chat_topic(chat_id), type="message.delivered", payload={"chatId": chat_id, "userId": user["id"]}))
        return count

    def mark_read(self, chat_id: str, user: dict) -> int:
        chat = self._chat_for(chat_id, user)
        count = self.store.update_many(
            "message",
            {"chatId": chat_id, "senderId": {"$ne": user["id"]}, "status": {"$in": ["SENT", "DELIVERED"]}},
            {"status": "READ"},
        )
        changes = {f"unreadCounts.{user['id']}": 0}
        last = chat.get("lastMessage")
        if last and last.get("senderId") != user["id"]:
            changes["lastMessage.status"] = "READ"
        updated = self.store.update("chat", chat_id, set=changes)
        if count:
            self.transport.publish(Event(topic=chat_topic(chat_id), type="message.read", payload={"chatId": chat_id, "userId": user["id"]}))
        if updated:
            self._publish_chat(updated, "chat.updated")
        return count

    def delete_message(self, message_id: str, actor: dict) -> None:
        message = self.store.get("message", message_id)
        if message is None:
            raise NotFoundError("Message not found")
        if message["senderId"] != actor["id"] and not is_admin(actor):
            raise ForbiddenError("You can only delete your own messages")
        self.store.delete("message", message_id)
        chat = self.store.get("chat", message["chatId"])
        if chat and (chat.get("lastMessage") or {}).get("id") == message_id:
            newest = self.store.find("message", {"chatId": chat["id"]}, sort=[("timestamp", -1)], limit=1)
            self.store.update("chat", chat["id"], set={"lastMessage": newest[0] if newest else None})
        self.transport.publish(Event(topic=chat_topic(message["chatId"]), type="message.deleted", payload={"id": message_id}))

    def clear_chat(self, chat_id: str, actor: dict) -> int:
        chat = self._chat_for(chat_id, actor)
        removed = self.store.delete_many("message", {"chatId": chat_id})
        self.store.update("chat", chat_id, set={"lastMessage": None, "unreadCounts": {uid: 0 for uid in chat["participants"]}})
        self.transport.publish(Event(topic=chat_topic(chat_id), type="chat.cleared", payload={"chatId": chat_id}))
        return removed

    def can_subscribe(self, topic: str, user: dict) -> bool:
        try:
            kind, entity_id = parse_topic(topic)
        except ValueError:
            return False
        if is_admin(user):
            return True
        if kind == "chat":
            chat = self.store.get("chat", entity_id)
            return chat is not None and user["id"] in chat["participants"]
        return entity_id == user["id"]
