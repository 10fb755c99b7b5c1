"""
Typed client for the IshTop API.

The cached current user is a read-through cache: it is filled from ``/me``
on first use and dropped whenever the server answers 401, so the server
stays the single source of truth for the session.
"""
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

import requests

from config import CHAT_LIST_POLL_INTERVAL, CHAT_POLL_INTERVAL, NOTIFICATION_POLL_INTERVAL

logger = logging.getLogger(__name__)


class ApiError(Exception):
    def __init__(self, status: int, detail: Any):
        super().__init__(f"{status}: {detail}")
        self.status = status
        self.detail = detail


class Poller:
    """Runs ``fetch`` every ``interval`` seconds on a background thread until stopped."""

    def __init__(self, fetch: Callable[[], Any], on_result: Callable[[Any], None], interval: float,
                 on_error: Optional[Callable[[Exception], None]] = None):
        self.fetch = fetch
        self.on_result = on_result
        self.interval = interval
        self.on_error = on_error
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "Poller":
        if not self.running:
            self._stop.clear()
            self._thread = threading.Thread(target=self._run, daemon=True)
            self._thread.start()
        return self

    def _run(self):
        while not self._stop.is_set():
            try:
                result = self.fetch()
            except (ApiError, requests.RequestException) as e:
                if self.on_error:
                    self.on_error(e)
                else:
                    logger.warning(f"Poll failed: {e}")
            else:
                self.on_result(result)
            self._stop.wait(self.interval)

    def stop(self, timeout: Optional[float] = None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

    def __enter__(self):
        return self.start()

    def __exit__(self, *exc):
        self.stop()


class ApiClient:
    def __init__(self, base_url: str = "http://localhost:8000", session=None, token: Optional[str] = None):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.token = token
        self._current_user: Optional[dict] = None

    def _request(self, method: str, path: str, json: Any = None, params: Optional[dict] = None,
                 files: Optional[dict] = None):
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        extra = {"files": files} if files else {}
        resp = self.session.request(method, self.base_url + path, json=json, params=params, headers=headers, **extra)
        if resp.status_code == 401:
            self.token = None
            self._current_user = None
        if resp.status_code >= 400:
            try:
                detail = resp.json().get("detail")
            except ValueError:
                detail = resp.text
            raise ApiError(resp.status_code, detail)
        return resp.json()

    # --- Auth ---

    def _session_from(self, data: dict) -> dict:
        self.token = data["token"]
        self._current_user = data["user"]
        return data["user"]

    def login(self, email: str, password: str) -> dict:
        return self._session_from(self._request("POST", "/auth/login", json={"email": email, "password": password}))

    def register(self, profile: Dict[str, Any]) -> dict:
        return self._session_from(self._request("POST", "/auth/register", json=profile))

    def logout(self):
        self.token = None
        self._current_user = None

    def current_user(self, refresh: bool = False) -> Optional[dict]:
        if not self.token:
            return None
        if self._current_user is None or refresh:
            try:
                self._current_user = self._request("GET", "/me")
            except ApiError as e:
                if e.status == 401:
                    return None
                raise
        return self._current_user

    # --- Users ---

    def get_workers(self) -> List[dict]:
        return self._request("GET", "/users", params={"role": "WORKER"})

    def get_customers(self) -> List[dict]:
        return self._request("GET", "/users", params={"role": "CUSTOMER"})

    def get_all_users(self) -> List[dict]:
        return self._request("GET", "/users")

    def get_user_by_id(self, user_id: str) -> dict:
        return self._request("GET", f"/users/{user_id}")

    def update_user(self, user_id: str, data: Dict[str, Any]) -> dict:
        user = self._request("PUT", f"/users/{user_id}", json=data)
        if self._current_user and self._current_user.get("id") == user_id:
            self._current_user = user
        return user

    def toggle_online(self, user_id: str) -> dict:
        return self._request("PUT", f"/users/{user_id}/online")

    def delete_user(self, user_id: str) -> dict:
        return self._request("DELETE", f"/users/{user_id}")

    def ban_user(self, user_id: str, action: str, reason: Optional[str] = None) -> dict:
        return self._request("POST", f"/users/{user_id}/ban", json={"action": action, "reason": reason})

    def block_user(self, user_id: str, blocked_user_id: str) -> dict:
        return self._request("POST", f"/users/{user_id}/block", json={"blockedUserId": blocked_user_id})

    def report_user(self, reported_user_id: str, reason: str, description: Optional[str] = None) -> dict:
        return self._request("POST", "/reports", json={"reportedUserId": reported_user_id, "reason": reason, "description": description})

    def upload_file(self, filename: str, data: bytes, content_type: str = "application/octet-stream") -> dict:
        """Upload a chat attachment; returns {name, url, type, size}."""
        return self._request("POST", "/upload", files={"file": (filename, data, content_type)})

    # --- Orders ---

    def get_orders(self, **filters) -> List[dict]:
        return self._request("GET", "/orders", params={k: v for k, v in filters.items() if v is not None})

    def get_order(self, order_id: str) -> dict:
        return self._request("GET", f"/orders/{order_id}")

    def create_order(self, order: Dict[str, Any]) -> dict:
        return self._request("POST", "/orders", json=order)

    def update_order(self, order_id: str, data: Dict[str, Any]) -> dict:
        return self._request("PUT", f"/orders/{order_id}", json=data)

    def delete_order(self, order_id: str) -> dict:
        return self._request("DELETE", f"/orders/{order_id}")

    def accept_order(self, order_id: str) -> dict:
        return self._request("POST", f"/orders/{order_id}/accept")

    def start_order(self, order_id: str) -> dict:
        return self._request("POST", f"/orders/{order_id}/start")

    def complete_order(self, order_id: str) -> dict:
        return self._request("POST", f"/orders/{order_id}/complete")

    def cancel_order(self, order_id: str) -> dict:
        return self._request("POST", f"/orders/{order_id}/cancel")

    def submit_review(self, order_id: str, rating: int, comment: str = "") -> dict:
        return self._request("POST", f"/orders/{order_id}/review", json={"rating": rating, "comment": comment})

    # --- Chats ---

    def get_user_chats(self, user_id: Optional[str] = None) -> List[dict]:
        return self._request("GET", "/chats", params={"userId": user_id} if user_id else None)

    def get_or_create_chat(self, user_id1: str, user_id2: str) -> dict:
        return self._request("POST", "/chats", json={"participantIds": [user_id1, user_id2]})

    def get_chat_messages(self, chat_id: str) -> List[dict]:
        return self._request("GET", f"/messages/{chat_id}")

    def send_message(self, chat_id: str, content: Any, attachments: Optional[List[dict]] = None) -> dict:
        return self._request("POST", "/messages", json={"chatId": chat_id, "content": content, "attachments": attachments or []})

    def delete_message(self, message_id: str) -> dict:
        return self._request("DELETE", f"/messages/{message_id}")

    def mark_chat_as_read(self, chat_id: str) -> dict:
        return self._request("PUT", f"/chats/{chat_id}/read")

    def mark_messages_delivered(self, chat_id: str) -> dict:
        return self._request("PUT", "/messages/deliver", json={"chatId": chat_id})

    def clear_chat(self, chat_id: str) -> dict:
        return self._request("DELETE", f"/chats/{chat_id}/messages")

    # --- Notifications ---

    def get_notifications(self, user_id: Optional[str] = None) -> List[dict]:
        return self._request("GET", "/notifications", params={"userId": user_id} if user_id else None)

    def mark_notification_as_read(self, notification_id: str) -> dict:
        return self._request("PUT", f"/notifications/{notification_id}/read")

    def mark_all_notifications_as_read(self) -> dict:
        return self._request("PUT", "/notifications/read-all")

    def delete_notification(self, notification_id: str) -> dict:
        return self._request("DELETE", f"/notifications/{notification_id}")

    # --- Polling ---

    def poll_messages(self, chat_id: str, on_result: Callable[[List[dict]], None],
                      interval: float = CHAT_POLL_INTERVAL) -> Poller:
        return Poller(lambda: self.get_chat_messages(chat_id), on_result, interval)

    def poll_chats(self, on_result: Callable[[List[dict]], None], interval: float = CHAT_LIST_POLL_INTERVAL) -> Poller:
        return Poller(self.get_user_chats, on_result, interval)

    def poll_notifications(self, on_result: Callable[[List[dict]], None],
                           interval: float = NOTIFICATION_POLL_INTERVAL) -> Poller:
        return Poller(self.get_notifications, on_result, interval)
