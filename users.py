import logging
import time
from pathlib import Path
from typing import List, Literal, Optional

from auth import is_admin
from config import MAX_UPLOAD_SIZE, UPLOAD_DIR
from errors import FileTooLarge, ForbiddenError, NotFoundError, ValidationError
from notifications import NotificationService
from schemas import Report as ReportSchema, Role, UserUpdate
from store import Store

logger = logging.getLogger(__name__)


class UserService:
    def __init__(self, store: Store, notifications: NotificationService, upload_dir: str = UPLOAD_DIR):
        self.store = store
        self.notifications = notifications
        self.upload_dir = Path(upload_dir)

    def list_users(self, role: Optional[Role] = None) -> List[dict]:
        q = {"role": role} if role else {}
        return self.store.find("user", q, sort=[("createdAt", 1)])

    def get_user(self, user_id: str) -> dict:
        user = self.store.get("user", user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def check_can_edit(self, user_id: str, actor: dict) -> None:
        if user_id != actor["id"] and not is_admin(actor):
            raise ForbiddenError("You can only change your own profile")

    def update_user(self, user_id: str, body: UserUpdate, actor: dict) -> dict:
        self.check_can_edit(user_id, actor)
        self.get_user(user_id)
        changes = body.doc(exclude_unset=True)
        if not changes:
            return self.get_user(user_id)
        updated = self.store.update("user", user_id, set=changes)
        if updated is None:
            raise NotFoundError("User not found")
        return updated

    def toggle_online(self, user_id: str, actor: dict) -> dict:
        self.check_can_edit(user_id, actor)
        user = self.get_user(user_id)
        current = bool(user.get("isOnline"))
        # conditional on the value just read so two toggles never collapse into one
        updated = self.store.update("user", user_id, set={"isOnline": not current}, expected={"isOnline": user.get("isOnline")})
        return updated or self.get_user(user_id)

    def save_upload(self, folder: str, owner_id: str, filename: str, data: bytes) -> str:
        """Write an uploaded file under UPLOAD_DIR/<folder> and return its public URL."""
        if len(data) > MAX_UPLOAD_SIZE:
            raise FileTooLarge(f"File too large (max {MAX_UPLOAD_SIZE // (1024 * 1024)} MB)")
        target_dir = self.upload_dir / folder
        target_dir.mkdir(parents=True, exist_ok=True)
        safe_name = Path(filename or "file").name.replace(" ", "_")
        path = target_dir / f"{int(time.time() * 1000)}-{owner_id}-{safe_name}"
        path.write_bytes(data)
        logger.info(f"Stored upload {path.name} ({len(data)} bytes)")
        return f"/uploads/{folder}/{path.name}"

    def save_avatar(self, user_id: str, filename: str, data: bytes) -> str:
        return self.save_upload("avatars", user_id, filename or "avatar", data)

    def delete_user(self, user_id: str) -> None:
        if not self.store.delete("user", user_id):
            raise NotFoundError("User not found")
        logger.info(f"Deleted user {user_id}")

    def ban_user(self, user_id: str, action: Literal["ban", "unban"], reason: Optional[str] = None) -> dict:
        self.get_user(user_id)
        banned = action == "ban"
        updated = self.store.update("user", user_id, set={"isBanned": banned, "banReason": reason if banned else None})
        title = "Account restricted" if banned else "Account restored"
        message = reason or ("Your account has been blocked" if banned else "Your account is active again")
        self.notifications.create(user_id, "SYSTEM", title, message)
        logger.info(f"User {user_id} {action}ned")
        return updated

    def block_user(self, user_id: str, blocked_user_id: str, actor: dict) -> dict:
        self.check_can_edit(user_id, actor)
        if not blocked_user_id:
            raise ValidationError("Blocked User ID is required")
        if blocked_user_id == user_id:
            raise ValidationError("You cannot block yourself")
        user = self.get_user(user_id)
        self.get_user(blocked_user_id)
        if blocked_user_id in user.get("blockedUsers", []):
            return user
        return self.store.update("user", user_id, push={"blockedUsers": blocked_user_id}, expected={"blockedUsers": {"$ne": blocked_user_id}}) or self.get_user(user_id)

    # ------------------ Reports ------------------

    def create_report(self, reporter: dict, reported_user_id: str, reason: str, description: Optional[str] = None) -> dict:
        if reported_user_id == reporter["id"]:
            raise ValidationError("You cannot report yourself")
        self.get_user(reported_user_id)
        report = ReportSchema(reporter_id=reporter["id"], reported_user_id=reported_user_id, reason=reason, description=description)
        return self.store.insert("report", report.doc())

    def list_reports(self) -> List[dict]:
        return self.store.find("report", {}, sort=[("createdAt", -1)])
