import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, File, Query, Request, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, EmailStr, Field, ValidationError as PydanticValidationError
from starlette.datastructures import UploadFile as FormFile

from auth import AuthService, optional_auth, profile_view, public_user, require_admin, require_auth
from chats import ChatService
from config import CORS_ORIGINS, EVENT_TRANSPORT, LOG_LEVEL, MAX_UPLOAD_SIZE, PORT, UPLOAD_DIR
from database import create_store
from errors import AuthError, DomainError, UpstreamUnavailable, ValidationError
from events import PollingTransport, create_transport
from notifications import NotificationService
from orders import OrderService
from schemas import CamelModel, MessageCreate, OrderCreate, OrderStatus, OrderUpdate, ReviewCreate, Role, UserRegister, UserUpdate
from store import Store
from users import UserService

logging.basicConfig(
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    level=LOG_LEVEL
)
logger = logging.getLogger(__name__)

router = APIRouter()


# ------------------ Helpers ------------------

def get_auth(request: Request) -> AuthService:
    return request.app.state.auth


def get_users(request: Request) -> UserService:
    return request.app.state.users


def get_orders(request: Request) -> OrderService:
    return request.app.state.orders


def get_chats(request: Request) -> ChatService:
    return request.app.state.chats


def get_notifications(request: Request) -> NotificationService:
    return request.app.state.notifications


def _ok(**extra):
    return {"ok": True, **extra}


# ------------------ Auth ------------------

class LoginBody(BaseModel):
    email: EmailStr
    password: str


@router.post("/auth/register")
def register(body: UserRegister, auth: AuthService = Depends(get_auth)):
    token, user = auth.register(body)
    return {"token": token, "user": public_user(user)}


@router.post("/auth/login")
def login(body: LoginBody, auth: AuthService = Depends(get_auth)):
    token, user = auth.login(body.email, body.password)
    return {"token": token, "user": public_user(user)}


@router.get("/me")
def me(user: dict = Depends(require_auth)):
    return public_user(user)


# ------------------ Users ------------------

class BanBody(BaseModel):
    action: Literal["ban", "unban"]
    reason: Optional[str] = None


class BlockBody(CamelModel):
    blocked_user_id: str


@router.get("/users")
def list_users(role: Optional[Role] = None, viewer: Optional[dict] = Depends(optional_auth),
               users: UserService = Depends(get_users)):
    return [profile_view(u, viewer) for u in users.list_users(role)]


@router.get("/users/{user_id}")
def get_user(user_id: str, viewer: Optional[dict] = Depends(optional_auth), users: UserService = Depends(get_users)):
    return profile_view(users.get_user(user_id), viewer)


@router.put("/users/{user_id}")
async def update_user(user_id: str, request: Request, user: dict = Depends(require_auth),
                      users: UserService = Depends(get_users)):
    users.check_can_edit(user_id, user)
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        data = {k: v for k, v in form.items() if not isinstance(v, FormFile)}
        avatar = form.get("avatar")
        if isinstance(avatar, FormFile):
            data["avatar"] = await run_in_threadpool(users.save_avatar, user_id, avatar.filename, await avatar.read(MAX_UPLOAD_SIZE + 1))
    else:
        try:
            data = await request.json()
        except ValueError:
            raise ValidationError("Request body must be JSON")
    if not isinstance(data, dict):
        raise ValidationError("Request body must be an object")
    try:
        body = UserUpdate.model_validate(data)
    except PydanticValidationError as e:
        raise RequestValidationError(e.errors())
    updated = await run_in_threadpool(users.update_user, user_id, body, user)
    return public_user(updated)


@router.put("/users/{user_id}/online")
def toggle_online(user_id: str, user: dict = Depends(require_auth), users: UserService = Depends(get_users)):
    return public_user(users.toggle_online(user_id, user))


@router.delete("/users/{user_id}")
def delete_user(user_id: str, admin: dict = Depends(require_admin), users: UserService = Depends(get_users)):
    users.delete_user(user_id)
    return _ok(message="User deleted")


@router.post("/users/{user_id}/ban")
def ban_user(user_id: str, body: BanBody, admin: dict = Depends(require_admin), users: UserService = Depends(get_users)):
    return public_user(users.ban_user(user_id, body.action, body.reason))


@router.post("/users/{user_id}/block")
def block_user(user_id: str, body: BlockBody, user: dict = Depends(require_auth), users: UserService = Depends(get_users)):
    users.block_user(user_id, body.blocked_user_id, user)
    return _ok(message="User blocked")


# ------------------ Uploads ------------------

@router.post("/upload")
async def upload_file(file: UploadFile = File(...), user: dict = Depends(require_auth),
                      users: UserService = Depends(get_users)):
    data = await file.read(MAX_UPLOAD_SIZE + 1)
    url = await run_in_threadpool(users.save_upload, "files", user["id"], file.filename, data)
    return {"name": file.filename, "url": url, "type": file.content_type, "size": len(data)}


# ------------------ Orders ------------------

@router.get("/orders")
def list_orders(status: Optional[OrderStatus] = None,
                customer_id: Optional[str] = Query(None, alias="customerId"),
                worker_id: Optional[str] = Query(None, alias="workerId"),
                orders: OrderService = Depends(get_orders)):
    return [orders.with_people(o) for o in orders.list_orders(status, customer_id, worker_id)]


@router.post("/orders")
def create_order(body: OrderCreate, user: dict = Depends(require_auth), orders: OrderService = Depends(get_orders)):
    return orders.create_order(user, body)


@router.get("/orders/{order_id}")
def get_order(order_id: str, orders: OrderService = Depends(get_orders)):
    return orders.with_people(orders.get_order(order_id))


@router.put("/orders/{order_id}")
def update_order(order_id: str, body: OrderUpdate, user: dict = Depends(require_auth),
                 orders: OrderService = Depends(get_orders)):
    return orders.update_order(order_id, body, user)


@router.delete("/orders/{order_id}")
def delete_order(order_id: str, user: dict = Depends(require_auth), orders: OrderService = Depends(get_orders)):
    orders.delete_order(order_id, user)
    return _ok(message="Order deleted")


@router.post("/orders/{order_id}/accept")
def accept_order(order_id: str, user: dict = Depends(require_auth), orders: OrderService = Depends(get_orders)):
    return orders.accept(order_id, user)


@router.post("/orders/{order_id}/start")
def start_order(order_id: str, user: dict = Depends(require_auth), orders: OrderService = Depends(get_orders)):
    return orders.start(order_id, user)


@router.post("/orders/{order_id}/complete")
def complete_order(order_id: str, user: dict = Depends(require_auth), orders: OrderService = Depends(get_orders)):
    return orders.complete(order_id, user)


@router.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, user: dict = Depends(require_auth), orders: OrderService = Depends(get_orders)):
    return orders.cancel(order_id, user)


@router.post("/orders/{order_id}/review")
def review_order(order_id: str, body: ReviewCreate, user: dict = Depends(require_auth),
                 orders: OrderService = Depends(get_orders)):
    return orders.submit_review(order_id, user, body)


# ------------------ Chats ------------------

class CreateChatBody(CamelModel):
    participant_ids: List[str] = Field(..., min_length=2, max_length=2)


@router.get("/chats")
def list_chats(user_id: Optional[str] = Query(None, alias="userId"), user: dict = Depends(require_auth),
               chats: ChatService = Depends(get_chats)):
    return chats.list_user_chats(user_id or user["id"], user)


@router.post("/chats")
def create_chat(body: CreateChatBody, user: dict = Depends(require_auth), chats: ChatService = Depends(get_chats)):
    a, b = body.participant_ids
    return chats.get_or_create_chat(a, b, user)


@router.put("/chats/{chat_id}/read")
def read_chat(chat_id: str, user: dict = Depends(require_auth), chats: ChatService = Depends(get_chats)):
    return _ok(updated=chats.mark_read(chat_id, user))


@router.delete("/chats/{chat_id}/messages")
def clear_chat(chat_id: str, user: dict = Depends(require_auth), chats: ChatService = Depends(get_chats)):
    return _ok(deleted=chats.clear_chat(chat_id, user))


# ------------------ Messages ------------------

class DeliverBody(CamelModel):
    chat_id: str


@router.get("/messages/{chat_id}")
def list_messages(chat_id: str, user: dict = Depends(require_auth), chats: ChatService = Depends(get_chats)):
    return chats.get_chat_messages(chat_id, user)


@router.post("/messages")
def send_message(body: MessageCreate, user: dict = Depends(require_auth), chats: ChatService = Depends(get_chats)):
    return chats.send_message(body, user)


@router.put("/messages/deliver")
def deliver_messages(body: DeliverBody, user: dict = Depends(require_auth), chats: ChatService = Depends(get_chats)):
    return _ok(updated=chats.mark_delivered(body.chat_id, user))


@router.delete("/messages/{message_id}")
def delete_message(message_id: str, user: dict = Depends(require_auth), chats: ChatService = Depends(get_chats)):
    chats.delete_message(message_id, user)
    return _ok(message="Message deleted")


# ------------------ Notifications ------------------

@router.get("/notifications")
def list_notifications(user_id: Optional[str] = Query(None, alias="userId"), user: dict = Depends(require_auth),
                       notifications: NotificationService = Depends(get_notifications)):
    return notifications.list_for_user(user_id or user["id"], user)


@router.get("/notifications/unread-count")
def unread_notifications(user: dict = Depends(require_auth),
                         notifications: NotificationService = Depends(get_notifications)):
    return {"count": notifications.unread_count(user["id"])}


@router.put("/notifications/read-all")
def read_all_notifications(user_id: Optional[str] = Query(None, alias="userId"), user: dict = Depends(require_auth),
                           notifications: NotificationService = Depends(get_notifications)):
    return _ok(updated=notifications.mark_all_read(user_id or user["id"], user))


@router.put("/notifications/{notification_id}/read")
def read_notification(notification_id: str, user: dict = Depends(require_auth),
                      notifications: NotificationService = Depends(get_notifications)):
    return notifications.mark_read(notification_id, user)


@router.delete("/notifications/{notification_id}")
def delete_notification(notification_id: str, user: dict = Depends(require_auth),
                        notifications: NotificationService = Depends(get_notifications)):
    notifications.delete(notification_id, user)
    return _ok(message="Notification deleted")


# ------------------ Reports ------------------

class ReportBody(CamelModel):
    reported_user_id: str
    reason: str = Field(..., min_length=1)
    description: Optional[str] = None


@router.post("/reports", status_code=201)
def create_report(body: ReportBody, user: dict = Depends(require_auth), users: UserService = Depends(get_users)):
    return users.create_report(user, body.reported_user_id, body.reason, body.description)


@router.get("/reports")
def list_reports(admin: dict = Depends(require_admin), users: UserService = Depends(get_users)):
    return users.list_reports()


# ------------------ Events (WebSocket) ------------------

@router.websocket("/ws/events")
async def events_ws(websocket: WebSocket, topic: str, token: str):
    state = websocket.app.state
    try:
        user = await run_in_threadpool(state.auth.authenticate, token)
    except AuthError:
        await websocket.close(code=4401)
        return
    if not await run_in_threadpool(state.chats.can_subscribe, topic, user):
        await websocket.close(code=4403)
        return

    await websocket.accept()
    stream = state.transport.subscribe(topic)
    await websocket.send_json({"type": "subscribed", "topic": topic})

    async def pump():
        async for event in stream:
            await websocket.send_json(jsonable_encoder(event))

    pump_task = asyncio.create_task(pump())
    try:
        while True:
            # client messages are ignored; receiving is how a disconnect is noticed
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        pump_task.cancel()
        await asyncio.gather(pump_task, return_exceptions=True)
        await stream.aclose()


# ------------------ Diagnostics ------------------

@router.get("/")
def read_root():
    return {"message": "IshTop API is running"}


@router.get("/test")
def test_database(request: Request):
    store = request.app.state.store
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "store": type(store).__name__,
        "transport": type(request.app.state.transport).__name__,
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": os.getenv("DATABASE_NAME") or "",
        "connection_status": "Not Connected",
        "collections": [],
    }
    if store.ping():
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
        try:
            response["collections"] = store.collection_names()[:20]
        except UpstreamUnavailable as e:
            response["database"] = f"⚠️ Connected but Error: {e.message}"
    return response


# ------------------ App ------------------

async def domain_error_handler(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": "Invalid request", "errors": jsonable_encoder(exc.errors())})


def create_app(store: Optional[Store] = None, transport=None, upload_dir: str = UPLOAD_DIR) -> FastAPI:
    store = store if store is not None else create_store()
    transport = transport if transport is not None else create_transport(EVENT_TRANSPORT, store)
    notifications = NotificationService(store, transport)
    orders = OrderService(store, notifications)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            await run_in_threadpool(orders.reconcile_settlements)
        except UpstreamUnavailable:
            logger.warning("Settlement reconciliation skipped, database unavailable")
        yield

    app = FastAPI(title="IshTop API", version="1.0.0", lifespan=lifespan)
    app.state.store = store
    app.state.transport = transport
    app.state.notifications = notifications
    app.state.orders = orders
    app.state.auth = AuthService(store)
    app.state.users = UserService(store, notifications, upload_dir)
    app.state.chats = ChatService(store, notifications, transport)
    if isinstance(transport, PollingTransport):
        transport.register_view("chats", app.state.chats.view)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(DomainError, domain_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.include_router(router)

    os.makedirs(upload_dir, exist_ok=True)
    app.mount("/uploads", StaticFiles(directory=upload_dir), name="uploads")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=PORT)
