"""Shared test fixtures: an in-memory fake resource server and client wiring.

The fake server is a FastAPI app mounted under ``/api`` and reached through
``httpx.ASGITransport``, so every component talks real HTTP (cookies
included) without a socket. ``server.requests`` records every call so tests
can assert that guarded operations made no network call at all.
"""
import asyncio
import itertools
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
import pytest_asyncio
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from chatsync.config import ApiSettings, ClientSettings, PaginationSettings
from chatsync.engine import SyncEngine
from chatsync.notices import NoticeBoard
from chatsync.session.gate import SessionGate
from chatsync.transport.channel import LiveChannel
from chatsync.transport.http import ApiClient

BASE_URL = "http://testserver/api"
PASSWORD = "password1"


class FakeResourceServer:
    """In-memory stand-in for the chat resource server."""

    OTP = "123456"
    RESET_TOKEN = "reset-token"

    def __init__(self) -> None:
        self.users: Dict[str, Dict[str, Any]] = {}
        self.sessions: Dict[str, str] = {}
        self.chats: Dict[str, Dict[str, Any]] = {}
        self.messages: Dict[str, Dict[str, Any]] = {}
        self.requests: List[Tuple[str, str]] = []
        self.failures: Dict[Tuple[str, str], int] = {}
        self.pending_emails: Dict[str, str] = {}
        self.echo_client_id = False
        self._ids = itertools.count(1)
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)
        self.app = self._build_app()

    # -- seeding -------------------------------------------------------------

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}{next(self._ids)}"

    def tick(self) -> str:
        self._clock += timedelta(minutes=1)
        return self._clock.isoformat()

    def add_user(self, name: str, user_name: str, verified: bool = True) -> str:
        user_id = self._next_id("u")
        self.users[user_id] = {
            "_id": user_id,
            "name": name,
            "userName": user_name,
            "email": f"{user_name}@example.com",
            "password": PASSWORD,
            "verified": verified,
            "avatar": None,
        }
        return user_id

    def add_chat(self, user_ids: List[str], group: bool = False, name: Optional[str] = None) -> str:
        chat_id = self._next_id("c")
        self.chats[chat_id] = {
            "_id": chat_id,
            "isGroupChat": group,
            "users": list(user_ids),
            "chatName": name,
            "groupAdmin": user_ids[0] if group else None,
            "updatedAt": self.tick(),
        }
        return chat_id

    def add_message(self, chat_id: str, sender_id: str, content: str) -> str:
        message_id = self._next_id("m")
        self.messages[message_id] = {
            "_id": message_id,
            "chat": chat_id,
            "sender": {"_id": sender_id, "name": self.users[sender_id]["name"]},
            "content": content,
            "attachments": [],
            "readBy": [],
            "createdAt": self.tick(),
            "__v": 0,
        }
        return message_id

    def seed(self) -> None:
        self.alice = self.add_user("Alice", "alice")
        self.bob = self.add_user("Bob", "bob")
        self.carol = self.add_user("Carol", "carol")
        self.dave = self.add_user("Dave", "dave", verified=False)

    def fail_next(self, method: str, path: str, status: int = 500) -> None:
        self.failures[(method, path)] = status

    def calls(self, method: Optional[str] = None) -> List[Tuple[str, str]]:
        return [r for r in self.requests if method is None or r[0] == method]

    # -- serialization -------------------------------------------------------

    def _public_user(self, user_id: str) -> Dict[str, Any]:
        user = self.users[user_id]
        return {k: user[k] for k in ("_id", "name", "userName", "email", "avatar")}

    def _chat_doc(self, chat: Dict[str, Any]) -> Dict[str, Any]:
        doc = dict(chat)
        doc["users"] = [self._public_user(u) for u in chat["users"] if u in self.users]
        if chat["groupAdmin"]:
            doc["groupAdmin"] = self._public_user(chat["groupAdmin"])
        return doc

    def _me(self, request: Request) -> Dict[str, Any]:
        user_id = self.sessions.get(request.cookies.get("session", ""))
        if user_id is None or user_id not in self.users:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return self.users[user_id]

    def _open_session(self, response: JSONResponse, user_id: str) -> None:
        token = uuid.uuid4().hex
        self.sessions[token] = user_id
        response.set_cookie("session", token, httponly=True)

    def _create_message(self, me: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
        chat_id = fields.get("chatId")
        if not chat_id:
            raise HTTPException(status_code=400, detail="chatId is required")
        if chat_id not in self.chats:
            raise HTTPException(status_code=404, detail="Chat not found")
        message_id = self.add_message(chat_id, me["_id"], fields.get("content", ""))
        doc = self.messages[message_id]
        doc["attachments"] = list(fields.get("attachments") or [])
        if self.echo_client_id and fields.get("clientId"):
            doc["clientId"] = fields["clientId"]
        self.chats[chat_id]["updatedAt"] = doc["createdAt"]
        return dict(doc)

    # -- app -----------------------------------------------------------------

    def _build_app(self) -> FastAPI:
        app = FastAPI()
        router = APIRouter(prefix="/api")
        server = self

        @app.middleware("http")
        async def record_requests(request: Request, call_next):
            path = request.url.path[len("/api"):]
            server.requests.append((request.method, path))
            status = server.failures.pop((request.method, path), None)
            if status is not None:
                return JSONResponse({"message": "Injected failure"}, status_code=status)
            return await call_next(request)

        # Auth ---------------------------------------------------------------

        @router.get("/auth/check")
        async def check(request: Request):
            return server._public_user(server._me(request)["_id"])

        @router.post("/auth/login")
        async def login(payload: Dict[str, Any]):
            identifier = payload.get("identifier")
            user = next(
                (u for u in server.users.values()
                 if identifier in (u["email"], u["userName"])),
                None,
            )
            if user is None or user["password"] != payload.get("password"):
                return JSONResponse({"message": "Invalid credentials"}, status_code=401)
            if not user["verified"]:
                return JSONResponse(
                    {"message": "Please verify your account", "needsVerification": True,
                     "userId": user["_id"]},
                    status_code=403,
                )
            response = JSONResponse(server._public_user(user["_id"]))
            server._open_session(response, user["_id"])
            return response

        @router.post("/auth/logout")
        async def logout(request: Request):
            server.sessions.pop(request.cookies.get("session", ""), None)
            response = JSONResponse({"message": "Logged out"})
            response.delete_cookie("session")
            return response

        @router.post("/auth/signup", status_code=201)
        async def signup(payload: Dict[str, Any]):
            if any(u["email"] == payload.get("email") for u in server.users.values()):
                raise HTTPException(status_code=409, detail="Email already registered")
            user_id = server.add_user(payload["name"], payload["userName"], verified=False)
            server.users[user_id]["email"] = payload["email"]
            return {"message": "OTP sent to your email", "userId": user_id}

        @router.post("/auth/verify-user")
        async def verify_user(payload: Dict[str, Any]):
            user = server.users.get(payload.get("userId"))
            if user is None:
                raise HTTPException(status_code=404, detail="User not found")
            if payload.get("otp") != server.OTP:
                raise HTTPException(status_code=400, detail="Invalid OTP")
            user["verified"] = True
            response = JSONResponse({"message": "Verified"})
            server._open_session(response, user["_id"])
            return response

        @router.post("/auth/resend-otp")
        async def resend_otp(payload: Dict[str, Any]):
            if payload.get("userId") not in server.users:
                raise HTTPException(status_code=404, detail="User not found")
            return {"message": "OTP resent"}

        @router.post("/auth/password/request-reset")
        async def request_reset(payload: Dict[str, Any]):
            return {"message": "If the email exists, a reset link was sent"}

        @router.post("/auth/password/reset")
        async def reset(payload: Dict[str, Any]):
            if payload.get("token") != server.RESET_TOKEN:
                raise HTTPException(status_code=400, detail="Invalid or expired token")
            return {"message": "Password updated"}

        # Chats --------------------------------------------------------------

        @router.get("/chat")
        async def list_chats(request: Request, page: int = 1, limit: int = 50):
            me = server._me(request)
            mine = [c for c in server.chats.values() if me["_id"] in c["users"]]
            mine.sort(key=lambda c: c["updatedAt"], reverse=True)
            window = mine[(page - 1) * limit: page * limit]
            return {"data": [server._chat_doc(c) for c in window]}

        @router.post("/chat/access")
        async def access_chat(request: Request, payload: Dict[str, Any]):
            me = server._me(request)
            peer = payload.get("userId")
            if not peer:
                raise HTTPException(status_code=400, detail="userId is required")
            if peer not in server.users:
                raise HTTPException(status_code=404, detail="User not found")
            for chat in server.chats.values():
                if not chat["isGroupChat"] and set(chat["users"]) == {me["_id"], peer}:
                    return server._chat_doc(chat)
            chat_id = server.add_chat([me["_id"], peer])
            return server._chat_doc(server.chats[chat_id])

        @router.post("/chat/group")
        async def create_group(request: Request, payload: Dict[str, Any]):
            me = server._me(request)
            members = list(payload.get("users") or [])
            if not payload.get("name") or not members:
                raise HTTPException(status_code=400, detail="Name and users are required")
            chat_id = server.add_chat([me["_id"], *members], group=True, name=payload["name"])
            return server._chat_doc(server.chats[chat_id])

        @router.put("/chat/rename")
        async def rename(request: Request, payload: Dict[str, Any]):
            server._me(request)
            chat = server.chats.get(payload.get("chatId"))
            if chat is None:
                raise HTTPException(status_code=404, detail="Chat not found")
            chat["chatName"] = payload.get("name")
            chat["updatedAt"] = server.tick()
            return server._chat_doc(chat)

        @router.delete("/chat/{chat_id}")
        async def delete_chat(request: Request, chat_id: str):
            server._me(request)
            if server.chats.pop(chat_id, None) is None:
                raise HTTPException(status_code=404, detail="Chat not found")
            for message_id in [k for k, m in server.messages.items() if m["chat"] == chat_id]:
                del server.messages[message_id]
            return {"message": "Chat deleted"}

        # Messages -----------------------------------------------------------

        @router.put("/message/read")
        async def mark_read(request: Request, payload: Dict[str, Any]):
            me = server._me(request)
            for message in server.messages.values():
                if payload.get("chatId") and message["chat"] != payload["chatId"]:
                    continue
                if payload.get("messageId") and message["_id"] != payload["messageId"]:
                    continue
                if me["_id"] not in message["readBy"]:
                    message["readBy"].append(me["_id"])
            return {"message": "Marked as read"}

        @router.get("/message/{chat_id}")
        async def list_messages(
            request: Request, chat_id: str, page: int = 1, limit: int = 50, sort: str = "asc"
        ):
            server._me(request)
            if chat_id not in server.chats:
                raise HTTPException(status_code=404, detail="Chat not found")
            history = [m for m in server.messages.values() if m["chat"] == chat_id]
            history.sort(key=lambda m: m["createdAt"], reverse=sort == "desc")
            window = history[(page - 1) * limit: page * limit]
            return {"data": [dict(m) for m in window], "page": page, "limit": limit}

        @router.post("/message", status_code=201)
        async def send_message(request: Request):
            me = server._me(request)
            if request.headers.get("content-type", "").startswith("multipart/"):
                form = await request.form()
                fields = {k: v for k, v in form.items() if isinstance(v, str)}
                fields["attachments"] = [
                    {"name": v.filename} for v in form.values() if not isinstance(v, str)
                ]
            else:
                fields = await request.json()
            return server._create_message(me, fields)

        @router.delete("/message/{message_id}")
        async def delete_message(request: Request, message_id: str):
            server._me(request)
            if server.messages.pop(message_id, None) is None:
                raise HTTPException(status_code=404, detail="Message not found")
            return {"message": "Message deleted"}

        # Users --------------------------------------------------------------

        @router.get("/user/get/user")
        async def get_user(userName: str):
            for user_id, user in server.users.items():
                if user["userName"] == userName:
                    return {"user": server._public_user(user_id)}
            raise HTTPException(status_code=404, detail="User not found")

        @router.post("/user/update-profile")
        async def update_profile(request: Request):
            me = server._me(request)
            form = await request.form()
            for key in ("name", "userName", "avatar"):
                value = form.get(key)
                if isinstance(value, str):
                    me[key] = value
            upload = form.get("avatar")
            if upload is not None and not isinstance(upload, str):
                me["avatar"] = f"/uploads/{upload.filename}"
            return {"user": server._public_user(me["_id"])}

        @router.post("/user/email/change/request")
        async def email_change_request(request: Request, payload: Dict[str, Any]):
            me = server._me(request)
            if any(u["email"] == payload.get("email") for u in server.users.values()):
                raise HTTPException(status_code=409, detail="Email in use")
            if payload.get("password") != me["password"]:
                raise HTTPException(status_code=401, detail="Wrong password")
            server.pending_emails[me["_id"]] = payload["email"]
            return {"message": "OTP sent"}

        @router.post("/user/email/change/confirm")
        async def email_change_confirm(request: Request, payload: Dict[str, Any]):
            me = server._me(request)
            if payload.get("otp") != server.OTP or me["_id"] not in server.pending_emails:
                raise HTTPException(status_code=400, detail="Bad OTP")
            me["email"] = server.pending_emails.pop(me["_id"])
            return {"message": "Email updated"}

        @router.post("/user/email/change/resend")
        async def email_change_resend(request: Request):
            me = server._me(request)
            if me["_id"] not in server.pending_emails:
                raise HTTPException(status_code=429, detail="Please try again later")
            return {"message": "OTP resent"}

        @router.post("/user/delete-account/request")
        async def delete_account_request(request: Request, payload: Dict[str, Any]):
            me = server._me(request)
            if payload.get("password") != me["password"]:
                raise HTTPException(status_code=401, detail="Incorrect password")
            return {"message": "OTP sent"}

        @router.post("/user/delete-account/confirm")
        async def delete_account_confirm(request: Request, payload: Dict[str, Any]):
            me = server._me(request)
            if payload.get("otp") != server.OTP:
                raise HTTPException(status_code=400, detail="Invalid OTP")
            del server.users[me["_id"]]
            response = JSONResponse({"message": "Account deleted"})
            response.delete_cookie("session")
            return response

        app.include_router(router)
        return app


class RecordingChannel(LiveChannel):
    """Live channel that records emits instead of sending them.

    Setting ``pause`` to an unset ``asyncio.Event`` makes the next emits
    suspend until the event is set, which lets tests interleave selections.
    """

    def __init__(self) -> None:
        super().__init__()
        self.emitted: List[Tuple[str, Any]] = []
        self.pause: Optional[asyncio.Event] = None
        self.closed = False

    async def emit(self, event: str, data: Any) -> None:
        self.emitted.append((event, data))
        pause = self.pause
        if pause is not None:
            await pause.wait()

    async def close(self) -> None:
        self.closed = True


class FailingChannel(LiveChannel):
    async def emit(self, event: str, data: Any) -> None:
        raise ConnectionError("socket closed")


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def server():
    fake = FakeResourceServer()
    fake.seed()
    return fake


@pytest.fixture
def api(server):
    return ApiClient(
        ApiSettings(base_url=BASE_URL),
        transport=httpx.ASGITransport(app=server.app),
    )


@pytest.fixture
def notices():
    return NoticeBoard()


@pytest.fixture
def pagination():
    return PaginationSettings()


@pytest.fixture
def gate(api, notices):
    return SessionGate(api, notices)


@pytest_asyncio.fixture
async def signed_in(gate, server):
    """Gate logged in as alice, with the login traffic cleared from the log."""
    result = await gate.log_in("alice", PASSWORD)
    assert result.success
    server.requests.clear()
    return gate


@pytest.fixture
def channel():
    return RecordingChannel()


@pytest_asyncio.fixture
async def engine(api, channel):
    settings = ClientSettings(api=ApiSettings(base_url=BASE_URL))
    sync_engine = SyncEngine(settings=settings, api=api, channel=channel)
    yield sync_engine
    await sync_engine.aclose()
