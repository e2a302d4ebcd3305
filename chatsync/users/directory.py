"""User directory: user lookup and account self-service.

Endpoints:
    GET  /user/get/user                     - Find a user by user name (public)
    POST /user/update-profile               - Update name / user name / avatar
    POST /user/email/change/request         - Send OTP to a new email
    POST /user/email/change/confirm         - Confirm the email change
    POST /user/email/change/resend          - Resend the email-change OTP
    POST /user/delete-account/request       - Send account deletion OTP
    POST /user/delete-account/confirm       - Delete the account

A confirmed account deletion ends the session: the injected
``on_account_deleted`` callback (normally ``SessionGate.log_out``) runs and
the usual teardown follows.
"""
import asyncio
import inspect
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from ..errors import InvalidTarget, OperationResult, SyncError, Unauthenticated
from ..notices import NoticeBoard
from ..session.gate import SessionReader, guard
from ..transport.http import ApiClient

logger = logging.getLogger(__name__)

AccountDeletedHook = Callable[[], Union[Any, Awaitable[Any]]]

# Status-specific wording for the email change request
_EMAIL_CHANGE_MESSAGES = {
    409: "This email is already in use",
    401: "Incorrect password",
}


class UserDirectory:
    """User lookup and profile/account operations.

    Args:
        api: Shared REST client.
        session: Read-only session accessor.
        notices: Board receiving user-facing notices.
        on_account_deleted: Called after the server confirms deletion.
    """

    def __init__(
        self,
        api: ApiClient,
        session: SessionReader,
        notices: Optional[NoticeBoard] = None,
        on_account_deleted: Optional[AccountDeletedHook] = None,
    ) -> None:
        self._api = api
        self._session = session
        self._notices = notices or NoticeBoard()
        self._on_account_deleted = on_account_deleted
        self.user_found: Optional[Dict[str, Any]] = None

    def _fail(self, error: SyncError, fallback: str) -> OperationResult:
        logger.warning("[Users] %s: %s", fallback, error.message)
        if isinstance(error, Unauthenticated):
            self._notices.error("Login required")
        else:
            self._notices.error(error.message if error.status_code else fallback)
        return OperationResult.fail(error)

    async def find_user(self, user_name: str) -> OperationResult:
        """Look up another user by user name. Does not require a session."""
        value = (user_name or "").strip()
        self.user_found = None
        if not value:
            return OperationResult.fail(InvalidTarget("Missing user name"))
        try:
            payload = await self._api.get("/user/get/user", params={"userName": value})
        except SyncError as e:
            return self._fail(e, "Failed to search user")

        user = payload.get("user", payload) if isinstance(payload, dict) else None
        self.user_found = user or None
        return OperationResult.ok(self.user_found)

    async def update_profile(
        self,
        name: Optional[str] = None,
        user_name: Optional[str] = None,
        avatar: Optional[str] = None,
        avatar_file: Optional[Path] = None,
    ) -> OperationResult:
        """Update the profile; an avatar file takes precedence over an avatar URL."""
        fields: Dict[str, Any] = {}
        if name is not None:
            fields["name"] = name
        if user_name is not None:
            fields["userName"] = user_name
        try:
            guard(self._session)
            if avatar_file is not None:
                path = Path(avatar_file)
                try:
                    content = await asyncio.to_thread(path.read_bytes)
                except OSError as e:
                    raise InvalidTarget(f"Cannot read avatar file {path.name}") from e
                payload = await self._api.post(
                    "/user/update-profile",
                    data=fields,
                    files={"avatar": (path.name, content)},
                )
            else:
                if avatar:
                    fields["avatar"] = avatar
                payload = await self._api.post("/user/update-profile", data=fields)
        except SyncError as e:
            return self._fail(e, "Failed to update profile")

        self._notices.success("Profile updated successfully")
        return OperationResult.ok(payload)

    async def request_email_change(self, email: str, password: str) -> OperationResult:
        try:
            guard(self._session)
            await self._api.post(
                "/user/email/change/request", {"email": email, "password": password}
            )
        except SyncError as e:
            if e.status_code in _EMAIL_CHANGE_MESSAGES:
                e.message = _EMAIL_CHANGE_MESSAGES[e.status_code]
            return self._fail(e, "Failed to request email change")

        self._notices.success("OTP sent to your new email")
        return OperationResult.ok()

    async def confirm_email_change(self, otp: str) -> OperationResult:
        try:
            guard(self._session)
            await self._api.post("/user/email/change/confirm", {"otp": otp})
        except SyncError as e:
            if e.status_code == 400:
                e.message = "Invalid or expired OTP"
            return self._fail(e, "Failed to verify email")

        self._notices.success("Email updated successfully")
        return OperationResult.ok()

    async def resend_email_otp(self) -> OperationResult:
        try:
            guard(self._session)
            await self._api.post("/user/email/change/resend")
        except SyncError as e:
            return self._fail(e, "Please try again later")

        self._notices.success("OTP resent to your email")
        return OperationResult.ok()

    async def request_account_deletion(self, password: str) -> OperationResult:
        try:
            guard(self._session)
            await self._api.post("/user/delete-account/request", {"password": password})
        except SyncError as e:
            return self._fail(e, "Failed to request account deletion")

        self._notices.success("OTP sent to your email")
        return OperationResult.ok()

    async def confirm_account_deletion(self, otp: str) -> OperationResult:
        try:
            guard(self._session)
            await self._api.post("/user/delete-account/confirm", {"otp": otp})
        except SyncError as e:
            return self._fail(e, "Failed to delete account")

        self._notices.success("Account deleted successfully")
        logger.info("[Users] Account deleted, ending session")
        if self._on_account_deleted is not None:
            result = self._on_account_deleted()
            if inspect.isawaitable(result):
                await result
        return OperationResult.ok()
