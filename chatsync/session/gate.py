"""Session gate: authentication state and the guard every component uses.

SessionGate is the only writer of the authentication flag. Other components
never hold a reference to the gate itself; they receive ``gate.reader``, a
callable returning an immutable ``Session`` snapshot, and call ``guard()``
on it before any mutating or chat-scoped operation.

Every remote action (log in, sign up, verify, log out) is followed by
``check_auth()`` so the local flag is always re-derived from the server
rather than assumed from the action's outcome.
"""
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..errors import InvalidTarget, OperationResult, SyncError, Unauthenticated
from ..notices import NoticeBoard
from ..transport.http import ApiClient

logger = logging.getLogger(__name__)

SessionListener = Callable[[], Union[None, Awaitable[None]]]


class Session(BaseModel):
    """Immutable snapshot of the authentication state.

    Attributes:
        authenticated: Whether the last check confirmed a session.
        userId: Id of the authenticated user.
        user: Raw user profile returned by ``GET /auth/check``.
    """
    model_config = ConfigDict(frozen=True)

    authenticated: bool = Field(default=False, description="Session confirmed")
    userId: Optional[str] = Field(default=None, description="Authenticated user id")
    user: Optional[Dict[str, Any]] = Field(default=None, description="User profile")


UNAUTHENTICATED = Session()

SessionReader = Callable[[], Session]


def guard(reader: SessionReader) -> Session:
    """Synchronous guard: return the session or raise ``Unauthenticated``.

    Never touches the network.
    """
    session = reader()
    if not session.authenticated:
        raise Unauthenticated()
    return session


def _user_id_of(user: Any) -> Optional[str]:
    if not isinstance(user, dict):
        return None
    for key in ("_id", "id", "userId"):
        if user.get(key):
            return str(user[key])
    return None


class SessionGate:
    """Tracks authentication state against the auth endpoints.

    Args:
        api: Shared REST client.
        notices: Board receiving user-facing status notices.
    """

    def __init__(self, api: ApiClient, notices: Optional[NoticeBoard] = None) -> None:
        self._api = api
        self._notices = notices or NoticeBoard()
        self._session: Session = UNAUTHENTICATED
        self._teardown_listeners: List[SessionListener] = []
        self._authenticated_listeners: List[SessionListener] = []

        # Set by sign-up, or by a log-in rejected for a pending verification
        self.verification_pending_id: Optional[str] = None
        self.is_checking_auth = True

    # =========================================================================
    # State
    # =========================================================================

    @property
    def session(self) -> Session:
        return self._session

    @property
    def authenticated(self) -> bool:
        return self._session.authenticated

    @property
    def reader(self) -> SessionReader:
        """Read-only accessor handed to other components."""
        return lambda: self._session

    def require_auth(self) -> Session:
        return guard(self.reader)

    def add_teardown_listener(self, listener: SessionListener) -> None:
        """Register a callback run whenever an authenticated session is lost."""
        self._teardown_listeners.append(listener)

    def add_authenticated_listener(self, listener: SessionListener) -> None:
        """Register a callback run whenever a session is established."""
        self._authenticated_listeners.append(listener)

    async def _run_listeners(self, kind: str, listeners: List[SessionListener]) -> None:
        for listener in list(listeners):
            try:
                result = listener()
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("[Session] %s listener failed", kind)

    async def _set_session(self, session: Session) -> None:
        was_authenticated = self._session.authenticated
        self._session = session
        if was_authenticated and not session.authenticated:
            logger.info("[Session] Session lost, running %d teardown listener(s)",
                        len(self._teardown_listeners))
            await self._run_listeners("Teardown", self._teardown_listeners)
        elif session.authenticated and not was_authenticated:
            logger.info("[Session] Authenticated as %s", session.userId)
            await self._run_listeners("Authenticated", self._authenticated_listeners)

    # =========================================================================
    # Session check
    # =========================================================================

    async def check_auth(self) -> Session:
        """Confirm or refresh the session with one ``GET /auth/check``.

        Never raises: on any failure the session becomes unauthenticated.
        """
        try:
            user = await self._api.get("/auth/check")
            user_id = _user_id_of(user)
            if user_id is None:
                raise Unauthenticated("Session check returned no user")
            session = Session(authenticated=True, userId=user_id, user=user)
        except SyncError as e:
            logger.debug("[Session] check_auth failed: %s", e.message)
            session = UNAUTHENTICATED
        finally:
            self.is_checking_auth = False
        await self._set_session(session)
        return session

    # =========================================================================
    # Remote actions
    # =========================================================================

    async def log_in(self, identifier: str, password: str) -> OperationResult:
        try:
            await self._api.post("/auth/login", {"identifier": identifier, "password": password})
        except SyncError as e:
            payload = e.payload if isinstance(e.payload, dict) else {}
            if payload.get("needsVerification") and payload.get("userId"):
                self.verification_pending_id = str(payload["userId"])
                self._notices.error(e.message)
                return OperationResult.fail(e, needsVerification=True)
            self._notices.error(e.message or "Login failed")
            return OperationResult.fail(e)

        session = await self.check_auth()
        if not session.authenticated:
            err = Unauthenticated("Login did not establish a session")
            self._notices.error(err.message)
            return OperationResult.fail(err)
        self._notices.success("Logged in successfully")
        return OperationResult.ok(session.user)

    async def sign_up(self, payload: Dict[str, Any]) -> OperationResult:
        try:
            response = await self._api.post("/auth/signup", payload)
        except SyncError as e:
            self._notices.error(e.message or "Signup failed")
            return OperationResult.fail(e)

        response = response if isinstance(response, dict) else {}
        if response.get("userId"):
            self.verification_pending_id = str(response["userId"])
        if response.get("message"):
            self._notices.success(response["message"])
        await self.check_auth()
        return OperationResult.ok(response, message=response.get("message"))

    async def verify_user(self, otp: str) -> OperationResult:
        try:
            if not self.verification_pending_id:
                raise InvalidTarget("Invalid user. Please signup again.")
            await self._api.post(
                "/auth/verify-user",
                {"userId": self.verification_pending_id, "otp": otp},
            )
        except SyncError as e:
            self._notices.error(e.message or "Invalid OTP")
            return OperationResult.fail(e)

        self.verification_pending_id = None
        self._notices.success("Account verified successfully")
        session = await self.check_auth()
        return OperationResult.ok(session.user)

    async def resend_otp(self) -> OperationResult:
        try:
            if not self.verification_pending_id:
                raise InvalidTarget("No verification pending")
            await self._api.post("/auth/resend-otp", {"userId": self.verification_pending_id})
        except SyncError as e:
            self._notices.error(e.message or "Failed to resend OTP")
            return OperationResult.fail(e)
        self._notices.success("OTP resent successfully")
        return OperationResult.ok()

    async def request_password_reset(self, email: str) -> OperationResult:
        try:
            response = await self._api.post("/auth/password/request-reset", {"email": email})
        except SyncError as e:
            self._notices.error(e.message)
            return OperationResult.fail(e)
        return OperationResult.ok(response)

    async def reset_password(self, token: str, password: str) -> OperationResult:
        try:
            response = await self._api.post(
                "/auth/password/reset", {"token": token, "password": password}
            )
        except SyncError as e:
            self._notices.error(e.message)
            return OperationResult.fail(e)
        self._notices.success("Password updated")
        return OperationResult.ok(response)

    async def log_out(self) -> OperationResult:
        """Log out remotely, then re-derive state with ``check_auth()``.

        Teardown listeners fire from ``check_auth()`` once the server no
        longer recognises the session.
        """
        failure: Optional[SyncError] = None
        try:
            await self._api.post("/auth/logout")
        except SyncError as e:
            logger.warning("[Session] Logout request failed: %s", e.message)
            failure = e

        session = await self.check_auth()
        if failure is not None:
            self._notices.error(failure.message)
            return OperationResult.fail(failure)
        if session.authenticated:
            err = SyncError("Server still reports an active session")
            return OperationResult.fail(err)
        return OperationResult.ok()
