"""Identity actions.

Unlike the optimistic commands these are awaited end-to-end: the result is
only returned once the backend has answered.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from aura_sync.schemas.actions import ActionResult, LoginPayload, RegisterPayload
from aura_sync.schemas.entities import AppView, EntityKind
from aura_sync.services.merge import merge_bundle
from aura_sync.services.mutations.base import LOGIN_REQUIRED, MutationDispatcher
from aura_sync.services.normalizer import normalize_bundle
from aura_sync.services.snapshot import Session, Snapshot
from aura_sync.services.transport import ApiError, ApiUnauthorizedError

# Configure logger for this module
logger = logging.getLogger(__name__)

HTTP_FORBIDDEN = 403
HTTP_SERVER_ERROR = 500
AUTH_NETWORK_FAILED = "Network error. Please try again."


def _failure_message(exc: Exception) -> str:
    """Short user-facing text for a failed identity request."""
    if isinstance(exc, ApiError) and exc.status_code and exc.status_code < HTTP_SERVER_ERROR:
        return str(exc)
    return AUTH_NETWORK_FAILED


class AuthCommands(MutationDispatcher):
    """Registration, login, email verification and password change."""

    def _start_session(self, response: Any) -> bool:
        """Install a fresh snapshot for the user carried by an auth response."""
        if not isinstance(response, Mapping):
            return False
        token = response.get("token")
        if isinstance(token, str) and token:
            self.api.token = token

        bundle = normalize_bundle(response, default_kind=EntityKind.USERS, now=self.now())
        if not bundle.users:
            return False
        user = bundle.users[0]
        theme = self.snapshot.session.theme
        session = Session(user_id=user.id, current_view=AppView.FEED, theme=theme)
        self.store.install(merge_bundle(Snapshot.empty(session), bundle, now=self.now()))
        return True

    async def register(self, payload: RegisterPayload) -> ActionResult:
        username = payload.username.strip().lower()
        display_name = payload.display_name.strip()
        password = payload.password.strip()

        if len(username) < 3:
            return ActionResult.invalid("Username must contain at least 3 characters.")
        if len(display_name) < 2:
            return ActionResult.invalid("Display name must contain at least 2 characters.")
        if len(password) < 3:
            return ActionResult.invalid("Password must contain at least 3 characters.")
        if any(user.username.lower() == username for user in self.snapshot.users):
            return ActionResult.invalid("This username is already taken.")

        body: dict[str, Any] = {
            "username": username,
            "displayName": display_name,
            "password": password,
        }
        if payload.email:
            body["email"] = payload.email.strip()

        try:
            response = await self.api.register(body)
        except (ApiError, OSError) as exc:
            logger.warning("Registration failed: %s", exc)
            return ActionResult.failed(_failure_message(exc))

        if not self._start_session(response):
            return ActionResult.failed("Registration response did not include an account.")
        return ActionResult.confirmed("Registration complete. You are now logged in.")

    async def login(self, payload: LoginPayload) -> ActionResult:
        username = payload.username.strip().lower()
        password = payload.password.strip()
        if not username or not password:
            return ActionResult.invalid("Invalid username or password.")

        try:
            response = await self.api.login({"username": username, "password": password})
        except ApiUnauthorizedError:
            return ActionResult.invalid("Invalid username or password.")
        except ApiError as exc:
            if exc.status_code == HTTP_FORBIDDEN:
                return ActionResult.invalid("This account is banned.")
            logger.warning("Login failed: %s", exc)
            return ActionResult.failed(_failure_message(exc))
        except OSError as exc:
            logger.warning("Login failed: %s", exc)
            return ActionResult.failed(AUTH_NETWORK_FAILED)

        if not self._start_session(response):
            return ActionResult.failed("Login response did not include an account.")
        user = self.user
        if user is not None and user.banned:
            self.api.token = None
            self.store.reset(Session(theme=self.snapshot.session.theme))
            return ActionResult.invalid("This account is banned.")
        if user is not None and user.is_admin:
            return ActionResult.confirmed("Admin session started.")
        return ActionResult.confirmed("Successfully logged in.")

    async def resume(self) -> ActionResult:
        """Restore the session of a persisted token."""
        if not self.api.token:
            return ActionResult.invalid(LOGIN_REQUIRED)
        try:
            response = await self.api.me()
        except ApiUnauthorizedError as exc:
            self.api.token = None
            return ActionResult.invalid(str(exc))
        except (ApiError, OSError) as exc:
            logger.warning("Session resume failed: %s", exc)
            return ActionResult.failed(_failure_message(exc))
        if not self._start_session(response):
            return ActionResult.failed("Session response did not include an account.")
        return ActionResult.confirmed("Session restored.")

    async def verify_email(self, code: str) -> ActionResult:
        if self.user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        clean_code = code.strip()
        if not clean_code:
            return ActionResult.invalid("Verification code is required.")
        try:
            response = await self.api.verify_email(clean_code)
        except (ApiError, OSError) as exc:
            logger.warning("Email verification failed: %s", exc)
            return ActionResult.failed(_failure_message(exc))

        bundle = normalize_bundle(response, default_kind=EntityKind.USERS, now=self.now())
        self.store.update(lambda snap: merge_bundle(snap, bundle, now=self.now()))
        return ActionResult.confirmed("Email verified.")

    async def change_password(self, current_password: str, new_password: str) -> ActionResult:
        if self.user is None:
            return ActionResult.invalid(LOGIN_REQUIRED)
        current = current_password.strip()
        new = new_password.strip()
        if len(new) < 3:
            return ActionResult.invalid("Password must contain at least 3 characters.")
        if new == current:
            return ActionResult.invalid("New password must differ from the current one.")
        try:
            await self.api.change_password(current, new)
        except ApiUnauthorizedError:
            return ActionResult.invalid("Current password is incorrect.")
        except (ApiError, OSError) as exc:
            logger.warning("Password change failed: %s", exc)
            return ActionResult.failed(_failure_message(exc))
        return ActionResult.confirmed("Password changed.")


__all__ = ["AuthCommands"]
