"""Authorization-code sign-in against the organisation's identity provider.

The handshake itself is delegated to MSAL: it builds the authorize URL with
PKCE and a nonce, redeems the code and validates the returned id token. This
module keeps the pending flow in a signed, short-lived cookie between the two
legs and turns the id token claims into an ``IdentityProfile``. Matching that
profile to a local user is done by ``auth.AuthService``.
"""

from __future__ import annotations

import logging
from typing import Any, Optional
from urllib.parse import urlencode

import msal
from fastapi import Response
from itsdangerous import BadSignature, URLSafeTimedSerializer
from pydantic import ValidationError

from config import Settings, get_settings
from schemas import IdentityProfile

logger = logging.getLogger(__name__)

FLOW_COOKIE = "expenses_sso_flow"
FLOW_MAX_AGE_SECS = 600
SCOPES = ["User.Read"]


class SignInError(RuntimeError):
    """The identity provider refused or failed the code redemption."""


def _flow_serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(get_settings().session_secret, salt="sso-flow")


def _build_app(settings: Settings) -> msal.ConfidentialClientApplication:
    return msal.ConfidentialClientApplication(
        settings.sso_client_id,
        authority=settings.sso_authority,
        client_credential=settings.sso_client_secret,
        timeout=settings.sso_timeout_secs,
    )


def safe_next_path(value: object) -> str:
    # only same-site relative paths
    if not isinstance(value, str) or not value.startswith("/") or value.startswith("//"):
        return "/"
    return value


def sign_flow(flow: dict[str, Any], next_path: str) -> str:
    return _flow_serializer().dumps({"flow": flow, "next": safe_next_path(next_path)})


def read_flow(token: Optional[str]) -> Optional[tuple[dict[str, Any], str]]:
    if not token:
        return None
    try:
        data = _flow_serializer().loads(token, max_age=FLOW_MAX_AGE_SECS)
    except BadSignature:
        return None
    if not isinstance(data, dict) or not isinstance(data.get("flow"), dict):
        return None
    return data["flow"], safe_next_path(data.get("next"))


def profile_from_claims(claims: dict[str, Any]) -> IdentityProfile:
    email = claims.get("preferred_username") or claims.get("email")
    try:
        return IdentityProfile(
            object_id=claims["oid"],
            email=email,
            display_name=claims.get("name"),
        )
    except (KeyError, ValidationError) as exc:
        raise SignInError("Identity provider returned an incomplete profile") from exc


class SSOClient:
    def __init__(self) -> None:
        self.settings = get_settings()
        self._app: Optional[msal.ConfidentialClientApplication] = None

    @property
    def configured(self) -> bool:
        return bool(self.settings.sso_client_id and self.settings.sso_client_secret)

    @property
    def app(self) -> msal.ConfidentialClientApplication:
        if self._app is None:
            self._app = _build_app(self.settings)
        return self._app

    def begin_sign_in(self) -> dict[str, Any]:
        """Start a flow. ``flow["auth_uri"]`` is where the browser goes next."""
        try:
            return self.app.initiate_auth_code_flow(
                SCOPES, redirect_uri=self.settings.sso_redirect_uri
            )
        except OSError as exc:
            raise SignInError("Identity provider could not be reached") from exc

    def complete_sign_in(
        self, flow: dict[str, Any], auth_response: dict[str, str]
    ) -> IdentityProfile:
        """Redeem the code from the redirect.

        Raises ``ValueError`` when the response does not belong to ``flow``
        (MSAL checks the state) and ``SignInError`` when the provider answers
        with an error or cannot be reached.
        """
        try:
            result = self.app.acquire_token_by_auth_code_flow(flow, auth_response)
        except OSError as exc:
            raise SignInError("Identity provider could not be reached") from exc
        if "error" in result:
            logger.warning(
                f"sso_error: error={result.get('error')} "
                f"description={result.get('error_description')}"
            )
            raise SignInError(result.get("error_description") or result["error"])
        return profile_from_claims(result.get("id_token_claims") or {})

    def logout_url(self) -> str:
        params = {
            "post_logout_redirect_uri": self.settings.sso_post_logout_redirect_uri
        }
        return f"{self.settings.sso_authority}/oauth2/v2.0/logout?{urlencode(params)}"


def remember_flow(response: Response, flow: dict[str, Any], next_path: str) -> None:
    response.set_cookie(
        FLOW_COOKIE,
        sign_flow(flow, next_path),
        max_age=FLOW_MAX_AGE_SECS,
        httponly=True,
        secure=get_settings().cookie_secure,
        samesite="lax",
    )


def clear_flow(response: Response) -> None:
    response.delete_cookie(FLOW_COOKIE)
