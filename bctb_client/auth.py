"""Authentication for the telemetry query API."""

from __future__ import annotations

import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Mapping

from azure.core.exceptions import ClientAuthenticationError
from azure.identity import (
    AzureCliCredential,
    ClientSecretCredential,
    CredentialUnavailableError,
    DeviceCodeCredential,
)

from .errors import (
    AuthError,
    AuthFailedError,
    AzureCliNotInstalledError,
    AzureCliNotLoggedInError,
    MissingCredentialsError,
    TokenUnavailableError,
)
from .profiles import AuthFlow
from .telemetry import Events, get_default_telemetry
from .telemetry_utils import sanitize_error_message

if TYPE_CHECKING:
    from .profiles import ResolvedProfile
    from .telemetry import UsageTelemetry

logger = logging.getLogger(__name__)

APP_INSIGHTS_RESOURCE = "https://api.applicationinsights.io"
APP_INSIGHTS_SCOPE = f"{APP_INSIGHTS_RESOURCE}/.default"

# Well-known public client id of the Azure CLI, used for device code when none is configured
AZURE_CLI_CLIENT_ID = "04b07795-8ddb-461a-bbee-02f9e1bf7b46"

HOST_TOKEN_ENV = "BCTB_ACCESS_TOKEN"
HOST_TOKEN_LIFETIME = timedelta(hours=1)

# Tokens this close to expiry are replaced before use
REFRESH_MARGIN = timedelta(minutes=5)

REMEDIATION: dict[AuthFlow, str] = {
    AuthFlow.AZURE_CLI: (
        "Run 'az login' in a terminal, or install the Azure CLI from "
        "https://docs.microsoft.com/cli/azure/install-azure-cli"
    ),
    AuthFlow.DEVICE_CODE: (
        "Complete the sign-in at the device login page, and check tenantId and clientId "
        "in your profile."
    ),
    AuthFlow.CLIENT_CREDENTIALS: (
        "Set tenantId, clientId and clientSecret in your profile "
        "(for example clientSecret: \"${BCTB_CLIENT_SECRET}\")."
    ),
    AuthFlow.VSCODE_AUTH: (
        f"The host did not provide a token in {HOST_TOKEN_ENV}.\n"
        "\n"
        "This happens when:\n"
        "- The editor has not been configured to pass authentication tokens to this process\n"
        "- The process was started outside the editor\n"
        "\n"
        "Solutions:\n"
        "1. Start the process from the editor so it can inject a fresh token\n"
        f"2. Export {HOST_TOKEN_ENV} yourself before starting\n"
        "3. Switch the profile to authFlow \"azure_cli\" (simplest outside the editor)"
    ),
}


@dataclass
class AuthResult:
    """Uniform result of every authentication strategy."""
    authenticated: bool
    access_token: str | None = None
    user: str | None = None
    expires_on: datetime | None = None

    def __repr__(self) -> str:
        # Never show the token
        return (
            f"AuthResult(authenticated={self.authenticated}, user={self.user!r}, "
            f"expires_on={self.expires_on!r})"
        )

    def is_valid(self, now: datetime | None = None, margin: timedelta = timedelta(0)) -> bool:
        if not self.authenticated or not self.access_token:
            return False
        if self.expires_on is None:
            return True
        now = now or datetime.now(timezone.utc)
        return now < self.expires_on - margin


UNAUTHENTICATED = AuthResult(authenticated=False)


def _from_epoch(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


class AuthStrategy(ABC):
    """One way of obtaining a bearer token for a profile."""

    flow: AuthFlow

    @abstractmethod
    def acquire(self, profile: ResolvedProfile) -> AuthResult:
        """
        Obtain a fresh token.

        Raises:
            AuthError: With a remediation hint specific to this strategy
        """
        ...


class AzureCliStrategy(AuthStrategy):
    """
    Reuse the logged-in Azure CLI session through ``AzureCliCredential``.

    No interactive login; the user must have run ``az login`` beforehand.
    """

    flow = AuthFlow.AZURE_CLI

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    def _fail(self, cls: type[AuthError], message: str) -> AuthError:
        return cls(message, flow=self.flow.value, remediation=REMEDIATION[self.flow])

    def acquire(self, profile: ResolvedProfile) -> AuthResult:
        credential = AzureCliCredential(
            tenant_id=profile.tenant_id or None,
            process_timeout=self.timeout,
        )

        logger.info("Using Azure CLI authentication")
        try:
            token = credential.get_token(APP_INSIGHTS_SCOPE)
        except CredentialUnavailableError as e:
            lowered = str(e).lower()
            if "not found" in lowered or "not installed" in lowered:
                raise self._fail(AzureCliNotInstalledError, "Azure CLI is not installed or not in PATH") from e
            if "az login" in lowered or "not logged in" in lowered:
                raise self._fail(AzureCliNotLoggedInError, "Azure CLI is not logged in") from e
            raise self._fail(
                AuthFailedError, f"Azure CLI authentication failed: {sanitize_error_message(str(e))}"
            ) from e
        except ClientAuthenticationError as e:
            raise self._fail(
                AuthFailedError, f"Azure CLI authentication failed: {sanitize_error_message(str(e))}"
            ) from e

        if not token.token:
            raise self._fail(AuthFailedError, "No access token returned from Azure CLI")

        logger.info("Authenticated via Azure CLI")
        return AuthResult(
            authenticated=True,
            access_token=token.token,
            user="Azure CLI User",
            expires_on=_from_epoch(token.expires_on),
        )


DeviceCodePrompt = Callable[[str, str, datetime], None]


class DeviceCodeStrategy(AuthStrategy):
    """
    Interactive device code sign-in. Blocks until the user finishes in a browser.

    Falls back to the Azure CLI public client id when the profile has no clientId.
    """

    flow = AuthFlow.DEVICE_CODE

    def __init__(self, prompt_callback: DeviceCodePrompt | None = None, timeout: int | None = None):
        self.prompt_callback = prompt_callback
        self.timeout = timeout

    def _prompt(self, verification_uri: str, user_code: str, expires_on: datetime) -> None:
        if self.prompt_callback:
            self.prompt_callback(verification_uri, user_code, expires_on)
        else:
            logger.warning(f"To sign in, open {verification_uri} and enter the code {user_code}")

    def acquire(self, profile: ResolvedProfile) -> AuthResult:
        kwargs: dict[str, object] = {
            "tenant_id": profile.tenant_id or "organizations",
            "prompt_callback": self._prompt,
        }
        if self.timeout is not None:
            kwargs["timeout"] = self.timeout
        credential = DeviceCodeCredential(profile.client_id or AZURE_CLI_CLIENT_ID, **kwargs)

        try:
            record = credential.authenticate(scopes=[APP_INSIGHTS_SCOPE])
            token = credential.get_token(APP_INSIGHTS_SCOPE)
        except ClientAuthenticationError as e:
            raise AuthFailedError(
                f"Device code authentication failed: {sanitize_error_message(str(e))}",
                flow=self.flow.value,
                remediation=REMEDIATION[self.flow],
            ) from e

        logger.info(f"Authenticated as: {record.username}")
        return AuthResult(
            authenticated=True,
            access_token=token.token,
            user=record.username,
            expires_on=_from_epoch(token.expires_on),
        )


class ClientCredentialsStrategy(AuthStrategy):
    """Non-interactive service principal sign-in (client id + secret)."""

    flow = AuthFlow.CLIENT_CREDENTIALS

    def acquire(self, profile: ResolvedProfile) -> AuthResult:
        missing = [
            name
            for name, value in (
                ("tenantId", profile.tenant_id),
                ("clientId", profile.client_id),
                ("clientSecret", profile.client_secret),
            )
            if not value
        ]
        if missing:
            raise MissingCredentialsError(
                f"Client credentials flow requires {', '.join(missing)}",
                flow=self.flow.value,
                remediation=REMEDIATION[self.flow],
            )

        credential = ClientSecretCredential(
            tenant_id=profile.tenant_id,
            client_id=profile.client_id,
            client_secret=profile.client_secret,
        )
        try:
            token = credential.get_token(APP_INSIGHTS_SCOPE)
        except ClientAuthenticationError as e:
            raise AuthFailedError(
                f"Client credentials authentication failed: {sanitize_error_message(str(e))}",
                flow=self.flow.value,
                remediation=REMEDIATION[self.flow],
            ) from e

        logger.info("Authenticated with service principal")
        return AuthResult(
            authenticated=True,
            access_token=token.token,
            user=f"ServicePrincipal:{profile.client_id}",
            expires_on=_from_epoch(token.expires_on),
        )


class HostDelegatedStrategy(AuthStrategy):
    """
    Use a short-lived token injected by the hosting editor.

    The token is read from ``BCTB_ACCESS_TOKEN`` and assumed valid for one
    hour; AuthProvider reuses it until shortly before that.
    """

    flow = AuthFlow.VSCODE_AUTH

    def __init__(self, environ: Mapping[str, str] | None = None, env_var: str = HOST_TOKEN_ENV):
        self._environ = environ
        self.env_var = env_var

    def acquire(self, profile: ResolvedProfile) -> AuthResult:
        env = os.environ if self._environ is None else self._environ
        token = env.get(self.env_var)
        if not token:
            raise TokenUnavailableError(
                f"{self.env_var} environment variable not set.",
                flow=self.flow.value,
                remediation=REMEDIATION[self.flow],
            )

        logger.info("Authenticated via host-provided token")
        return AuthResult(
            authenticated=True,
            access_token=token,
            user="VS Code User",
            expires_on=datetime.now(timezone.utc) + HOST_TOKEN_LIFETIME,
        )


STRATEGIES: dict[AuthFlow, type[AuthStrategy]] = {
    AuthFlow.AZURE_CLI: AzureCliStrategy,
    AuthFlow.DEVICE_CODE: DeviceCodeStrategy,
    AuthFlow.CLIENT_CREDENTIALS: ClientCredentialsStrategy,
    AuthFlow.VSCODE_AUTH: HostDelegatedStrategy,
}


def create_strategy(flow: AuthFlow) -> AuthStrategy:
    return STRATEGIES[flow]()


class AuthProvider:
    """
    Token cache and strategy dispatch for one profile.

    Holds at most one token. ``get_access_token`` returns it until it is
    within ``refresh_margin`` of expiry, then asks the strategy again. Use
    one provider per profile; ``get_auth_provider`` does that for you.
    """

    def __init__(
        self,
        profile: ResolvedProfile,
        strategy: AuthStrategy | None = None,
        telemetry: UsageTelemetry | None = None,
        refresh_margin: timedelta = REFRESH_MARGIN,
    ):
        self.profile = profile
        self.strategy = strategy or create_strategy(profile.auth_flow)
        self.refresh_margin = refresh_margin
        self._telemetry = telemetry
        self._result: AuthResult | None = None
        self._lock = threading.Lock()

    @property
    def telemetry(self) -> UsageTelemetry:
        return self._telemetry if self._telemetry is not None else get_default_telemetry()

    def status(self) -> AuthResult:
        """Current state without triggering authentication."""
        result = self._result
        if result is None or not result.is_valid():
            return UNAUTHENTICATED
        return result

    def authenticate(self) -> AuthResult:
        """Force a new token from the strategy."""
        with self._lock:
            return self._authenticate()

    def get_access_token(self) -> str:
        """Return a valid token, refreshing it when close to expiry."""
        with self._lock:
            result = self._result
            if result is not None and result.is_valid(margin=self.refresh_margin):
                return result.access_token  # type: ignore[return-value]

            if result is not None:
                logger.info("Token expired or expiring soon, re-authenticating")
            return self._authenticate().access_token  # type: ignore[return-value]

    def clear_auth(self) -> None:
        with self._lock:
            self._result = None

    def _authenticate(self) -> AuthResult:
        flow = self.strategy.flow.value
        self.telemetry.track_event(Events.AUTH_ATTEMPT, {"authFlow": flow})
        try:
            result = self.strategy.acquire(self.profile)
        except AuthError as e:
            self._result = None
            self.telemetry.track_event(Events.AUTH_FAILED, {"authFlow": flow, "errorType": type(e).__name__})
            raise
        except Exception as e:
            self._result = None
            self.telemetry.track_event(Events.AUTH_FAILED, {"authFlow": flow, "errorType": type(e).__name__})
            raise AuthFailedError(
                f"Authentication failed: {sanitize_error_message(str(e))}",
                flow=flow,
                remediation=REMEDIATION.get(self.strategy.flow),
            ) from e

        if not result.authenticated or not result.access_token:
            self._result = None
            raise AuthFailedError("Failed to obtain access token", flow=flow)

        self._result = result
        self.telemetry.track_event(Events.AUTH_COMPLETED, {"authFlow": flow})
        return result


# One provider per profile identity; never share tokens across profiles
_providers: dict[str, AuthProvider] = {}
_providers_lock = threading.Lock()


def get_auth_provider(profile: ResolvedProfile) -> AuthProvider:
    """Get or create the provider for a profile."""
    key = profile.identity
    with _providers_lock:
        provider = _providers.get(key)
        if provider is None or provider.profile != profile:
            provider = AuthProvider(profile)
            _providers[key] = provider
        return provider


def get_access_token(profile: ResolvedProfile) -> str:
    """Get a bearer token for the given profile."""
    return get_auth_provider(profile).get_access_token()


def clear_auth_providers() -> None:
    """Drop all cached providers (and their tokens)."""
    with _providers_lock:
        _providers.clear()
