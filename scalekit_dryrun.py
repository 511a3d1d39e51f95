#!/usr/bin/env python3
"""Dry-run a Scalekit authentication setup end-to-end from the terminal.

The tool collects an environment URL, client ID, auth mode and (for Modular
SSO) an organization ID, checks that the machine can host a loopback OAuth
flow, then starts a short-lived listener on ``http://localhost:12456`` and
opens the browser on the environment's authorization endpoint. The first
callback that reaches ``/auth/callback`` is exchanged for tokens, and the
profile, ID token claims and token summary are printed. Nothing is written to
disk.

Run it without arguments for the interactive walkthrough (values are read from
``SCALEKIT_ENVIRONMENT_URL``/``SCALEKIT_CLIENT_ID``, the ``.env`` file, or
prompted for), or pass ``<mode> <environment_url> <client_id> [organization_id]``
to run without prompts.
"""
from __future__ import annotations

import argparse
import base64
import enum
import getpass
import hashlib
import json
import os
import re
import secrets
import socket
import sys
import textwrap
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Sequence, Tuple
from urllib import error as urlerror
from urllib import parse as urlparse
from urllib import request as urlrequest
import webbrowser

from dotenv import dotenv_values
from flask import Flask, request
from werkzeug.serving import BaseWSGIServer, WSGIRequestHandler, make_server

DEFAULT_PORT = 12456
LISTEN_HOST = "127.0.0.1"
CALLBACK_PATH = "/auth/callback"
AUTHORIZE_PATH = "/oauth/authorize"
TOKEN_PATH = "/oauth/token"
DEFAULT_SCOPE = "openid profile email offline_access"
DEFAULT_ENV_FILE = ".env"
DEFAULT_CALLBACK_TIMEOUT = 120.0
DEFAULT_TOKEN_TIMEOUT = 30.0
MIN_PYTHON = (3, 9)
CLIENT_ID_PREFIX = "skc_"
ENV_URL_VAR = "SCALEKIT_ENVIRONMENT_URL"
CLIENT_ID_VAR = "SCALEKIT_CLIENT_ID"
CLIENT_SECRET_VAR = "SCALEKIT_CLIENT_SECRET"
DOCS_URL = "https://docs.scalekit.com/dev-kit/tools/scalekit-dryrun/"
URL_PATTERN = re.compile(r"^https?://")
POLL_INTERVAL = 0.5
DRAIN_SECONDS = 0.3

STAGE_INPUT = "Input Collector"
STAGE_PREFLIGHT = "Preflight Checker"
STAGE_DRIVER = "Loopback Auth Driver"

CALLBACK_PAGE_HTML = textwrap.dedent(
    """
    <!doctype html>
    <html lang="en">
    <head><meta charset="utf-8" /><title>Scalekit dry-run</title></head>
    <body style="font-family: sans-serif; padding: 2rem;">
      <h1>Callback received</h1>
      <p>You can close this window and return to the terminal to see the result.</p>
    </body>
    </html>
    """
).strip()

PROVIDER_ERROR_HINTS: Dict[str, str] = {
    "redirect_uri_mismatch": (
        "Register {redirect_uri} exactly as shown under "
        "Dashboard > Authentication > Redirect URIs."
    ),
    "invalid_redirect_uri": (
        "Register {redirect_uri} exactly as shown under "
        "Dashboard > Authentication > Redirect URIs."
    ),
    "invalid_client": (
        "Check that the client ID belongs to the same environment as the "
        "environment URL (Dashboard > Developers > API Credentials)."
    ),
    "unauthorized_client": (
        "Enable the authorization code grant for this client in the dashboard."
    ),
    "access_denied": (
        "The sign-in was declined. Re-run and approve the request, or check "
        "that the user is allowed to sign in to this application."
    ),
    "organization_not_found": (
        "Verify the organization ID exists in this environment and has an "
        "SSO connection configured."
    ),
    "invalid_organization": (
        "Verify the organization ID exists in this environment and has an "
        "SSO connection configured."
    ),
    "connection_not_found": (
        "Enable and finish configuring an SSO connection for the organization "
        "in the dashboard."
    ),
    "invalid_grant": (
        "The authorization code was rejected. Codes are single-use and "
        "short-lived; re-run the dry-run and finish the sign-in promptly."
    ),
    "invalid_scope": (
        f"Request only scopes enabled for this client (default: {DEFAULT_SCOPE})."
    ),
    "invalid_request": (
        "The provider rejected the request parameters. Confirm the environment "
        "URL and client ID, then re-run."
    ),
    "state_mismatch": (
        "The callback did not belong to this run. Close stale sign-in tabs and re-run."
    ),
    "missing_code": (
        "The provider redirected without an authorization code. Check that "
        "{redirect_uri} is registered, then re-run."
    ),
    "invalid_token_response": (
        "The token endpoint answered without usable tokens. Confirm the "
        "environment URL points at your Scalekit environment."
    ),
    "server_error": "The identity provider had a transient failure. Wait a moment and re-run.",
    "temporarily_unavailable": (
        "The identity provider had a transient failure. Wait a moment and re-run."
    ),
}

COMMON_ISSUES = (
    "Redirect URI mismatch - verify {redirect_uri} is added in the Dashboard",
    "Invalid client ID - check you're using the correct client from the same environment",
    "Port conflict - ensure port {port} is available",
    "Organization not found (SSO mode) - verify org ID exists and SSO is configured",
)


def _redirect_uri(port: int) -> str:
    return f"http://localhost:{port}{CALLBACK_PATH}"


def _validate_environment_url(url: str | None) -> None:
    if not URL_PATTERN.match(url or ""):
        raise ValidationError(
            f"Invalid environment URL {url!r}. Must start with http:// or https://",
            remediation=(
                "Copy the environment URL from Dashboard > Developers > API Credentials, "
                "e.g. https://your-env.scalekit.dev"
            ),
        )


def remediation_for(error_code: str, redirect_uri: str) -> str:
    hint = PROVIDER_ERROR_HINTS.get(error_code)
    if hint is None:
        return f"See {DOCS_URL} for troubleshooting."
    return hint.format(redirect_uri=redirect_uri)


class DryrunError(RuntimeError):
    """A failure that ends the run with a user-facing report."""

    label = "DryrunError"
    stage = "Dry-run"
    default_remediation = f"See {DOCS_URL} for troubleshooting."

    def __init__(
        self,
        message: str,
        remediation: str | None = None,
        stage: str | None = None,
    ) -> None:
        super().__init__(message)
        self.remediation = remediation or self.default_remediation
        if stage:
            self.stage = stage


class ValidationError(DryrunError):
    label = "ValidationError"
    stage = STAGE_INPUT
    default_remediation = (
        f"Fix the value and re-run. Credentials can be exported as {ENV_URL_VAR} "
        f"and {CLIENT_ID_VAR} or stored in {DEFAULT_ENV_FILE}."
    )


class PreflightError(DryrunError):
    label = "PreflightError"
    stage = STAGE_PREFLIGHT


class ProviderError(DryrunError):
    label = "ProviderError"
    stage = STAGE_DRIVER

    def __init__(
        self,
        error: str,
        description: str | None = None,
        redirect_uri: str | None = None,
    ) -> None:
        self.error = error
        self.description = description
        super().__init__(
            error,
            remediation=remediation_for(error, redirect_uri or _redirect_uri(DEFAULT_PORT)),
        )


class NetworkError(DryrunError):
    label = "NetworkError"
    stage = STAGE_DRIVER
    default_remediation = (
        "Check your network connection and that the environment URL is reachable "
        "from this machine, then re-run."
    )


class CallbackTimeout(DryrunError):
    label = "Timeout"
    stage = STAGE_DRIVER
    default_remediation = (
        "Finish the sign-in in the browser before the wait expires, or raise "
        "--callback-timeout. The listener binds 127.0.0.1, so localhost must "
        "resolve to IPv4 on this machine; a browser that only tries ::1 never "
        "reaches it."
    )


class UserCancelled(DryrunError):
    label = "UserCancelled"
    default_remediation = "Re-run the dry-run when you are ready."


class Console:
    """Terminal output with optional ANSI color markers."""

    _CODES = {
        "red": "\033[0;31m",
        "green": "\033[0;32m",
        "yellow": "\033[1;33m",
        "blue": "\033[0;34m",
    }
    _RESET = "\033[0m"

    def __init__(self, stream: Any = None, err_stream: Any = None, color: bool | None = None) -> None:
        self.stream = stream or sys.stdout
        self.err_stream = err_stream or sys.stderr
        if color is None:
            isatty = getattr(self.stream, "isatty", None)
            color = bool(isatty and isatty()) and "NO_COLOR" not in os.environ
        self.color = color

    def _paint(self, text: str, color: str) -> str:
        if not self.color:
            return text
        return f"{self._CODES[color]}{text}{self._RESET}"

    def print(self, text: str = "") -> None:
        print(text, file=self.stream)

    def print_err(self, text: str = "") -> None:
        print(text, file=self.err_stream)

    def rule(self) -> None:
        self.print("━" * 78)

    def info(self, message: str) -> None:
        self.print(f"{self._paint('ℹ', 'blue')} {message}")

    def success(self, message: str) -> None:
        self.print(f"{self._paint('✓', 'green')} {message}")

    def warning(self, message: str) -> None:
        self.print_err(f"{self._paint('⚠', 'yellow')} {message}")

    def error(self, message: str) -> None:
        self.print_err(f"{self._paint('✗ Error:', 'red')} {message}")


class AuthMode(str, enum.Enum):
    FULL_STACK_AUTH = "fsa"
    MODULAR_SSO = "sso"

    @property
    def label(self) -> str:
        if self is AuthMode.MODULAR_SSO:
            return "Modular SSO"
        return "Full Stack Auth (FSA)"

    @classmethod
    def parse(cls, value: str) -> "AuthMode":
        normalized = value.strip().lower().replace("_", "-")
        aliases = {
            "1": cls.FULL_STACK_AUTH,
            "fsa": cls.FULL_STACK_AUTH,
            "full-stack-auth": cls.FULL_STACK_AUTH,
            "2": cls.MODULAR_SSO,
            "sso": cls.MODULAR_SSO,
            "modular-sso": cls.MODULAR_SSO,
        }
        try:
            return aliases[normalized]
        except KeyError:
            raise ValidationError(
                f"Unknown authentication mode {value!r}.",
                remediation="Use 'fsa' for Full Stack Auth or 'sso' for Modular SSO.",
            ) from None


@dataclass(frozen=True)
class RunConfig:
    environment_url: str
    client_id: str
    mode: AuthMode = AuthMode.FULL_STACK_AUTH
    organization_id: str | None = None
    client_secret: str | None = field(default=None, repr=False)
    port: int = DEFAULT_PORT
    scope: str = DEFAULT_SCOPE
    callback_timeout: float = DEFAULT_CALLBACK_TIMEOUT
    timeout: float = DEFAULT_TOKEN_TIMEOUT

    def __post_init__(self) -> None:
        if not isinstance(self.mode, AuthMode):
            object.__setattr__(self, "mode", AuthMode.parse(str(self.mode)))
        if self.organization_id == "":
            object.__setattr__(self, "organization_id", None)
        _validate_environment_url(self.environment_url)
        if not self.client_id:
            raise ValidationError("client id is required")
        if self.mode is AuthMode.MODULAR_SSO and not self.organization_id:
            raise ValidationError(
                "organization id required for sso mode",
                remediation=(
                    "Pass the organization ID (org_...) of an organization with an SSO "
                    "connection, found under Dashboard > Organizations."
                ),
            )
        if self.mode is AuthMode.FULL_STACK_AUTH and self.organization_id:
            raise ValidationError(
                "organization id is only used in sso mode",
                remediation="Drop the organization ID, or select Modular SSO (sso).",
            )
        if not 0 < self.port < 65536:
            raise ValidationError(f"Invalid port {self.port}.")
        if self.callback_timeout <= 0 or self.timeout <= 0:
            raise ValidationError("Timeouts must be positive numbers of seconds.")

    @property
    def base_url(self) -> str:
        return self.environment_url.rstrip("/")

    @property
    def redirect_uri(self) -> str:
        return _redirect_uri(self.port)

    @property
    def authorize_endpoint(self) -> str:
        return f"{self.base_url}{AUTHORIZE_PATH}"

    @property
    def token_endpoint(self) -> str:
        return f"{self.base_url}{TOKEN_PATH}"


class CallbackStatus(enum.Enum):
    SUCCESS = "Success"
    USER_CANCELLED = "UserCancelled"
    PROVIDER_ERROR = "ProviderError"
    NETWORK_ERROR = "NetworkError"
    TIMEOUT = "Timeout"


@dataclass
class TokenSet:
    access_token: str = field(repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    id_token: str | None = field(default=None, repr=False)
    token_type: str | None = None
    expires_in: int | None = None

    @classmethod
    def from_response(cls, payload: Mapping[str, Any]) -> "TokenSet":
        return cls(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token"),
            id_token=payload.get("id_token"),
            token_type=payload.get("token_type"),
            expires_in=payload.get("expires_in"),
        )


@dataclass
class UserProfile:
    subject: str | None = None
    name: str | None = None
    email: str | None = None
    picture: str | None = None

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "UserProfile":
        name = claims.get("name") or " ".join(
            part for part in (claims.get("given_name"), claims.get("family_name")) if part
        )
        return cls(
            subject=claims.get("sub"),
            name=name or None,
            email=claims.get("email"),
            picture=claims.get("picture"),
        )


@dataclass
class CallbackResult:
    status: CallbackStatus
    profile: UserProfile | None = None
    raw_claims: Dict[str, Any] = field(default_factory=dict)
    tokens: TokenSet | None = None
    authorization_code: str | None = field(default=None, repr=False)
    error: str | None = None
    error_description: str | None = None
    detail: str | None = None
    remediation: str | None = None

    def __post_init__(self) -> None:
        succeeded = self.status is CallbackStatus.SUCCESS
        if succeeded != (self.tokens is not None) or succeeded != (self.profile is not None):
            raise ValueError("profile and tokens are present exactly when the callback succeeded")

    @property
    def ok(self) -> bool:
        return self.status is CallbackStatus.SUCCESS

    @classmethod
    def from_error(cls, exc: DryrunError, config: RunConfig) -> "CallbackResult":
        if isinstance(exc, ProviderError):
            return cls(
                status=CallbackStatus.PROVIDER_ERROR,
                error=exc.error,
                error_description=exc.description,
                remediation=remediation_for(exc.error, config.redirect_uri),
            )
        if isinstance(exc, NetworkError):
            status = CallbackStatus.NETWORK_ERROR
        elif isinstance(exc, CallbackTimeout):
            status = CallbackStatus.TIMEOUT
        else:
            status = CallbackStatus.USER_CANCELLED
        return cls(status=status, detail=str(exc), remediation=exc.remediation)


class Prompter:
    """Collects values from the user, one method per kind of field."""

    interactive = True

    def text(self, label: str, default: str | None = None) -> str:
        raise NotImplementedError

    def secret(self, label: str) -> str:
        raise NotImplementedError

    def choice(self, label: str, options: Sequence[Tuple[str, str]], default: str) -> str:
        raise NotImplementedError

    def confirm(self, label: str, default: bool = False) -> bool:
        raise NotImplementedError

    def pause(self, label: str) -> None:
        raise NotImplementedError


class TerminalPrompter(Prompter):
    def __init__(
        self,
        console: Console,
        input_func: Callable[[str], str] = input,
        secret_func: Callable[[str], str] = getpass.getpass,
    ) -> None:
        self.console = console
        self._input = input_func
        self._secret = secret_func

    def _ask(self, reader: Callable[[str], str], prompt: str) -> str:
        try:
            return reader(prompt).strip()
        except (EOFError, KeyboardInterrupt):
            raise UserCancelled("Input was cancelled at a prompt.", stage=STAGE_INPUT) from None

    def text(self, label: str, default: str | None = None) -> str:
        prompt = f"{label} [{default}]: " if default else f"{label}: "
        return self._ask(self._input, prompt) or (default or "")

    def secret(self, label: str) -> str:
        return self._ask(self._secret, f"{label}: ")

    def choice(self, label: str, options: Sequence[Tuple[str, str]], default: str) -> str:
        keys = [key for key, _ in options]
        default_index = keys.index(default) + 1
        for index, (key, description) in enumerate(options, start=1):
            suffix = " - Default" if key == default else ""
            self.console.print(f"  {index}) {description}{suffix}")
        answer = self._ask(self._input, f"{label} [{default_index}]: ")
        if not answer:
            return default
        if answer.isdigit() and 1 <= int(answer) <= len(keys):
            return keys[int(answer) - 1]
        if answer.lower() in keys:
            return answer.lower()
        raise ValidationError(
            f"Invalid choice {answer!r}.",
            remediation=f"Enter a number between 1 and {len(keys)}.",
        )

    def confirm(self, label: str, default: bool = False) -> bool:
        hint = "(Y/n)" if default else "(y/N)"
        answer = self._ask(self._input, f"{label} {hint}: ").lower()
        if not answer:
            return default
        return answer.startswith("y")

    def pause(self, label: str) -> None:
        self._ask(self._input, label)


class NonInteractivePrompter(Prompter):
    """Never blocks: missing values fail and confirmations take their default."""

    interactive = False

    def text(self, label: str, default: str | None = None) -> str:
        if default is not None:
            return default
        raise ValidationError(f"{label} is required in non-interactive mode.")

    def secret(self, label: str) -> str:
        raise ValidationError(f"{label} is required in non-interactive mode.")

    def choice(self, label: str, options: Sequence[Tuple[str, str]], default: str) -> str:
        return default

    def confirm(self, label: str, default: bool = False) -> bool:
        return default

    def pause(self, label: str) -> None:
        return None


@dataclass
class HttpResponse:
    status: int
    content_type: str
    payload: str


def _encode_query(params: Dict[str, Any]) -> str:
    safe_params = {k: v for k, v in params.items() if v is not None}
    return urlparse.urlencode(safe_params, quote_via=urlparse.quote)


def _generate_code_verifier() -> str:
    # RFC 7636 allows 43-128 characters; 64-char string sourced from secure random bytes.
    return base64.urlsafe_b64encode(secrets.token_bytes(48)).decode("ascii").rstrip("=")


def _code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def _post_form(url: str, data: Dict[str, Any], timeout: float) -> HttpResponse:
    encoded = _encode_query(data).encode("utf-8")
    req = urlrequest.Request(
        url,
        data=encoded,
        headers={
            "Content-Type": "application/x-www-form-urlencoded",
            "Accept": "application/json",
        },
        method="POST",
    )
    return _execute(req, timeout)


def _execute(req: urlrequest.Request, timeout: float) -> HttpResponse:
    try:
        with urlrequest.urlopen(req, timeout=timeout) as resp:
            payload = resp.read().decode("utf-8")
            return HttpResponse(
                status=resp.status,
                content_type=resp.headers.get("Content-Type", ""),
                payload=payload,
            )
    except urlerror.HTTPError as exc:
        body = exc.read().decode("utf-8", errors="replace")
        raise _provider_error_from_body(exc.code, body) from exc
    except urlerror.URLError as exc:
        raise NetworkError(f"Could not reach {req.full_url}: {exc.reason}") from exc
    except (socket.timeout, TimeoutError) as exc:
        raise NetworkError(
            f"No response from {req.full_url} within {timeout:g} seconds."
        ) from exc
    except OSError as exc:
        raise NetworkError(f"Connection to {req.full_url} failed: {exc}") from exc


def _provider_error_from_body(status: int, body: str) -> ProviderError:
    try:
        payload = json.loads(body)
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get("error"):
        return ProviderError(str(payload["error"]), payload.get("error_description"))
    return ProviderError(f"http_{status}", body.strip()[:200] or None)


def decode_id_token_claims(id_token: str | None) -> Dict[str, Any]:
    """Return the payload of a JWT without verifying its signature."""
    if not id_token:
        return {}
    parts = id_token.split(".")
    if len(parts) < 2:
        return {}
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(segment.encode("ascii")))
    except ValueError:
        return {}
    return claims if isinstance(claims, dict) else {}


def _determine_env_file(argv: list[str]) -> str:
    env_file = DEFAULT_ENV_FILE
    for idx, arg in enumerate(argv):
        if arg in ("--env-file", "-e"):
            if idx + 1 < len(argv):
                env_file = argv[idx + 1]
        elif arg.startswith("--env-file="):
            env_file = arg.split("=", 1)[1]
        elif arg.startswith("-e="):
            env_file = arg.split("=", 1)[1]
    return env_file


def _load_env_file(env_file: str) -> Dict[str, str | None]:
    path = Path(env_file)
    if not path.exists():
        return {}
    return dict(dotenv_values(path))


def _lookup(
    name: str,
    environ: Mapping[str, str],
    file_values: Mapping[str, str | None],
    env_file: str,
) -> Tuple[str | None, str | None]:
    if environ.get(name):
        return environ[name], name
    if file_values.get(name):
        return file_values[name], f"{name} in {env_file}"
    return None, None


def collect_run_config(
    prompter: Prompter,
    console: Console,
    *,
    mode: str | None = None,
    environment_url: str | None = None,
    client_id: str | None = None,
    organization_id: str | None = None,
    environ: Mapping[str, str] | None = None,
    file_values: Mapping[str, str | None] | None = None,
    env_file: str = DEFAULT_ENV_FILE,
    options: Mapping[str, Any] | None = None,
) -> RunConfig:
    """Resolve every run setting and return a validated ``RunConfig``.

    Explicit arguments win, then the process environment, then the env file,
    then prompts. Invalid values raise ``ValidationError`` before anything
    touches the network.
    """
    environ = os.environ if environ is None else environ
    file_values = file_values or {}
    options = dict(options or {})

    if not environment_url:
        environment_url, source = _lookup(ENV_URL_VAR, environ, file_values, env_file)
        if source:
            console.success(f"Using environment URL from {source}")
        else:
            console.info(f"Environment URL not found in {ENV_URL_VAR}")
            environment_url = prompter.text("Enter your Scalekit environment URL")
    if not environment_url:
        raise ValidationError("Environment URL is required.")
    _validate_environment_url(environment_url)

    if not client_id:
        client_id, source = _lookup(CLIENT_ID_VAR, environ, file_values, env_file)
        if source:
            console.success(f"Using client ID from {source}")
        else:
            console.info(f"Client ID not found in {CLIENT_ID_VAR}")
            client_id = prompter.text(f"Enter your OAuth client ID (starts with {CLIENT_ID_PREFIX})")
    if not client_id:
        raise ValidationError("Client ID is required.")
    if not client_id.startswith(CLIENT_ID_PREFIX):
        console.warning(
            f"Client ID should start with '{CLIENT_ID_PREFIX}'. "
            "Please verify you're using the correct client ID."
        )

    if not options.get("client_secret"):
        options["client_secret"] = _lookup(CLIENT_SECRET_VAR, environ, file_values, env_file)[0]

    if mode is None:
        console.print()
        console.info("Select authentication mode:")
        mode = prompter.choice(
            "Enter choice",
            [
                (AuthMode.FULL_STACK_AUTH.value, AuthMode.FULL_STACK_AUTH.label),
                (AuthMode.MODULAR_SSO.value, AuthMode.MODULAR_SSO.label),
            ],
            default=AuthMode.FULL_STACK_AUTH.value,
        )
    auth_mode = AuthMode.parse(mode)

    if auth_mode is AuthMode.MODULAR_SSO and organization_id is None and prompter.interactive:
        organization_id = prompter.text("Enter organization ID (org_...)")

    return RunConfig(
        environment_url=environment_url,
        client_id=client_id,
        mode=auth_mode,
        organization_id=organization_id,
        **options,
    )


def check_runtime(console: Console, version_info: Sequence[int] = tuple(sys.version_info)) -> None:
    current = ".".join(str(part) for part in tuple(version_info)[:3])
    required = ".".join(str(part) for part in MIN_PYTHON)
    if tuple(version_info)[:2] < MIN_PYTHON:
        raise PreflightError(
            f"Python {required} or higher is required. Current version: {current}",
            remediation=f"Install Python {required} or higher from https://www.python.org/downloads/ and re-run.",
        )
    console.success(f"Python {current} detected")


def check_browser(console: Console) -> bool:
    try:
        webbrowser.get()
    except webbrowser.Error:
        console.warning(
            "No web browser was found. The authorization URL will be printed so you "
            "can open it on this machine manually."
        )
        return False
    return True


def port_in_use(port: int, host: str = LISTEN_HOST) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as probe:
        probe.settimeout(0.5)
        return probe.connect_ex((host, port)) == 0


def check_port(config: RunConfig, prompter: Prompter, console: Console) -> None:
    if not port_in_use(config.port):
        return
    console.warning(f"Port {config.port} is already in use")
    if not prompter.confirm("Do you want to continue anyway?", default=False):
        raise PreflightError(
            f"Port {config.port} is already in use by another process.",
            remediation=(
                f"Stop the process using port {config.port} and try again. The port is "
                f"fixed because {config.redirect_uri} must match the registered redirect URI."
            ),
        )


def run_preflight(
    config: RunConfig,
    prompter: Prompter,
    console: Console,
    *,
    browser: bool = True,
    version_info: Sequence[int] | None = None,
) -> None:
    console.info("Checking prerequisites...")
    if version_info is None:
        check_runtime(console)
    else:
        check_runtime(console, version_info)
    if browser:
        check_browser(console)
    check_port(config, prompter, console)
    console.success("Prerequisites check passed")


class PortLease:
    """Exclusive hold on the loopback callback port for a single run."""

    def __init__(self, port: int, host: str = LISTEN_HOST) -> None:
        self.port = port
        self.host = host
        self._socket: socket.socket | None = None

    @property
    def held(self) -> bool:
        return self._socket is not None

    def acquire(self) -> "PortLease":
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
            sock.listen(8)
        except OSError as exc:
            sock.close()
            raise PreflightError(
                f"Could not listen on {self.host}:{self.port}: {exc.strerror or exc}",
                remediation=f"Stop the process using port {self.port} and try again.",
            ) from exc
        self._socket = sock
        return self

    def fileno(self) -> int:
        if self._socket is None:
            raise RuntimeError("Port lease is not held.")
        return self._socket.fileno()

    def release(self) -> None:
        if self._socket is not None:
            self._socket.close()
            self._socket = None

    def __enter__(self) -> "PortLease":
        return self.acquire()

    def __exit__(self, *exc_info: Any) -> None:
        self.release()


class CallbackLatch:
    """Accepts the first callback and ignores every later one."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._params: Dict[str, str] | None = None

    def offer(self, params: Mapping[str, str]) -> bool:
        with self._lock:
            if self._params is not None:
                return False
            self._params = dict(params)
            return True

    @property
    def fired(self) -> bool:
        return self._params is not None

    @property
    def params(self) -> Dict[str, str]:
        return dict(self._params or {})


class _QuietRequestHandler(WSGIRequestHandler):
    # Idle browser preconnects must not stall the single-threaded listener.
    timeout = 2

    def log(self, type: str, message: str, *args: Any) -> None:
        # Request lines carry the authorization code.
        pass


def build_callback_app(latch: CallbackLatch) -> Flask:
    app = Flask(__name__)

    @app.get(CALLBACK_PATH)
    def callback() -> Any:
        # Browser prefetches arrive as HEAD; only a real navigation settles the run.
        if request.method == "HEAD":
            return "", 204
        if latch.offer(request.args.to_dict()):
            return CALLBACK_PAGE_HTML
        return "Callback already received for this run.", 200, {"Content-Type": "text/plain"}

    @app.route("/", defaults={"path": ""})
    @app.route("/<path:path>")
    def ignored(path: str) -> Any:
        return "", 204

    return app


def build_authorization_url(config: RunConfig, state: str, code_challenge: str | None = None) -> str:
    params = {
        "response_type": "code",
        "client_id": config.client_id,
        "redirect_uri": config.redirect_uri,
        "scope": config.scope,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256" if code_challenge else None,
        "mode": config.mode.value,
        "organization_id": config.organization_id,
    }
    return f"{config.authorize_endpoint}?{_encode_query(params)}"


def _launch_browser(url: str) -> bool:
    try:
        return webbrowser.open(url)
    except webbrowser.Error:
        return False


def _wait_for_callback(server: BaseWSGIServer, latch: CallbackLatch, config: RunConfig) -> Dict[str, str]:
    deadline = time.monotonic() + config.callback_timeout
    while not latch.fired:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise CallbackTimeout(
                f"No callback received on {config.redirect_uri} within "
                f"{config.callback_timeout:g} seconds."
            )
        server.timeout = min(POLL_INTERVAL, remaining)
        server.handle_request()
    return latch.params


def _drain(server: BaseWSGIServer, seconds: float) -> None:
    # Answer requests already queued behind the callback (favicon, retries).
    deadline = time.monotonic() + seconds
    server.timeout = 0.05
    while time.monotonic() < deadline:
        server.handle_request()


def exchange_code(config: RunConfig, code: str, code_verifier: str | None) -> Dict[str, Any]:
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": config.redirect_uri,
        "client_id": config.client_id,
        "client_secret": config.client_secret,
        "code_verifier": code_verifier,
    }
    response = _post_form(config.token_endpoint, data, timeout=config.timeout)
    try:
        payload = json.loads(response.payload)
    except ValueError as exc:
        raise ProviderError(
            "invalid_token_response",
            f"Token endpoint did not return JSON (Content-Type: {response.content_type or '<none>'}).",
        ) from exc
    if not isinstance(payload, dict) or not payload.get("access_token"):
        raise ProviderError(
            "invalid_token_response",
            "Token endpoint response did not include an access_token.",
        )
    return payload


def complete_callback(
    config: RunConfig,
    params: Mapping[str, str],
    state: str,
    code_verifier: str | None,
) -> CallbackResult:
    if params.get("error"):
        raise ProviderError(params["error"], params.get("error_description"), config.redirect_uri)
    if params.get("state") != state:
        raise ProviderError(
            "state_mismatch",
            "The callback state does not match this run's authorization request.",
            config.redirect_uri,
        )
    code = params.get("code")
    if not code:
        raise ProviderError(
            "missing_code",
            "The callback did not include an authorization code.",
            config.redirect_uri,
        )
    payload = exchange_code(config, code, code_verifier)
    tokens = TokenSet.from_response(payload)
    claims = decode_id_token_claims(tokens.id_token)
    return CallbackResult(
        status=CallbackStatus.SUCCESS,
        profile=UserProfile.from_claims(claims),
        raw_claims=claims,
        tokens=tokens,
        authorization_code=code,
    )


def run_loopback_flow(
    config: RunConfig,
    console: Console,
    open_browser: Callable[[str], bool] | None = _launch_browser,
) -> CallbackResult:
    """Drive one authorization-code flow through the local listener.

    Raises ``PreflightError`` if the port cannot be bound; every other outcome
    is returned as a ``CallbackResult``. The port is released on every path.
    """
    state = secrets.token_urlsafe(16)
    code_verifier = _generate_code_verifier()
    url = build_authorization_url(config, state, _code_challenge(code_verifier))
    latch = CallbackLatch()

    with PortLease(config.port) as lease:
        server = make_server(
            LISTEN_HOST,
            config.port,
            build_callback_app(latch),
            request_handler=_QuietRequestHandler,
            fd=lease.fileno(),
        )
        try:
            console.info(f"Listening for the callback on {config.redirect_uri}")
            if open_browser is None:
                console.info("Open this URL in your browser to sign in:")
            elif open_browser(url):
                console.info("Opened the authorization URL in your browser. If nothing appeared, open:")
            else:
                console.warning("Could not open a browser automatically. Open this URL manually:")
            console.print(f"  {url}")
            console.info(f"Waiting up to {config.callback_timeout:g}s for the sign-in to complete...")
            params = _wait_for_callback(server, latch, config)
            _drain(server, DRAIN_SECONDS)
            console.info("Callback received, exchanging the authorization code...")
            return complete_callback(config, params, state, code_verifier)
        except (ProviderError, NetworkError, CallbackTimeout) as exc:
            return CallbackResult.from_error(exc, config)
        except KeyboardInterrupt:
            cancelled = UserCancelled(
                "Interrupted while waiting for the sign-in to complete.", stage=STAGE_DRIVER
            )
            return CallbackResult.from_error(cancelled, config)
        finally:
            server.server_close()


def _mask(token: str | None, show: bool) -> str:
    if not token:
        return "not issued"
    if show:
        return token
    return f"{token[:8]}… ({len(token)} chars)"


def _report_provider_error(
    console: Console,
    error: str,
    description: str | None,
    remediation: str,
    port: int = DEFAULT_PORT,
) -> None:
    console.error(f"[{STAGE_DRIVER}] ProviderError: {error}")
    if description:
        console.print_err(f"  error_description: {description}")
    console.print_err(f"  Remediation: {remediation}")
    if error not in PROVIDER_ERROR_HINTS:
        console.print_err("  Common issues:")
        for index, issue in enumerate(COMMON_ISSUES, start=1):
            console.print_err(
                f"    {index}. {issue.format(redirect_uri=_redirect_uri(port), port=port)}"
            )


def report_failure(exc: DryrunError, console: Console) -> int:
    console.print()
    if isinstance(exc, ProviderError):
        _report_provider_error(console, exc.error, exc.description, exc.remediation)
    else:
        console.error(f"[{exc.stage}] {exc.label}: {exc}")
        console.print_err(f"  Remediation: {exc.remediation}")
    return 1


def report_result(
    result: CallbackResult,
    console: Console,
    show_tokens: bool = False,
    port: int = DEFAULT_PORT,
) -> int:
    console.print()
    console.rule()
    if not result.ok:
        if result.status is CallbackStatus.PROVIDER_ERROR:
            _report_provider_error(
                console,
                result.error or "unknown_error",
                result.error_description,
                result.remediation or remediation_for("", _redirect_uri(port)),
                port=port,
            )
        else:
            console.error(f"[{STAGE_DRIVER}] {result.status.value}: {result.detail}")
            console.print_err(f"  Remediation: {result.remediation}")
        return 1

    if result.profile is None or result.tokens is None:
        raise RuntimeError("Successful callback result is missing its profile or tokens.")
    profile, tokens = result.profile, result.tokens
    console.success("Authentication succeeded")
    console.print()
    console.print("Profile:")
    rows = [
        ("Name", profile.name),
        ("Email", profile.email),
        ("Avatar", profile.picture),
        ("Subject", profile.subject),
    ]
    for label, value in rows:
        if value:
            console.print(f"  {label}: {value}")
    console.print()
    console.print("ID token claims:")
    if result.raw_claims:
        console.print(textwrap.indent(json.dumps(result.raw_claims, indent=2, sort_keys=True), "  "))
    else:
        console.print("  No ID token claims returned.")
    console.print()
    console.print("Tokens:")
    console.print(f"  Token type: {tokens.token_type or 'unknown'}")
    console.print(f"  Expires in: {tokens.expires_in if tokens.expires_in is not None else 'unknown'} seconds")
    console.print(f"  Access token: {_mask(tokens.access_token, show_tokens)}")
    console.print(f"  Refresh token: {_mask(tokens.refresh_token, show_tokens)}")
    console.print(f"  ID token: {_mask(tokens.id_token, show_tokens)}")
    console.print()
    console.info("Tokens were not written to disk.")
    return 0


def confirm_run(config: RunConfig, prompter: Prompter, console: Console, assume_yes: bool = False) -> None:
    console.print()
    console.info("Ready to execute dryrun with the following configuration:")
    console.print(f"  Environment URL: {config.environment_url}")
    console.print(f"  Client ID: {config.client_id}")
    console.print(f"  Mode: {config.mode.value}")
    if config.organization_id:
        console.print(f"  Organization ID: {config.organization_id}")
    console.print()
    if not assume_yes and not prompter.confirm("Continue?", default=True):
        raise UserCancelled("Cancelled before starting the flow.", stage=STAGE_INPUT)
    console.print()
    console.warning("Make sure you have added this redirect URI in your Scalekit Dashboard:")
    console.print_err(f"  {config.redirect_uri}")
    console.print_err("  (Dashboard > Authentication > Redirect URIs)")
    console.print()
    if not assume_yes:
        prompter.pause("Press Enter to continue...")


def run_dryrun(
    args: argparse.Namespace,
    prompter: Prompter | None = None,
    console: Console | None = None,
    open_browser: Callable[[str], bool] | None = _launch_browser,
    environ: Mapping[str, str] | None = None,
) -> int:
    console = console or Console(color=False if args.no_color else None)
    positional = (args.mode, args.environment_url, args.client_id, args.organization_id)
    if prompter is None:
        if any(value is not None for value in positional):
            prompter = NonInteractivePrompter()
        else:
            prompter = TerminalPrompter(console)
    if args.no_browser:
        open_browser = None

    console.rule()
    console.print("  Scalekit Dryrun Testing Tool")
    console.print("  Test your authentication setup end-to-end before writing integration code")
    console.rule()
    console.print()
    try:
        config = collect_run_config(
            prompter,
            console,
            mode=args.mode,
            environment_url=args.environment_url,
            client_id=args.client_id,
            organization_id=args.organization_id,
            environ=environ,
            file_values=args.env_values,
            env_file=args.env_file,
            options={
                "client_secret": args.client_secret,
                "port": args.port,
                "scope": args.scope,
                "callback_timeout": args.callback_timeout,
                "timeout": args.timeout,
            },
        )
        run_preflight(config, prompter, console, browser=open_browser is not None)
        confirm_run(config, prompter, console, assume_yes=args.yes)
        console.info("Executing dryrun...")
        console.rule()
        result = run_loopback_flow(config, console, open_browser=open_browser)
    except DryrunError as exc:
        return report_failure(exc, console)
    except KeyboardInterrupt:
        return report_failure(UserCancelled("Interrupted."), console)
    return report_result(result, console, show_tokens=args.show_tokens, port=config.port)


class _DryrunArgumentParser(argparse.ArgumentParser):
    """Usage errors exit with 1 so the exit code stays pass/fail."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser(env_values: Dict[str, str | None], env_file: str) -> argparse.ArgumentParser:
    description = textwrap.dedent(
        f"""
        Test a Scalekit authentication setup end-to-end before writing integration code.

        Without arguments the tool prompts for anything missing from
        {ENV_URL_VAR}, {CLIENT_ID_VAR} and the env file. With positional
        arguments it runs without prompts:

          scalekit-dryrun fsa https://your-env.scalekit.dev skc_123
          scalekit-dryrun sso https://your-env.scalekit.dev skc_123 org_456

        Register {_redirect_uri(DEFAULT_PORT)} under
        Dashboard > Authentication > Redirect URIs first.
        """
    ).strip()
    parser = _DryrunArgumentParser(
        prog="scalekit-dryrun",
        description=description,
        epilog=f"See {DOCS_URL} for troubleshooting.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.set_defaults(env_values=env_values)
    parser.add_argument("mode", nargs="?", help="Authentication mode: fsa or sso.")
    parser.add_argument("environment_url", nargs="?", help="Scalekit environment URL.")
    parser.add_argument("client_id", nargs="?", help="OAuth client ID (starts with skc_).")
    parser.add_argument(
        "organization_id",
        nargs="?",
        help="Organization ID (org_...). Required for sso mode.",
    )
    parser.add_argument(
        "--env-file",
        "-e",
        default=env_file,
        help="Path to a .env file with Scalekit settings (default: %(default)s).",
    )
    parser.add_argument(
        "--client-secret",
        default=None,
        help=f"Client secret for confidential clients (default: read from {CLIENT_SECRET_VAR}).",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help=(
            "Loopback port for the redirect URI (default: %(default)s). Must match "
            "the redirect URI registered in the dashboard."
        ),
    )
    parser.add_argument(
        "--scope",
        default=DEFAULT_SCOPE,
        help="Requested scopes (default: %(default)s).",
    )
    parser.add_argument(
        "--callback-timeout",
        type=float,
        default=DEFAULT_CALLBACK_TIMEOUT,
        help="Seconds to wait for the browser callback (default: %(default)s).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TOKEN_TIMEOUT,
        help="HTTP timeout in seconds for the token exchange (default: %(default)s).",
    )
    parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Print the authorization URL instead of opening a browser.",
    )
    parser.add_argument(
        "--yes",
        "-y",
        action="store_true",
        help="Skip the confirmation and redirect URI reminder prompts.",
    )
    parser.add_argument(
        "--show-tokens",
        action="store_true",
        help="Print raw token values to the terminal instead of masked summaries.",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output (also honored via NO_COLOR).",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    if argv is None:
        argv = sys.argv[1:]
    env_file = _determine_env_file(argv)
    parser = build_parser(_load_env_file(env_file), env_file)
    args = parser.parse_args(argv)
    status = run_dryrun(args)
    if status:
        parser.exit(status=status)


if __name__ == "__main__":
    main()
