import base64
import importlib.util
import io
import json
import socket
from pathlib import Path
from types import SimpleNamespace
from urllib import error as urlerror
from urllib import parse as urlparse
import sys

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
MODULE_PATH = PROJECT_ROOT / "scalekit_dryrun.py"
spec = importlib.util.spec_from_file_location("scalekit_dryrun", MODULE_PATH)
cli = importlib.util.module_from_spec(spec)
sys.modules["scalekit_dryrun"] = cli
assert spec.loader is not None  # for mypy/pylint
spec.loader.exec_module(cli)  # type: ignore[attr-defined]

ENV_URL = "https://env-abc123.example.com"


def _console():
    return cli.Console(io.StringIO(), io.StringIO(), color=False)


def _make_id_token(claims):
    def segment(obj):
        return base64.urlsafe_b64encode(json.dumps(obj).encode("utf-8")).decode("ascii").rstrip("=")

    return f"{segment({'alg': 'RS256', 'typ': 'JWT'})}.{segment(claims)}.signature"


def _make_args(**overrides):
    defaults = dict(
        mode=None,
        environment_url=None,
        client_id=None,
        organization_id=None,
        env_file=".env",
        env_values={},
        client_secret=None,
        port=cli.DEFAULT_PORT,
        scope=cli.DEFAULT_SCOPE,
        callback_timeout=5.0,
        timeout=5.0,
        no_browser=False,
        yes=True,
        show_tokens=False,
        no_color=True,
    )
    defaults.update(overrides)
    return SimpleNamespace(**defaults)


def _scripted_input(answers):
    def fake_input(prompt):
        if not answers:
            raise EOFError
        return answers.pop(0)

    return fake_input


def _recording_opener(calls):
    def opener(url):
        calls.append(url)
        return True

    return opener


def test_run_config_requires_organization_for_sso():
    with pytest.raises(cli.ValidationError, match="organization id required for sso mode"):
        cli.RunConfig(ENV_URL, "skc_test", mode="sso", organization_id="")
    with pytest.raises(cli.ValidationError, match="organization id required for sso mode"):
        cli.RunConfig(ENV_URL, "skc_test", mode=cli.AuthMode.MODULAR_SSO)


def test_run_config_rejects_organization_in_fsa_mode():
    with pytest.raises(cli.ValidationError):
        cli.RunConfig(ENV_URL, "skc_test", mode="fsa", organization_id="org_1")


@pytest.mark.parametrize("url", ["env-abc123.example.com", "ftp://env.example.com", ""])
def test_run_config_rejects_non_http_urls(url):
    with pytest.raises(cli.ValidationError) as exc_info:
        cli.RunConfig(url, "skc_test")
    assert repr(url) in str(exc_info.value)


def test_run_config_derives_endpoints():
    config = cli.RunConfig(ENV_URL + "/", "skc_test", port=4000)
    assert config.redirect_uri == "http://localhost:4000/auth/callback"
    assert config.authorize_endpoint == f"{ENV_URL}/oauth/authorize"
    assert config.token_endpoint == f"{ENV_URL}/oauth/token"
    assert "client_secret" not in repr(cli.RunConfig(ENV_URL, "skc_test", client_secret="hunter2"))


def test_auth_mode_parse_rejects_unknown_value():
    assert cli.AuthMode.parse("SSO") is cli.AuthMode.MODULAR_SSO
    assert cli.AuthMode.parse("full_stack_auth") is cli.AuthMode.FULL_STACK_AUTH
    with pytest.raises(cli.ValidationError):
        cli.AuthMode.parse("saml")


def test_fsa_authorization_url_has_mode_and_no_organization():
    config = cli.collect_run_config(
        cli.NonInteractivePrompter(),
        _console(),
        mode="fsa",
        environment_url=ENV_URL,
        client_id="skc_test",
        environ={},
    )
    url = cli.build_authorization_url(config, state="xyz", code_challenge="abc123")
    parsed = urlparse.urlparse(url)
    query = urlparse.parse_qs(parsed.query)
    assert url.startswith(f"{ENV_URL}/oauth/authorize?")
    assert query["mode"] == ["fsa"]
    assert "organization_id" not in query
    assert query["redirect_uri"] == ["http://localhost:12456/auth/callback"]
    assert query["code_challenge"] == ["abc123"]
    assert query["code_challenge_method"] == ["S256"]
    assert query["state"] == ["xyz"]


def test_sso_authorization_url_includes_organization():
    config = cli.RunConfig(ENV_URL, "skc_test", mode="sso", organization_id="org_123")
    query = urlparse.parse_qs(urlparse.urlparse(cli.build_authorization_url(config, "s")).query)
    assert query["mode"] == ["sso"]
    assert query["organization_id"] == ["org_123"]
    assert "code_challenge" not in query


def test_code_challenge_matches_known_value():
    assert cli._code_challenge("test") == "n4bQgYhMfWWaL-qgxVrQFaO_TxsrC4Is0V1sFbDwCgg"


def test_generate_code_verifier_is_fresh_and_within_bounds():
    first, second = cli._generate_code_verifier(), cli._generate_code_verifier()
    assert 43 <= len(first) <= 128
    assert first != second


def test_client_id_prefix_mismatch_only_warns():
    console = _console()
    config = cli.collect_run_config(
        cli.NonInteractivePrompter(),
        console,
        mode="fsa",
        environment_url=ENV_URL,
        client_id="client-123",
        environ={},
    )
    assert config.client_id == "client-123"
    assert "should start with 'skc_'" in console.err_stream.getvalue()


def test_interactive_prompts_default_to_full_stack_auth():
    console = _console()
    prompter = cli.TerminalPrompter(console, input_func=_scripted_input([ENV_URL, "skc_test", ""]))
    config = cli.collect_run_config(prompter, console, environ={})
    assert config.mode is cli.AuthMode.FULL_STACK_AUTH
    assert config.organization_id is None
    assert "1) Full Stack Auth (FSA) - Default" in console.stream.getvalue()


def test_interactive_sso_prompts_for_organization():
    console = _console()
    prompter = cli.TerminalPrompter(
        console, input_func=_scripted_input([ENV_URL, "skc_test", "2", "org_789"])
    )
    config = cli.collect_run_config(prompter, console, environ={})
    assert config.mode is cli.AuthMode.MODULAR_SSO
    assert config.organization_id == "org_789"


def test_interactive_sso_with_empty_organization_fails():
    console = _console()
    prompter = cli.TerminalPrompter(console, input_func=_scripted_input([ENV_URL, "skc_test", "2", ""]))
    with pytest.raises(cli.ValidationError, match="organization id required for sso mode"):
        cli.collect_run_config(prompter, console, environ={})


def test_invalid_url_is_rejected_before_other_prompts():
    console = _console()
    answers = ["not-a-url", "skc_test", ""]
    prompter = cli.TerminalPrompter(console, input_func=_scripted_input(answers))
    with pytest.raises(cli.ValidationError, match="not-a-url"):
        cli.collect_run_config(prompter, console, environ={})
    assert answers == ["skc_test", ""]


def test_end_of_input_at_prompt_is_user_cancelled():
    console = _console()
    prompter = cli.TerminalPrompter(console, input_func=_scripted_input([]))
    with pytest.raises(cli.UserCancelled):
        cli.collect_run_config(prompter, console, environ={})


def test_secret_prompt_reads_through_hidden_input():
    console = _console()
    prompts = []

    def fake_getpass(prompt):
        prompts.append(prompt)
        return "  s3cret  "

    prompter = cli.TerminalPrompter(console, input_func=_scripted_input([]), secret_func=fake_getpass)
    assert prompter.secret("Client secret") == "s3cret"
    assert prompts == ["Client secret: "]


def test_secret_prompt_cancel_and_non_interactive():
    def cancelled(prompt):
        raise KeyboardInterrupt

    with pytest.raises(cli.UserCancelled):
        cli.TerminalPrompter(_console(), secret_func=cancelled).secret("Client secret")
    with pytest.raises(cli.ValidationError, match="Client secret is required"):
        cli.NonInteractivePrompter().secret("Client secret")


def test_invalid_mode_choice_is_validation_error():
    console = _console()
    prompter = cli.TerminalPrompter(console, input_func=_scripted_input([ENV_URL, "skc_test", "7"]))
    with pytest.raises(cli.ValidationError, match="Invalid choice"):
        cli.collect_run_config(prompter, console, environ={})


def test_environment_wins_over_env_file():
    console = _console()
    config = cli.collect_run_config(
        cli.NonInteractivePrompter(),
        console,
        mode="fsa",
        environ={cli.ENV_URL_VAR: "https://from-env.example.com"},
        file_values={
            cli.ENV_URL_VAR: "https://from-file.example.com",
            cli.CLIENT_ID_VAR: "skc_file",
            cli.CLIENT_SECRET_VAR: "file-secret",
        },
    )
    assert config.environment_url == "https://from-env.example.com"
    assert config.client_id == "skc_file"
    assert config.client_secret == "file-secret"
    output = console.stream.getvalue()
    assert f"Using environment URL from {cli.ENV_URL_VAR}" in output
    assert f"Using client ID from {cli.CLIENT_ID_VAR} in .env" in output


def test_non_interactive_missing_client_id_fails():
    with pytest.raises(cli.ValidationError, match="non-interactive"):
        cli.collect_run_config(
            cli.NonInteractivePrompter(),
            _console(),
            mode="fsa",
            environment_url=ENV_URL,
            environ={},
        )


def test_load_env_file_reads_values(tmp_path):
    env_file = tmp_path / ".env.local"
    env_file.write_text(
        f'{cli.ENV_URL_VAR}="{ENV_URL}"\n{cli.CLIENT_ID_VAR}=skc_abc\n'
    )
    values = cli._load_env_file(str(env_file))
    assert values[cli.ENV_URL_VAR] == ENV_URL
    assert values[cli.CLIENT_ID_VAR] == "skc_abc"
    assert cli._load_env_file(str(tmp_path / "missing.env")) == {}


def test_determine_env_file_scans_argv():
    assert cli._determine_env_file(["--env-file", "custom.env"]) == "custom.env"
    assert cli._determine_env_file(["-e=other.env", "fsa"]) == "other.env"
    assert cli._determine_env_file([]) == ".env"


def test_callback_latch_accepts_only_first_callback():
    latch = cli.CallbackLatch()
    client = cli.build_callback_app(latch).test_client()

    assert client.get("/favicon.ico").status_code == 204
    assert not latch.fired

    first = client.get("/auth/callback?code=first&state=s1")
    second = client.get("/auth/callback?code=second&state=s1")

    assert first.status_code == 200
    assert b"Callback received" in first.data
    assert b"already received" in second.data
    assert latch.params == {"code": "first", "state": "s1"}


def test_head_request_to_callback_does_not_fire_latch():
    latch = cli.CallbackLatch()
    client = cli.build_callback_app(latch).test_client()

    assert client.head("/auth/callback").status_code == 204
    assert not latch.fired

    client.get("/auth/callback?code=real&state=s1")
    assert latch.params == {"code": "real", "state": "s1"}


def test_complete_callback_maps_error_parameter():
    config = cli.RunConfig(ENV_URL, "skc_test")
    params = {"error": "access_denied", "error_description": "User declined", "state": "s"}
    with pytest.raises(cli.ProviderError) as exc_info:
        cli.complete_callback(config, params, "s", "verifier")
    assert exc_info.value.error == "access_denied"
    assert exc_info.value.description == "User declined"


def test_complete_callback_rejects_state_mismatch_and_missing_code():
    config = cli.RunConfig(ENV_URL, "skc_test")
    with pytest.raises(cli.ProviderError) as exc_info:
        cli.complete_callback(config, {"code": "abc", "state": "other"}, "expected", None)
    assert exc_info.value.error == "state_mismatch"
    with pytest.raises(cli.ProviderError) as exc_info:
        cli.complete_callback(config, {"state": "expected"}, "expected", None)
    assert exc_info.value.error == "missing_code"


def _stub_token_endpoint(monkeypatch, captured, payload=None):
    def fake_post_form(url, data, timeout=0):
        captured.append((url, dict(data), timeout))
        body = payload or {
            "access_token": "access-" + data["code"],
            "refresh_token": "refresh-token",
            "id_token": _make_id_token({"sub": "usr_1", "email": "ada@example.com", "name": "Ada"}),
            "token_type": "Bearer",
            "expires_in": 3600,
        }
        return cli.HttpResponse(200, "application/json", json.dumps(body))

    monkeypatch.setattr(cli, "_post_form", fake_post_form)


def test_complete_callback_exchanges_code_with_pkce(monkeypatch):
    captured = []
    _stub_token_endpoint(monkeypatch, captured)
    config = cli.RunConfig(ENV_URL, "skc_test", timeout=7)
    result = cli.complete_callback(config, {"code": "abc", "state": "s"}, "s", "verifier")

    url, data, timeout = captured[0]
    assert url == f"{ENV_URL}/oauth/token"
    assert timeout == 7
    assert data["grant_type"] == "authorization_code"
    assert data["code_verifier"] == "verifier"
    assert data["redirect_uri"] == config.redirect_uri
    assert data["client_secret"] is None
    assert result.ok
    assert result.authorization_code == "abc"
    assert result.profile.email == "ada@example.com"
    assert result.raw_claims["sub"] == "usr_1"


def test_exchange_code_without_access_token_is_provider_error(monkeypatch):
    _stub_token_endpoint(monkeypatch, [], payload={"token_type": "Bearer"})
    config = cli.RunConfig(ENV_URL, "skc_test")
    with pytest.raises(cli.ProviderError) as exc_info:
        cli.exchange_code(config, "abc", None)
    assert exc_info.value.error == "invalid_token_response"


def test_exchange_code_non_json_reports_content_type(monkeypatch):
    monkeypatch.setattr(
        cli, "_post_form", lambda url, data, timeout=0: cli.HttpResponse(200, "text/html", "<html></html>")
    )
    config = cli.RunConfig(ENV_URL, "skc_test")
    with pytest.raises(cli.ProviderError) as exc_info:
        cli.exchange_code(config, "abc", None)
    assert exc_info.value.error == "invalid_token_response"
    assert "Content-Type: text/html" in exc_info.value.description


def test_timeout_remediation_mentions_ipv4_loopback():
    remediation = cli.CallbackTimeout("no callback").remediation
    assert "127.0.0.1" in remediation
    assert "::1" in remediation


def test_encode_query_drops_missing_values():
    encoded = cli._encode_query({"client_id": "skc", "client_secret": None})
    assert encoded == "client_id=skc"


def test_execute_maps_http_error_to_provider_error(monkeypatch):
    body = b'{"error": "invalid_grant", "error_description": "Code expired"}'

    def fake_urlopen(req, timeout=0):
        raise urlerror.HTTPError(req.full_url, 400, "Bad Request", None, io.BytesIO(body))

    monkeypatch.setattr(cli.urlrequest, "urlopen", fake_urlopen)
    with pytest.raises(cli.ProviderError) as exc_info:
        cli._post_form(f"{ENV_URL}/oauth/token", {"code": "abc"}, timeout=1)
    assert exc_info.value.error == "invalid_grant"
    assert exc_info.value.description == "Code expired"


def test_execute_maps_non_json_http_error(monkeypatch):
    def fake_urlopen(req, timeout=0):
        raise urlerror.HTTPError(req.full_url, 502, "Bad Gateway", None, io.BytesIO(b"upstream down"))

    monkeypatch.setattr(cli.urlrequest, "urlopen", fake_urlopen)
    with pytest.raises(cli.ProviderError) as exc_info:
        cli._post_form(f"{ENV_URL}/oauth/token", {}, timeout=1)
    assert exc_info.value.error == "http_502"
    assert exc_info.value.description == "upstream down"


@pytest.mark.parametrize(
    "raised",
    [urlerror.URLError("Name or service not known"), socket.timeout("timed out"), ConnectionResetError()],
)
def test_execute_maps_transport_failures_to_network_error(monkeypatch, raised):
    def fake_urlopen(req, timeout=0):
        raise raised

    monkeypatch.setattr(cli.urlrequest, "urlopen", fake_urlopen)
    with pytest.raises(cli.NetworkError):
        cli._post_form(f"{ENV_URL}/oauth/token", {}, timeout=1)


def test_decode_id_token_claims():
    token = _make_id_token({"sub": "usr_1", "given_name": "Ada", "family_name": "Lovelace"})
    claims = cli.decode_id_token_claims(token)
    assert claims["sub"] == "usr_1"
    assert cli.UserProfile.from_claims(claims).name == "Ada Lovelace"
    assert cli.decode_id_token_claims("not-a-jwt") == {}
    assert cli.decode_id_token_claims("a.!!!.c") == {}
    assert cli.decode_id_token_claims(None) == {}


def test_callback_result_requires_tokens_exactly_on_success():
    with pytest.raises(ValueError):
        cli.CallbackResult(status=cli.CallbackStatus.SUCCESS)
    with pytest.raises(ValueError):
        cli.CallbackResult(
            status=cli.CallbackStatus.TIMEOUT,
            tokens=cli.TokenSet(access_token="x"),
            profile=cli.UserProfile(),
        )


def test_report_result_success_masks_tokens():
    console = _console()
    tokens = cli.TokenSet(
        access_token="access-token-value-that-is-long",
        refresh_token=None,
        id_token="header.payload.sig",
        token_type="Bearer",
        expires_in=3600,
    )
    result = cli.CallbackResult(
        status=cli.CallbackStatus.SUCCESS,
        profile=cli.UserProfile(subject="usr_1", name="Ada", email="ada@example.com"),
        raw_claims={"sub": "usr_1", "email": "ada@example.com"},
        tokens=tokens,
        authorization_code="abc",
    )
    assert cli.report_result(result, console) == 0
    output = console.stream.getvalue()
    assert "Authentication succeeded" in output
    assert "Email: ada@example.com" in output
    assert '"sub": "usr_1"' in output
    assert "access-t… (31 chars)" in output
    assert "access-token-value-that-is-long" not in output
    assert "Refresh token: not issued" in output


def test_report_result_shows_raw_tokens_on_request():
    console = _console()
    result = cli.CallbackResult(
        status=cli.CallbackStatus.SUCCESS,
        profile=cli.UserProfile(),
        tokens=cli.TokenSet(access_token="raw-access-token"),
    )
    cli.report_result(result, console, show_tokens=True)
    assert "Access token: raw-access-token" in console.stream.getvalue()
    assert "No ID token claims returned." in console.stream.getvalue()


def test_report_provider_error_prints_code_description_and_hint():
    console = _console()
    config = cli.RunConfig(ENV_URL, "skc_test")
    result = cli.CallbackResult.from_error(
        cli.ProviderError("access_denied", "User declined"), config
    )
    assert cli.report_result(result, console) == 1
    err = console.err_stream.getvalue()
    assert "[Loopback Auth Driver] ProviderError: access_denied" in err
    assert "error_description: User declined" in err
    assert "Remediation: The sign-in was declined." in err


def test_report_unknown_provider_error_lists_common_issues():
    console = _console()
    config = cli.RunConfig(ENV_URL, "skc_test", port=4000)
    result = cli.CallbackResult.from_error(cli.ProviderError("weird_failure"), config)
    cli.report_result(result, console, port=config.port)
    err = console.err_stream.getvalue()
    assert cli.DOCS_URL in err
    assert "http://localhost:4000/auth/callback" in err
    assert "ensure port 4000 is available" in err


def test_redirect_mismatch_hint_names_the_redirect_uri():
    config = cli.RunConfig(ENV_URL, "skc_test", port=4000)
    result = cli.CallbackResult.from_error(cli.ProviderError("redirect_uri_mismatch"), config)
    assert "http://localhost:4000/auth/callback" in result.remediation


@pytest.mark.parametrize(
    "exc, status",
    [
        (cli.NetworkError("Could not reach the token endpoint"), cli.CallbackStatus.NETWORK_ERROR),
        (cli.CallbackTimeout("No callback received"), cli.CallbackStatus.TIMEOUT),
        (cli.UserCancelled("Interrupted"), cli.CallbackStatus.USER_CANCELLED),
    ],
)
def test_non_provider_failures_report_distinct_messages(exc, status):
    console = _console()
    config = cli.RunConfig(ENV_URL, "skc_test")
    result = cli.CallbackResult.from_error(exc, config)
    assert result.status is status
    assert cli.report_result(result, console) == 1
    err = console.err_stream.getvalue()
    assert f"{status.value}: {exc}" in err
    assert f"Remediation: {exc.remediation}" in err
    assert "ProviderError" not in err


def test_check_runtime_rejects_old_python():
    with pytest.raises(cli.PreflightError, match="3.9 or higher"):
        cli.check_runtime(_console(), (3, 8, 10))
    console = _console()
    cli.check_runtime(console, (3, 12, 1))
    assert "Python 3.12.1 detected" in console.stream.getvalue()


def test_port_conflict_declined_aborts_without_browser():
    calls = []
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as holder:
        holder.bind(("127.0.0.1", 0))
        holder.listen(1)
        port = holder.getsockname()[1]
        console = _console()
        args = _make_args(mode="fsa", environment_url=ENV_URL, client_id="skc_test", port=port)
        status = cli.run_dryrun(args, console=console, open_browser=_recording_opener(calls), environ={})

    assert status == 1
    assert calls == []
    err = console.err_stream.getvalue()
    assert f"Port {port} is already in use" in err
    assert "[Preflight Checker] PreflightError" in err


def test_missing_organization_for_sso_fails_before_network(monkeypatch):
    calls = []

    def no_probe(*args, **kwargs):
        raise AssertionError("port probe must not run for invalid input")

    monkeypatch.setattr(cli, "port_in_use", no_probe)
    console = _console()
    args = _make_args(mode="sso", environment_url=ENV_URL, client_id="skc_test", organization_id="")
    status = cli.run_dryrun(args, console=console, open_browser=_recording_opener(calls), environ={})
    assert status == 1
    assert calls == []
    assert "ValidationError: organization id required for sso mode" in console.err_stream.getvalue()


def test_invalid_url_fails_before_network(monkeypatch):
    calls = []

    def no_probe(*args, **kwargs):
        raise AssertionError("port probe must not run for invalid input")

    monkeypatch.setattr(cli, "port_in_use", no_probe)
    console = _console()
    args = _make_args(mode="fsa", environment_url="env-abc123.example.com", client_id="skc_test")
    assert cli.run_dryrun(args, console=console, open_browser=_recording_opener(calls), environ={}) == 1
    assert calls == []
    assert "'env-abc123.example.com'" in console.err_stream.getvalue()


def test_declining_confirmation_is_user_cancelled(monkeypatch):
    monkeypatch.setattr(cli, "port_in_use", lambda port, host=cli.LISTEN_HOST: False)
    console = _console()
    prompter = cli.TerminalPrompter(console, input_func=_scripted_input([ENV_URL, "skc_test", "", "n"]))
    calls = []
    args = _make_args(yes=False)
    status = cli.run_dryrun(
        args, prompter=prompter, console=console, open_browser=_recording_opener(calls), environ={}
    )
    assert status == 1
    assert calls == []
    assert "UserCancelled: Cancelled before starting the flow." in console.err_stream.getvalue()


def test_main_exits_with_status_one_on_validation_error(tmp_path, capsys):
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["fsa", "not-a-url", "skc_test", "--no-color", "--env-file", str(tmp_path / ".env")])
    assert exc_info.value.code == 1
    assert "ValidationError" in capsys.readouterr().err


@pytest.mark.parametrize("argv", [["--port", "abc"], ["--unknown-flag"]])
def test_main_usage_errors_exit_with_status_one(tmp_path, capsys, argv):
    with pytest.raises(SystemExit) as exc_info:
        cli.main(argv + ["--env-file", str(tmp_path / ".env")])
    assert exc_info.value.code == 1
    assert "scalekit-dryrun: error:" in capsys.readouterr().err
