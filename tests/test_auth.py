import json


from admission_gateway.auth import AdminAuth, ENV_ADMIN_TOKENS_JSON, ENV_ADMIN_TOKENS_FILE


def test_auth_disabled_is_open(monkeypatch):
    monkeypatch.delenv(ENV_ADMIN_TOKENS_JSON, raising=False)
    monkeypatch.delenv(ENV_ADMIN_TOKENS_FILE, raising=False)

    auth = AdminAuth.load_from_env()
    assert auth.enabled() is False
    assert auth.resolve(None) == ("anonymous", None)


def test_auth_configured_requires_token(monkeypatch):
    monkeypatch.setenv(ENV_ADMIN_TOKENS_JSON, json.dumps({"k1": "ops"}))
    monkeypatch.delenv(ENV_ADMIN_TOKENS_FILE, raising=False)

    auth = AdminAuth.load_from_env()
    assert auth.enabled() is True
    assert auth.resolve(None) == (None, "ADMIN_TOKEN_REQUIRED")
    assert auth.resolve("k1") == ("ops", None)
    assert auth.resolve("nope") == (None, "ADMIN_TOKEN_INVALID")


def test_auth_file_mapping(tmp_path, monkeypatch):
    p = tmp_path / "tokens.json"
    p.write_text(json.dumps({"abc": "alice"}), encoding="utf-8")
    monkeypatch.delenv(ENV_ADMIN_TOKENS_JSON, raising=False)
    monkeypatch.setenv(ENV_ADMIN_TOKENS_FILE, str(p))

    auth = AdminAuth.load_from_env()
    assert auth.resolve("abc") == ("alice", None)


def test_auth_malformed_config_fails_closed(monkeypatch):
    # If the deployer sets env but it's malformed, fail closed.
    monkeypatch.setenv(ENV_ADMIN_TOKENS_JSON, "not json")
    auth = AdminAuth.load_from_env()
    assert auth.enabled() is True
    assert auth.resolve("anything") == (None, "ADMIN_TOKEN_CONFIG_INVALID")


def test_auth_missing_file_fails_closed(tmp_path, monkeypatch):
    monkeypatch.delenv(ENV_ADMIN_TOKENS_JSON, raising=False)
    monkeypatch.setenv(ENV_ADMIN_TOKENS_FILE, str(tmp_path / "missing.json"))
    assert AdminAuth.load_from_env().resolve("k1") == (None, "ADMIN_TOKEN_CONFIG_INVALID")


def test_auth_non_object_fails_closed(monkeypatch):
    monkeypatch.setenv(ENV_ADMIN_TOKENS_JSON, "[1, 2]")
    assert AdminAuth.load_from_env().config_error == "ADMIN_TOKEN_CONFIG_INVALID"
