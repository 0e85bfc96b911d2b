import json

import pytest

from checklist_api.config import DEFAULT_PORTAL_ORIGIN, DRIVE_SCOPES, load_config
from checklist_api.errors import ConfigError

SERVICE_ACCOUNT = {"type": "service_account", "project_id": "checklist-test"}
OAUTH_CLIENT = {"installed": {"client_id": "cid", "client_secret": "csecret"}}


@pytest.fixture()
def env(tmp_path):
    (tmp_path / "driveToken.json").write_text(json.dumps({"refresh_token": "refresh-1"}))
    return {
        "FIREBASE_SERVICE_ACCOUNT_JSON": json.dumps(SERVICE_ACCOUNT),
        "DRIVE_OAUTH_CREDENTIALS_JSON": json.dumps(OAUTH_CLIENT),
        "DRIVE_OAUTH_TOKEN_JSON": "driveToken.json",
    }


def test_defaults(env, tmp_path):
    config = load_config(env, base_dir=tmp_path)

    assert config.port == 3000
    assert config.public_base_url == "http://localhost:3000"
    assert config.signing_secret is None
    assert config.signed_url_ttl_seconds == 900
    assert config.mp_access_token is None
    assert config.mp_webhook_sync is False
    assert config.rate_limit_enabled is True
    assert config.cors_origins == (DEFAULT_PORTAL_ORIGIN,)
    assert config.firebase_credentials == SERVICE_ACCOUNT
    assert config.drive_credentials.client_id == "cid"
    assert config.drive_credentials.refresh_token == "refresh-1"
    assert config.drive_credentials.token_uri == "https://oauth2.googleapis.com/token"
    assert config.drive_credentials.scopes == DRIVE_SCOPES


def test_overrides(env, tmp_path):
    env.update(
        {
            "PORT": "8080",
            "PUBLIC_BASE_URL": "https://api.example.com/",
            "SIGNING_SECRET": "secret",
            "SIGNED_URL_TTL_SECONDS": "60",
            "MP_ACCESS_TOKEN": "APP_USR-1",
            "MP_WEBHOOK_SYNC": "true",
            "RATE_LIMIT_ENABLED": "false",
            "PORTAL_ORIGIN": "https://portal.example/",
            "CORS_ALLOWED_ORIGINS": "https://a.example, https://portal.example",
        }
    )
    config = load_config(env, base_dir=tmp_path)

    assert config.port == 8080
    assert config.public_base_url == "https://api.example.com"
    assert config.signing_secret == "secret"
    assert config.signed_url_ttl_seconds == 60
    assert config.mp_webhook_sync is True
    assert config.rate_limit_enabled is False
    assert config.cors_origins == (DEFAULT_PORTAL_ORIGIN, "https://portal.example", "https://a.example")


def test_firebase_credential_precedence(env, tmp_path):
    (tmp_path / "adc.json").write_text(json.dumps({"project_id": "from-adc"}))
    (tmp_path / "serviceAccountKey.json").write_text(json.dumps({"project_id": "from-file"}))

    env["GOOGLE_APPLICATION_CREDENTIALS"] = str(tmp_path / "adc.json")
    assert load_config(env, base_dir=tmp_path).firebase_credentials == SERVICE_ACCOUNT

    del env["FIREBASE_SERVICE_ACCOUNT_JSON"]
    assert load_config(env, base_dir=tmp_path).firebase_credentials["project_id"] == "from-adc"

    del env["GOOGLE_APPLICATION_CREDENTIALS"]
    assert load_config(env, base_dir=tmp_path).firebase_credentials["project_id"] == "from-file"

    (tmp_path / "serviceAccountKey.json").unlink()
    with pytest.raises(ConfigError):
        load_config(env, base_dir=tmp_path)


@pytest.mark.parametrize(
    "overrides",
    [
        {"SIGNED_URL_TTL_SECONDS": "0"},
        {"PORT": "abc"},
        {"FIREBASE_SERVICE_ACCOUNT_JSON": "{not json}"},
        {"FIREBASE_SERVICE_ACCOUNT_JSON": "missing.json"},
        {"DRIVE_OAUTH_TOKEN_JSON": ""},
        {"DRIVE_OAUTH_CREDENTIALS_JSON": json.dumps({"installed": {"client_id": "cid"}})},
        {"DRIVE_OAUTH_TOKEN_JSON": json.dumps({"scope": "x"})},
    ],
)
def test_invalid_configuration_is_fatal(env, tmp_path, overrides):
    env.update(overrides)
    with pytest.raises(ConfigError):
        load_config(env, base_dir=tmp_path)
