"""Tests for ringbroker.config.Settings."""

import pytest

from ringbroker.config import Settings


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for var in (
        "RINGBROKER_MASTER_PASSPHRASE",
        "RINGBROKER_STORAGE_BACKEND",
        "RINGBROKER_BEARER_TTL_DAYS",
        "RINGBROKER_LOG_SERIALIZE",
        "RINGBROKER_TWILIO_ACCOUNT_SID",
        "TWILIO_ACCOUNT_SID",
        "GOOGLE_OAUTH_CLIENT_ID",
    ):
        monkeypatch.delenv(var, raising=False)


class TestFromEnv:
    def test_defaults(self):
        settings = Settings.from_env(env_files=())
        assert settings.storage_backend == "memory"
        assert settings.bearer_ttl_days == 90
        assert settings.challenge_max_attempts == 3

    def test_prefixed_variables_are_coerced(self, monkeypatch):
        monkeypatch.setenv("RINGBROKER_MASTER_PASSPHRASE", "pw")
        monkeypatch.setenv("RINGBROKER_BEARER_TTL_DAYS", "30")
        monkeypatch.setenv("RINGBROKER_LOG_SERIALIZE", "true")
        settings = Settings.from_env(env_files=())
        assert settings.master_passphrase == "pw"
        assert settings.bearer_ttl_days == 30
        assert settings.log_serialize is True

    def test_conventional_provider_names(self, monkeypatch):
        monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC1")
        monkeypatch.setenv("GOOGLE_OAUTH_CLIENT_ID", "client-1")
        settings = Settings.from_env(env_files=())
        assert settings.twilio_account_sid == "AC1"
        assert settings.google_client_id == "client-1"

    def test_prefixed_wins_over_conventional(self, monkeypatch):
        monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC1")
        monkeypatch.setenv("RINGBROKER_TWILIO_ACCOUNT_SID", "AC2")
        assert Settings.from_env(env_files=()).twilio_account_sid == "AC2"

    def test_dotenv_file(self, tmp_path, monkeypatch):
        # Registered so monkeypatch removes what load_dotenv sets
        monkeypatch.setenv("RINGBROKER_STORAGE_BACKEND", "memory")
        monkeypatch.delenv("RINGBROKER_STORAGE_BACKEND")
        env = tmp_path / ".env"
        env.write_text("RINGBROKER_STORAGE_BACKEND=sqlite\n")
        assert Settings.from_env(env_files=(str(env),)).storage_backend == "sqlite"


class TestFromYaml:
    def test_env_references_expanded(self, tmp_path, monkeypatch):
        monkeypatch.setenv("BROKER_SECRET", "from-env")
        path = tmp_path / "ringbroker.yaml"
        path.write_text(
            "ringbroker:\n"
            "  master_passphrase: ${BROKER_SECRET}\n"
            "  storage_backend: sqlite\n"
            "  challenge_ttl_minutes: 5\n"
            "  log_serialize: 'no'\n"
        )
        settings = Settings.from_yaml(str(path))
        assert settings.master_passphrase == "from-env"
        assert settings.storage_backend == "sqlite"
        assert settings.challenge_ttl_minutes == 5
        assert settings.log_serialize is False

    def test_flat_file(self, tmp_path):
        path = tmp_path / "flat.yaml"
        path.write_text("master_passphrase: pw\n")
        assert Settings.from_yaml(str(path)).master_passphrase == "pw"

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert Settings.from_yaml(str(path)) == Settings()


def test_from_mapping_ignores_unknown_and_none():
    settings = Settings.from_mapping({"sqlite_path": "x.db", "nonsense": 1, "log_level": None})
    assert settings.sqlite_path == "x.db"
    assert settings.log_level == "INFO"
