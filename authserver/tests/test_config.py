"""Settings defaults and validate_security_posture() enforcement."""

import pathlib
import re
import warnings

import pytest

from authserver.config import Settings, _INSECURE_SECRETS, validate_security_posture

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[2]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_settings(**overrides) -> Settings:
    """Create a Settings instance without reading any .env file."""
    defaults = {
        "_env_file": None,
        "environment": "development",
        "jwt_secret_key": "dev-secret-change-in-production",
    }
    defaults.update(overrides)
    return Settings(**defaults)


def _make_prod_settings(**overrides) -> Settings:
    """Create a production Settings with a strong secret by default."""
    defaults = {
        "_env_file": None,
        "environment": "production",
        "jwt_secret_key": "strong-random-jwt-secret-not-in-insecure-set",
        "cors_origins": "https://app.example.com",
    }
    defaults.update(overrides)
    return Settings(**defaults)


class TestEnvExample:
    def test_all_settings_fields_documented_in_env_example(self):
        """Every Settings field (uppercased) appears in .env.example, set or commented out."""
        content = (PROJECT_ROOT / ".env.example").read_text()
        documented = set(re.findall(r"^#?\s*([A-Z][A-Z0-9_]+)=", content, re.MULTILINE))
        missing = {name.upper() for name in Settings.model_fields} - documented
        assert not missing, f"Undocumented settings: {sorted(missing)}"

    def test_env_example_has_no_real_secret(self):
        content = (PROJECT_ROOT / ".env.example").read_text()
        match = re.search(r"^JWT_SECRET_KEY=(.*)$", content, re.MULTILINE)
        assert match and match.group(1) in _INSECURE_SECRETS


class TestDefaults:
    def test_lifetimes(self):
        cfg = _make_settings()
        assert cfg.access_token_ttl_seconds == 7 * 24 * 3600
        assert cfg.authorization_code_ttl_seconds == 600

    def test_blocked_user_id_set(self):
        cfg = _make_settings(blocked_user_ids=" u1, ,u2 ")
        assert cfg.blocked_user_id_set == {"u1", "u2"}
        assert _make_settings().blocked_user_id_set == set()


class TestSecurityPosture:
    def test_insecure_secret_fatal_in_production(self):
        cfg = _make_prod_settings(jwt_secret_key="dev-secret-change-in-production")
        with pytest.raises(RuntimeError, match="JWT_SECRET_KEY"):
            validate_security_posture(cfg)

    def test_insecure_secret_warns_in_development(self):
        with pytest.warns(UserWarning, match="JWT_SECRET_KEY"):
            validate_security_posture(_make_settings())

    def test_strong_production_config_passes(self):
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            validate_security_posture(_make_prod_settings())

    @pytest.mark.parametrize("field", ["access_token_ttl_seconds", "authorization_code_ttl_seconds"])
    def test_non_positive_lifetimes_rejected(self, field):
        cfg = _make_settings(jwt_secret_key="strong-secret", **{field: 0})
        with pytest.raises(RuntimeError, match="lifetimes"):
            validate_security_posture(cfg)

    def test_wildcard_cors_fatal_in_production(self):
        with pytest.raises(RuntimeError, match="CORS_ORIGINS"):
            validate_security_posture(_make_prod_settings(cors_origins="*"))

    def test_wildcard_cors_allowed_in_development(self, caplog):
        cfg = _make_settings(jwt_secret_key="strong-secret", cors_origins="*")
        validate_security_posture(cfg)
        assert "CORS_ORIGINS" in caplog.text

    def test_access_ttl_shorter_than_code_ttl_fatal_in_production(self):
        cfg = _make_prod_settings(access_token_ttl_seconds=60, authorization_code_ttl_seconds=600)
        with pytest.raises(RuntimeError, match="ACCESS_TOKEN_TTL_SECONDS"):
            validate_security_posture(cfg)


class TestStorageBootstrap:
    def test_sqlite_directory_created(self, tmp_path):
        from authserver.database import _ensure_sqlite_directory

        target = tmp_path / "nested" / "data" / "authserver.db"
        _ensure_sqlite_directory(str(target))
        assert target.parent.is_dir()

    def test_memory_database_needs_no_directory(self):
        from authserver.database import _ensure_sqlite_directory

        _ensure_sqlite_directory(":memory:")
        _ensure_sqlite_directory(None)
