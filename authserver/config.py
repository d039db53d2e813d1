"""Runtime configuration, read from the environment and an optional ``.env``."""

import logging
import warnings

from pydantic_settings import BaseSettings

_logger = logging.getLogger("authserver.config")

# Values shipped in examples and defaults; never acceptable for signing in production
_INSECURE_SECRETS = {
    "dev-secret-change-in-production",
    "change-me-to-a-random-string",
    "change-me-to-a-random-64-char-string",
}


class Settings(BaseSettings):
    environment: str = "development"  # development | test | production

    # Server
    authserver_host: str = "0.0.0.0"
    authserver_port: int = 8000

    # Credential store (sqlite for local dev, postgresql+asyncpg for production)
    database_url: str = "sqlite+aiosqlite:///./data/authserver.db"
    database_pool_size: int = 5
    database_max_overflow: int = 10

    # Access token signing
    jwt_secret_key: str = "dev-secret-change-in-production"
    jwt_algorithm: str = "HS256"

    # Lifetimes
    access_token_ttl_seconds: int = 3600 * 24 * 7  # 7 days
    authorization_code_ttl_seconds: int = 600  # 10 minutes

    # Random material sizes (bytes of entropy)
    client_id_bytes: int = 16
    client_secret_bytes: int = 32
    authorization_code_bytes: int = 32
    refresh_token_bytes: int = 48

    # Opportunistic purge of expired token rows and dead codes
    token_purge_interval_seconds: int = 3600

    # Comma-separated user ids whose bearer tokens are never accepted
    blocked_user_ids: str = ""

    # CORS
    cors_origins: str = "http://localhost:5173,http://localhost:3000"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in {"production", "prod"}

    @property
    def blocked_user_id_set(self) -> set[str]:
        return {u.strip() for u in self.blocked_user_ids.split(",") if u.strip()}


def validate_security_posture(cfg: Settings) -> None:
    """Refuse to run production with settings that would let tokens be forged or misused.

    Outside production the same findings are only warned about.
    """
    if cfg.access_token_ttl_seconds <= 0 or cfg.authorization_code_ttl_seconds <= 0:
        raise RuntimeError("FATAL: token and authorization code lifetimes must be positive.")

    problems: list[str] = []

    if cfg.jwt_secret_key in _INSECURE_SECRETS:
        problems.append(
            "JWT_SECRET_KEY is a published default; anyone could sign access tokens with it"
        )
    if cfg.cors_origins.strip() == "*":
        problems.append("CORS_ORIGINS is '*'; list the trusted front-end origins instead")
    if cfg.access_token_ttl_seconds < cfg.authorization_code_ttl_seconds:
        problems.append(
            "ACCESS_TOKEN_TTL_SECONDS is shorter than AUTHORIZATION_CODE_TTL_SECONDS"
        )

    if not problems:
        return
    if cfg.is_production:
        raise RuntimeError("FATAL: insecure production settings: " + "; ".join(problems))
    for problem in problems:
        if problem.startswith("JWT_SECRET_KEY"):
            warnings.warn(problem, stacklevel=2)
        else:
            _logger.warning(problem)


settings = Settings()
validate_security_posture(settings)
