import logging
import os
import secrets
from pathlib import Path


SECRET_FILE_NAME = ".secret"
SECRET_BYTES = 32

logger = logging.getLogger(__name__)


class SecurityValidationError(RuntimeError):
    pass


def parse_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def parse_int_env(name: str, default: int, *, minimum: int, maximum: int) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        value = default
    return max(minimum, min(maximum, value))


def get_app_env() -> str:
    value = (os.getenv("APP_ENV") or "dev").strip().lower()
    if value in {"prod", "production"}:
        return "prod"
    return "dev"


def is_prod() -> bool:
    return get_app_env() == "prod"


def allow_insecure_defaults() -> bool:
    default = not is_prod()
    return parse_bool_env("ALLOW_INSECURE_DEFAULTS", default)


def get_data_dir(root_dir: Path | None = None) -> Path:
    configured = (os.getenv("KUOTA_DATA_DIR") or "").strip()
    if configured:
        return Path(configured)
    base = root_dir or Path.cwd()
    return base / "data"


def get_secret_file(root_dir: Path | None = None) -> Path:
    return get_data_dir(root_dir) / SECRET_FILE_NAME


def get_app_secret(root_dir: Path | None = None) -> str:
    """
    Process-wide secret the credential key is derived from.

    APP_SECRET wins; otherwise a random value is generated once and kept in
    the data directory with owner-only permissions.
    """
    configured = (os.getenv("APP_SECRET") or "").strip()
    if configured:
        return configured

    secret_file = get_secret_file(root_dir)
    if secret_file.exists():
        stored = secret_file.read_text(encoding="utf-8").strip()
        if stored:
            return stored

    secret_file.parent.mkdir(parents=True, exist_ok=True)
    secret = secrets.token_hex(SECRET_BYTES)
    fd = os.open(secret_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(secret)
    logger.info("Generated new credential secret at %s", secret_file)
    return secret


def validate_secret_settings() -> None:
    if (os.getenv("APP_SECRET") or "").strip():
        return

    if allow_insecure_defaults():
        logger.warning(
            "SECURITY WARNING: APP_SECRET is not set; using the generated secret file. "
            "Losing that file makes every stored credential unreadable."
        )
        return

    raise SecurityValidationError(
        "Refusing startup due to insecure defaults: APP_SECRET is missing. "
        "Set APP_SECRET or ALLOW_INSECURE_DEFAULTS=true explicitly."
    )
