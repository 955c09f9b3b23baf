"""Settings for the harvester, read from the environment and an optional profile file."""
from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
from typing import Callable, Mapping, TypeVar
from urllib.parse import quote_plus

from .models import Issuer

T = TypeVar("T")

DEFAULT_BASE_URL = "https://www.cnmv.es/Portal/Consultas/EE/PosicionesCortas.aspx"

DEFAULT_ISSUERS: tuple[Issuer, ...] = (
    Issuer(ticker="GRF", nif="A-58389123", isin="ES0171996087", name="Grifols Clase A"),
    Issuer(ticker="SLR", nif="A83511501", isin="ES0165386014", name="Solaria"),
)


def _resolve_env_file(candidate: str) -> Path | None:
    """Locate ``candidate`` in the working directory or above the package."""

    path = Path(candidate)
    if path.is_absolute():
        return path if path.is_file() else None

    roots = dict.fromkeys([Path.cwd().resolve(), *Path(__file__).resolve().parents])
    for root in roots:
        if (root / candidate).is_file():
            return root / candidate
    return None


def _parse_env_file(path: Path) -> dict[str, str]:
    """Read ``KEY=value`` lines, tolerating ``export`` prefixes and quoted values."""

    variables: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        key, sep, value = line.partition("=")
        if not sep:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        variables[key.strip()] = value
    return variables


def _load_profile_env(env: Mapping[str, str]) -> dict[str, str]:
    """Load environment variables from the selected profile file."""

    explicit_file = env.get("SHORT_HARVEST_ENV_FILE")
    profile = env.get("SHORT_HARVEST_ENV", "local")
    candidate = explicit_file or f".env.{profile}"

    path = _resolve_env_file(candidate)
    if path is not None:
        return _parse_env_file(path)
    return {}


def _build_database_url(env: Mapping[str, str]) -> str | None:
    """Construct a SQLAlchemy URL from discrete environment variables."""

    host = env.get("SHORT_HARVEST_DB_HOST")
    if not host:
        return None

    username = env.get("SHORT_HARVEST_DB_USERNAME")
    if not username:
        raise RuntimeError("SHORT_HARVEST_DB_USERNAME must be set when using discrete database settings")

    if "SHORT_HARVEST_DB_PASSWORD" not in env:
        raise RuntimeError("SHORT_HARVEST_DB_PASSWORD must be set when using discrete database settings")

    password = env.get("SHORT_HARVEST_DB_PASSWORD", "")
    port = env.get("SHORT_HARVEST_DB_PORT", "5432")
    database = env.get("SHORT_HARVEST_DB_NAME", "short_harvest")
    driver = env.get("SHORT_HARVEST_DB_DRIVER", "postgresql+psycopg")

    auth = f"{quote_plus(username)}:{quote_plus(password)}"
    port_part = f":{port}" if port else ""
    return f"{driver}://{auth}@{host}{port_part}/{database}"


def _parse_issuers(raw: str) -> tuple[Issuer, ...]:
    """Parse ``TICKER|NIF|Name|ISIN`` lines; name and ISIN are optional."""

    issuers = []
    for chunk in raw.split("\n"):
        if not chunk.strip():
            continue
        parts = [part.strip() for part in chunk.split("|")]
        if len(parts) < 2 or not parts[0] or not parts[1]:
            raise RuntimeError("Each issuer definition must be of the form 'TICKER|NIF[|Name[|ISIN]]'")
        name = parts[2] if len(parts) > 2 and parts[2] else None
        isin = parts[3] if len(parts) > 3 and parts[3] else None
        issuers.append(Issuer(ticker=parts[0].upper(), nif=parts[1], name=name, isin=isin))
    return tuple(issuers)


def _typed(env: Mapping[str, str], key: str, default: T, cast: Callable[[str], T]) -> T:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw.strip())
    except ValueError as exc:
        raise RuntimeError(f"{key} has an invalid value: {raw!r}") from exc


def _bounded(
    env: Mapping[str, str],
    key: str,
    default: T,
    cast: Callable[[str], T],
    *,
    minimum: float,
    strict: bool = False,
) -> T:
    value = _typed(env, key, default, cast)
    if value < minimum or (strict and value == minimum):
        relation = "greater than" if strict else "at least"
        raise RuntimeError(f"{key} must be {relation} {minimum}, got {value}")
    return value


def _parse_time(value: str) -> tuple[int, int]:
    value = value.strip()
    if not value or ":" not in value:
        raise ValueError("Time must be in HH:MM format")
    hour_str, minute_str = value.split(":", 1)
    hour = int(hour_str)
    minute = int(minute_str)
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError("Hours must be 0-23 and minutes 0-59")
    return hour, minute


@dataclass(frozen=True)
class Settings:
    """Runtime configuration of a harvest run."""

    database_url: str
    issuers: tuple[Issuer, ...] = DEFAULT_ISSUERS
    base_url: str = DEFAULT_BASE_URL
    request_timeout: float = 30.0
    max_attempts: int = 3
    backoff_factor: float = 1.0
    backoff_max: float = 30.0
    max_pages: int = 20
    error_threshold: float = 0.5
    max_workers: int = 4
    max_concurrent_requests: int = 2
    min_request_interval: float = 0.5
    sync_timeout: float = 300.0
    schedule: tuple[int, int] = (16, 0)
    timezone: str = "Europe/Madrid"

    @staticmethod
    def load(env: Mapping[str, str] | None = None) -> "Settings":
        """Load settings from environment variables."""

        base_env = dict(os.environ if env is None else env)
        file_env = _load_profile_env(base_env)
        # Environment variables set in the shell take precedence over the file.
        merged_env = {**file_env, **base_env}

        database_url = merged_env.get("SHORT_HARVEST_DATABASE_URL")
        if not database_url:
            database_url = _build_database_url(merged_env)
        if not database_url:
            raise RuntimeError(
                "SHORT_HARVEST_DATABASE_URL must be set or provide discrete database settings via the env file"
            )

        issuers_env = merged_env.get("SHORT_HARVEST_ISSUERS")
        issuers = _parse_issuers(issuers_env) if issuers_env else DEFAULT_ISSUERS

        error_threshold = _typed(merged_env, "SHORT_HARVEST_ERROR_THRESHOLD", 0.5, float)
        if not 0.0 <= error_threshold <= 1.0:
            raise RuntimeError("SHORT_HARVEST_ERROR_THRESHOLD must lie between 0 and 1")

        return Settings(
            database_url=database_url,
            issuers=issuers,
            base_url=merged_env.get("SHORT_HARVEST_BASE_URL") or DEFAULT_BASE_URL,
            request_timeout=_bounded(merged_env, "SHORT_HARVEST_REQUEST_TIMEOUT", 30.0, float, minimum=0, strict=True),
            max_attempts=_bounded(merged_env, "SHORT_HARVEST_MAX_ATTEMPTS", 3, int, minimum=1),
            backoff_factor=_bounded(merged_env, "SHORT_HARVEST_BACKOFF_FACTOR", 1.0, float, minimum=0),
            backoff_max=_bounded(merged_env, "SHORT_HARVEST_BACKOFF_MAX", 30.0, float, minimum=0),
            max_pages=_bounded(merged_env, "SHORT_HARVEST_MAX_PAGES", 20, int, minimum=1),
            error_threshold=error_threshold,
            max_workers=_bounded(merged_env, "SHORT_HARVEST_MAX_WORKERS", 4, int, minimum=1),
            max_concurrent_requests=_bounded(merged_env, "SHORT_HARVEST_MAX_CONCURRENT_REQUESTS", 2, int, minimum=1),
            min_request_interval=_bounded(merged_env, "SHORT_HARVEST_MIN_REQUEST_INTERVAL", 0.5, float, minimum=0),
            sync_timeout=_bounded(merged_env, "SHORT_HARVEST_SYNC_TIMEOUT", 300.0, float, minimum=0, strict=True),
            schedule=_typed(merged_env, "SHORT_HARVEST_SCHEDULE", (16, 0), _parse_time),
            timezone=merged_env.get("SHORT_HARVEST_TIMEZONE") or "Europe/Madrid",
        )


__all__ = ["Settings", "DEFAULT_ISSUERS", "DEFAULT_BASE_URL"]
