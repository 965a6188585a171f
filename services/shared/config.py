"""Environment lookups used when settings are loaded at startup."""
import os


def require_env(name: str) -> str:
    """Value of name; RuntimeError when it is unset or blank."""
    value = os.environ.get(name, "").strip()
    if not value:
        raise RuntimeError(f"Missing required environment variable '{name}'")
    return value


def optional_env(name: str, default: str = "") -> str:
    return os.environ.get(name, default)


def int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"Environment variable '{name}' must be an integer, got {raw!r}")


def csv_env(name: str, default: str = "") -> list[str]:
    """Comma separated list with blanks dropped."""
    return [item.strip() for item in optional_env(name, default).split(",") if item.strip()]
