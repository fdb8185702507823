"""Key and certificate file path derivation."""

from pathlib import Path
from typing import Optional, Sequence, Union

from .errors import ConfigurationError

PathLike = Union[str, Path]

STEMS = ("key", "cert")


def default_filename(domains: Sequence[str], stem: str) -> str:
    """File name used when no explicit path is configured."""
    return f"{domains[0]}_{stem}.pem"


def resolve_path(
    explicit_path: Optional[PathLike],
    stem: str,
    ssl_directory: PathLike,
    domains: Sequence[str],
) -> Path:
    """Resolve a key or certificate path against the SSL directory.

    Absolute explicit paths are returned unchanged, relative ones are joined
    onto ``ssl_directory`` and a missing or empty path falls back to
    ``<ssl_directory>/<domains[0]>_<stem>.pem``. Resolving an already
    resolved absolute path is a no-op.
    """
    if stem not in STEMS:
        raise ConfigurationError(f"Unknown path stem {stem!r}, expected one of {STEMS}")

    if isinstance(explicit_path, str) and not explicit_path.strip():
        explicit_path = None

    if explicit_path is None:
        if not domains:
            raise ConfigurationError("At least one domain required to derive a file name")
        return Path(ssl_directory) / default_filename(domains, stem)

    path = Path(explicit_path)
    if path.is_absolute():
        return path
    return Path(ssl_directory) / path
