"""Load dataload settings from `.env.defaults` and `.env` files.

Values found here sit below the process environment and CLI flags in the
configuration hierarchy.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional, Tuple


def _candidate_dirs() -> Tuple[Path, ...]:
    dirs = [Path(__file__).resolve().parent.parent.parent]
    # cwd may have been removed underneath us
    try:
        cwd = Path.cwd()
        if cwd.resolve() != dirs[0].resolve():
            dirs.append(cwd)
    except (OSError, FileNotFoundError):
        pass
    return tuple(dirs)


@lru_cache(maxsize=8)
def load_defaults(env_file: Optional[str] = None) -> Dict[str, str]:
    """Merge `.env.defaults` then `.env` (repo root, then cwd), then ``env_file``.

    Later files override earlier ones. Missing files are skipped, so an
    empty dict is a valid result when everything comes from the environment.
    """
    dirs = _candidate_dirs()
    merged: Dict[str, str] = {}

    for name in (".env.defaults", ".env"):
        for directory in dirs:
            path = directory / name
            if path.exists():
                merged.update(parse_env_file(path))

    if env_file:
        path = Path(env_file)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {env_file}")
        merged.update(parse_env_file(path))

    return merged


def get_default(key: str, fallback: str | None = None,
                env_file: Optional[str] = None) -> str | None:
    """Return the file-configured value for a key (or fallback)."""
    return load_defaults(env_file).get(key, fallback)


def parse_env_file(env_path: Path) -> Dict[str, str]:
    values: Dict[str, str] = {}
    with env_path.open("r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            if line.startswith("export "):
                line = line[len("export "):]
            key, value = line.split("=", 1)
            value = value.strip()
            # Strip surrounding quotes (single or double)
            if len(value) >= 2 and value[0] in ('"', "'") and value[-1] == value[0]:
                value = value[1:-1]
            values[key.strip()] = value
    return values
