from __future__ import annotations

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, MutableMapping

ENV_PREFIX = "ASK_HUMAN_"


@dataclass(frozen=True)
class RendezvousConfig:
    ask_file: Path
    timeout_s: float = 1800.0
    max_question_bytes: int = 10 * 1024
    max_context_bytes: int = 50 * 1024
    max_pending: int = 100
    max_file_bytes: int = 100 * 1024 * 1024
    sweep_interval_s: float = 300.0
    poll_interval_s: float = 5.0
    # 0 disables stale-lock recovery; a leftover lock file needs manual cleanup.
    lock_stale_s: float = 0.0
    host: str = "localhost"
    port: int = 3000


def read_env_file(env_path: Path) -> dict[str, str]:
    """Parse KEY=VALUE lines from a .env file.

    Blank lines, comments and lines without '=' are skipped. A leading
    ``export`` is allowed and one pair of matching quotes is removed.
    """
    values: dict[str, str] = {}
    if not env_path.is_file():
        return values
    for raw in env_path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export "):]
        key, _, val = line.partition("=")
        val = val.strip()
        if len(val) >= 2 and val[0] == val[-1] and val[0] in "\"'":
            val = val[1:-1]
        values[key.strip()] = val
    return values


def load_env(
    env_path: Path | None = None,
    *,
    environ: MutableMapping[str, str] | None = None,
) -> list[str]:
    """Copy .env values into the environment without overriding what is set.

    Returns the names that were applied.
    """
    target = os.environ if environ is None else environ
    path = env_path if env_path is not None else Path.cwd() / ".env"
    applied = []
    for key, val in read_env_file(path).items():
        if key not in target:
            target[key] = val
            applied.append(key)
    return applied


def default_ask_file() -> Path:
    try:
        home = Path.home()
    except RuntimeError:
        return Path("ask_human.md")

    if sys.platform.startswith("win"):
        documents = home / "Documents"
        if documents.is_dir():
            return documents / "ask_human.md"
    return home / "ask_human.md"


class _EnvReader:
    def __init__(self, environ: Mapping[str, str]):
        self.environ = environ

    def text(self, name: str) -> str:
        return (self.environ.get(ENV_PREFIX + name) or "").strip()

    def as_int(self, name: str, default: int) -> int:
        raw = self.text(name)
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError:
            raise ValueError(f"{ENV_PREFIX}{name} must be an integer, got {raw!r}") from None

    def as_float(self, name: str, default: float) -> float:
        raw = self.text(name)
        if not raw:
            return default
        try:
            return float(raw)
        except ValueError:
            raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {raw!r}") from None


def get_config(environ: Mapping[str, str] | None = None) -> RendezvousConfig:
    """Build the engine configuration from ASK_HUMAN_* environment variables.

    Call load_env() first if a .env file should be honoured.
    """
    env = _EnvReader(os.environ if environ is None else environ)
    raw_file = env.text("FILE")

    return RendezvousConfig(
        ask_file=Path(raw_file).expanduser() if raw_file else default_ask_file(),
        timeout_s=env.as_float("TIMEOUT_S", 1800.0),
        max_question_bytes=env.as_int("MAX_QUESTION_BYTES", 10 * 1024),
        max_context_bytes=env.as_int("MAX_CONTEXT_BYTES", 50 * 1024),
        max_pending=env.as_int("MAX_PENDING", 100),
        max_file_bytes=env.as_int("MAX_FILE_BYTES", 100 * 1024 * 1024),
        sweep_interval_s=env.as_float("SWEEP_INTERVAL_S", 300.0),
        poll_interval_s=env.as_float("POLL_INTERVAL_S", 5.0),
        lock_stale_s=env.as_float("LOCK_STALE_S", 0.0),
        host=env.text("HOST") or "localhost",
        port=env.as_int("PORT", 3000),
    )
