"""Settings — process-wide defaults read from the environment.

Like a Unix process, the library takes its configuration from
``KEY=VALUE`` environment variables inherited from the parent:

    ``PY_IPC_BACKEND``       ``libc`` (real kernel) or ``simulated``.
    ``PY_IPC_KEY_ATTEMPTS``  How many random keys to try before giving up.
    ``PY_IPC_LOG_CAPACITY``  How many audit log entries to retain.

Everything else (default mode, default message size) is a constant in
``py_ipc.constants`` that callers override per call.
"""

import os
from collections.abc import Mapping
from dataclasses import dataclass

from py_ipc.logging import DEFAULT_LOG_CAPACITY

BACKEND_LIBC = "libc"
BACKEND_SIMULATED = "simulated"
BACKEND_NAMES = frozenset({BACKEND_LIBC, BACKEND_SIMULATED})

DEFAULT_KEY_ATTEMPTS = 1000


@dataclass(frozen=True)
class IpcSettings:
    """Immutable bundle of library defaults."""

    backend: str = BACKEND_LIBC
    key_attempts: int = DEFAULT_KEY_ATTEMPTS
    log_capacity: int = DEFAULT_LOG_CAPACITY

    def __post_init__(self) -> None:
        """Reject settings no backend could honour."""
        if self.backend not in BACKEND_NAMES:
            msg = f"Unknown backend {self.backend!r} (expected one of {sorted(BACKEND_NAMES)})"
            raise ValueError(msg)
        if self.key_attempts < 1:
            msg = f"key_attempts must be at least 1, got {self.key_attempts}"
            raise ValueError(msg)
        if self.log_capacity < 1:
            msg = f"log_capacity must be at least 1, got {self.log_capacity}"
            raise ValueError(msg)


def _positive_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        msg = f"{name} must be an integer, got {raw!r}"
        raise ValueError(msg) from None
    if value < 1:
        msg = f"{name} must be positive, got {value}"
        raise ValueError(msg)
    return value


def load_settings(environ: Mapping[str, str] | None = None) -> IpcSettings:
    """Build settings from environment variables.

    Args:
        environ: Variables to read.  Defaults to ``os.environ``.

    Returns:
        The resulting settings; unset variables keep their defaults.

    Raises:
        ValueError: If a variable is set to an unusable value.

    """
    env = os.environ if environ is None else environ
    backend = env.get("PY_IPC_BACKEND", BACKEND_LIBC).strip().lower() or BACKEND_LIBC
    if backend not in BACKEND_NAMES:
        msg = f"PY_IPC_BACKEND must be one of {sorted(BACKEND_NAMES)}, got {backend!r}"
        raise ValueError(msg)
    return IpcSettings(
        backend=backend,
        key_attempts=_positive_int(env, "PY_IPC_KEY_ATTEMPTS", DEFAULT_KEY_ATTEMPTS),
        log_capacity=_positive_int(env, "PY_IPC_LOG_CAPACITY", DEFAULT_LOG_CAPACITY),
    )
