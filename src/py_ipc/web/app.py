"""Flask application factory for the IPC inspector.

The ``create_app`` function binds an app to one backend.  Every
resource route looks the handle up through the facility classes, so a
missing resource answers 404 and a forbidden one 403, mirroring
``ExistentialError`` and ``PermissionsError``.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict
from typing import Any

from flask import Flask, Response, jsonify

from py_ipc import constants
from py_ipc.backend import IpcBackend, get_default_backend
from py_ipc.errors import ExistentialError, PermissionsError
from py_ipc.mq import MessageQueue
from py_ipc.semaphore import Semaphore
from py_ipc.shm import SharedMemory

_HTTP_FORBIDDEN = 403
_HTTP_NOT_FOUND = 404

_EXPORTED_CONSTANTS = (
    "VERSION",
    "PAGE_SIZE",
    "KEY_MIN",
    "KEY_MAX",
    "SEMAPHORE_VALUE_MAX",
    "SEMAPHORE_TIMEOUT_SUPPORTED",
    "QUEUE_MESSAGE_SIZE_MAX",
    "QUEUE_MESSAGE_SIZE_MAX_DEFAULT",
    "IPC_PRIVATE",
    "IPC_CREAT",
    "IPC_EXCL",
    "IPC_CREX",
    "IPC_NOWAIT",
    "SEM_UNDO",
    "SHM_RND",
    "SHM_RDONLY",
    "SHM_HUGETLB",
    "SHM_NORESERVE",
    "SHM_REMAP",
)


def _inspect(describe: Callable[[], dict[str, Any]]) -> tuple[Response, int] | Response:
    try:
        return jsonify(describe())
    except ExistentialError as exc:
        return jsonify({"error": str(exc)}), _HTTP_NOT_FOUND
    except PermissionsError as exc:
        return jsonify({"error": str(exc)}), _HTTP_FORBIDDEN


def create_app(backend: IpcBackend | None = None) -> Flask:
    """Create and configure the Flask application.

    Args:
        backend: Kernel interface to inspect; defaults to the
            process-wide one.

    Returns:
        A configured Flask application ready to serve.

    """
    ipc = backend if backend is not None else get_default_backend()
    app = Flask(__name__)

    @app.route("/api/constants")
    def constants_view() -> Response:  # pyright: ignore[reportUnusedFunction]
        """Return the module constants available on this platform."""
        return jsonify({name: getattr(constants, name) for name in _EXPORTED_CONSTANTS if hasattr(constants, name)})

    @app.route("/api/shm/<int:ident>")
    def shm_view(ident: int) -> tuple[Response, int] | Response:  # pyright: ignore[reportUnusedFunction]
        """Return a segment's metadata."""
        return _inspect(lambda: asdict(SharedMemory.from_id(ident, backend=ipc).stat()))

    @app.route("/api/sem/<int:ident>")
    def sem_view(ident: int) -> tuple[Response, int] | Response:  # pyright: ignore[reportUnusedFunction]
        """Return a semaphore's metadata and current value."""

        def describe() -> dict[str, Any]:
            sem = Semaphore.from_id(ident, backend=ipc)
            return asdict(sem.stat()) | {"value": sem.value}

        return _inspect(describe)

    @app.route("/api/mq/<int:ident>")
    def mq_view(ident: int) -> tuple[Response, int] | Response:  # pyright: ignore[reportUnusedFunction]
        """Return a queue's metadata."""
        return _inspect(lambda: asdict(MessageQueue.from_id(ident, backend=ipc).stat()))

    @app.route("/api/log")
    def log_view() -> Response:  # pyright: ignore[reportUnusedFunction]
        """Return the backend's audit log lines."""
        return jsonify({"backend": ipc.name, "lines": ipc.dmesg()})

    return app


def main() -> None:
    """Run the inspector development server.

    This is the ``py-ipc-web`` console entry point.
    """
    app = create_app()
    app.run(debug=True, port=8080)
