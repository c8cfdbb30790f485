"""Browser-readable inspector for System V IPC resources.

This package provides a Flask application that reports kernel metadata
as JSON, in the spirit of ``ipcs``.  It is an **optional** extra; install
with::

    pip install py-ipc[web]

The ``create_app`` factory in ``app.py`` serves:

- ``GET /api/constants`` — module constants.
- ``GET /api/shm/<id>`` — shared memory segment metadata.
- ``GET /api/sem/<id>`` — semaphore metadata and value.
- ``GET /api/mq/<id>`` — message queue metadata.
- ``GET /api/log`` — the backend's audit log.
"""
