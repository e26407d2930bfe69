from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar


# correlates log lines and audit rows for one HTTP request or one sweep tick
_request_id: ContextVar[str | None] = ContextVar("request_id", default=None)


def set_request_id(value: str | None) -> None:
    _request_id.set(value)


def get_request_id() -> str | None:
    return _request_id.get()


def new_request_id(prefix: str | None = None) -> str:
    rid = str(uuid.uuid4())
    return f"{prefix}-{rid}" if prefix else rid


@contextmanager
def request_context(request_id: str | None = None):
    token = _request_id.set(request_id or new_request_id())
    try:
        yield _request_id.get()
    finally:
        _request_id.reset(token)
