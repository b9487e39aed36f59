from __future__ import annotations

import logging
from contextvars import ContextVar, Token
from typing import Any

import sentry_sdk

_log_context: ContextVar[dict[str, Any]] = ContextVar("log_context", default={})


class RequestContextFilter(logging.Filter):
    """Inject request metadata from ContextVars into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - formatting only
        context = _log_context.get({})
        record.request_id = context.get("request_id")
        record.media_ref = context.get("media_ref")
        return True


def push_request_context(request_id: str) -> Token:
    return _log_context.set({"request_id": request_id, "media_ref": None})


def pop_request_context(token: Token) -> None:
    _log_context.reset(token)


def set_media_context(media_ref: str | None) -> None:
    context = _log_context.get({})
    if context:
        context["media_ref"] = media_ref
    else:  # fallback when middleware is bypassed (tests, CLI)
        _log_context.set({"request_id": None, "media_ref": media_ref})
    sentry_sdk.set_tag("media_ref", media_ref)


def current_request_id() -> str | None:
    return _log_context.get({}).get("request_id")


def _sentry_enabled() -> bool:
    return sentry_sdk.get_client().is_active()


def report_exception(exc: BaseException, **tags: str) -> None:
    """Forward an exception handled outside a request to Sentry, if configured."""

    if not _sentry_enabled():
        return
    with sentry_sdk.new_scope() as scope:
        for key, value in tags.items():
            scope.set_tag(key, value)
        request_id = current_request_id()
        if request_id:
            scope.set_tag("request_id", request_id)
        sentry_sdk.capture_exception(exc)


__all__ = [
    "RequestContextFilter",
    "current_request_id",
    "push_request_context",
    "pop_request_context",
    "report_exception",
    "set_media_context",
]
