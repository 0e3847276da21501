"""Translate relayed API requests into store operations.

The dispatcher is the error boundary for request-scoped failures: every
request yields exactly one :class:`ApiResponse`, nothing is raised.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import ValidationError

from phonebackend._constants import (
    ERROR_METHOD_NOT_ALLOWED,
    ERROR_NOT_FOUND,
    STATUS_BAD_REQUEST,
    STATUS_CREATED,
    STATUS_INTERNAL_ERROR,
    STATUS_METHOD_NOT_ALLOWED,
    STATUS_NOT_FOUND,
    STATUS_OK,
)
from phonebackend.exceptions import InvalidBodyError, StoreError
from phonebackend.models.messages import ApiRequest, ApiResponse
from phonebackend.store import PathStore, split_path

_logger = logging.getLogger(__name__)


def _now_ms() -> int:
    """Current epoch timestamp in milliseconds."""
    return int(time.time() * 1000)


class IdGenerator:
    """Millisecond-timestamp ids that never repeat within one process.

    When the clock has not moved past the last issued id, the next id is
    ``last + 1``.
    """

    def __init__(self, clock: Callable[[], int] = _now_ms) -> None:
        self._clock = clock
        self._last = 0

    def __call__(self) -> str:
        candidate = self._clock()
        if candidate <= self._last:
            candidate = self._last + 1
        self._last = candidate
        return str(candidate)


class RequestDispatcher:
    """Serve ``GET``/``POST``/``PATCH``/``DELETE`` against a :class:`PathStore`."""

    def __init__(
        self,
        store: PathStore,
        *,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._store = store
        self._new_id = id_factory or IdGenerator()
        self._handlers: dict[str, Callable[[ApiRequest], ApiResponse]] = {
            "GET": self._get,
            "POST": self._post,
            "PATCH": self._patch,
            "DELETE": self._delete,
        }

    def handle_raw(self, payload: Any) -> ApiResponse | None:
        """Validate a raw ``api_request`` payload and dispatch it.

        Returns ``None`` when the payload carries no usable correlation id,
        since no caller could match a reply to it.
        """
        try:
            request = ApiRequest.model_validate(payload)
        except ValidationError as exc:
            request_id = payload.get("id") if isinstance(payload, Mapping) else None
            if request_id in (None, ""):
                _logger.warning("Dropping api_request without id: %s", exc)
                return None
            _logger.warning("Malformed api_request id=%s: %s", request_id, exc)
            return ApiResponse(
                request_id=request_id if isinstance(request_id, (str, int)) else str(request_id),
                status_code=STATUS_BAD_REQUEST,
                body={"error": "Malformed request"},
            )
        return self.handle(request)

    def handle(self, request: ApiRequest) -> ApiResponse:
        """Serve one request. Never raises."""
        _logger.info("%s %s", request.method, request.path)
        handler = self._handlers.get(request.method)
        if handler is None:
            response = self._respond(request, STATUS_METHOD_NOT_ALLOWED, {"error": ERROR_METHOD_NOT_ALLOWED})
        else:
            try:
                response = handler(request)
            except StoreError as exc:
                _logger.info("Request id=%s refused: %s", request.id, exc)
                response = self._respond(request, exc.status_code, {"error": str(exc)})
            except Exception as exc:
                _logger.error("Request id=%s failed", request.id, exc_info=True)
                response = ApiResponse(
                    request_id=request.id,
                    status_code=STATUS_INTERNAL_ERROR,
                    error=str(exc),
                )
        _logger.info("%s %s -> %s", request.method, request.path, response.status_code)
        return response

    @staticmethod
    def _respond(request: ApiRequest, status_code: int, body: Any) -> ApiResponse:
        return ApiResponse(request_id=request.id, status_code=status_code, body=body)

    def _not_found(self, request: ApiRequest) -> ApiResponse:
        return self._respond(request, STATUS_NOT_FOUND, {"error": ERROR_NOT_FOUND})

    # ------------------------------------------------------------------
    # Methods
    # ------------------------------------------------------------------

    def _get(self, request: ApiRequest) -> ApiResponse:
        value = self._store.get(request.path)
        if value is None:
            return self._not_found(request)
        return self._respond(request, STATUS_OK, value)

    def _post(self, request: ApiRequest) -> ApiResponse:
        body = request.body if request.body is not None else {}
        if not isinstance(body, dict):
            raise InvalidBodyError("Request body must be a JSON object", path=request.path)

        new_id = self._new_id()
        record = {"id": new_id, **body}
        self._store.set("/".join([*split_path(request.path), new_id]), record)
        return self._respond(request, STATUS_CREATED, record)

    def _patch(self, request: ApiRequest) -> ApiResponse:
        merged = self._store.merge(request.path, request.body)
        if merged is None:
            return self._not_found(request)
        return self._respond(request, STATUS_OK, merged)

    def _delete(self, request: ApiRequest) -> ApiResponse:
        if not self._store.delete(request.path):
            return self._not_found(request)
        return self._respond(request, STATUS_OK, {"success": True})
