"""
Core Host - Backend Bridge

Named remote calls (``packs.publishVersion``, ``updates.getReleaseForApply``,
``agent.invoke``...) go through a BackendTransport. Transports may raise;
BackendClient wraps every call so callers always receive a BackendResult
and handle the "backend unavailable" case explicitly.

Whether unavailability is fatal is the caller's decision: security review
and semantic merge fail closed, telemetry calls are fire-and-forget.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import requests

from .state_store import CoreHostError

logger = logging.getLogger(__name__)


class BackendError(CoreHostError):
    """Error raised by a transport for a failed remote call."""
    pass


@dataclass
class BackendResult:
    """
    Outcome of a backend call.

    ``available`` is False when there is no transport or the call failed;
    ``error`` then explains why. An available call may still carry no value.
    """

    available: bool
    value: Any = None
    error: Optional[str] = None

    @classmethod
    def success(cls, value: Any) -> "BackendResult":
        return cls(available=True, value=value)

    @classmethod
    def unavailable(cls, error: str) -> "BackendResult":
        return cls(available=False, error=error)

    @property
    def mapping(self) -> Optional[Dict[str, Any]]:
        """The value when it is a JSON object, else None."""
        if self.available and isinstance(self.value, dict):
            return self.value
        return None


@runtime_checkable
class BackendTransport(Protocol):
    """Raw remote-call interface. Implementations may raise."""

    def call_mutation(self, name: str, args: Dict[str, Any]) -> Any:
        ...

    def call_action(self, name: str, args: Dict[str, Any]) -> Any:
        ...


class HttpBackendTransport:
    """
    HTTP transport for a backend exposing ``/api/action`` and ``/api/mutation``.

    Request body: ``{"path": name, "args": args, "format": "json"}``.
    Response body: ``{"status": "success", "value": ...}`` or
    ``{"status": "error", "errorMessage": ...}``.
    """

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({
            "User-Agent": "corehost/0.1",
            "Accept": "application/json",
            "Content-Type": "application/json",
        })
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def _post(self, kind: str, name: str, args: Dict[str, Any]) -> Any:
        try:
            response = self.session.post(
                f"{self.base_url}/api/{kind}",
                json={"path": name, "args": args, "format": "json"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as e:
            raise BackendError(f"{name}: {e}") from e

        if not isinstance(payload, dict):
            raise BackendError(f"{name}: unexpected response shape")
        if payload.get("status") != "success":
            raise BackendError(f"{name}: {payload.get('errorMessage') or 'remote call failed'}")
        return payload.get("value")

    def call_mutation(self, name: str, args: Dict[str, Any]) -> Any:
        return self._post("mutation", name, args)

    def call_action(self, name: str, args: Dict[str, Any]) -> Any:
        return self._post("action", name, args)


class BackendClient:
    """Never-raising wrapper over an optional transport."""

    def __init__(self, transport: Optional[BackendTransport] = None):
        self.transport = transport

    @property
    def connected(self) -> bool:
        return self.transport is not None

    def set_transport(self, transport: Optional[BackendTransport]) -> None:
        self.transport = transport

    def _call(self, kind: str, name: str, args: Dict[str, Any]) -> BackendResult:
        if self.transport is None:
            return BackendResult.unavailable("Backend is not connected.")
        method = self.transport.call_action if kind == "action" else self.transport.call_mutation
        try:
            return BackendResult.success(method(name, args))
        except Exception as e:
            logger.warning(f"[Backend] {kind} {name} failed: {e}")
            return BackendResult.unavailable(str(e) or type(e).__name__)

    def action(self, name: str, args: Dict[str, Any]) -> BackendResult:
        return self._call("action", name, args)

    def mutation(self, name: str, args: Dict[str, Any]) -> BackendResult:
        return self._call("mutation", name, args)
