"""
Network Image Observer
======================
Correlates Chrome DevTools Protocol network events into image records.

``Network.responseReceived`` carries the URL, MIME type and declared
``content-length``; ``Network.loadingFinished`` carries the bytes that
actually crossed the wire.  Pending responses are held per request id
until the matching finish event arrives.  On ``close()`` anything still
pending is flushed at its declared length.

CDP callbacks arrive independently of the crawl loop, so the pending map
is lock-guarded.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

from .models import DetectedImage

logger = logging.getLogger(__name__)

RESPONSE_RECEIVED = "Network.responseReceived"
LOADING_FINISHED = "Network.loadingFinished"
DATA_RECEIVED = "Network.dataReceived"

_SUBSCRIBED_EVENTS = (RESPONSE_RECEIVED, LOADING_FINISHED, DATA_RECEIVED)

# Network.enable buffer sizes (bytes)
_MAX_TOTAL_BUFFER = 10_000_000
_MAX_RESOURCE_BUFFER = 5_000_000

_POLL_INTERVAL_S = 0.05


# ---------------------------------------------------------------------------
# Protocol messages
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResponseReceived:
    request_id: str
    url: str
    mime_type: str
    content_length: int


@dataclass(frozen=True)
class LoadingFinished:
    request_id: str
    encoded_data_length: int


@dataclass(frozen=True)
class DataReceived:
    request_id: str
    data_length: int


@dataclass(frozen=True)
class UnknownEvent:
    method: str


NetworkMessage = Union[ResponseReceived, LoadingFinished, DataReceived, UnknownEvent]


def _header(headers: Dict[str, Any], name: str) -> str:
    for key, value in (headers or {}).items():
        if key.lower() == name:
            return str(value)
    return ""


def _to_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def parse_cdp_event(method: str, params: Dict[str, Any]) -> NetworkMessage:
    """Turn a raw CDP event into a typed message."""
    params = params or {}
    request_id = params.get("requestId") or ""

    if method == RESPONSE_RECEIVED:
        response = params.get("response") or {}
        return ResponseReceived(
            request_id=request_id,
            url=response.get("url") or "",
            mime_type=response.get("mimeType") or "",
            content_length=_to_int(_header(response.get("headers"), "content-length")),
        )
    if method == LOADING_FINISHED:
        return LoadingFinished(
            request_id=request_id,
            encoded_data_length=_to_int(params.get("encodedDataLength")),
        )
    if method == DATA_RECEIVED:
        return DataReceived(
            request_id=request_id,
            data_length=_to_int(params.get("dataLength")),
        )
    return UnknownEvent(method=method)


def is_trackable_image(url: str, mime_type: str) -> bool:
    """Only ``image/*`` responses with a real (non data-URI) URL are tracked."""
    if not mime_type.lower().startswith("image/"):
        return False
    return bool(url) and not url.lower().startswith("data:")


# ---------------------------------------------------------------------------
# Observer
# ---------------------------------------------------------------------------

@dataclass
class _PendingResponse:
    url: str
    mime_type: str
    content_length: int


class NetworkImageObserver:
    """
    Collects image records for one page.

    Usage::

        observer = NetworkImageObserver(on_bytes=budget.add_bytes)
        await observer.attach(context, page)
        ... navigate ...
        await observer.wait_for_pending(0.5)
        await observer.close()
        images = observer.images
    """

    def __init__(
        self,
        on_image: Optional[Callable[[DetectedImage], None]] = None,
        on_bytes: Optional[Callable[[int], None]] = None,
    ):
        self._on_image = on_image
        self._on_bytes = on_bytes
        self._pending: Dict[str, _PendingResponse] = {}
        self._lock = threading.Lock()
        self._closed = False
        self._cdp = None
        self._handlers: List[tuple] = []
        self.images: List[DetectedImage] = []

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    async def attach(self, context, page) -> None:
        """Open a CDP session for ``page`` and subscribe to network events."""
        self._cdp = await context.new_cdp_session(page)
        await self._cdp.send("Network.enable", {
            "maxTotalBufferSize": _MAX_TOTAL_BUFFER,
            "maxResourceBufferSize": _MAX_RESOURCE_BUFFER,
        })
        for method in _SUBSCRIBED_EVENTS:
            handler = self._make_handler(method)
            self._cdp.on(method, handler)
            self._handlers.append((method, handler))

    def _make_handler(self, method: str) -> Callable[[Dict[str, Any]], None]:
        def handler(params: Dict[str, Any]) -> None:
            self.handle_event(method, params)
        return handler

    def handle_event(self, method: str, params: Dict[str, Any]) -> None:
        """Entry point for raw CDP callbacks."""
        if self._closed:
            return
        try:
            self.dispatch(parse_cdp_event(method, params))
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.debug(f"[CDP] Error processing {method}: {e}")

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch(self, message: NetworkMessage) -> None:
        if isinstance(message, ResponseReceived):
            if not message.request_id or not is_trackable_image(message.url, message.mime_type):
                return
            logger.debug(f"[CDP] Image response {message.url} ({message.mime_type})")
            with self._lock:
                self._pending[message.request_id] = _PendingResponse(
                    message.url, message.mime_type, message.content_length,
                )

        elif isinstance(message, LoadingFinished):
            with self._lock:
                info = self._pending.pop(message.request_id, None)
            if info is None:
                return
            size = message.encoded_data_length if message.encoded_data_length > 0 else info.content_length
            self._emit(DetectedImage(url=info.url, mime_type=info.mime_type, size=size))

        elif isinstance(message, DataReceived):
            if self._on_bytes and message.data_length > 0:
                self._on_bytes(message.data_length)

    def _emit(self, image: DetectedImage) -> None:
        self.images.append(image)
        if self._on_image:
            self._on_image(image)

    # ------------------------------------------------------------------
    # Grace period + teardown
    # ------------------------------------------------------------------

    @property
    def has_pending(self) -> bool:
        with self._lock:
            return bool(self._pending)

    async def wait_for_pending(self, timeout_s: float) -> bool:
        """Wait until no image response is pending.

        Returns:
            True if everything finished within ``timeout_s``.
        """
        deadline = time.monotonic() + timeout_s
        while time.monotonic() < deadline:
            if not self.has_pending:
                return True
            await asyncio.sleep(_POLL_INTERVAL_S)
        return not self.has_pending

    def flush(self) -> None:
        """Stop listening and emit leftovers at their declared length."""
        self._closed = True
        with self._lock:
            leftovers = list(self._pending.values())
            self._pending.clear()
        for info in leftovers:
            self._emit(DetectedImage(url=info.url, mime_type=info.mime_type, size=info.content_length))

    async def close(self) -> None:
        if self._closed and self._cdp is None:
            return
        if self._cdp is not None:
            for method, handler in self._handlers:
                self._cdp.remove_listener(method, handler)
        self._handlers.clear()
        self.flush()

        if self._cdp is not None:
            cdp, self._cdp = self._cdp, None
            try:
                await cdp.detach()
            except Exception as e:
                logger.debug(f"[CDP] Detach failed: {e}")
