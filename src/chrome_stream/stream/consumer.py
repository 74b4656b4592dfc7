"""
Screencast Consumer
===================

WebSocket FrameSource for a screencast relay.

The relay bridges the browser's screencast to a websocket. This module
provides the ScreencastConsumer class which:
    - Connects to the relay and reconnects with backoff
    - Receives and validates frame messages
    - Delivers each capture to the registered handler as a RawFrame
    - Sends capture-control commands (start, stop, on-demand capture)

Wire format (JSON text messages):
    inbound  {"type": "frame", "data", "timestamp", "metadata"}
    inbound  {"type": "capture_result", "request_id", "data", "timestamp", "metadata"}
    inbound  {"type": "error", "message", "request_id"?}
    outbound {"type": "start_capture", "quality", "every_nth_frame", "max_width"?, "max_height"?}
    outbound {"type": "stop_capture"}
    outbound {"type": "capture", "request_id"}

Design Rules:
    - Does NOT decode image data
    - Logs validation warnings but continues processing
    - Malformed messages are counted, never fatal
    - Capture settings are re-sent after every reconnect
"""

import asyncio
import itertools
import json
import logging
import time
from typing import Dict, Optional, Tuple

import websockets
from websockets.exceptions import (
    ConnectionClosed,
    ConnectionClosedError,
    ConnectionClosedOK,
)

from chrome_stream.config import Settings
from chrome_stream.stream.frame import FrameMetadata
from chrome_stream.stream.source import CaptureError, RawFrame, RawFrameHandler


logger = logging.getLogger(__name__)


class ScreencastConsumerMetrics:
    """Metrics for ScreencastConsumer observability."""

    __slots__ = (
        "frames_received",
        "captures_received",
        "reconnect_count",
        "last_timestamp",
        "validation_warnings",
        "parse_errors",
    )

    def __init__(self) -> None:
        self.frames_received: int = 0
        self.captures_received: int = 0
        self.reconnect_count: int = 0
        self.last_timestamp: float = 0.0
        self.validation_warnings: int = 0
        self.parse_errors: int = 0

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {
            "frames_received": self.frames_received,
            "captures_received": self.captures_received,
            "reconnect_count": self.reconnect_count,
            "last_timestamp": self.last_timestamp,
            "validation_warnings": self.validation_warnings,
            "parse_errors": self.parse_errors,
        }


class ScreencastConsumer:
    """
    WebSocket consumer for screencast relay frames.

    Attributes:
        url: WebSocket URL to connect to
        connected: Whether currently connected
        metrics: Operational metrics

    Example:
        consumer = ScreencastConsumer(url="ws://localhost:9300/screencast")
        sync = StreamSynchronizer(source=consumer, executor=input_executor)

        task = asyncio.create_task(consumer.run())
        await sync.start()
        ...
        await sync.stop()
        await consumer.stop()
        await task
    """

    def __init__(
        self,
        url: str,
        reconnect_backoff_ms: int = 500,
        max_reconnect_attempts: int = 0,
        capture_timeout_ms: int = 3000,
        max_width: Optional[int] = None,
        max_height: Optional[int] = None,
    ) -> None:
        """
        Initialize screencast consumer.

        Args:
            url: WebSocket URL of the screencast relay
            reconnect_backoff_ms: Backoff between reconnect attempts
            max_reconnect_attempts: Max attempts (0 = unlimited)
            capture_timeout_ms: Default timeout for capture_on_demand()
            max_width: Screencast width cap sent with start_capture
            max_height: Screencast height cap sent with start_capture
        """
        self.url = url
        self.reconnect_backoff_ms = reconnect_backoff_ms
        self.max_reconnect_attempts = max_reconnect_attempts
        self.capture_timeout_ms = capture_timeout_ms
        self.max_width = max_width
        self.max_height = max_height

        # State
        self._websocket: Optional[websockets.ClientConnection] = None
        self._connected: bool = False
        self._running: bool = False
        self._stop_event: asyncio.Event = asyncio.Event()
        self._handler: Optional[RawFrameHandler] = None
        self._capture_params: Optional[Tuple[int, int]] = None
        self._pending_captures: Dict[str, asyncio.Future] = {}
        self._request_ids = itertools.count(1)

        # Metrics
        self.metrics = ScreencastConsumerMetrics()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScreencastConsumer":
        """Build a consumer from the source and viewport configuration."""
        return cls(
            url=settings.source.url,
            reconnect_backoff_ms=settings.source.reconnect_backoff_ms,
            max_reconnect_attempts=settings.source.max_reconnect_attempts,
            capture_timeout_ms=settings.source.capture_timeout_ms,
            max_width=settings.stream.viewport_width,
            max_height=settings.stream.viewport_height,
        )

    @property
    def connected(self) -> bool:
        """Whether currently connected to the relay."""
        return self._connected

    # =========================================================================
    # FrameSource interface
    # =========================================================================

    def on_frame(self, handler: RawFrameHandler) -> None:
        """Register the handler that receives every raw capture."""
        self._handler = handler

    async def start_capture(self, quality: int, every_nth_frame: int) -> None:
        """
        Ask the relay to start the screencast.

        If not connected yet, the request is sent once the connection is up.
        """
        self._capture_params = (quality, every_nth_frame)
        if self._connected:
            await self._send_start_capture()

    async def stop_capture(self) -> None:
        """Ask the relay to stop the screencast."""
        self._capture_params = None
        if self._connected:
            await self._send({"type": "stop_capture"})

    async def capture_on_demand(self, timeout_ms: Optional[int] = None) -> RawFrame:
        """
        Request a single capture from the relay and wait for it.

        Raises:
            CaptureError: If disconnected, the relay reports an error,
                or no capture arrives within the timeout
        """
        if not self._connected:
            raise CaptureError("Not connected to screencast relay")

        timeout_ms = timeout_ms or self.capture_timeout_ms
        request_id = f"capture-{next(self._request_ids)}"
        future = asyncio.get_running_loop().create_future()
        self._pending_captures[request_id] = future

        try:
            await self._send({"type": "capture", "request_id": request_id})
            return await asyncio.wait_for(future, timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError as e:
            raise CaptureError(f"Capture {request_id} timed out after {timeout_ms}ms") from e
        except ConnectionClosed as e:
            raise CaptureError(f"Connection closed during capture: {e}") from e
        finally:
            self._pending_captures.pop(request_id, None)

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def run(self) -> None:
        """
        Start consuming frames.

        Runs indefinitely, reconnecting on disconnect.
        Call stop() to terminate gracefully.
        """
        self._running = True
        self._stop_event.clear()

        logger.info(f"ScreencastConsumer starting, connecting to {self.url}")

        while self._running:
            try:
                await self._connect_and_consume()
            except Exception as e:
                if not self._running:
                    break

                logger.error(f"Connection error: {e}")
                self._connected = False

                if (
                    self.max_reconnect_attempts > 0
                    and self.metrics.reconnect_count >= self.max_reconnect_attempts
                ):
                    logger.error(
                        f"Max reconnect attempts ({self.max_reconnect_attempts}) exceeded"
                    )
                    break

                self.metrics.reconnect_count += 1
                backoff_sec = self.reconnect_backoff_ms / 1000.0
                logger.info(
                    f"Reconnecting in {backoff_sec:.1f}s "
                    f"(attempt {self.metrics.reconnect_count})"
                )

                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=backoff_sec)
                    break
                except asyncio.TimeoutError:
                    pass

        logger.info("ScreencastConsumer stopped")

    async def stop(self) -> None:
        """
        Stop consuming gracefully.

        Signals the run loop to exit and closes the connection.
        """
        logger.info("ScreencastConsumer stopping...")
        self._running = False
        self._stop_event.set()

        if self._websocket is not None:
            try:
                await self._websocket.close()
            except ConnectionClosed:
                pass

        self._connected = False
        self._fail_pending_captures("Consumer stopped")

    async def _connect_and_consume(self) -> None:
        """Connect to the relay and consume messages until disconnect."""
        async with websockets.connect(
            self.url,
            ping_interval=20,
            ping_timeout=10,
            close_timeout=5,
            max_size=None,
        ) as ws:
            self._websocket = ws
            self._connected = True
            logger.info(f"Connected to screencast relay: {self.url}")

            try:
                if self._capture_params is not None:
                    await self._send_start_capture()

                async for message in ws:
                    if not self._running:
                        break
                    self._handle_message(message)

            except ConnectionClosedOK:
                logger.info("Connection closed normally")
            except ConnectionClosedError as e:
                logger.warning(f"Connection closed with error: {e}")
                raise
            finally:
                self._connected = False
                self._websocket = None
                self._fail_pending_captures("Connection to screencast relay lost")

    async def _send(self, payload: dict) -> None:
        if self._websocket is None:
            raise CaptureError("Not connected to screencast relay")
        await self._websocket.send(json.dumps(payload))

    async def _send_start_capture(self) -> None:
        quality, every_nth_frame = self._capture_params
        message = {
            "type": "start_capture",
            "quality": quality,
            "every_nth_frame": every_nth_frame,
        }
        if self.max_width is not None:
            message["max_width"] = self.max_width
        if self.max_height is not None:
            message["max_height"] = self.max_height
        await self._send(message)
        logger.info(f"Requested screencast: quality={quality}, every_nth_frame={every_nth_frame}")

    def _fail_pending_captures(self, reason: str) -> None:
        for future in self._pending_captures.values():
            if not future.done():
                future.set_exception(CaptureError(reason))
        self._pending_captures.clear()

    # =========================================================================
    # Message handling
    # =========================================================================

    def _handle_message(self, message) -> None:
        """Parse one inbound message and route it by type."""
        try:
            data = json.loads(message)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            self.metrics.parse_errors += 1
            logger.error(f"Failed to parse message JSON: {e}")
            return

        if not isinstance(data, dict):
            self.metrics.parse_errors += 1
            logger.error(f"Unexpected message payload: {type(data).__name__}")
            return

        msg_type = data.get("type")
        if msg_type == "frame":
            raw = self._parse_raw_frame(data)
            if raw is not None:
                self.metrics.frames_received += 1
                self._deliver(raw)
        elif msg_type == "capture_result":
            self._resolve_capture(data)
        elif msg_type == "error":
            self._handle_error(data)
        else:
            self.metrics.parse_errors += 1
            logger.warning(f"Unknown message type: {msg_type!r}")

    def _parse_raw_frame(self, data: dict) -> Optional[RawFrame]:
        """
        Validate a frame payload.

        Timestamp regressions are logged as warnings but do not reject
        the frame.

        Returns:
            RawFrame, or None on structural error
        """
        try:
            image_b64 = data["data"]
            if not isinstance(image_b64, str) or not image_b64:
                raise ValueError("empty or non-string image data")
            timestamp = float(data.get("timestamp") or time.time())
            metadata = FrameMetadata.from_dict(data.get("metadata") or {})
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            self.metrics.parse_errors += 1
            logger.error(f"Invalid frame structure: {e}")
            return None

        if self.metrics.last_timestamp > 0 and timestamp < self.metrics.last_timestamp:
            self.metrics.validation_warnings += 1
            logger.warning(
                f"Timestamp went backwards: got {timestamp:.3f}, "
                f"previous was {self.metrics.last_timestamp:.3f}"
            )
        self.metrics.last_timestamp = timestamp

        return RawFrame(image_b64=image_b64, captured_at=timestamp, metadata=metadata)

    def _deliver(self, raw: RawFrame) -> None:
        if self._handler is None:
            logger.debug("Frame received with no handler registered, dropping")
            return
        try:
            self._handler(raw)
        except Exception as e:
            logger.warning(f"Frame handler failed: {e}")

    def _resolve_capture(self, data: dict) -> None:
        request_id = data.get("request_id")
        future = self._pending_captures.get(request_id)
        if future is None or future.done():
            logger.debug(f"Ignoring capture result for unknown request {request_id!r}")
            return

        raw = self._parse_raw_frame(data)
        if raw is None:
            future.set_exception(CaptureError(f"Malformed capture result for {request_id}"))
            return
        self.metrics.captures_received += 1
        future.set_result(raw)

    def _handle_error(self, data: dict) -> None:
        message = data.get("message", "unknown error")
        request_id = data.get("request_id")
        logger.warning(f"Relay reported error: {message}")

        future = self._pending_captures.get(request_id) if request_id else None
        if future is not None and not future.done():
            future.set_exception(CaptureError(f"Relay error: {message}"))
