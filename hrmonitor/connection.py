"""
Connection lifecycle for a BLE heart-rate sensor.

ConnectionController keeps one live HRM subscription through a DeviceGateway,
decodes every notification in arrival order and hands readings to a consumer
callback. Lost links and failed connects are retried forever with a fixed,
cancellable delay.

States: DISCONNECTED -> CONNECTING -> CONNECTED -> DISCONNECTED -> CONNECTING ...
A failed connect attempt stays in CONNECTING for the retry delay and is
reported through on_connect_failed.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Protocol

from hrmonitor.gatt_hrm import DecodeError, EmptyPayload, HeartRateReading, decode_hrm

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAY = 5.0


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class HeartRateConnectionError(Exception):
    """Connecting to the sensor failed; the controller retries."""


class SensorNotFound(HeartRateConnectionError):
    pass


class SubscribeFailed(HeartRateConnectionError):
    pass


class DeviceGateway(Protocol):
    """What the controller needs from a BLE stack."""

    async def find_sensor(self) -> Any | None:
        """Return a handle for a heart-rate sensor, or None if none is around."""
        ...

    async def subscribe(
        self,
        handle: Any,
        on_notification: Callable[[bytes], None],
        on_disconnect: Callable[[], None],
    ) -> None:
        """Start HRM notifications. Raise on failure."""
        ...

    async def release(self, handle: Any) -> None:
        """Unsubscribe and close. Must be safe to call twice."""
        ...


class ConnectionController:
    """
    Owns the sensor handle and the reconnect loop.

    on_reading(reading) is called once per decoded notification.
    on_status_change(state) is called on every state transition.
    on_decode_error(error, data) receives dropped payloads (diagnostics only).
    on_connect_failed(error) is called for every failed connect attempt.
    Exceptions from any of these callbacks are logged and otherwise ignored.

    Gateway callbacks may come from any thread; they are moved onto the
    controller's event loop and processed one at a time.
    """

    def __init__(
        self,
        gateway: DeviceGateway,
        on_reading: Callable[[HeartRateReading], None],
        on_status_change: Callable[[ConnectionState], None] | None = None,
        *,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        on_decode_error: Callable[[DecodeError, bytes], None] | None = None,
        on_connect_failed: Callable[[HeartRateConnectionError], None] | None = None,
        logger_instance: logging.Logger | None = None,
    ):
        self.gateway = gateway
        self.retry_delay = retry_delay
        self._on_reading = on_reading
        self._on_status_change = on_status_change
        self._on_decode_error = on_decode_error
        self._on_connect_failed = on_connect_failed
        self._logger = logger_instance or logger
        self._state = ConnectionState.DISCONNECTED
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop_event = asyncio.Event()
        self._queue: asyncio.Queue | None = None
        self.attempts = 0
        self.readings = 0
        self.dropped = 0
        self.last_error: HeartRateConnectionError | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    async def run(self) -> None:
        """Connect, stream and reconnect until stop() is called."""
        self._loop = asyncio.get_running_loop()
        try:
            while not self._stop_event.is_set():
                self._set_state(ConnectionState.CONNECTING)
                queue: asyncio.Queue = asyncio.Queue()
                try:
                    handle = await self._acquire(queue)
                except HeartRateConnectionError as e:
                    self.last_error = e
                    self._logger.warning(
                        "Connecting failed: %s. Retrying in %gs", e, self.retry_delay
                    )
                    if self._on_connect_failed is not None:
                        self._notify(self._on_connect_failed, e)
                    await self._backoff()
                    continue
                self.last_error = None
                if self._stop_event.is_set():
                    await self._release(handle)
                    break
                await self._serve(handle, queue)
        finally:
            self._queue = None
            self._set_state(ConnectionState.DISCONNECTED)

    def stop(self) -> None:
        """Ask run() to return. Safe from any thread; interrupts a pending retry wait."""
        if self._loop is None or self._loop.is_closed():
            self._stop_event.set()
            return
        self._loop.call_soon_threadsafe(self._request_stop)

    def _request_stop(self) -> None:
        self._stop_event.set()
        if self._queue is not None:
            self._queue.put_nowait(None)

    async def _acquire(self, queue: asyncio.Queue) -> Any:
        self.attempts += 1
        self._logger.debug("Looking for sensor (attempt %d)", self.attempts)
        try:
            handle = await self.gateway.find_sensor()
        except Exception as e:
            raise SensorNotFound(f"sensor lookup failed: {e}") from e
        if handle is None:
            raise SensorNotFound("no heart rate sensor found")

        on_notification, on_disconnect = self._callbacks(queue)
        try:
            await self.gateway.subscribe(handle, on_notification, on_disconnect)
        except asyncio.CancelledError:
            await self._release(handle)
            raise
        except Exception as e:
            await self._release(handle)
            raise SubscribeFailed(f"subscribe failed: {e}") from e
        return handle

    def _callbacks(self, queue: asyncio.Queue):
        """Per-connection callbacks; a None item in the queue ends the connection."""
        loop = self._loop

        def post(item: bytes | None) -> None:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, item)
            except RuntimeError:
                # Loop already closed: the controller is gone
                self._logger.debug("Notification after shutdown ignored")

        def on_notification(data: bytes) -> None:
            post(bytes(data))

        def on_disconnect() -> None:
            post(None)

        return on_notification, on_disconnect

    async def _serve(self, handle: Any, queue: asyncio.Queue) -> None:
        self._queue = queue
        self._set_state(ConnectionState.CONNECTED)
        try:
            while True:
                data = await queue.get()
                if data is None:
                    break
                self._handle_notification(data)
        finally:
            self._queue = None
            await self._release(handle)
            self._set_state(ConnectionState.DISCONNECTED)
        if not self._stop_event.is_set():
            self._logger.warning("Sensor disconnected. Reconnecting...")

    def _handle_notification(self, data: bytes) -> None:
        try:
            reading = decode_hrm(data)
        except EmptyPayload:
            return
        except DecodeError as e:
            self.dropped += 1
            self._logger.warning("Dropped HRM notification %s: %s", data.hex(), e)
            if self._on_decode_error is not None:
                self._notify(self._on_decode_error, e, data)
            return
        self.readings += 1
        self._logger.debug("HR %d bpm, RR %s", reading.bpm, reading.rr_intervals)
        self._notify(self._on_reading, reading)

    async def _release(self, handle: Any) -> None:
        try:
            await self.gateway.release(handle)
        except Exception as e:
            self._logger.warning("Releasing sensor handle failed: %s", e)

    async def _backoff(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.retry_delay)
        except asyncio.TimeoutError:
            pass

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._state = state
        self._logger.info("Sensor %s", state.value)
        if self._on_status_change is not None:
            self._notify(self._on_status_change, state)

    def _notify(self, callback: Callable, *args) -> None:
        try:
            callback(*args)
        except Exception:
            self._logger.exception("Callback %r failed", callback)
