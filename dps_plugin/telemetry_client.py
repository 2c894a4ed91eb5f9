"""Background WebSocket client for the OverlayPlugin combat event feed."""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.protocol import State

from .combat_events import MetricUpdate, build_subscribe_message, decode_combat_data
from .lifecycle import LifecycleTracker
from .reassembly import MessageReassembler, RawFrame
from .settings import DEFAULT_HOST, DEFAULT_PORT, ConnectionTarget

_LOGGER = logging.getLogger("DpsBar.Telemetry")

MetricCallback = Callable[[MetricUpdate], None]
Connector = Callable[[str], Awaitable[Any]]

_CONNECT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


async def open_websocket(uri: str) -> Any:
    # OverlayPlugin snapshots grow with party size; don't cap message size.
    return await ws_connect(uri, max_size=None)


async def iter_frames(websocket: Any) -> AsyncIterator[RawFrame]:
    """Yield the fragments of the next message, flagging the last one final."""
    previous = None
    async for fragment in websocket.recv_streaming():
        if previous is not None:
            yield RawFrame.from_fragment(previous, is_final=False)
        previous = fragment
    if previous is not None:
        yield RawFrame.from_fragment(previous, is_final=True)



class _Generation:
    """State owned by one receive thread; never reused across connects."""

    def __init__(self, target: ConnectionTarget) -> None:
        self.target = target
        self.ready = threading.Event()
        self.stop = threading.Event()
        self.opened = False
        self.connected = False
        self.error: Optional[BaseException] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.task: Optional[asyncio.Task[None]] = None
        self.thread: Optional[threading.Thread] = None

    def __repr__(self) -> str:
        return f"<TelemetryGeneration {self.target.uri}>"


class TelemetryClient:
    """Owns the connection to the telemetry peer, one generation at a time.

    ``connect`` blocks until the WebSocket handshake has finished and the
    subscription has been sent, then leaves a single receive loop running on a
    daemon thread with its own event loop. Every accepted combat event is
    handed to ``on_metric`` from that thread, in arrival order.

    Each connect builds a fresh ``_Generation``; the receive thread only reads
    and writes its own. The transport is opened and closed on that thread, so a
    generation abandoned after a bounded ``shutdown_timeout`` never has its
    socket released underneath it, nor touches its successor.
    """

    def __init__(
        self,
        on_metric: Optional[MetricCallback] = None,
        *,
        connector: Optional[Connector] = None,
        shutdown_timeout: Optional[float] = None,
        tracker: Optional[LifecycleTracker] = None,
        logger: Optional[logging.Logger] = None,
        payload_logger: Optional[logging.Logger] = None,
    ) -> None:
        self._on_metric = on_metric
        self._connector = connector or open_websocket
        self._shutdown_timeout = shutdown_timeout
        self._logger = logger or _LOGGER
        self._payload_logger = payload_logger
        self._tracker = tracker or LifecycleTracker(self._logger)
        self._lock = threading.Lock()
        self._generation: Optional[_Generation] = None
        self._target: Optional[ConnectionTarget] = None

    @property
    def connected(self) -> bool:
        generation = self._generation
        if generation is None or generation.thread is None:
            return False
        return generation.connected and generation.thread.is_alive()

    @property
    def target(self) -> Optional[ConnectionTarget]:
        return self._target

    def connect(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT) -> bool:
        """Open the connection and start the receive loop; ``False`` on failure."""
        with self._lock:
            if self.connected:
                self._logger.debug("Already connected to %s", self._target.uri if self._target else "?")
                return True
            if self._generation is not None:
                self._teardown_locked()
            target = ConnectionTarget(host, port)
            self._target = target
            generation = _Generation(target)
            self._logger.info("Attempting to connect to OverlayPlugin at %s", target.uri)
            thread = threading.Thread(
                target=self._thread_main,
                args=(generation,),
                name="DpsBar-Telemetry",
                daemon=True,
            )
            generation.thread = thread
            self._generation = generation
            self._tracker.track(generation, thread)
            thread.start()
            generation.ready.wait()
            if not generation.opened:
                self._logger.error("Failed to connect to OverlayPlugin at %s: %s", target.uri, generation.error)
                self._teardown_locked()
                return False
            self._logger.info("Connected to OverlayPlugin at %s", target.uri)
            return True

    def disconnect(self) -> None:
        """Cancel the receive loop and wait for it to exit. Safe to repeat."""
        with self._lock:
            if self._generation is None:
                return
            self._teardown_locked()
            self._logger.info("Disconnected from OverlayPlugin")

    # Teardown ---------------------------------------------------------------

    def _teardown_locked(self) -> None:
        generation = self._generation
        self._generation = None
        if generation is None:
            return
        generation.stop.set()
        loop = generation.loop
        task = generation.task
        if loop is not None and task is not None:
            try:
                loop.call_soon_threadsafe(task.cancel)
            except RuntimeError:
                self._logger.debug("Telemetry event loop already closed")
        thread = generation.thread
        if thread is not None and not self._tracker.join_thread(thread, thread.name, timeout=self._shutdown_timeout):
            # Stays tracked until the thread releases it on exit.
            self._logger.warning("Receive loop still running after shutdown grace period; abandoning it")
            return
        self._tracker.release(generation)

    # Background thread ----------------------------------------------------

    def _thread_main(self, generation: _Generation) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(self._run(generation))
        except asyncio.CancelledError:
            self._logger.info("Telemetry task cancelled during connection setup or teardown")
        except Exception:
            self._logger.exception("Telemetry thread terminated unexpectedly")
        finally:
            generation.connected = False
            generation.ready.set()
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()
            self._tracker.release(generation)

    async def _run(self, generation: _Generation) -> None:
        generation.loop = asyncio.get_running_loop()
        generation.task = asyncio.current_task()
        try:
            websocket = await self._connector(generation.target.uri)
        except _CONNECT_ERRORS as exc:
            generation.error = exc
            return
        try:
            await self._subscribe(websocket)
            generation.opened = True
            generation.connected = True
            generation.ready.set()
            await self._receive_loop(websocket, generation.stop)
        finally:
            generation.connected = False
            try:
                await websocket.close()
            except (OSError, WebSocketException) as exc:
                self._logger.debug("Error closing telemetry socket: %s", exc)

    async def _subscribe(self, websocket: Any) -> None:
        try:
            await websocket.send(build_subscribe_message())
        except (OSError, WebSocketException) as exc:
            # The loop still starts; the peer may push events regardless.
            self._logger.error("Failed to subscribe to CombatData: %s", exc)
            return
        self._logger.info("Sent subscription request for CombatData")

    async def _receive_loop(self, websocket: Any, stop: threading.Event) -> None:
        reassembler = MessageReassembler()
        self._logger.info("Starting receive loop")
        try:
            while not stop.is_set() and websocket.state is State.OPEN:
                async for frame in iter_frames(websocket):
                    message = reassembler.feed(frame)
                    if message is not None:
                        self._handle_message(message, stop)
            self._logger.info("Receive loop ended; socket state %s", websocket.state.name)
        except asyncio.CancelledError:
            self._logger.info("Receive loop cancelled")
        except ConnectionClosed as exc:
            self._logger.info("Telemetry connection closed: %s", exc)
        except Exception:
            self._logger.exception("Error in receive loop")

    def _handle_message(self, message: str, stop: threading.Event) -> None:
        if stop.is_set():
            return
        if self._payload_logger is not None:
            self._payload_logger.debug("%s", message)
        self._logger.debug("Received complete message (%d chars)", len(message))
        event = decode_combat_data(message, self._logger)
        if event is None:
            return
        self._logger.debug("Parsed EncDPS %.1f for %s (job=%s)", event.metric_value, event.combatant_key, event.job_tag)
        if self._on_metric is not None:
            self._on_metric(MetricUpdate.from_event(event))
