from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional, Set, Tuple


class LifecycleTracker:
    """Registry of telemetry generations and the receive threads serving them.

    A generation stays registered until its thread has exited, so anything
    still listed after shutdown is a receive loop that outlived its teardown.
    """

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger
        self._lock = threading.Lock()
        self._entries: Dict[int, Tuple[Any, Optional[threading.Thread]]] = {}

    @property
    def generations(self) -> List[Any]:
        with self._lock:
            return [generation for generation, _ in self._entries.values()]

    @property
    def threads(self) -> Set[threading.Thread]:
        with self._lock:
            return {thread for _, thread in self._entries.values() if thread is not None}

    def track(self, generation: Any, thread: Optional[threading.Thread] = None) -> None:
        if generation is None:
            return
        with self._lock:
            self._entries[id(generation)] = (generation, thread)

    def release(self, generation: Any) -> None:
        if generation is None:
            return
        with self._lock:
            self._entries.pop(id(generation), None)

    def join_thread(self, thread: Optional[threading.Thread], name: Optional[str], *, timeout: Optional[float] = None) -> bool:
        """Join ``thread``; ``timeout=None`` waits for confirmed exit."""
        if thread is None:
            return True
        if thread is threading.current_thread():
            self._logger.warning("Refusing to join %s from its own thread", name or thread.name)
            return False
        thread.join(timeout=timeout)
        if thread.is_alive():
            self._logger.warning("Thread %s did not exit cleanly within %.1fs", name or thread.name, timeout or 0.0)
            return False
        return True

    def report_live(self, label: str) -> List[Any]:
        """Warn about generations whose receive thread is still running."""
        with self._lock:
            entries = list(self._entries.values())
        live = [(generation, thread) for generation, thread in entries if thread is None or thread.is_alive()]
        if live:
            self._logger.warning(
                "%d telemetry generation(s) still running %s: %s",
                len(live),
                label,
                ", ".join(thread.name if thread is not None else repr(generation) for generation, thread in live),
            )
        return [generation for generation, _ in live]
