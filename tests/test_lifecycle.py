from __future__ import annotations

import logging
import threading

from dps_plugin.lifecycle import LifecycleTracker


class _Capture(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


def _tracker():
    logger = logging.getLogger("test.lifecycle")
    logger.setLevel(logging.DEBUG)
    handler = _Capture()
    logger.addHandler(handler)
    return LifecycleTracker(logger), logger, handler


def test_join_finished_thread_and_release():
    tracker, logger, handler = _tracker()
    try:
        generation = object()
        thread = threading.Thread(target=lambda: None, name="finished")
        tracker.track(generation, thread)
        thread.start()
        assert tracker.join_thread(thread, "finished") is True
        assert tracker.report_live("after join") == []
        tracker.release(generation)
        assert tracker.generations == []
        assert tracker.threads == set()
    finally:
        logger.removeHandler(handler)


def test_bounded_join_leaves_live_generation_reported():
    tracker, logger, handler = _tracker()
    release = threading.Event()
    generation = object()
    thread = threading.Thread(target=release.wait, name="stuck", daemon=True)
    try:
        tracker.track(generation, thread)
        thread.start()
        assert tracker.join_thread(thread, "stuck", timeout=0.05) is False
        assert any("did not exit cleanly" in record.getMessage() for record in handler.records)
        assert tracker.report_live("after stop") == [generation]
        warning = handler.records[-1]
        assert warning.levelno == logging.WARNING
        assert "stuck" in warning.getMessage()
        assert thread in tracker.threads
    finally:
        release.set()
        thread.join(1.0)
        logger.removeHandler(handler)


def test_generations_are_tracked_by_identity():
    tracker, logger, handler = _tracker()
    try:
        first, second = object(), object()
        tracker.track(first)
        tracker.track(second)
        tracker.track(None)
        tracker.release(first)
        tracker.release(first)
        assert tracker.generations == [second]
        assert tracker.threads == set()
    finally:
        logger.removeHandler(handler)


def test_join_from_own_thread_is_refused():
    tracker, logger, handler = _tracker()
    results = []
    try:
        def _self_join():
            results.append(tracker.join_thread(threading.current_thread(), "self"))

        thread = threading.Thread(target=_self_join)
        thread.start()
        thread.join(1.0)
        assert results == [False]
    finally:
        logger.removeHandler(handler)
