from __future__ import annotations

import logging
import os
import signal
import threading
from collections.abc import Iterator
from unittest.mock import MagicMock

import pytest

from community_operator.src.errors import CacheError, ManagerRuntimeError
from community_operator.src.lifecycle import SHUTDOWN_SIGNALS, run_manager, setup_signal_handler


@pytest.fixture
def restore_signal_handlers() -> Iterator[None]:
    previous = {signum: signal.getsignal(signum) for signum in SHUTDOWN_SIGNALS}
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


@pytest.mark.usefixtures("restore_signal_handlers")
class TestSignalHandler:
    def test_installs_handler_for_interrupt_and_terminate(self) -> None:
        setup_signal_handler(exit_fn=MagicMock())

        for signum in (signal.SIGINT, signal.SIGTERM):
            assert callable(signal.getsignal(signum))

    def test_first_signal_sets_stop_event(self) -> None:
        exit_fn = MagicMock()
        stop_event = setup_signal_handler(exit_fn=exit_fn)
        handler = signal.getsignal(signal.SIGTERM)

        handler(signal.SIGTERM, None)  # type: ignore[operator,misc]

        assert stop_event.is_set()
        exit_fn.assert_not_called()

    def test_second_signal_exits_immediately(self) -> None:
        exit_fn = MagicMock()
        setup_signal_handler(exit_fn=exit_fn)
        handler = signal.getsignal(signal.SIGINT)

        handler(signal.SIGTERM, None)  # type: ignore[operator,misc]
        handler(signal.SIGINT, None)  # type: ignore[operator,misc]

        exit_fn.assert_called_once_with(1)

    @pytest.mark.skipif(not hasattr(os, "kill"), reason="requires POSIX signals")
    def test_real_sigterm_is_delivered(self) -> None:
        stop_event = setup_signal_handler(exit_fn=MagicMock())

        os.kill(os.getpid(), signal.SIGTERM)

        assert stop_event.wait(timeout=5)


def test_clean_stop_returns_zero() -> None:
    manager = MagicMock()
    stop_event = threading.Event()

    assert run_manager(manager, stop_event) == 0
    manager.start.assert_called_once_with(stop_event)


@pytest.mark.parametrize(
    "error", [ManagerRuntimeError("watch loop died"), CacheError("access denied")]
)
def test_runtime_failure_returns_one_and_names_stage(
    error: ManagerRuntimeError, caplog: pytest.LogCaptureFixture
) -> None:
    manager = MagicMock()
    manager.start.side_effect = error

    with caplog.at_level(logging.ERROR):
        assert run_manager(manager, threading.Event()) == 1

    assert "stage run" in caplog.text
    assert str(error) in caplog.text


def test_unexpected_errors_propagate() -> None:
    manager = MagicMock()
    manager.start.side_effect = KeyError("bug")

    with pytest.raises(KeyError):
        run_manager(manager, threading.Event())
