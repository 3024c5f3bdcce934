import logging
import signal

import pytest

from meshsidecar.signals import shutdown_event


@pytest.fixture
def restore_handlers():
    saved = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
    yield
    for sig, handler in saved.items():
        signal.signal(sig, handler)


def test_event_starts_unset(restore_handlers):
    event = shutdown_event()
    assert event.is_set() is False


@pytest.mark.parametrize("sig", [signal.SIGINT, signal.SIGTERM])
def test_signal_sets_event(restore_handlers, sig):
    event = shutdown_event()
    signal.raise_signal(sig)
    assert event.wait(1.0) is True


def test_signal_is_logged(restore_handlers, caplog):
    event = shutdown_event()
    with caplog.at_level(logging.INFO, logger="meshsidecar.signals"):
        signal.raise_signal(signal.SIGTERM)
        event.wait(1.0)
    assert "beginning shutdown" in caplog.text
    assert "SIGTERM" in caplog.text