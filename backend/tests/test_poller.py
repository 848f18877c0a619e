import threading
from unittest import mock

from chatapp.client import VersionPoller


def test_poll_once_swallows_errors():
    poller = VersionPoller(mock.Mock(side_effect=RuntimeError('boom')), interval=60)
    assert poller.poll_once() is False


def test_background_thread_polls_until_stopped():
    polled = threading.Event()

    def check():
        polled.set()
        return True

    poller = VersionPoller(check, interval=0.01)
    poller.start()
    assert poller.running
    assert polled.wait(2)

    poller.stop(timeout=2)
    assert not poller.running


def test_default_interval_is_five_minutes():
    assert VersionPoller(lambda: False).interval == 300
