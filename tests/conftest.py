"""Pytest configuration and shared fixtures for the whiteboard tests."""
import socket
import time

import pytest


def pytest_configure(config):
    """Register project markers."""
    markers = [
        ("unit", "marks tests as unit tests"),
        ("integration", "marks tests that open real sockets between threads"),
        ("framing", "marks wire format tests"),
        ("session", "marks session transport tests"),
        ("congestion", "marks congestion state machine tests"),
        ("simulation", "marks simulation harness tests"),
        ("api", "marks dashboard API tests"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture
def sock_pair():
    """Connected pair of stream sockets, closed after the test."""
    a, b = socket.socketpair()
    yield a, b
    for s in (a, b):
        try:
            s.close()
        except OSError:
            pass


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


def wait_for(predicate, timeout=3.0, interval=0.01):
    """Poll predicate until it is truthy or the timeout passes."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture
def eventually():
    return wait_for
