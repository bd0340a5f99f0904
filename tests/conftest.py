"""
Shared fixtures for the chat test suite.

Timer-driven behaviour (stuck messages, cleanup grace periods, retry
backoff) runs on a virtual clock: `ManualTimers` replaces the event-loop
scheduler and tests move time forward with `timers.advance(seconds)`.
"""

import base64
import dataclasses
import heapq
import io
import itertools
from unittest.mock import MagicMock

import pytest
from PIL import Image

from models.lifecycle_models import HandlerSet
from services.lifecycle.coordinator import LifecycleCoordinator
from services.lifecycle.message_ids import MessageIdGenerator
from services.lifecycle.timers import TimerRegistry
from utils.database_init import AsyncDatabaseInitializer
from utils.settings import DeliverySettings


class _ManualHandle:
    def __init__(self, when, fn):
        self.when = when
        self.fn = fn
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualTimers(TimerRegistry):
    """TimerRegistry on a virtual clock that only moves when told to."""

    def __init__(self, start=1_000.0):
        super().__init__()
        self._now = start
        self._heap = []
        self._order = itertools.count()

    def now(self):
        return self._now

    def _schedule(self, delay, fn):
        handle = _ManualHandle(self._now + delay, fn)
        heapq.heappush(self._heap, (handle.when, next(self._order), handle))
        return handle

    def advance(self, seconds):
        target = self._now + seconds
        while self._heap and self._heap[0][0] <= target:
            when, _, handle = heapq.heappop(self._heap)
            self._now = max(self._now, when)
            if not handle.cancelled:
                handle.fn()
        self._now = target


class FixedIds(MessageIdGenerator):
    """Hands out predetermined ids first, then falls back to real ones."""

    def __init__(self, ids=()):
        super().__init__(fingerprint="test")
        self._queued = list(ids)

    def generate(self):
        if self._queued:
            return self._queued.pop(0)
        return super().generate()


@pytest.fixture
def timers():
    return ManualTimers()


@pytest.fixture
def delivery_settings():
    return DeliverySettings()


@pytest.fixture
def make_coordinator(timers, delivery_settings):
    """Factory: make_coordinator(ids=["m1"], queue_max_size=3, ...)."""

    def _make(ids=(), **overrides):
        settings = dataclasses.replace(delivery_settings, **overrides)
        return LifecycleCoordinator(settings, timers=timers, id_generator=FixedIds(ids))

    return _make


@pytest.fixture
def coordinator(make_coordinator):
    return make_coordinator()


@pytest.fixture
def recorder():
    """One MagicMock recording every callback in call order."""
    mock = MagicMock()
    for name in ("thinking", "generating", "token", "complete", "error", "conversation_created"):
        getattr(mock, name).return_value = None
    return mock


@pytest.fixture
def handler_set(recorder):
    return HandlerSet(
        on_thinking=recorder.thinking,
        on_generating=recorder.generating,
        on_token=recorder.token,
        on_complete=recorder.complete,
        on_error=recorder.error,
        on_conversation_created=recorder.conversation_created,
    )


def callback_names(recorder):
    """Return the recorded callback names, in order."""
    return [name for name, _args, _kwargs in recorder.mock_calls]


@pytest.fixture
def names():
    return callback_names


@pytest.fixture
def db_initializer(tmp_path):
    return AsyncDatabaseInitializer(database_dir=tmp_path / "db", reset_on_start=False)


@pytest.fixture
def png_b64():
    """A 2048x1024 RGBA PNG, base64 encoded."""
    image = Image.new("RGBA", (2048, 1024), (10, 120, 200, 128))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode("ascii")
