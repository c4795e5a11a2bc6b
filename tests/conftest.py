"""Shared fixtures for the fake model backend."""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

import pytest

from visagist.ml.image_classifier import LabelScore
from visagist.ml.model_manager import BackendUnavailableError, DeviceKind

if TYPE_CHECKING:
    from visagist.ml.model_manager import BackendStrategy


class FakeHandle:
    """Stands in for OnnxImageClassifier; behaviour is keyed by the image bytes."""

    model_id = "test/meme-detector"

    def __init__(self) -> None:
        self.default: object = [LabelScore("meme", 0.82), LabelScore("not meme", 0.18)]
        self.responses: dict[object, object] = {}
        self.delays: dict[object, float] = {}
        self.errors: dict[object, Exception] = {}
        self.error: Exception | None = None
        self.calls: list[object] = []
        self._lock = threading.Lock()

    def infer(self, image_ref: object) -> object:
        with self._lock:
            self.calls.append(image_ref)
        time.sleep(self.delays.get(image_ref, 0.0))
        if self.error is not None:
            raise self.error
        if image_ref in self.errors:
            raise self.errors[image_ref]
        return self.responses.get(image_ref, self.default)


class FakeFactory:
    """Backend factory that fails for the device kinds listed in ``failing``."""

    def __init__(self, *failing: DeviceKind, delay: float = 0.0) -> None:
        self.failing = set(failing)
        self.delay = delay
        self.handle = FakeHandle()
        self.calls: list[tuple[str, DeviceKind, str]] = []
        self.on_acquire: list[object] = []

    def acquire(self, model_id: str, strategy: BackendStrategy, precision: str) -> FakeHandle:
        self.calls.append((model_id, strategy.kind, precision))
        for hook in self.on_acquire:
            hook()  # type: ignore[operator]
        time.sleep(self.delay)
        if strategy.kind in self.failing:
            raise BackendUnavailableError(f"{strategy.primary_provider} unavailable")
        return self.handle


@pytest.fixture()
def fake_factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture()
def make_factory() -> type[FakeFactory]:
    """Build a FakeFactory; pass the device kinds whose acquire should fail."""
    return FakeFactory
