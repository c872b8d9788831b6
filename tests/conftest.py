"""Shared fixtures: a scriptable in-memory provider."""
import asyncio
from typing import Callable, Optional

import pytest

from sanitizer.core.cancellation import CancellationToken
from sanitizer.core.models import Availability, CallResult, ProviderSettings
from sanitizer.core.sessions import Session, SessionCoordinator
from sanitizer.services.providers import PROVIDERS
from sanitizer.services.providers.base import Provider


def echo(text: str, attempt: int) -> list[str]:
    """Default behaviour: answer with the chunk wrapped in brackets."""
    return ["[", text, "]"]


class FakeProvider(Provider):
    """
    Provider driven by a ``respond(text, attempt)`` callable.

    ``respond`` returns the deltas to stream, or raises to fail the call.
    """

    id = "fake"
    label = "Fake backend"

    def __init__(
        self,
        settings: ProviderSettings | None = None,
        respond: Callable[[str, int], list[str]] = echo,
        delay: float = 0,
        instances: Optional[list] = None,
    ):
        super().__init__(settings or ProviderSettings(context_length=2048))
        self.respond = respond
        self.delay = delay
        self.calls: list[str] = []
        self.statuses: list[str] = []
        self.destroy_calls = 0
        if instances is not None:
            instances.append(self)

    @classmethod
    async def check_availability(cls, settings=None) -> Availability:
        return Availability(available=True)

    async def call(self, text, prompt, on_status=None, on_update=None, token: CancellationToken | None = None):
        self.calls.append(text)
        deltas = self.respond(text, len(self.calls))
        content = ""
        for delta in deltas:
            await asyncio.sleep(self.delay)
            if token:
                token.check_cancelled()
            content += delta
            if on_update:
                on_update(delta)
        return CallResult(content=content)

    async def destroy(self) -> None:
        self.destroy_calls += 1
        await super().destroy()


class UnavailableProvider(FakeProvider):
    id = "fake-unavailable"
    label = "Unavailable backend"

    @classmethod
    async def check_availability(cls, settings=None) -> Availability:
        return Availability(available=False, reason="Model file not found: /models/missing.gguf")


@pytest.fixture
def fake_provider_cls():
    return FakeProvider


@pytest.fixture
def registered_fakes(monkeypatch):
    """Register the fake providers in the global registry."""
    monkeypatch.setitem(PROVIDERS, FakeProvider.id, FakeProvider)
    monkeypatch.setitem(PROVIDERS, UnavailableProvider.id, UnavailableProvider)
    return FakeProvider, UnavailableProvider


@pytest.fixture
def session():
    return Session(session_id="tab-1")


@pytest.fixture
def coordinator():
    return SessionCoordinator()


@pytest.fixture
def recorder():
    """Collects status and delta callbacks in emission order."""

    class Recorder:
        def __init__(self):
            self.statuses: list[tuple[str, Optional[float]]] = []
            self.deltas: list[str] = []

        def on_status(self, message, progress):
            self.statuses.append((message, progress))

        def on_update(self, delta):
            self.deltas.append(delta)

        @property
        def messages(self) -> list[str]:
            return [m for m, _ in self.statuses]

    return Recorder()
