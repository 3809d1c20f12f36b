import asyncio
from typing import Dict, List, Optional

import pytest

from entry_store import InMemoryEntryStore
from enrichment_orchestrator import EnrichmentOrchestrator
from errors import PersistError
from models import Entry, LlmDictionaryDraft, LlmMeaningOutput
from notification_bus import ENTRY_UPDATED, NotificationBus

FALLBACK = "https://fallback.test/none.png"


def make_generated(word: str, n: int = 2) -> LlmDictionaryDraft:
    return LlmDictionaryDraft(
        word=word,
        phonetic=f"/{word}/",
        primary_image_prompt=f"{word} primary",
        meanings=[
            LlmMeaningOutput(
                part_of_speech="noun",
                definition=f"{word} sense {i}",
                example=f"An example of {word} number {i}.",
                image_prompt=f"{word} scene {i}",
            )
            for i in range(n)
        ],
    )


class FakeTextGenerator:
    """Returns canned drafts by word; unknown words yield None."""

    def __init__(self, drafts: Optional[Dict[str, LlmDictionaryDraft]] = None, delay: float = 0.0):
        self.drafts = drafts if drafts is not None else {"apple": make_generated("apple")}
        self.delay = delay
        self.calls: List[str] = []

    async def generate(self, word: str) -> Optional[LlmDictionaryDraft]:
        self.calls.append(word)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.drafts.get(word)


class FakeImageGenerator:
    """Returns img:<prompt>. Prompts containing a fail_on marker raise; gate holds every call."""

    def __init__(self, fail_on=(), gate: Optional[asyncio.Event] = None):
        self.fail_on = tuple(fail_on)
        self.gate = gate
        self.prompts: List[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.gate is not None:
            await self.gate.wait()
        if any(marker in prompt for marker in self.fail_on):
            raise RuntimeError("image provider unavailable")
        return f"img:{prompt}"


class FlakyStore(InMemoryEntryStore):
    """In-memory store whose writes can be switched to fail; counts reads."""

    def __init__(self):
        super().__init__()
        self.fail_puts = False
        self.fail_creates = False
        self.reads = 0

    async def get(self, entry_id: str) -> Optional[Entry]:
        self.reads += 1
        return await super().get(entry_id)

    async def put(self, entry: Entry) -> Entry:
        if self.fail_puts:
            raise PersistError(entry.id, "write rejected")
        return await super().put(entry)

    async def create_if_absent(self, entry: Entry) -> bool:
        if self.fail_creates:
            raise PersistError(entry.id, "write rejected")
        return await super().create_if_absent(entry)


class FakeClock:
    """Simulated monotonic clock; sleep() advances time instead of waiting."""

    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture
def store():
    return FlakyStore()


@pytest.fixture
def bus():
    return NotificationBus()


@pytest.fixture
def text_generator():
    return FakeTextGenerator()


@pytest.fixture
def image_generator():
    return FakeImageGenerator()


@pytest.fixture
def events(bus):
    received = []
    bus.subscribe(ENTRY_UPDATED, received.append)
    return received


@pytest.fixture
def orchestrator(store, text_generator, image_generator, bus):
    return EnrichmentOrchestrator(
        store, text_generator, image_generator, bus, image_timeout=1.0, fallback_image=FALLBACK,
    )
