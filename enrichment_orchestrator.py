# enrichment_orchestrator.py
# Two-phase dictionary lookup: a draft entry is built from the text generator
# and persisted synchronously, then a background task generates the primary
# and per-meaning images, merges them into whatever the store holds at that
# moment, persists, and publishes entryUpdated.

import asyncio
from typing import Dict, List, Optional, Sequence, Tuple, Union
from uuid import uuid4

from loguru import logger
from pydantic import BaseModel, ConfigDict

import config
from entry_store import EntryStore
from errors import NotFoundError, PersistError
from image_client import generate_image_or_fallback
from models import (
    Entry, EntryStatus, EntryUpdatedEvent, LlmDictionaryDraft, LlmMeaningOutput,
    Meaning, MeaningSource, UserMeaningInput, is_entry_complete, is_entry_merged, normalize_word,
    tts_audio_url, utcnow,
)
from notification_bus import ENTRY_UPDATED, NotificationBus
from reconciliation_poller import ReconciliationPoller

UserMeaning = Union[str, UserMeaningInput]


class LookupResult(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)
    entry: Entry
    is_new: bool
    original_text: str
    # Background enrichment started by this lookup (new draft or resumed stale entry).
    enrichment: Optional[asyncio.Task] = None


# --- Draft construction ---

def default_primary_prompt(word: str) -> str:
    return f"A simple, memorable illustration that represents the word '{word}'"


def default_meaning_prompt(word: str, meaning: LlmMeaningOutput) -> str:
    subject = f"A clear, simple illustration of the word '{word}'"
    if meaning.part_of_speech:
        subject += f" ({meaning.part_of_speech})"
    parts = [subject, f"meaning: {meaning.definition.strip()}"]
    if meaning.example:
        parts.append(f"scene: {meaning.example.strip()}")
    return ". ".join(parts)


def _meaning_id(prefix: str, index: int) -> str:
    return f"{prefix}_{index}_{uuid4().hex[:8]}"


def build_user_meanings(user_meanings: Optional[Sequence[UserMeaning]]) -> List[Meaning]:
    """User meanings in input order. Plain strings are example sentences."""
    meanings: List[Meaning] = []
    for i, item in enumerate(user_meanings or []):
        if isinstance(item, str):
            text = item.strip()
            if not text:
                continue
            meanings.append(Meaning(
                id=_meaning_id("user", i), source=MeaningSource.USER,
                example=text, example_audio_url=tts_audio_url(text),
            ))
        else:
            example = item.example.strip() if item.example else None
            meanings.append(Meaning(
                id=_meaning_id("user", i), source=MeaningSource.USER,
                part_of_speech=item.part_of_speech, definition=item.definition.strip(),
                example=example, example_audio_url=tts_audio_url(example) if example else None,
            ))
    return meanings


def build_generated_meanings(word: str, llm_meanings: Sequence[LlmMeaningOutput]) -> List[Meaning]:
    meanings: List[Meaning] = []
    for i, m in enumerate(llm_meanings):
        prompt = (m.image_prompt or "").strip() or default_meaning_prompt(word, m)
        example = m.example.strip() if m.example else None
        meanings.append(Meaning(
            id=_meaning_id("gen", i), source=MeaningSource.GENERATED,
            part_of_speech=m.part_of_speech or None, definition=m.definition.strip(),
            example=example, example_audio_url=tts_audio_url(example) if example else None,
            image_prompt=prompt,
        ))
    return meanings


def build_draft(
    word: str,
    generated: LlmDictionaryDraft,
    user_meanings: Optional[Sequence[UserMeaning]] = None,
    user_image: Optional[str] = None,
) -> Entry:
    entry_id = normalize_word(word)
    user_image = user_image or None
    return Entry(
        id=entry_id,
        word=word.strip(),
        phonetic=generated.phonetic or None,
        audio_url=tts_audio_url(entry_id),
        primary_image=user_image,
        is_primary_image_user_set=user_image is not None,
        meanings=build_user_meanings(user_meanings) + build_generated_meanings(entry_id, generated.meanings),
        status=EntryStatus.DRAFT,
    )


# --- Merge ---

def merge_enrichment(
    current: Entry,
    draft: Entry,
    generated_primary: Optional[str],
    generated_images: Dict[str, str],
) -> Entry:
    """Combines generated images with the entry as currently stored.

    The stored entry wins wherever it already has data: a primary image the
    user set (or changed since the draft was written) is kept and flagged,
    and meaning images that are already present are never replaced.
    """
    primary_changed = bool(current.primary_image) and current.primary_image != draft.primary_image
    if current.is_primary_image_user_set or primary_changed:
        primary_image, user_set = current.primary_image, True
    elif generated_primary:
        primary_image, user_set = generated_primary, False
    else:
        primary_image, user_set = current.primary_image, current.is_primary_image_user_set

    meanings: List[Meaning] = []
    for meaning in current.meanings:
        if not meaning.example_image and meaning.id in generated_images:
            meaning = meaning.model_copy(update={'example_image': generated_images[meaning.id]})
        meanings.append(meaning)

    return current.model_copy(update={
        'primary_image': primary_image,
        'is_primary_image_user_set': user_set,
        'meanings': meanings,
        'status': EntryStatus.MERGED,
        'updated_at': utcnow(),
    })


# --- Orchestrator ---

class EnrichmentOrchestrator:
    def __init__(
        self,
        store: EntryStore,
        text_generator,
        image_generator,
        bus: NotificationBus,
        image_timeout: float = config.IMAGE_TIMEOUT_SECONDS,
        fallback_image: str = config.FALLBACK_IMAGE_URL,
    ):
        self.store = store
        self.text_generator = text_generator
        self.image_generator = image_generator
        self.bus = bus
        self.image_timeout = image_timeout
        self.fallback_image = fallback_image
        self._inflight: Dict[str, asyncio.Task] = {}
        self._drafting: Dict[str, asyncio.Task] = {}

    # --- Lookup (synchronous path) ---

    async def lookup(
        self,
        word: str,
        user_meanings: Optional[Sequence[UserMeaning]] = None,
        user_image: Optional[str] = None,
    ) -> LookupResult:
        """Returns the stored entry for word, or drafts, persists and starts enriching a new one.

        A stored entry that never merged and has no running task gets its image
        step restarted; the text generator is not called again.

        Raises NotFoundError when the text generator has nothing for the word
        and PersistError when the entry cannot be read or stored; nothing is persisted
        in either case.
        """
        entry_id = normalize_word(word)
        if not entry_id:
            raise ValueError("word must not be blank")
        logger.info(f"Looking up '{entry_id}'...")

        existing = await self.store.get(entry_id)
        if existing is not None:
            logger.info(f"Found existing entry '{entry_id}' (status={existing.status.value}).")
            return LookupResult(
                entry=existing, is_new=False, original_text=word, enrichment=self._resume_if_stale(existing),
            )

        drafting = self._drafting.get(entry_id)
        if drafting is not None:
            logger.info(f"Lookup for '{entry_id}' already drafting; waiting for it.")
            entry, _ = await asyncio.shield(drafting)
            return LookupResult(entry=entry, is_new=False, original_text=word)

        drafting = asyncio.ensure_future(self._create_draft(word, user_meanings, user_image))
        self._drafting[entry_id] = drafting

        def _forget(task: asyncio.Task) -> None:
            if self._drafting.get(entry_id) is task:
                del self._drafting[entry_id]
            # callers may all have been cancelled; mark the failure as retrieved
            if not task.cancelled():
                task.exception()

        drafting.add_done_callback(_forget)
        entry, enrichment = await asyncio.shield(drafting)
        return LookupResult(entry=entry, is_new=enrichment is not None, original_text=word, enrichment=enrichment)

    async def _create_draft(
        self,
        word: str,
        user_meanings: Optional[Sequence[UserMeaning]],
        user_image: Optional[str],
    ) -> Tuple[Entry, Optional[asyncio.Task]]:
        entry_id = normalize_word(word)
        try:
            generated = await self.text_generator.generate(entry_id)
        except Exception as e:
            logger.exception(f"Text generator failed for '{entry_id}':")
            raise NotFoundError(entry_id, f"text generation failed: {e}") from e
        if generated is None:
            raise NotFoundError(entry_id, "text generation returned no result")
        if not generated.meanings:
            raise NotFoundError(entry_id)

        draft = build_draft(word, generated, user_meanings, user_image)
        created = await self.store.create_if_absent(draft)
        if not created:
            existing = await self.store.get(entry_id)
            if existing is None:
                raise PersistError(entry_id, "entry disappeared after a concurrent create")
            logger.info(f"Entry '{entry_id}' was created concurrently; returning stored entry.")
            return existing, None

        logger.info(f"Draft for '{entry_id}' persisted with {len(draft.meanings)} meaning(s).")
        return draft, self._spawn_enrichment(draft, generated.primary_image_prompt)

    # --- Background enrichment ---

    def _spawn_enrichment(self, draft: Entry, primary_prompt: Optional[str]) -> asyncio.Task:
        task = asyncio.create_task(self._run_enrichment(draft, primary_prompt), name=f"enrich:{draft.id}")
        self._inflight[draft.id] = task

        def _finished(t: asyncio.Task) -> None:
            if self._inflight.get(draft.id) is t:
                del self._inflight[draft.id]

        task.add_done_callback(_finished)
        return task

    async def _generate_images(self, draft: Entry, primary_prompt: Optional[str]) -> Tuple[Optional[str], Dict[str, str]]:
        keys: List[Optional[str]] = []
        jobs = []
        if not (draft.is_primary_image_user_set or draft.primary_image):
            keys.append(None)
            jobs.append(self._image(primary_prompt or default_primary_prompt(draft.word)))
        for meaning in draft.generated_meanings():
            if meaning.example_image:
                continue
            keys.append(meaning.id)
            jobs.append(self._image(meaning.image_prompt or default_primary_prompt(draft.word)))

        logger.info(f"Generating {len(jobs)} image(s) for '{draft.id}'.")
        results = await asyncio.gather(*jobs)
        primary: Optional[str] = None
        images: Dict[str, str] = {}
        for key, image in zip(keys, results):
            if key is None:
                primary = image
            else:
                images[key] = image
        return primary, images

    def _image(self, prompt: str):
        return generate_image_or_fallback(
            self.image_generator, prompt, timeout=self.image_timeout, fallback=self.fallback_image,
        )

    async def _run_enrichment(self, draft: Entry, primary_prompt: Optional[str]) -> Optional[Entry]:
        try:
            primary, images = await self._generate_images(draft, primary_prompt)

            current = await self.store.get(draft.id)
            if current is None:
                logger.warning(f"Entry '{draft.id}' no longer stored; dropping enrichment results.")
                return None
            merged = merge_enrichment(current, draft, primary, images)

            try:
                await self.store.put(merged)
            except PersistError as e:
                logger.error(f"Merge persist failed for '{draft.id}'; no update published. {e}")
                return None

            delivered = self.bus.publish(ENTRY_UPDATED, EntryUpdatedEvent(id=merged.id, entry=merged))
            logger.info(f"Enrichment for '{merged.id}' merged and published to {delivered} subscriber(s).")
            return merged
        except Exception:
            logger.exception(f"Enrichment task for '{draft.id}' failed:")
            return None

    # --- Observers and maintenance ---

    def is_enriching(self, entry_id: str) -> bool:
        return entry_id in self._inflight

    def _resume_if_stale(self, entry: Entry) -> Optional[asyncio.Task]:
        """Restarts the image step for an entry that never merged and has no running task."""
        if is_entry_merged(entry) or self.is_enriching(entry.id):
            return None
        logger.info(f"Entry '{entry.id}' not merged; resuming enrichment.")
        return self._spawn_enrichment(entry, None)

    def entry_status(self, entry: Entry) -> EntryStatus:
        if self.is_enriching(entry.id):
            return EntryStatus.ENRICHING
        return entry.status

    async def refresh_entry(self, entry_id: str) -> Optional[Entry]:
        """Re-reads and republishes an entry; restarts enrichment for unmerged entries."""
        entry_id = normalize_word(entry_id)
        entry = await self.store.get(entry_id)
        if entry is None:
            return None
        self.bus.publish(ENTRY_UPDATED, EntryUpdatedEvent(id=entry.id, entry=entry))
        self._resume_if_stale(entry)
        return entry

    async def resume_pending(self) -> List[asyncio.Task]:
        """Starts image enrichment for stored entries that never reached the merged state."""
        tasks = []
        for entry in await self.store.get_all():
            task = self._resume_if_stale(entry)
            if task is not None:
                tasks.append(task)
        if tasks:
            logger.info(f"Resumed enrichment for {len(tasks)} pending entr{'y' if len(tasks) == 1 else 'ies'}.")
        return tasks

    async def set_primary_image(self, entry_id: str, image: str) -> Entry:
        """User edit: pins a custom primary image that enrichment will not overwrite."""
        entry_id = normalize_word(entry_id)
        entry = await self.store.get(entry_id)
        if entry is None:
            raise NotFoundError(entry_id, "no such entry")
        updated = entry.model_copy(update={
            'primary_image': image,
            'is_primary_image_user_set': True,
            'updated_at': utcnow(),
        })
        await self.store.put(updated)
        self.bus.publish(ENTRY_UPDATED, EntryUpdatedEvent(id=updated.id, entry=updated))
        return updated

    async def wait_for_completion(
        self,
        entry_id: str,
        poller: ReconciliationPoller,
        timeout: float = config.POLL_TIMEOUT_SECONDS,
        is_complete=is_entry_complete,
    ) -> Optional[Entry]:
        """Waits for an entry to become complete via entryUpdated, with the poller as a safety net.

        Returns the complete entry, or None if the timeout elapsed first.
        """
        entry_id = normalize_word(entry_id)
        done: asyncio.Future = asyncio.get_running_loop().create_future()

        def resolve(entry: Entry) -> None:
            if not done.done():
                done.set_result(entry)

        def on_event(event: EntryUpdatedEvent) -> None:
            if event.id == entry_id and is_complete(event.entry):
                resolve(event.entry)

        unsubscribe = self.bus.subscribe(ENTRY_UPDATED, on_event)
        handle = poller.poll_until_complete(entry_id, is_complete, resolve, timeout=timeout)
        try:
            current = await self.store.get(entry_id)
            if current is not None and is_complete(current):
                return current
            return await asyncio.wait_for(done, timeout=timeout)
        except asyncio.TimeoutError:
            logger.info(f"Entry '{entry_id}' still pending after {timeout}s.")
            return None
        finally:
            unsubscribe()
            handle.stop()

    async def drain(self) -> int:
        """Awaits every in-flight enrichment task. Returns how many were awaited."""
        awaited = 0
        while self._inflight:
            tasks = list(self._inflight.values())
            awaited += len(tasks)
            await asyncio.gather(*tasks, return_exceptions=True)
            for entry_id, task in list(self._inflight.items()):
                if task.done():
                    del self._inflight[entry_id]
        return awaited
