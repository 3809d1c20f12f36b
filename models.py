# models.py
# Pydantic models for dictionary entries, their meanings, and the payloads
# exchanged with the text generator, the notification bus and the HTTP API.

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from typing import List, Optional, Union
from datetime import date, datetime, timezone
from enum import Enum
from urllib.parse import quote
import logging

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_word(word: str) -> str:
    """Entry identifier for a word: trimmed and lower-cased."""
    return word.strip().lower()


def tts_audio_url(text: str) -> str:
    """Google Translate TTS URL used as the pronunciation audio for a word or sentence."""
    return f"https://translate.google.com/translate_tts?ie=UTF-8&q={quote(text)}&tl=en&client=tw-ob"


# --- Enums ---

class MeaningSource(str, Enum):
    USER = "user"
    GENERATED = "generated"


class EntryStatus(str, Enum):
    DRAFT = "draft"
    ENRICHING = "enriching"  # derived from an in-flight task, never persisted
    MERGED = "merged"


# --- Nested Schemas ---

class ReviewMetadata(BaseModel):
    model_config = ConfigDict(extra='forbid')
    topics: List[str] = Field(default_factory=lambda: ['Uncategorized'], description="Topics the learner filed this word under.")
    next_review_date: date = Field(default_factory=lambda: utcnow().date(), description="Next spaced-repetition review date.")
    review_count: int = Field(default=0, ge=0)
    view_count: int = Field(default=0, ge=0)


class Meaning(BaseModel):
    model_config = ConfigDict(extra='forbid')
    id: str = Field(..., description="Identifier unique within the entry.")
    source: MeaningSource = Field(..., description="Whether the learner wrote this meaning or it was generated.")
    part_of_speech: Optional[str] = None
    definition: str = ""
    example: Optional[str] = None
    example_audio_url: Optional[str] = None
    image_prompt: str = Field(default="", description="Prompt for the example image; always empty for user meanings.")
    example_image: Optional[str] = Field(default=None, description="Image reference filled in by background enrichment.")

    @model_validator(mode='after')
    def user_meanings_have_no_prompt(self) -> 'Meaning':
        if self.source == MeaningSource.USER and self.image_prompt:
            raise ValueError("User-authored meanings cannot carry an image prompt.")
        return self


class Entry(BaseModel):
    model_config = ConfigDict(extra='forbid')
    id: str = Field(..., description="Normalized word; the store key.")
    word: str = Field(..., description="Surface form as typed.")
    phonetic: Optional[str] = None
    audio_url: Optional[str] = None
    primary_image: Optional[str] = None
    is_primary_image_user_set: bool = False
    meanings: List[Meaning] = Field(default_factory=list)
    status: EntryStatus = EntryStatus.DRAFT
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None
    review_metadata: ReviewMetadata = Field(default_factory=ReviewMetadata)

    @field_validator('id')
    @classmethod
    def id_is_normalized(cls, v: str) -> str:
        if not v or v != normalize_word(v):
            raise ValueError(f"Entry id must be a non-empty normalized word, got {v!r}.")
        return v

    @model_validator(mode='after')
    def user_meanings_come_first(self) -> 'Entry':
        seen_generated = False
        for meaning in self.meanings:
            if meaning.source == MeaningSource.GENERATED:
                seen_generated = True
            elif seen_generated:
                raise ValueError(f"User meaning {meaning.id} appears after a generated meaning.")
        ids = [m.id for m in self.meanings]
        if len(ids) != len(set(ids)):
            raise ValueError("Meaning ids must be unique within an entry.")
        return self

    def generated_meanings(self) -> List[Meaning]:
        return [m for m in self.meanings if m.source == MeaningSource.GENERATED]


def is_entry_complete(entry: Entry) -> bool:
    """Completion check used by pollers: a primary image exists, or the user resolved it."""
    return bool(entry.primary_image) or entry.is_primary_image_user_set


def is_entry_merged(entry: Entry) -> bool:
    return entry.status == EntryStatus.MERGED


# --- Schemas for LLM Interaction ---

class LlmMeaningOutput(BaseModel):
    model_config = ConfigDict(extra='allow', populate_by_name=True)
    part_of_speech: str = Field(default="", validation_alias=AliasChoices('part_of_speech', 'partOfSpeech'))
    definition: str
    example: Optional[str] = None
    image_prompt: Optional[str] = Field(default=None, validation_alias=AliasChoices('image_prompt', 'imageDescription'))


class LlmDictionaryDraft(BaseModel):
    """Structured dictionary data expected from the text generator."""
    model_config = ConfigDict(extra='allow', populate_by_name=True)
    word: Optional[str] = None
    phonetic: Optional[str] = None
    primary_image_prompt: Optional[str] = Field(default=None, validation_alias=AliasChoices('primary_image_prompt', 'imageThumbnailDescription'))
    meanings: List[LlmMeaningOutput] = Field(default_factory=list)

    @field_validator('meanings')
    @classmethod
    def drop_empty_definitions(cls, v: List[LlmMeaningOutput]) -> List[LlmMeaningOutput]:
        kept = [m for m in v if m.definition and m.definition.strip()]
        if len(kept) != len(v):
            logger.warning(f"Dropped {len(v) - len(kept)} generated meaning(s) without a definition.")
        return kept


# --- Notification payloads ---

class EntryUpdatedEvent(BaseModel):
    model_config = ConfigDict(extra='forbid')
    id: str
    entry: Entry


# --- Schemas for API Flow Inputs/Outputs ---

class UserMeaningInput(BaseModel):
    model_config = ConfigDict(extra='forbid')
    definition: str = ""
    part_of_speech: Optional[str] = None
    example: Optional[str] = None

    @model_validator(mode='after')
    def has_some_text(self) -> 'UserMeaningInput':
        if not (self.definition.strip() or (self.example or "").strip()):
            raise ValueError("A user meaning needs a definition or an example.")
        return self


class LookupInput(BaseModel):
    model_config = ConfigDict(extra='forbid')
    word: str = Field(..., min_length=1)
    user_meanings: List[Union[str, UserMeaningInput]] = Field(default_factory=list, description="Plain strings are treated as example sentences.")
    user_image: Optional[str] = Field(default=None, description="Custom primary image chosen by the learner.")

    @field_validator('word')
    @classmethod
    def word_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("word must not be blank.")
        return v


class LookupResponse(BaseModel):
    model_config = ConfigDict(extra='forbid')
    entry: Entry
    is_new: bool
    original_text: str
    status: EntryStatus


class PrimaryImageInput(BaseModel):
    model_config = ConfigDict(extra='forbid')
    image: str = Field(..., min_length=1)


class WaitResponse(BaseModel):
    model_config = ConfigDict(extra='forbid')
    entry: Entry
    complete: bool
    status: EntryStatus
