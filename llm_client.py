# llm_client.py
# Text generator for dictionary drafts. Handles interactions with different
# LLM APIs (Gemini, DeepSeek) and validates their JSON output against
# Pydantic models.

import asyncio
import json
import time
from typing import Any, Dict, Optional, Type, TypeVar, Union

import google.generativeai as genai
import httpx
from google.generativeai.types import GenerationConfig as GoogleGenerationConfig
from google.generativeai.types import HarmBlockThreshold, HarmCategory
from loguru import logger
from openai import APIError, AsyncOpenAI, RateLimitError
from pydantic import BaseModel, ValidationError

import config
from models import LlmDictionaryDraft, normalize_word

# --- Configure Clients ---
# Clients are configured lazily, on first use.
google_configured = False
deepseek_client: Optional[AsyncOpenAI] = None


def configure_google_client() -> bool:
    """Configures the Google client if not already done."""
    global google_configured
    if google_configured:
        return True
    google_api_key = config.get_google_api_key()
    if not google_api_key:
        logger.warning("Google API Key not available. Google AI provider will be unavailable.")
        return False
    genai.configure(api_key=google_api_key)
    google_configured = True
    logger.info("Google Generative AI client configured successfully.")
    return True


def configure_deepseek_client() -> bool:
    """Configures the DeepSeek client (OpenAI-compatible API) if not already done."""
    global deepseek_client
    if deepseek_client is not None:
        return True
    if not config.DEEPSEEK_API_KEY:
        logger.warning("DeepSeek API Key not found in config. DeepSeek provider will be unavailable.")
        return False
    deepseek_client = AsyncOpenAI(
        api_key=config.DEEPSEEK_API_KEY,
        base_url="https://api.deepseek.com/v1",
        http_client=httpx.AsyncClient(trust_env=False),
        timeout=60.0,
        max_retries=0,  # retries handled below
    )
    logger.info("DeepSeek client configured successfully.")
    return True


GOOGLE_SAFETY_SETTINGS = {
    HarmCategory.HARM_CATEGORY_HARASSMENT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    HarmCategory.HARM_CATEGORY_HATE_SPEECH: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    HarmCategory.HARM_CATEGORY_SEXUALLY_EXPLICIT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
    HarmCategory.HARM_CATEGORY_DANGEROUS_CONTENT: HarmBlockThreshold.BLOCK_MEDIUM_AND_ABOVE,
}

T = TypeVar('T', bound=BaseModel)

# Result of a generation call: the validated model, or
# {"error": ..., "raw_text": ...} on failure.
GenerationResult = Union[T, Dict[str, Any]]


def _error(message: str, raw_text: Optional[str] = None) -> Dict[str, Any]:
    return {"error": message, "raw_text": raw_text}


# --- Helper to Clean LLM Output ---
def _clean_llm_json_output(raw_text: str) -> str:
    """Extracts the JSON body from raw LLM text (markdown fences, chatty prefixes)."""
    cleaned_text = raw_text.strip()
    if cleaned_text.startswith("```json") and cleaned_text.endswith("```"):
        cleaned_text = cleaned_text[7:-3].strip()
    elif cleaned_text.startswith("```") and cleaned_text.endswith("```"):
        cleaned_text = cleaned_text[3:-3].strip()

    starts = [i for i in (cleaned_text.find('{'), cleaned_text.find('[')) if i != -1]
    if starts and min(starts) > 0:
        logger.warning(f"Non-JSON prefix detected. Stripping {min(starts)} characters.")
        cleaned_text = cleaned_text[min(starts):]
    return cleaned_text


def _parse_response(raw_text: str, response_model: Type[T]) -> GenerationResult:
    try:
        cleaned_text = _clean_llm_json_output(raw_text)
        if not cleaned_text:
            raise json.JSONDecodeError("Cleaned text is empty", "", 0)
        return response_model.model_validate(json.loads(cleaned_text))
    except json.JSONDecodeError as e:
        logger.error(f"Failed JSON parsing: {e}. Raw text snippet: {raw_text[:200]}")
        return _error(f"Failed JSON parsing: {e}", raw_text)
    except ValidationError as e:
        logger.error(f"Failed Pydantic validation ({response_model.__name__}): {e}")
        return _error(f"Failed Pydantic validation: {e}", raw_text)


# --- Unified Generation Function ---

async def generate_structured_content(
    prompt: str,
    response_model: Type[T],
    provider: Optional[str] = None,
    model_name: Optional[str] = None,
    temperature: float = 0.1,
    max_retries: int = 2,
    initial_delay: float = 1.5,
    system_prompt: Optional[str] = "You are a helpful assistant designed to output JSON.",
) -> GenerationResult:
    """
    Generates content using the specified LLM provider and model.
    Parses and validates the JSON output against response_model.
    Returns the validated model, or a dict with error and raw text on failure.
    """
    provider = provider or config.DEFAULT_LLM_PROVIDER
    start_time = time.time()
    logger.info(f"Initiating structured content generation. Provider: {provider}, Model: {model_name or 'default'}")

    if provider == 'googleai':
        if not configure_google_client():
            return _error("Google AI client could not be configured")
        result = await _generate_googleai(
            prompt, response_model, model_name or config.DEFAULT_GOOGLE_MODEL,
            temperature, max_retries, initial_delay, system_prompt,
        )
    elif provider == 'deepseek':
        if not configure_deepseek_client():
            return _error("DeepSeek client not configured")
        result = await _generate_deepseek(
            prompt, response_model, model_name or config.DEFAULT_DEEPSEEK_MODEL,
            temperature, max_retries, initial_delay, system_prompt,
        )
    else:
        logger.error(f"Unsupported provider '{provider}'. Supported: 'googleai', 'deepseek'.")
        return _error(f"Unsupported provider '{provider}'")

    logger.info(f"Content generation request completed in {time.time() - start_time:.2f} seconds.")
    return result


# --- Provider Specific Functions ---

async def _generate_googleai(
    prompt: str,
    response_model: Type[T],
    model_name: str,
    temperature: float,
    max_retries: int,
    initial_delay: float,
    system_prompt: Optional[str],
) -> GenerationResult:
    """Handles generation using the google-generativeai library."""
    logger.info(f"--- Calling Google AI ({model_name}) ---")
    user_prompt = (system_prompt + "\n\n" + prompt) if system_prompt else prompt
    contents = [{"role": "user", "parts": [user_prompt]}]
    generation_config = GoogleGenerationConfig(temperature=temperature, response_mime_type="application/json")
    model = genai.GenerativeModel(model_name)

    current_delay = initial_delay
    last_error = _error("No attempt made")
    for attempt in range(max_retries + 1):
        logger.info(f"Google AI Generation. Attempt {attempt + 1}/{max_retries + 1}...")
        raw_text = None
        try:
            response = await model.generate_content_async(
                contents,
                generation_config=generation_config,
                safety_settings=GOOGLE_SAFETY_SETTINGS,
                request_options={'timeout': 120},
            )
            if response.prompt_feedback.block_reason:
                block_reason = response.prompt_feedback.block_reason.name
                logger.error(f"Google AI Error: Prompt blocked. Reason: {block_reason}.")
                return _error(f"Prompt blocked by safety filter: {block_reason}")
            try:
                raw_text = response.text
            except ValueError as e_blocked:
                # .text raises ValueError when the candidate was blocked
                logger.warning(f"Google AI Warning: response text unavailable (likely blocked): {e_blocked}")
                last_error = _error("Response blocked by safety filter")
            else:
                if not raw_text or not raw_text.strip():
                    logger.warning(f"Google AI returned empty response text on attempt {attempt + 1}.")
                    last_error = _error("Empty response received", raw_text)
                else:
                    parsed = _parse_response(raw_text, response_model)
                    if not isinstance(parsed, dict):
                        logger.info(f"Successfully validated Google AI response against {response_model.__name__}.")
                        return parsed
                    last_error = parsed
        except Exception as e:
            error_message = f"Google AI Error during generation: {type(e).__name__}: {e}"
            logger.error(error_message)
            if "API key not valid" in str(e):
                logger.critical("Google AI API Key is invalid!")
                return _error("Invalid Google API Key")
            last_error = _error(error_message, raw_text)

        if attempt < max_retries:
            logger.warning(f"Attempt {attempt + 1} failed. Retrying in {current_delay:.1f}s...")
            await asyncio.sleep(current_delay)
            current_delay *= 1.5

    logger.error(f"Google AI Error: Max retries ({max_retries}) reached. Last error: {last_error.get('error')}")
    return last_error


async def _generate_deepseek(
    prompt: str,
    response_model: Type[T],
    model_name: str,
    temperature: float,
    max_retries: int,
    initial_delay: float,
    system_prompt: Optional[str],
) -> GenerationResult:
    """Handles generation using the DeepSeek API via the OpenAI SDK."""
    logger.info(f"--- Calling DeepSeek ({model_name}) ---")
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": prompt})
    request_kwargs: Dict[str, Any] = {
        "model": model_name,
        "messages": messages,
        "temperature": temperature,
        "response_format": {"type": "json_object"},
    }

    current_delay = initial_delay
    last_error = _error("No attempt made")
    for attempt in range(max_retries + 1):
        logger.info(f"DeepSeek Generation. Attempt {attempt + 1}/{max_retries + 1}...")
        raw_text = None
        try:
            completion = await deepseek_client.chat.completions.create(**request_kwargs)
            raw_text = completion.choices[0].message.content if completion.choices else None
            if not raw_text or not raw_text.strip():
                last_error = _error("Empty response received", raw_text)
            else:
                parsed = _parse_response(raw_text, response_model)
                if not isinstance(parsed, dict):
                    logger.info(f"Successfully validated DeepSeek response against {response_model.__name__}.")
                    return parsed
                last_error = parsed
        except RateLimitError as e:
            logger.warning(f"DeepSeek rate limit hit (attempt {attempt + 1}): {e}")
            last_error = _error(f"Rate limited: {e}")
        except APIError as e:
            status = getattr(e, 'status_code', None)
            if status in (500, 503):
                logger.warning(f"DeepSeek server unavailable (HTTP {status}) on attempt {attempt + 1}.")
            else:
                logger.error(f"DeepSeek API error: {e}")
            last_error = _error(f"DeepSeek API error: {e}", raw_text)

        if attempt < max_retries:
            logger.warning(f"Attempt {attempt + 1} failed. Retrying in {current_delay:.1f}s...")
            await asyncio.sleep(current_delay)
            current_delay *= 1.5

    logger.error(f"DeepSeek Error: Max retries ({max_retries}) reached. Last error: {last_error.get('error')}")
    return last_error


# --- Dictionary draft generation ---

dictionary_prompt = """Provide accurate dictionary information for the English word "{word}".

Return ONLY this JSON structure:
{{
  "word": "{word}",
  "phonetic": "/IPA/",
  "primary_image_prompt": "Prompt for a thumbnail image that visually represents the word",
  "meanings": [
    {{
      "part_of_speech": "noun",
      "definition": "Simple definition",
      "example": "Simple contextual sentence using the word",
      "image_prompt": "Prompt for an image illustrating the meaning in the example"
    }}
  ]
}}

RULES:
- If the word is an inflected form (plural, past tense, -ing, ...), describe the base form.
- Only include meanings found in standard dictionaries; no creative interpretations.
- At most {max_meanings} meanings, most common first.
- If the word does not exist, return an empty "meanings" list.
"""


def build_dictionary_prompt(word: str, max_meanings: int = config.MAX_MEANINGS) -> str:
    return dictionary_prompt.format(word=word, max_meanings=max_meanings)


class LlmTextGenerator:
    """Text generator backed by generate_structured_content."""

    def __init__(self, provider: Optional[str] = None, model_name: Optional[str] = None,
                 max_meanings: int = config.MAX_MEANINGS):
        self.provider = provider
        self.model_name = model_name
        self.max_meanings = max_meanings

    async def generate(self, word: str) -> Optional[LlmDictionaryDraft]:
        """Returns the dictionary draft for word, or None if generation failed."""
        word = normalize_word(word)
        result = await generate_structured_content(
            prompt=build_dictionary_prompt(word, self.max_meanings),
            response_model=LlmDictionaryDraft,
            provider=self.provider,
            model_name=self.model_name,
        )
        if isinstance(result, LlmDictionaryDraft):
            if len(result.meanings) > self.max_meanings:
                logger.warning(f"LLM returned {len(result.meanings)} meanings for '{word}'; keeping {self.max_meanings}.")
                result.meanings = result.meanings[:self.max_meanings]
            logger.info(f"Dictionary draft for '{word}' has {len(result.meanings)} meaning(s).")
            return result
        if isinstance(result, dict):
            logger.error(f"Dictionary generation failed for '{word}': {result.get('error')}")
        else:
            logger.error(f"Dictionary generation for '{word}' returned unexpected type {type(result).__name__}.")
        return None
