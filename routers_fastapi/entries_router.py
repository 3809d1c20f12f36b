from fastapi import APIRouter, Request, HTTPException, Query
from typing import List
from loguru import logger

from models import (
    Entry, LookupInput, LookupResponse, PrimaryImageInput, WaitResponse, normalize_word,
)
from errors import NotFoundError, PersistError
import config

router = APIRouter(
    prefix="/api/v1/entries",
    tags=["Dictionary Entries"]
)


@router.post("/lookup", response_model=LookupResponse, status_code=201)
async def lookup_entry_api(input_data: LookupInput, request: Request):
    """Returns the stored entry for a word, or creates a draft and starts image enrichment in the background."""
    orchestrator = request.app.state.orchestrator
    try:
        result = await orchestrator.lookup(
            input_data.word,
            user_meanings=input_data.user_meanings,
            user_image=input_data.user_image,
        )
        return LookupResponse(
            entry=result.entry,
            is_new=result.is_new,
            original_text=result.original_text,
            status=orchestrator.entry_status(result.entry),
        )
    except NotFoundError as e:
        logger.info(f"Lookup found nothing for '{input_data.word}': {e.reason}")
        raise HTTPException(status_code=404, detail=str(e))
    except PersistError as e:
        logger.error(f"Lookup could not store '{input_data.word}': {e}")
        raise HTTPException(status_code=500, detail="Failed to read or store the entry.")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except HTTPException:
        raise
    except Exception:
        logger.exception(f"Error looking up '{input_data.word}' (API):")
        raise HTTPException(status_code=500, detail="Failed to look up word.")


@router.get("/", response_model=List[Entry])
async def list_entries_api(request: Request):
    """Fetches all stored entries."""
    try:
        return await request.app.state.store.get_all()
    except Exception:
        logger.exception("Error fetching entries (API):")
        raise HTTPException(status_code=500, detail="Failed to fetch entries.")


@router.get("/{entry_id}", response_model=Entry)
async def get_entry_api(entry_id: str, request: Request):
    try:
        entry = await request.app.state.store.get(normalize_word(entry_id))
    except Exception:
        logger.exception(f"Error fetching entry '{entry_id}' (API):")
        raise HTTPException(status_code=500, detail="Failed to fetch entry.")
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Entry '{entry_id}' not found.")
    return entry


@router.put("/{entry_id}/primary-image", response_model=Entry)
async def set_primary_image_api(entry_id: str, payload: PrimaryImageInput, request: Request):
    """Pins a custom primary image. Background enrichment will not replace it."""
    try:
        return await request.app.state.orchestrator.set_primary_image(entry_id, payload.image)
    except NotFoundError:
        raise HTTPException(status_code=404, detail=f"Entry '{entry_id}' not found.")
    except PersistError as e:
        logger.error(f"Primary image update failed for '{entry_id}': {e}")
        raise HTTPException(status_code=500, detail="Failed to update primary image.")
    except Exception:
        logger.exception(f"Error updating primary image for '{entry_id}' (API):")
        raise HTTPException(status_code=500, detail="Failed to update primary image.")


@router.post("/{entry_id}/refresh", response_model=Entry)
async def refresh_entry_api(entry_id: str, request: Request):
    """Republishes the stored entry and restarts enrichment if it never merged."""
    try:
        entry = await request.app.state.orchestrator.refresh_entry(entry_id)
    except Exception:
        logger.exception(f"Error refreshing entry '{entry_id}' (API):")
        raise HTTPException(status_code=500, detail="Failed to refresh entry.")
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Entry '{entry_id}' not found.")
    return entry


@router.get("/{entry_id}/wait", response_model=WaitResponse)
async def wait_for_entry_api(
    entry_id: str,
    request: Request,
    timeout: float = Query(default=config.POLL_TIMEOUT_SECONDS, gt=0, le=120),
):
    """Blocks until the entry has a primary image or the timeout elapses."""
    state = request.app.state
    try:
        if await state.store.get(normalize_word(entry_id)) is None:
            raise HTTPException(status_code=404, detail=f"Entry '{entry_id}' not found.")
        complete = await state.orchestrator.wait_for_completion(entry_id, state.poller, timeout=timeout)
        entry = complete or await state.store.get(normalize_word(entry_id))
    except HTTPException:
        raise
    except Exception:
        logger.exception(f"Error waiting for entry '{entry_id}' (API):")
        raise HTTPException(status_code=500, detail="Failed to wait for entry.")
    if entry is None:
        raise HTTPException(status_code=404, detail=f"Entry '{entry_id}' not found.")
    return WaitResponse(entry=entry, complete=complete is not None, status=state.orchestrator.entry_status(entry))
