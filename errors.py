# errors.py
# Exceptions raised across the lookup / enrichment pipeline.


class NotFoundError(Exception):
    """The text generator found no usable meaning for a word."""

    def __init__(self, word: str, reason: str = "no meanings found"):
        self.word = word
        self.reason = reason
        super().__init__(f"Word '{word}' not found: {reason}")


class PersistError(Exception):
    """An entry store write failed."""

    def __init__(self, entry_id: str, message: str):
        self.entry_id = entry_id
        super().__init__(f"Failed to persist entry '{entry_id}': {message}")


class ImageGenerationError(Exception):
    """An image provider call returned no usable image."""
