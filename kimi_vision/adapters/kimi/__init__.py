from .client import DEFAULT_PROMPT, KimiVisionClient

__all__ = ["DEFAULT_PROMPT", "KimiVisionClient"]
