"""Reference scoring backends for the local and remote tiers."""

from grade_router.backends.exact_match import ExactMatchBackend
from grade_router.backends.openai_backend import OpenAIRemoteBackend

__all__ = ["ExactMatchBackend", "OpenAIRemoteBackend"]
