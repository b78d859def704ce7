"""
OpenAI-compatible remote scoring backend.

Works with any OpenAI-compatible API. One chat completion grades one
batch; the model is chosen from the tier hint.
"""

import time
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger
from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    OpenAIError,
    RateLimitError,
)
from tenacity import (
    retry,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
)

from grade_router.backends.prompts import SYSTEM_PROMPT, build_batch_grading_prompt
from grade_router.config.constants import (
    API_CONNECT_TIMEOUT,
    API_READ_TIMEOUT,
    CONNECTION_RETRIES,
    DEFAULT_TIER_MODELS,
    MAX_TOKENS,
    RETRY_TEMPERATURE,
    TEMPERATURE,
)
from grade_router.config.settings import Settings
from grade_router.core.exceptions import (
    BackendTimeoutError,
    BackendUnavailableError,
    ConfigurationError,
    MalformedResultError,
    RateLimitedError,
)
from grade_router.core.interfaces import RemoteBackend
from grade_router.core.models import GradingRequest, GradingResult, Tier
from grade_router.utils.json_extractor import (
    extract_json_from_response,
    extract_json_list_from_response,
)


class OpenAIRemoteBackend(RemoteBackend):
    """
    Remote scorer backed by an OpenAI-compatible chat completions API.

    Args:
        api_key: API key
        base_url: Optional endpoint for OpenAI-compatible providers
        tier_models: Model name per remote tier value
        client: Pre-built AsyncOpenAI client (tests inject a fake)
    """

    def __init__(
        self,
        api_key: str = "",
        base_url: Optional[str] = None,
        tier_models: Optional[Dict[str, str]] = None,
        client: Optional[AsyncOpenAI] = None,
        max_tokens: int = MAX_TOKENS,
        temperature: float = TEMPERATURE
    ):
        self.tier_models = dict(DEFAULT_TIER_MODELS)
        self.tier_models.update(tier_models or {})
        self.max_tokens = max_tokens
        self.temperature = temperature

        if client is None:
            if not api_key:
                raise ConfigurationError("GRADE_ROUTER_OPENAI_API_KEY required for the remote backend")
            client = self._create_client(api_key, base_url)
        self.client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenAIRemoteBackend":
        models = {
            tier.value: settings.tiers.for_tier(tier).model
            for tier in Tier.ordered()
            if tier.is_remote and settings.tiers.for_tier(tier).model
        }
        return cls(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            tier_models=models,
        )

    def _create_client(self, api_key: str, base_url: Optional[str]) -> AsyncOpenAI:
        """Create OpenAI client."""
        timeout = httpx.Timeout(
            connect=API_CONNECT_TIMEOUT,
            read=API_READ_TIMEOUT,
            write=API_CONNECT_TIMEOUT,
            pool=API_CONNECT_TIMEOUT
        )

        client_kwargs = {
            "api_key": api_key,
            "timeout": timeout,
            # SDK retries off: the fallback controller owns retries
            "max_retries": 0,
        }
        if base_url:
            client_kwargs["base_url"] = base_url
        return AsyncOpenAI(**client_kwargs)

    def model_for(self, tier: Tier) -> str:
        model = self.tier_models.get(tier.value)
        if not model:
            raise ConfigurationError(f"No model configured for tier {tier.value}")
        return model

    # ==================== API CALLS ====================

    async def score(
        self,
        items: List[GradingRequest],
        tier_hint: Tier,
        retry: bool = False
    ) -> List[GradingResult]:
        """
        Grade a batch with one chat completion.

        A retry uses the stricter second-pass prompt and a temperature
        capped at RETRY_TEMPERATURE.

        Raises:
            RateLimitedError: HTTP 429 or provider throttling
            BackendTimeoutError: Request deadline exceeded
            MalformedResultError: Reply is not the expected JSON
            BackendUnavailableError: Any other API failure
        """
        model = self.model_for(tier_hint)
        prompt = build_batch_grading_prompt(items, strict=retry)
        temperature = min(self.temperature, RETRY_TEMPERATURE) if retry else self.temperature
        start_time = time.time()

        try:
            response = await self._create_completion(model, prompt, temperature)
        except RateLimitError as e:
            raise RateLimitedError(str(e), {"model": model}) from e
        except APITimeoutError as e:
            raise BackendTimeoutError(str(e), {"model": model}) from e
        except APIStatusError as e:
            if e.status_code == 429:
                raise RateLimitedError(str(e), {"model": model}) from e
            raise BackendUnavailableError(str(e), {"model": model, "status": e.status_code}) from e
        except (APIConnectionError, OpenAIError) as e:
            raise BackendUnavailableError(str(e), {"model": model}) from e

        content = response.choices[0].message.content or ""
        logger.debug(
            f"{model} graded {len(items)} items in {time.time() - start_time:.2f}s "
            f"({len(content)} chars)"
        )
        return self.parse_results(content, items)

    # Retries dropped connections only; throttling and timeouts propagate
    @retry(
        stop=stop_after_attempt(CONNECTION_RETRIES),
        retry=retry_if_exception_type(APIConnectionError) & retry_if_not_exception_type(APITimeoutError),
        reraise=True
    )
    async def _create_completion(self, model: str, prompt: str, temperature: float):
        return await self.client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            max_tokens=self.max_tokens,
            temperature=temperature,
        )

    # ==================== PARSING ====================

    @staticmethod
    def parse_results(content: str, items: List[GradingRequest]) -> List[GradingResult]:
        """
        Map a model reply to one result per request.

        A reply that is not JSON fails the whole batch; a missing or
        invalid entry only fails its own item.
        """
        payload = extract_json_from_response(content)
        entries: Optional[List[Any]]
        if payload is not None and isinstance(payload.get("results"), list):
            entries = payload["results"]
        else:
            entries = extract_json_list_from_response(content)
        if entries is None:
            raise MalformedResultError("Reply contains no results array", {"preview": content[:200]})

        by_key: Dict[tuple, Dict[str, Any]] = {}
        for position, entry in enumerate(entries):
            if not isinstance(entry, dict):
                continue
            group_id = str(entry.get("group_id", ""))
            try:
                index = int(entry.get("item_index"))
            except (TypeError, ValueError):
                continue
            if not group_id and position < len(items):
                group_id = items[position].group_id
            by_key[(group_id, index)] = entry

        results = []
        for request in items:
            entry = by_key.get(request.key)
            if entry is None:
                results.append(GradingResult.failure(request, "No result returned for item"))
                continue
            try:
                results.append(GradingResult(
                    group_id=request.group_id,
                    item_index=request.item_index,
                    score=float(entry["score"]),
                    max_points=request.max_points,
                    is_correct=entry.get("is_correct"),
                    confidence=float(entry.get("confidence", 0)),
                    reasoning=str(entry.get("reasoning", "")),
                ))
            except (KeyError, TypeError, ValueError) as e:
                results.append(GradingResult.failure(request, f"Invalid result entry: {e}"))
        return results
