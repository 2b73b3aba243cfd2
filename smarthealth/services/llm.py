import asyncio
import logging
import re
from dataclasses import dataclass

from anthropic import APIError as AnthropicAPIError
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI, OpenAIError

from smarthealth.config import (
    ANTHROPIC_API_KEY,
    LLM_DEFAULT_TIER,
    LLM_MAX_CONCURRENT,
    LLM_MODEL_FAST,
    LLM_MODEL_HIGH,
    LLM_MODEL_STANDARD,
    LLM_PROVIDER,
    LLM_TIMEOUT_SECONDS,
    OPENAI_API_KEY,
)

logger = logging.getLogger(__name__)


_ANTHROPIC_DEFAULTS = {
    "fast": "claude-3-5-haiku-latest",
    "standard": "claude-sonnet-4-5",
    "high": "claude-sonnet-4-5",
}

_OPENAI_DEFAULTS = {
    "fast": "gpt-4o-mini",
    "standard": "gpt-4o",
    "high": "gpt-4o",
}


class LLMError(Exception):
    """Base class for model provider failures."""


class LLMUnavailableError(LLMError):
    pass


class LLMTimeoutError(LLMError):
    pass


class LLMCallError(LLMError):
    pass


@dataclass(frozen=True)
class LLMReply:
    text: str
    model: str
    declined: bool = False


def strip_json(text: str) -> str:
    """Strip markdown fences and surrounding prose from a JSON object or array."""
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if not starts:
        return text
    start = min(starts)
    closer = "}" if text[start] == "{" else "]"
    end = text.rfind(closer)
    if end > start:
        return text[start:end + 1]
    return text


class LLMClient:
    def __init__(self) -> None:
        provider = (LLM_PROVIDER or "auto").lower()
        if provider == "auto":
            if ANTHROPIC_API_KEY:
                provider = "anthropic"
            elif OPENAI_API_KEY:
                provider = "openai"
            else:
                provider = "dummy"
        self.provider = provider

        self._anthropic = AsyncAnthropic(api_key=ANTHROPIC_API_KEY) if ANTHROPIC_API_KEY else None
        self._openai = AsyncOpenAI(api_key=OPENAI_API_KEY) if OPENAI_API_KEY else None
        self._semaphore = asyncio.Semaphore(LLM_MAX_CONCURRENT)
        self.timeout = LLM_TIMEOUT_SECONDS

    def available(self) -> bool:
        if self.provider == "anthropic":
            return self._anthropic is not None
        if self.provider == "openai":
            return self._openai is not None
        return False

    def model_for_tier(self, tier: str | None) -> str:
        tier = (tier or LLM_DEFAULT_TIER or "fast").lower()
        if tier not in ("fast", "standard", "high"):
            tier = "standard"

        if tier == "fast" and LLM_MODEL_FAST:
            return LLM_MODEL_FAST
        if tier == "standard" and LLM_MODEL_STANDARD:
            return LLM_MODEL_STANDARD
        if tier == "high" and LLM_MODEL_HIGH:
            return LLM_MODEL_HIGH

        if self.provider == "anthropic":
            return _ANTHROPIC_DEFAULTS[tier]
        return _OPENAI_DEFAULTS[tier]

    async def complete(
        self,
        *,
        system: str,
        user: str,
        max_tokens: int = 1024,
        temperature: float = 0.3,
        tier: str | None = None,
    ) -> LLMReply:
        """One text completion, bounded by the process-wide concurrency limit and a timeout.

        Raises ``LLMUnavailableError`` when no provider is configured,
        ``LLMTimeoutError`` when the call exceeds the timeout and
        ``LLMCallError`` for any provider-side failure. A refusal from the
        model is not an error: it comes back with ``declined=True``.
        """
        if not self.available():
            raise LLMUnavailableError("LLM provider unavailable")

        model = self.model_for_tier(tier)
        try:
            return await asyncio.wait_for(
                self._limited_call(model, system, user, max_tokens, temperature),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("LLM call to %s timed out after %.0fs", model, self.timeout)
            raise LLMTimeoutError(f"{model} timed out") from exc
        except (AnthropicAPIError, OpenAIError) as exc:
            logger.error("LLM call to %s failed: %s", model, exc)
            raise LLMCallError(str(exc)) from exc

    async def _limited_call(self, model: str, system: str, user: str, max_tokens: int, temperature: float) -> LLMReply:
        # Waiting for a slot counts against the caller's timeout.
        async with self._semaphore:
            return await self._call(model, system, user, max_tokens, temperature)

    async def _call(self, model: str, system: str, user: str, max_tokens: int, temperature: float) -> LLMReply:
        if self.provider == "anthropic":
            message = await self._anthropic.messages.create(
                model=model,
                max_tokens=max_tokens,
                temperature=temperature,
                system=system,
                messages=[{"role": "user", "content": user}],
            )
            raw = ""
            for block in message.content:
                if hasattr(block, "text"):
                    raw += block.text
            declined = getattr(message, "stop_reason", None) == "refusal"
            return LLMReply(text=raw.strip(), model=model, declined=declined)

        response = await self._openai.chat.completions.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        )
        choice = response.choices[0]
        refusal = getattr(choice.message, "refusal", None)
        declined = isinstance(refusal, str) and bool(refusal) or choice.finish_reason == "content_filter"
        return LLMReply(text=(choice.message.content or "").strip(), model=model, declined=declined)


_client: LLMClient | None = None


def get_llm_client() -> LLMClient:
    global _client
    if _client is None:
        _client = LLMClient()
    return _client
