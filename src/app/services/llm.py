"""LLM provider abstraction via LiteLLM Router.

Provides the generation client used to draft support replies:
- Claude Sonnet as the primary "support" model group
- GPT-4o-mini as fallback when Claude is unavailable
- Gemini Flash-Lite as an additional fallback when GEMINI_API_KEY is set
- Prompt injection detection and sanitization of customer text
- Prometheus metrics for every call
"""

from __future__ import annotations

import re

import structlog
from litellm import Router

from src.app.config import get_settings
from src.app.core.errors import GenerationError
from src.app.core.monitoring import track_llm_call

logger = structlog.get_logger(__name__)

SUPPORT_MODEL_GROUP = "support"

# ── Prompt Injection Detection ────────────────────────────────────────────────

_INJECTION_PATTERNS: list[tuple[str, re.Pattern]] = [
    (
        "instruction_override",
        re.compile(
            r"ignore\s+(all\s+)?previous\s+instructions|"
            r"disregard\s+(all\s+)?(your\s+)?instructions|"
            r"forget\s+(all\s+)?(your\s+)?instructions|"
            r"override\s+(all\s+)?(your\s+)?instructions",
            re.IGNORECASE,
        ),
    ),
    (
        "system_prompt_exfiltration",
        re.compile(
            r"(reveal|show|display|output|print|repeat)\s+(your\s+)?(system\s+prompt|instructions)|"
            r"repeat\s+everything\s+above|"
            r"what\s+are\s+your\s+instructions",
            re.IGNORECASE,
        ),
    ),
    (
        "role_hijacking",
        re.compile(
            r"you\s+are\s+now\s+(a|an|the|my)\b|"
            r"pretend\s+(to\s+be|you\s+are)|"
            r"from\s+now\s+on\s+you\s+are|"
            r"assume\s+the\s+role\s+of",
            re.IGNORECASE,
        ),
    ),
    (
        "control_characters",
        re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]{3,}"),
    ),
]


def detect_prompt_injection(text: str) -> tuple[bool, str | None]:
    """Check text for common prompt injection patterns.

    Args:
        text: The text to analyze.

    Returns:
        Tuple of (is_injection, pattern_name) where pattern_name identifies
        which pattern matched, or None if no injection detected.
    """
    for pattern_name, pattern in _INJECTION_PATTERNS:
        if pattern.search(text):
            logger.warning(
                "prompt_injection_detected",
                pattern=pattern_name,
                text_preview=text[:100],
            )
            return True, pattern_name
    return False, None


def sanitize_text(text: str) -> str:
    """Replace injection phrases in untrusted customer text with ``[removed]``.

    Text without a detected injection is returned unchanged.
    """
    is_injection, pattern_name = detect_prompt_injection(text)
    if not is_injection:
        return text
    cleaned = text
    for _, pattern in _INJECTION_PATTERNS:
        cleaned = pattern.sub("[removed]", cleaned)
    logger.warning(
        "prompt_injection_sanitized",
        pattern=pattern_name,
        original_length=len(text),
        cleaned_length=len(cleaned),
    )
    return cleaned


# ── LLM Service ──────────────────────────────────────────────────────────────


class LLMService:
    """Generation client over a LiteLLM Router.

    Every configured provider joins the same "support" model group, so the
    Router falls back across providers on failure.
    """

    def __init__(self) -> None:
        settings = get_settings()

        model_list = []

        if settings.ANTHROPIC_API_KEY:
            model_list.append({
                "model_name": SUPPORT_MODEL_GROUP,
                "litellm_params": {
                    "model": "anthropic/claude-sonnet-4-20250514",
                    "api_key": settings.ANTHROPIC_API_KEY,
                },
            })

        if settings.OPENAI_API_KEY:
            model_list.append({
                "model_name": SUPPORT_MODEL_GROUP,
                "litellm_params": {
                    "model": "openai/gpt-4o-mini",
                    "api_key": settings.OPENAI_API_KEY,
                },
            })

        if settings.GEMINI_API_KEY:
            model_list.append({
                "model_name": SUPPORT_MODEL_GROUP,
                "litellm_params": {
                    "model": "gemini/gemini-2.5-flash-lite",
                    "api_key": settings.GEMINI_API_KEY,
                },
            })

        if not model_list:
            logger.warning("llm.no_api_keys", detail="AI drafting will be unavailable")
            self.router = None
            return

        self.router = Router(
            model_list=model_list,
            num_retries=settings.LLM_MAX_RETRIES,
            timeout=settings.LLM_TIMEOUT,
            allowed_fails=3,
            cooldown_time=30,
        )

    @property
    def available(self) -> bool:
        return self.router is not None

    async def completion(
        self,
        messages: list[dict],
        model: str = SUPPORT_MODEL_GROUP,
        max_tokens: int = 1024,
        temperature: float = 0.4,
        metadata: dict | None = None,
    ) -> dict:
        """Execute a completion call through the LiteLLM Router.

        Args:
            messages: List of message dicts with 'role' and 'content'.
            model: Model group name.
            max_tokens: Maximum tokens in the response.
            temperature: Sampling temperature (0-2).
            metadata: Additional metadata to include in the call.

        Returns:
            Dict with content, model and usage.

        Raises:
            GenerationError: If no provider is configured or the call fails.
        """
        if not self.router:
            raise GenerationError("No LLM API keys configured")

        try:
            async with track_llm_call(model) as tracker:
                response = await self.router.acompletion(
                    model=model,
                    messages=messages,
                    max_tokens=max_tokens,
                    temperature=temperature,
                    metadata=metadata or {},
                )
                usage = {}
                if getattr(response, "usage", None):
                    usage = {
                        "prompt_tokens": response.usage.prompt_tokens,
                        "completion_tokens": response.usage.completion_tokens,
                        "total_tokens": response.usage.total_tokens,
                    }
                    tracker["prompt_tokens"] = usage["prompt_tokens"]
                    tracker["completion_tokens"] = usage["completion_tokens"]
        except Exception as exc:
            logger.error("llm.completion_failed", model=model, error=str(exc))
            raise GenerationError(f"LLM completion failed: {exc}") from exc

        return {
            "content": response.choices[0].message.content or "",
            "model": response.model,
            "usage": usage,
        }

    async def generate(self, prompt: str, metadata: dict | None = None) -> str:
        """Complete a single composed prompt.

        Args:
            prompt: Fully composed prompt.
            metadata: Extra call metadata (e.g. conversation id).

        Returns:
            Stripped generated text.

        Raises:
            GenerationError: On provider failure or empty output.
        """
        result = await self.completion(
            messages=[{"role": "user", "content": prompt}],
            metadata=metadata,
        )
        content = (result["content"] or "").strip()
        if not content:
            raise GenerationError("LLM returned an empty response")
        return content


# ── Singleton ─────────────────────────────────────────────────────────────────

_llm_service: LLMService | None = None


def get_llm_service() -> LLMService:
    """Get or create the LLM service singleton."""
    global _llm_service
    if _llm_service is None:
        _llm_service = LLMService()
    return _llm_service
