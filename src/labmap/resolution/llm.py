"""LLM-backed semantic backends for Tier C.

Supports OpenAI and Anthropic chat models, and a plain HTTP endpoint that
speaks the same JSON contract. Backends only build the prompt and return
the parsed proposals; validation, retries and deadlines belong to the
SemanticResolver.
"""

import json
from typing import Any, Sequence

import httpx

from ..config import get_settings
from ..errors import SemanticResolverError
from ..logging import get_context_logger
from ..models import CanonicalEntry, SemanticQuery
from .profiles import VocabularyProfile

logger = get_context_logger(__name__)

DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "anthropic": "claude-3-5-haiku-latest",
}


def build_prompt(
    profile: VocabularyProfile,
    queries: Sequence[SemanticQuery],
    vocabulary: Sequence[CanonicalEntry],
    context: Sequence[str],
) -> str:
    """Render the batch prompt. Labels are expected to be sanitized already."""
    entries = []
    for entry in vocabulary:
        item = {"code": entry.code, "name": entry.display_name}
        if entry.attributes.get("unit"):
            item["unit"] = entry.attributes["unit"]
        entries.append(item)
    items = [
        {
            "index": query.index,
            "label": query.label,
            **({"unit_hint": query.unit_hint} if query.unit_hint else {}),
            **({"fuzzy_hints": [h.code for h in query.hints]} if query.hints else {}),
        }
        for query in queries
    ]

    return f"""You map {profile.description} onto a controlled vocabulary.

Known vocabulary (code, name):
{json.dumps(entries, ensure_ascii=False)}

Other labels from the same document (HINT ONLY):
{json.dumps(list(context), ensure_ascii=False)}

Items to resolve:
{json.dumps(items, ensure_ascii=False)}

For EVERY item return one object:
- index: the item's index
- decision: "MATCH" if it is a vocabulary member (code must be copied exactly),
  "NEW" if it is a real {profile.vocabulary.value} missing from the vocabulary,
  "ABSTAIN" if you cannot tell
- code: the vocabulary code (MATCH) or a proposed code (NEW), else null
- name: display name for NEW items, else null
- unit: canonical unit for NEW analytes, else null
- confidence: 0.0 to 1.0
- rationale: one short sentence

Never invent a vocabulary code for MATCH. Fuzzy hints may be wrong.

Return ONLY valid JSON, no other text:
{{"results": [{{"index": 0, "decision": "MATCH", "code": "EXAMPLE", "name": null, "unit": null, "confidence": 0.9, "rationale": "..."}}]}}"""


def parse_response(response: str | None) -> list[dict[str, Any]]:
    """Parse model output into proposal mappings.

    Raises:
        SemanticResolverError: malformed_output if the text is not the
            expected JSON shape
    """
    if not response:
        raise SemanticResolverError("malformed_output", "Empty model response")

    # Clean up response (remove markdown code blocks if present)
    response = response.strip()
    if response.startswith("```"):
        lines = response.split("\n")
        response = "\n".join(lines[1:-1])

    try:
        data = json.loads(response)
    except json.JSONDecodeError as e:
        raise SemanticResolverError("malformed_output", f"Invalid JSON: {e}") from e

    if isinstance(data, dict):
        data = data.get("results")
    if not isinstance(data, list):
        raise SemanticResolverError("malformed_output", "Response has no results list")
    return data


class LLMSemanticBackend:
    """Semantic backend using an OpenAI or Anthropic chat model."""

    SYSTEM_PROMPT = (
        "You are a clinical laboratory terminology assistant. "
        "Return only valid JSON."
    )

    def __init__(
        self,
        provider: str = "openai",
        model: str | None = None,
        max_tokens: int = 2000,
        client: Any = None,
    ):
        """Initialize the backend.

        Args:
            provider: LLM provider ('openai' or 'anthropic')
            model: Model name; a small default per provider when omitted
            max_tokens: Completion budget per batch
            client: Pre-built async client (tests)
        """
        self.provider = provider
        self.model = model or DEFAULT_MODELS.get(provider, "")
        self.max_tokens = max_tokens
        self._client: Any = client

    def _get_client(self) -> Any:
        """Get or create the LLM client."""
        if self._client is not None:
            return self._client

        settings = get_settings()

        if self.provider == "openai":
            try:
                import openai
            except ImportError:
                raise RuntimeError("openai package not installed; install labmap[llm]")
            # Retries and deadlines are handled by the SemanticResolver
            self._client = openai.AsyncOpenAI(api_key=settings.openai_api_key, max_retries=0)
        elif self.provider == "anthropic":
            try:
                import anthropic
            except ImportError:
                raise RuntimeError("anthropic package not installed; install labmap[llm]")
            self._client = anthropic.AsyncAnthropic(
                api_key=settings.anthropic_api_key, max_retries=0
            )
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider}")

        return self._client

    async def propose(
        self,
        profile: VocabularyProfile,
        queries: Sequence[SemanticQuery],
        vocabulary: Sequence[CanonicalEntry],
        context: Sequence[str],
    ) -> list[dict[str, Any]]:
        prompt = build_prompt(profile, queries, vocabulary, context)
        client = self._get_client()

        if self.provider == "openai":
            text = await self._complete_openai(client, prompt)
        else:
            text = await self._complete_anthropic(client, prompt)

        return parse_response(text)

    async def _complete_openai(self, client: Any, prompt: str) -> str:
        response = await client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": self.SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            temperature=0,
            max_tokens=self.max_tokens,
            response_format={"type": "json_object"},
        )
        return response.choices[0].message.content

    async def _complete_anthropic(self, client: Any, prompt: str) -> str:
        response = await client.messages.create(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=0,
            system=self.SYSTEM_PROMPT,
            messages=[{"role": "user", "content": prompt}],
        )
        return response.content[0].text


class HTTPSemanticBackend:
    """Semantic backend calling a JSON endpoint over HTTP.

    POSTs ``{"vocabulary", "items", "entries", "context"}`` and expects
    ``{"results": [...]}`` in the same shape the LLM backends produce.
    HTTP errors are raised as httpx.HTTPStatusError so the resolver can
    classify 429 and 5xx responses as transient.
    """

    def __init__(self, url: str, token: str = "", client: httpx.AsyncClient | None = None):
        self.url = url
        self.token = token
        self._client = client

    async def propose(
        self,
        profile: VocabularyProfile,
        queries: Sequence[SemanticQuery],
        vocabulary: Sequence[CanonicalEntry],
        context: Sequence[str],
    ) -> list[dict[str, Any]]:
        payload = {
            "vocabulary": profile.vocabulary.value,
            "items": [query.model_dump(mode="json") for query in queries],
            "entries": [
                {"code": entry.code, "name": entry.display_name} for entry in vocabulary
            ],
            "context": list(context),
        }
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}

        if self._client is not None:
            response = await self._client.post(self.url, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.post(self.url, json=payload, headers=headers)
        response.raise_for_status()

        try:
            data = response.json()
        except ValueError as e:
            raise SemanticResolverError("malformed_output", f"Invalid JSON: {e}") from e
        results = data.get("results") if isinstance(data, dict) else data
        if not isinstance(results, list):
            raise SemanticResolverError("malformed_output", "Response has no results list")
        return results


def get_semantic_backend(provider: str | None = None) -> LLMSemanticBackend | HTTPSemanticBackend | None:
    """Build the configured semantic backend, or None when not configured.

    Args:
        provider: 'openai', 'anthropic' or 'http'. If not specified,
                 uses settings.
    """
    settings = get_settings()
    provider = provider or settings.llm_provider

    if provider == "http":
        if not settings.semantic_endpoint_url:
            return None
        return HTTPSemanticBackend(
            settings.semantic_endpoint_url, token=settings.semantic_endpoint_token
        )

    api_key = settings.anthropic_api_key if provider == "anthropic" else settings.openai_api_key
    if not api_key:
        logger.info(f"No API key for {provider}; semantic tier disabled")
        return None
    return LLMSemanticBackend(
        provider=provider,
        model=settings.llm_model or None,
        max_tokens=settings.llm_max_tokens,
    )
