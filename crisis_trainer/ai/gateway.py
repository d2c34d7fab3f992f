"""
Crisis Trainer
LLM Gateway.

Provider-agnostic LLM router with:
    - OpenAI provider (chat completions, Responses API with file_search
      retrieval, vector-store indexing) and a deterministic local stub
    - Explicit per-call timeout
    - Bounded retries with exponential backoff
    - Retrieval-first calls that fall back to a plain call on failure

Usage:
    from crisis_trainer.ai.gateway import get_gateway
    gw = get_gateway()
    result = gw.chat(messages, model="gpt-4.1", purpose="evaluation",
                     vector_store_id=account.vector_store_id)
"""

import hashlib
import json
import logging
import threading
import time
from abc import ABC, abstractmethod

from flask import current_app

from crisis_trainer.core.exceptions import UpstreamError

logger = logging.getLogger(__name__)


# ── Provider Abstract Base ────────────────────────────────────────────────────

class LLMProvider(ABC):
    """Abstract interface for LLM providers."""

    supports_retrieval = False

    @abstractmethod
    def chat(self, messages: list, model: str, **kwargs) -> dict:
        """
        Send a chat completion request.

        Args:
            messages: List of {"role": "...", "content": "..."} dicts.
            model: Model identifier string.
            **kwargs: temperature, max_tokens, purpose.

        Returns:
            dict with keys: content, prompt_tokens, completion_tokens, model
        """
        ...

    def chat_with_retrieval(self, messages: list, model: str, vector_store_id: str, **kwargs) -> dict:
        raise NotImplementedError(f"{type(self).__name__} has no retrieval support")

    @abstractmethod
    def create_vector_store(self, name: str) -> str:
        ...

    @abstractmethod
    def index_document(self, vector_store_id: str, filename: str, text: str) -> str:
        """Add a text document to a vector store. Returns the provider file id."""
        ...


# ── OpenAI Provider ───────────────────────────────────────────────────────────

class OpenAIProvider(LLMProvider):
    """OpenAI chat + Responses API provider."""

    supports_retrieval = True

    def __init__(self, api_key: str, timeout: float = 60.0):
        self.api_key = api_key
        self.timeout = timeout
        self._client = None

    def _get_client(self):
        if self._client is None:
            import openai
            # Retries are owned by the gateway so attempts stay bounded in one place
            self._client = openai.OpenAI(api_key=self.api_key, timeout=self.timeout, max_retries=0)
        return self._client

    def chat(self, messages: list, model: str = "gpt-4o-mini", **kwargs) -> dict:
        client = self._get_client()
        response = client.chat.completions.create(
            model=model,
            messages=messages,
            max_tokens=kwargs.get("max_tokens", 4096),
            temperature=kwargs.get("temperature", 0.3),
        )
        choice = response.choices[0]
        return {
            "content": choice.message.content or "",
            "prompt_tokens": response.usage.prompt_tokens,
            "completion_tokens": response.usage.completion_tokens,
            "model": model,
        }

    def chat_with_retrieval(self, messages: list, model: str, vector_store_id: str, **kwargs) -> dict:
        client = self._get_client()
        instructions = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        conversation = [m for m in messages if m["role"] != "system"]
        response = client.responses.create(
            model=model,
            instructions=instructions or None,
            input=conversation,
            tools=[{"type": "file_search", "vector_store_ids": [vector_store_id]}],
            temperature=kwargs.get("temperature", 0.3),
        )
        usage = getattr(response, "usage", None)
        return {
            "content": response.output_text or "",
            "prompt_tokens": getattr(usage, "input_tokens", 0) if usage else 0,
            "completion_tokens": getattr(usage, "output_tokens", 0) if usage else 0,
            "model": model,
        }

    def create_vector_store(self, name: str) -> str:
        client = self._get_client()
        return client.vector_stores.create(name=name).id

    def index_document(self, vector_store_id: str, filename: str, text: str) -> str:
        client = self._get_client()
        stem = filename.rsplit(".", 1)[0] or "document"
        uploaded = client.files.create(
            file=(f"{stem}.txt", text.encode("utf-8"), "text/plain"),
            purpose="assistants",
        )
        client.vector_stores.files.create(vector_store_id=vector_store_id, file_id=uploaded.id)
        return uploaded.id


# ── Local Stub Provider ───────────────────────────────────────────────────────

class LocalStubProvider(LLMProvider):
    """
    Local stub that returns deterministic responses for dev/testing.
    No API key required.
    """

    def chat(self, messages: list, model: str = "local-stub", **kwargs) -> dict:
        user_msg = ""
        for m in reversed(messages):
            if m["role"] == "user":
                user_msg = m["content"]
                break

        content = self._generate_stub_response(kwargs.get("purpose", ""), user_msg)

        return {
            "content": content,
            "prompt_tokens": len(user_msg.split()) * 2,  # rough estimate
            "completion_tokens": len(content.split()) * 2,
            "model": "local-stub",
        }

    def create_vector_store(self, name: str) -> str:
        return "vs_local_" + hashlib.sha1(name.encode()).hexdigest()[:12]

    def index_document(self, vector_store_id: str, filename: str, text: str) -> str:
        return "file_local_" + hashlib.sha1(f"{vector_store_id}:{filename}:{text}".encode()).hexdigest()[:12]

    @staticmethod
    def _generate_stub_response(purpose: str, user_msg: str) -> str:
        if purpose == "evaluation":
            return (
                "## Overall Assessment\n"
                "The counselor stayed calm, introduced themselves and kept the caller engaged.\n\n"
                "## Strengths\n"
                "- Warm, non-judgmental opening\n"
                "- Reflected the caller's feelings back\n\n"
                "## Areas to Improve\n"
                "- Ask directly about safety and suicidal thoughts earlier\n\n"
                "## Score: 82\n"
                "## Grade: B\n\n"
                "## Flags\n"
                "None\n"
            )
        if purpose == "analysis":
            return json.dumps({
                "findings": [],
                "consistency_score": 90,
                "summary": "Simulated caller stayed in character; no misuse detected.",
            })
        if purpose == "scenario_generation":
            return json.dumps({
                "title": "Caller frustrated after a previous call",
                "description": "Generated from a complaint about a prior interaction.",
                "prompt": "You are a caller who felt dismissed on a previous call. "
                          "You are guarded and test whether the counselor is really listening.",
                "skills": ["rapport_building", "de_escalation"],
                "category": "remediation",
            })
        if purpose == "document_review":
            return json.dumps({
                "transcript_accuracy": 88,
                "guidelines_compliance": 74,
                "overall_score": 80,
                "specific_gaps": ["Safety plan discussed on the call is not documented"],
                "narrative": "The notes follow the call closely but leave out the agreed safety plan.",
            })
        return "I... I'm not really sure why I called. Things have just been really hard lately."


# ── Gateway ───────────────────────────────────────────────────────────────────

class LLMGateway:
    """
    Central gateway for all LLM calls.

    Usage:
        gw = LLMGateway(app.config)
        result = gw.chat(messages=[...], model="gpt-4o-mini", purpose="analysis")
    """

    PROVIDER_MAP = {
        "gpt-4.1": "openai",
        "gpt-4.1-mini": "openai",
        "gpt-4o": "openai",
        "gpt-4o-mini": "openai",
        "local-stub": "local",
    }

    def __init__(self, config: dict):
        self._providers: dict[str, LLMProvider] = {}
        self.max_retries = int(config.get("LLM_MAX_RETRIES", 3))
        self._init_providers(config)

    def _init_providers(self, config: dict):
        """Initialize available providers based on configuration."""
        self._providers["local"] = LocalStubProvider()
        if config.get("OPENAI_API_KEY"):
            self._providers["openai"] = OpenAIProvider(
                api_key=config["OPENAI_API_KEY"],
                timeout=float(config.get("LLM_TIMEOUT_SECONDS", 60)),
            )

    def _get_provider(self, model: str) -> tuple[LLMProvider, str]:
        """
        Resolve model to provider. Falls back to local stub if real provider unavailable.
        Returns (provider, provider_name).
        """
        provider_name = self.PROVIDER_MAP.get(model)
        if provider_name is None:
            provider_name = "openai" if model.startswith(("gpt-", "o1", "o3", "o4")) else "local"

        if provider_name in self._providers:
            return self._providers[provider_name], provider_name

        logger.warning(
            "Provider '%s' not available (no API key?). Falling back to local stub for model '%s'.",
            provider_name, model,
        )
        return self._providers["local"], "local"

    @property
    def default_provider(self) -> LLMProvider:
        return self._providers.get("openai") or self._providers["local"]

    def chat(
        self,
        messages: list,
        model: str,
        *,
        purpose: str = "",
        vector_store_id: str | None = None,
        max_retries: int | None = None,
        **kwargs,
    ) -> dict:
        """
        Send a chat request with optional retrieval, bounded retries and backoff.

        Retrieval is best effort: one retrieval attempt is made when a
        vector store is given and the provider supports it; any failure is
        logged and the plain call path takes over.

        Returns:
            dict: {content, prompt_tokens, completion_tokens, model,
                   latency_ms, provider, used_retrieval}

        Raises:
            UpstreamError: every attempt failed.
        """
        provider, provider_name = self._get_provider(model)
        attempts = max(1, max_retries if max_retries is not None else self.max_retries)

        if vector_store_id and provider.supports_retrieval:
            start_time = time.time()
            try:
                result = provider.chat_with_retrieval(messages, model, vector_store_id, purpose=purpose, **kwargs)
                return self._finish(result, provider_name, start_time, used_retrieval=True)
            except Exception as e:
                logger.warning(
                    "Retrieval call failed for %s (store %s), falling back to plain call: %s",
                    purpose or "llm", vector_store_id, e,
                )

        last_error = None
        for attempt in range(1, attempts + 1):
            start_time = time.time()
            try:
                result = provider.chat(messages, model, purpose=purpose, **kwargs)
                return self._finish(result, provider_name, start_time, used_retrieval=False)
            except Exception as e:
                last_error = e
                logger.warning("LLM call attempt %d/%d failed: %s", attempt, attempts, e)

                if attempt < attempts:
                    backoff = min(2 ** (attempt - 1), 4)
                    threading.Event().wait(backoff)

        logger.error("LLM call for %s failed after %d attempts: %s", purpose or "llm", attempts, last_error)
        raise UpstreamError(f"Language model unavailable after {attempts} attempts")

    @staticmethod
    def _finish(result: dict, provider_name: str, start_time: float, used_retrieval: bool) -> dict:
        result["latency_ms"] = int((time.time() - start_time) * 1000)
        result["provider"] = provider_name
        result["used_retrieval"] = used_retrieval
        logger.debug(
            "LLM call ok provider=%s model=%s tokens=%s/%s latency=%sms retrieval=%s",
            provider_name, result.get("model"), result.get("prompt_tokens"),
            result.get("completion_tokens"), result["latency_ms"], used_retrieval,
        )
        return result

    def create_vector_store(self, name: str) -> str:
        return self.default_provider.create_vector_store(name)

    def index_document(self, vector_store_id: str, filename: str, text: str) -> str:
        return self.default_provider.index_document(vector_store_id, filename, text)


def get_gateway() -> LLMGateway:
    """Return the gateway bound to the current app, creating it on first use."""
    gw = current_app.extensions.get("llm_gateway")
    if gw is None:
        gw = LLMGateway(current_app.config)
        current_app.extensions["llm_gateway"] = gw
    return gw
