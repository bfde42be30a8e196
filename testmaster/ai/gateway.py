"""
TestMaster AI
LLM Gateway — provider-agnostic completion router.

Routes a rendered prompt to the provider named by the model descriptor:
    - gemini     Google Gemini (google-genai)
    - anthropic  Anthropic Claude (anthropic)
    - openai     OpenAI chat completions (openai)
    - local      deterministic stub for development, no API key

Every call carries a deadline (LLM_TIMEOUT_SECONDS) that is handed to the
provider SDK. SDK retries are disabled; a failed call surfaces once as
ProviderError / GenerationTimeout.

Usage:
    from testmaster.ai.gateway import LLMGateway
    gw = LLMGateway(timeout=60)
    text = gw.complete("Write a test plan ...", registry.get_model("gemini-flash"))
"""

import json
import logging
import os
import re
import time
from abc import ABC, abstractmethod

from testmaster.core.exceptions import GenerationTimeout, ProviderError

logger = logging.getLogger(__name__)


# ── Provider Abstract Base ────────────────────────────────────────────────────

class LLMProvider(ABC):
    """Abstract interface for completion providers."""

    name = "abstract"
    api_key_env = ""

    @abstractmethod
    def complete(self, prompt: str, model_name: str, *, api_key: str = "",
                 settings: dict | None = None, timeout: float = 60.0) -> str:
        """
        Send a single-turn completion request.

        Args:
            prompt: Fully rendered prompt text.
            model_name: Provider-side model identifier.
            api_key: Credential from the model descriptor (env var used when empty).
            settings: temperature, max_output_tokens, top_k, top_p.
            timeout: Deadline in seconds.

        Returns:
            The raw text of the first candidate.
        """
        ...

    def _resolve_key(self, api_key: str) -> str:
        key = api_key or os.getenv(self.api_key_env, "")
        if not key:
            raise ProviderError(
                f"No API key configured for provider '{self.name}' (set {self.api_key_env})",
                provider=self.name,
            )
        return key


# ── Google Gemini Provider ───────────────────────────────────────────────────

class GeminiProvider(LLMProvider):
    """
    Google Gemini API provider.

    Environment:
        GEMINI_API_KEY — fallback when the model descriptor carries no key
    """

    name = "gemini"
    api_key_env = "GEMINI_API_KEY"

    def __init__(self):
        self._clients = {}

    def _get_client(self, api_key: str, timeout: float):
        from google import genai
        from google.genai import types

        cache_key = (api_key, timeout)
        if cache_key not in self._clients:
            self._clients[cache_key] = genai.Client(
                api_key=api_key,
                http_options=types.HttpOptions(timeout=int(timeout * 1000)),
            )
        return self._clients[cache_key]

    def complete(self, prompt, model_name, *, api_key="", settings=None, timeout=60.0):
        import httpx
        from google.genai import errors, types

        settings = settings or {}
        client = self._get_client(self._resolve_key(api_key), timeout)
        config = types.GenerateContentConfig(
            temperature=settings.get("temperature"),
            max_output_tokens=settings.get("max_output_tokens"),
            top_k=settings.get("top_k"),
            top_p=settings.get("top_p"),
        )
        try:
            response = client.models.generate_content(
                model=model_name, contents=prompt, config=config,
            )
        except httpx.TimeoutException as exc:
            raise GenerationTimeout(f"Gemini call timed out after {timeout}s", provider=self.name) from exc
        except errors.APIError as exc:
            raise ProviderError(f"Gemini API error {exc.code}: {exc.message}",
                                provider=self.name, status=exc.code) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"Gemini transport error: {exc}", provider=self.name) from exc

        text = response.text
        if not text:
            raise ProviderError("Gemini returned no candidates", provider=self.name)
        return text


# ── Anthropic Provider ────────────────────────────────────────────────────────

class AnthropicProvider(LLMProvider):
    """Claude API (Anthropic) provider."""

    name = "anthropic"
    api_key_env = "ANTHROPIC_API_KEY"

    def __init__(self):
        self._clients = {}

    def _get_client(self, api_key: str, timeout: float):
        import anthropic

        cache_key = (api_key, timeout)
        if cache_key not in self._clients:
            self._clients[cache_key] = anthropic.Anthropic(
                api_key=api_key, timeout=timeout, max_retries=0,
            )
        return self._clients[cache_key]

    def complete(self, prompt, model_name, *, api_key="", settings=None, timeout=60.0):
        import anthropic

        settings = settings or {}
        client = self._get_client(self._resolve_key(api_key), timeout)
        try:
            response = client.messages.create(
                model=model_name,
                max_tokens=settings.get("max_output_tokens") or 4096,
                temperature=settings.get("temperature", 0.7),
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.APITimeoutError as exc:
            raise GenerationTimeout(f"Anthropic call timed out after {timeout}s", provider=self.name) from exc
        except anthropic.APIStatusError as exc:
            raise ProviderError(f"Anthropic API error {exc.status_code}",
                                provider=self.name, status=exc.status_code) from exc
        except anthropic.APIError as exc:
            raise ProviderError(f"Anthropic transport error: {exc}", provider=self.name) from exc

        parts = [block.text for block in response.content if getattr(block, "type", "") == "text"]
        if not parts:
            raise ProviderError("Anthropic returned no text content", provider=self.name)
        return "".join(parts)


# ── OpenAI Provider ───────────────────────────────────────────────────────────

class OpenAIProvider(LLMProvider):
    """OpenAI chat completions provider."""

    name = "openai"
    api_key_env = "OPENAI_API_KEY"

    def __init__(self):
        self._clients = {}

    def _get_client(self, api_key: str, timeout: float):
        import openai

        cache_key = (api_key, timeout)
        if cache_key not in self._clients:
            self._clients[cache_key] = openai.OpenAI(api_key=api_key, timeout=timeout, max_retries=0)
        return self._clients[cache_key]

    def complete(self, prompt, model_name, *, api_key="", settings=None, timeout=60.0):
        import openai

        settings = settings or {}
        client = self._get_client(self._resolve_key(api_key), timeout)
        try:
            response = client.chat.completions.create(
                model=model_name,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=settings.get("max_output_tokens") or 4096,
                temperature=settings.get("temperature", 0.7),
                top_p=settings.get("top_p", 1.0),
            )
        except openai.APITimeoutError as exc:
            raise GenerationTimeout(f"OpenAI call timed out after {timeout}s", provider=self.name) from exc
        except openai.APIStatusError as exc:
            raise ProviderError(f"OpenAI API error {exc.status_code}",
                                provider=self.name, status=exc.status_code) from exc
        except openai.APIError as exc:
            raise ProviderError(f"OpenAI transport error: {exc}", provider=self.name) from exc

        if not response.choices or not response.choices[0].message.content:
            raise ProviderError("OpenAI returned no content", provider=self.name)
        return response.choices[0].message.content


# ── Local Stub Provider (for dev without API keys) ───────────────────────────

class LocalStubProvider(LLMProvider):
    """
    Local stub that returns deterministic JSON for development.
    No API key required. The response shape is chosen from the JSON keys
    the prompt asks for.
    """

    name = "local"

    def complete(self, prompt, model_name="local-stub", *, api_key="", settings=None, timeout=60.0):
        return "```json\n" + json.dumps(self._stub_payload(prompt), indent=2) + "\n```"

    @staticmethod
    def _subject(prompt: str) -> str:
        for label in ("Application description:", "What to test:", "DOCUMENT:", "Current version:"):
            if label in prompt:
                tail = prompt.split(label, 1)[1].strip()
                first = tail.splitlines()[0] if tail else ""
                return re.sub(r"\s+", " ", first)[:80] or "Application"
        return "Application"

    @classmethod
    def _plan(cls, subject: str, n: int = 1) -> dict:
        return {
            "title": f"Test Plan {n}: {subject}",
            "description": f"Verification of {subject}",
            "objective": "Confirm the feature behaves as specified",
            "scope": "Functional behaviour, input validation and error handling",
            "approach": "Manual functional testing with boundary value analysis",
            "criteria": "All high priority cases pass; no open critical defects",
            "resources": "1 QA engineer, staging environment",
            "schedule": "1 week",
            "risks": "Incomplete requirements; unstable test data",
        }

    @classmethod
    def _case(cls, subject: str, n: int = 1) -> dict:
        return {
            "title": f"Test Case {n}: {subject}",
            "description": f"Checks the main flow of {subject}",
            "preconditions": "User is logged in",
            "steps": [
                {"order": 1, "action": "Open the feature", "expected_result": "Feature is displayed"},
                {"order": 2, "action": "Submit valid input", "expected_result": "Input is accepted"},
            ],
            "expected_result": "The operation completes successfully",
            "priority": "medium",
            "type": "functional",
        }

    @classmethod
    def _stub_payload(cls, prompt: str) -> dict:
        subject = cls._subject(prompt)
        if '"plans"' in prompt:
            return {"plans": [cls._plan(subject, 1), cls._plan(subject, 2)]}
        if '"cases"' in prompt:
            return {"cases": [cls._case(subject, 1), cls._case(subject, 2)]}
        if '"actual_result"' in prompt:
            return {
                "status": "passed",
                "actual_result": "The system behaved as expected",
                "notes": "Executed against the staging environment",
                "executed_by": "AI Assistant",
            }
        if '"preconditions"' in prompt:
            return cls._case(subject)
        if '"objective"' in prompt:
            return cls._plan(subject)
        return {"response": f"Stub completion for: {subject}"}


# ── LLM Gateway (Main Interface) ─────────────────────────────────────────────

class LLMGateway:
    """
    Central gateway for all completion calls.

    Usage:
        gw = LLMGateway(timeout=30)
        gw.register_provider("fake", FakeProvider())   # tests
        text = gw.complete(prompt, model_descriptor)
    """

    def __init__(self, timeout: float = 60.0, providers: dict | None = None):
        self.timeout = timeout
        self._providers: dict[str, LLMProvider] = providers if providers is not None else {
            "gemini": GeminiProvider(),
            "anthropic": AnthropicProvider(),
            "openai": OpenAIProvider(),
            "local": LocalStubProvider(),
        }

    def register_provider(self, name: str, provider: LLMProvider) -> None:
        self._providers[name] = provider

    def get_provider(self, name: str) -> LLMProvider:
        provider = self._providers.get(name)
        if provider is None:
            raise ProviderError(f"Unsupported model provider: {name}", provider=name)
        return provider

    def complete(self, prompt: str, model) -> str:
        """
        Run one completion for a registry model.

        Args:
            prompt: Rendered prompt.
            model: ModelDescriptor (provider, provider_model, api_key, settings).

        Returns:
            Raw response text.

        Raises:
            GenerationTimeout: deadline exceeded.
            ProviderError: provider missing, credentials missing, SDK / HTTP failure.
        """
        provider = self.get_provider(model.provider)
        model_name = model.provider_model or model.id
        start = time.perf_counter()
        try:
            text = provider.complete(
                prompt, model_name,
                api_key=model.api_key,
                settings=model.settings,
                timeout=self.timeout,
            )
        except ProviderError as exc:
            logger.warning("LLM call failed: provider=%s model=%s error=%s (%.0fms)",
                           model.provider, model_name, exc, (time.perf_counter() - start) * 1000)
            raise
        logger.info("LLM call: provider=%s model=%s prompt_chars=%d response_chars=%d (%.0fms)",
                    model.provider, model_name, len(prompt), len(text or ""),
                    (time.perf_counter() - start) * 1000)
        return text or ""
