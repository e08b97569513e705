"""
GradeLab - Multi-Provider LLM Client
=====================================
Priority order (LLM_PROVIDER=auto):
  1. Azure OpenAI   - primary; text extraction and grading deployment
  2. OpenAI         - gpt-4o, same prompts as Azure
  3. Claude         - Anthropic
  4. Gemini         - Google
  5. Groq / Llama   - text only
  6. Ollama (local) - text only, offline

Vision (page OCR) is served by the first four; Groq and Ollama are skipped
for image requests.

Set in .env:
  AZURE_OPENAI_API_KEY=...   AZURE_OPENAI_ENDPOINT=...   AZURE_OPENAI_DEPLOYMENT=...
  OPENAI_API_KEY=...
  ANTHROPIC_API_KEY=...
  GEMINI_API_KEY=...
  GROQ_API_KEY=...
  OLLAMA_BASE_URL=http://localhost:11434   (optional, for offline mode)
  LLM_PROVIDER=auto                        (auto | azure | openai | claude | gemini | groq | ollama)
"""

import base64
import os
import json
import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Optional, Union

import requests

from gradelab import config
from gradelab.exceptions import ConfigurationError, EvaluationError

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM = "You are an expert teacher assisting with school assessments."
JSON_SYSTEM = (
    "You are an AI evaluator. Always respond with valid JSON only. "
    "No markdown fences, no extra text."
)
_PLACEHOLDER_KEYS = {"", "your_api_key_here", "your_openai_api_key_here",
                     "your_anthropic_api_key_here", "your_gemini_api_key_here",
                     "your_groq_api_key_here"}


@dataclass
class LLMResponse:
    text: str
    provider: str
    model: str
    prompt_tokens: int = 0
    completion_tokens: int = 0
    latency_ms: float = 0.0


def _has_key(key: Optional[str]) -> bool:
    return bool(key) and key not in _PLACEHOLDER_KEYS


# ─────────────────────────────────────────────────────────────────────────────
# OpenAI-compatible providers (Azure + OpenAI) - PRIMARY
# ─────────────────────────────────────────────────────────────────────────────

class OpenAIProvider:
    DEFAULT_MODEL = "gpt-4o"
    name = "openai"
    supports_vision = True

    def __init__(self, api_key: str, model: Optional[str] = None, timeout: Optional[float] = None):
        self.api_key = api_key
        self.model = model or os.getenv("OPENAI_MODEL", self.DEFAULT_MODEL)
        self.timeout = timeout or config.LLM_REQUEST_TIMEOUT_SEC
        self._client = None

    def _get_client(self):
        if self._client is None:
            from openai import OpenAI
            self._client = OpenAI(api_key=self.api_key, timeout=self.timeout, max_retries=1)
            logger.info("✅ OpenAI client ready: %s", self.model)
        return self._client

    def _complete(self, messages: list, max_tokens: int, json_mode: bool, temperature: float) -> LLMResponse:
        start = time.time()
        kwargs = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        resp = self._get_client().chat.completions.create(**kwargs)
        if not resp.choices or resp.choices[0].message is None:
            raise EvaluationError(f"Invalid response from {self.name}")
        latency = (time.time() - start) * 1000
        return LLMResponse(
            text=resp.choices[0].message.content or "",
            provider=self.name,
            model=self.model,
            prompt_tokens=resp.usage.prompt_tokens if resp.usage else 0,
            completion_tokens=resp.usage.completion_tokens if resp.usage else 0,
            latency_ms=round(latency, 2),
        )

    def generate(self, prompt: str, system: Optional[str] = None, max_tokens: int = 2048,
                 json_mode: bool = False, temperature: float = 0.2) -> LLMResponse:
        messages = [
            {"role": "system", "content": system or (JSON_SYSTEM if json_mode else DEFAULT_SYSTEM)},
            {"role": "user", "content": prompt},
        ]
        return self._complete(messages, max_tokens, json_mode, temperature)

    def read_image(self, image_b64: str, prompt: str, system: Optional[str] = None,
                   mime_type: str = "image/png", max_tokens: int = 4096,
                   temperature: float = 0.1) -> LLMResponse:
        messages = [
            {"role": "system", "content": system or DEFAULT_SYSTEM},
            {"role": "user", "content": [
                {"type": "text", "text": prompt},
                {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{image_b64}"}},
            ]},
        ]
        return self._complete(messages, max_tokens, False, temperature)

    def is_available(self) -> bool:
        return _has_key(self.api_key)


class AzureOpenAIProvider(OpenAIProvider):
    DEFAULT_API_VERSION = "2024-12-01-preview"
    name = "azure"

    def __init__(self, api_key: str, endpoint: str, deployment: str,
                 api_version: Optional[str] = None, timeout: Optional[float] = None):
        super().__init__(api_key, model=deployment, timeout=timeout)
        self.endpoint = endpoint
        self.api_version = api_version or self.DEFAULT_API_VERSION

    def _get_client(self):
        if self._client is None:
            from openai import AzureOpenAI
            self._client = AzureOpenAI(
                api_key=self.api_key,
                azure_endpoint=self.endpoint,
                api_version=self.api_version,
                timeout=self.timeout,
                max_retries=1,
            )
            logger.info("✅ Azure OpenAI client ready: %s @ %s", self.model, self.endpoint)
        return self._client

    def is_available(self) -> bool:
        return _has_key(self.api_key) and bool(self.endpoint) and bool(self.model)


# ─────────────────────────────────────────────────────────────────────────────
# Claude Provider (Anthropic)
# ─────────────────────────────────────────────────────────────────────────────

class ClaudeProvider:
    DEFAULT_MODEL = "claude-haiku-4-5-20251001"
    name = "claude"
    supports_vision = True

    def __init__(self, api_key: str, model: Optional[str] = None, timeout: Optional[float] = None):
        self.api_key = api_key
        self.model = model or os.getenv("CLAUDE_MODEL", self.DEFAULT_MODEL)
        self.timeout = timeout or config.LLM_REQUEST_TIMEOUT_SEC
        self._client = None

    def _get_client(self):
        if self._client is None:
            import anthropic
            self._client = anthropic.Anthropic(api_key=self.api_key, timeout=self.timeout, max_retries=1)
            logger.info("✅ Claude client ready: %s", self.model)
        return self._client

    def _create(self, content, system: str, max_tokens: int, temperature: float) -> LLMResponse:
        start = time.time()
        message = self._get_client().messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system,
            messages=[{"role": "user", "content": content}],
        )
        text = message.content[0].text
        latency = (time.time() - start) * 1000
        return LLMResponse(
            text=text,
            provider="claude",
            model=self.model,
            prompt_tokens=message.usage.input_tokens,
            completion_tokens=message.usage.output_tokens,
            latency_ms=round(latency, 2),
        )

    def generate(self, prompt: str, system: Optional[str] = None, max_tokens: int = 2048,
                 json_mode: bool = False, temperature: float = 0.2) -> LLMResponse:
        return self._create(prompt, system or (JSON_SYSTEM if json_mode else DEFAULT_SYSTEM),
                            max_tokens, temperature)

    def read_image(self, image_b64: str, prompt: str, system: Optional[str] = None,
                   mime_type: str = "image/png", max_tokens: int = 4096,
                   temperature: float = 0.1) -> LLMResponse:
        content = [
            {"type": "image", "source": {"type": "base64", "media_type": mime_type, "data": image_b64}},
            {"type": "text", "text": prompt},
        ]
        return self._create(content, system or DEFAULT_SYSTEM, max_tokens, temperature)

    def is_available(self) -> bool:
        return _has_key(self.api_key)


# ─────────────────────────────────────────────────────────────────────────────
# Gemini Provider
# ─────────────────────────────────────────────────────────────────────────────

class GeminiProvider:
    DEFAULT_MODEL = "gemini-1.5-flash"
    name = "gemini"
    supports_vision = True

    def __init__(self, api_key: str, model: Optional[str] = None, timeout: Optional[float] = None):
        self.api_key = api_key
        self.model = model or os.getenv("GEMINI_MODEL", self.DEFAULT_MODEL)
        self.timeout = timeout or config.LLM_REQUEST_TIMEOUT_SEC
        self._client = None

    def _get_client(self):
        if self._client is None:
            import google.generativeai as genai
            genai.configure(api_key=self.api_key)
            self._client = genai.GenerativeModel(model_name=self.model)
            logger.info("✅ Gemini client ready: %s", self.model)
        return self._client

    def _create(self, contents, max_tokens: int, temperature: float, json_mode: bool) -> LLMResponse:
        start = time.time()
        generation_config = {"temperature": temperature, "top_p": 0.95, "max_output_tokens": max_tokens}
        if json_mode:
            generation_config["response_mime_type"] = "application/json"
        response = self._get_client().generate_content(
            contents, generation_config=generation_config, request_options={"timeout": self.timeout})
        text = response.text if hasattr(response, "text") else str(response)
        latency = (time.time() - start) * 1000
        return LLMResponse(text=text, provider="gemini", model=self.model, latency_ms=round(latency, 2))

    def generate(self, prompt: str, system: Optional[str] = None, max_tokens: int = 2048,
                 json_mode: bool = False, temperature: float = 0.2) -> LLMResponse:
        preamble = system or (JSON_SYSTEM if json_mode else DEFAULT_SYSTEM)
        return self._create(f"{preamble}\n\n{prompt}", max_tokens, temperature, json_mode)

    def read_image(self, image_b64: str, prompt: str, system: Optional[str] = None,
                   mime_type: str = "image/png", max_tokens: int = 4096,
                   temperature: float = 0.1) -> LLMResponse:
        preamble = system or DEFAULT_SYSTEM
        contents = [
            {"mime_type": mime_type, "data": base64.b64decode(image_b64)},
            f"{preamble}\n\n{prompt}",
        ]
        return self._create(contents, max_tokens, temperature, False)

    def is_available(self) -> bool:
        return _has_key(self.api_key)


# ─────────────────────────────────────────────────────────────────────────────
# Groq Provider
# ─────────────────────────────────────────────────────────────────────────────

class GroqProvider:
    DEFAULT_MODEL = "llama-3.3-70b-versatile"
    name = "groq"
    supports_vision = False

    def __init__(self, api_key: str, model: Optional[str] = None, timeout: Optional[float] = None):
        self.api_key = api_key
        self.model = model or os.getenv("GROQ_MODEL", self.DEFAULT_MODEL)
        self.timeout = timeout or config.LLM_REQUEST_TIMEOUT_SEC
        self._client = None

    def _get_client(self):
        if self._client is None:
            from groq import Groq
            self._client = Groq(api_key=self.api_key, timeout=self.timeout, max_retries=1)
            logger.info("✅ Groq client ready: %s", self.model)
        return self._client

    def generate(self, prompt: str, system: Optional[str] = None, max_tokens: int = 2048,
                 json_mode: bool = False, temperature: float = 0.2) -> LLMResponse:
        start = time.time()
        kwargs = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system or (JSON_SYSTEM if json_mode else DEFAULT_SYSTEM)},
                {"role": "user", "content": prompt},
            ],
            "temperature": temperature,
            "max_tokens": min(max_tokens, 8192),
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        resp = self._get_client().chat.completions.create(**kwargs)
        latency = (time.time() - start) * 1000
        return LLMResponse(
            text=resp.choices[0].message.content,
            provider="groq",
            model=self.model,
            prompt_tokens=resp.usage.prompt_tokens if resp.usage else 0,
            completion_tokens=resp.usage.completion_tokens if resp.usage else 0,
            latency_ms=round(latency, 2),
        )

    def is_available(self) -> bool:
        return _has_key(self.api_key)


# ─────────────────────────────────────────────────────────────────────────────
# Ollama Provider - OFFLINE FALLBACK
# ─────────────────────────────────────────────────────────────────────────────

class OllamaProvider:
    """
    Uses a locally-running Ollama server.
    Run: ollama pull llama3 && ollama serve
    """
    name = "ollama"
    supports_vision = False

    def __init__(self, base_url: Optional[str] = None, model: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.base_url = base_url or os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
        self.model = model or os.getenv("OLLAMA_MODEL", "llama3")
        self.timeout = timeout or config.LLM_REQUEST_TIMEOUT_SEC

    def generate(self, prompt: str, system: Optional[str] = None, max_tokens: int = 2048,
                 json_mode: bool = False, temperature: float = 0.2) -> LLMResponse:
        start = time.time()
        payload = {
            "model": self.model,
            "system": system or (JSON_SYSTEM if json_mode else DEFAULT_SYSTEM),
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": temperature, "num_predict": max_tokens},
        }
        if json_mode:
            payload["format"] = "json"
        resp = requests.post(f"{self.base_url}/api/generate", json=payload, timeout=self.timeout)
        resp.raise_for_status()
        text = resp.json().get("response", "")
        latency = (time.time() - start) * 1000
        return LLMResponse(text=text, provider="ollama", model=self.model, latency_ms=round(latency, 2))

    def is_available(self) -> bool:
        try:
            return requests.get(f"{self.base_url}/api/tags", timeout=3).ok
        except requests.RequestException:
            return False


# ─────────────────────────────────────────────────────────────────────────────
# Multi-Provider Client
# ─────────────────────────────────────────────────────────────────────────────

class LLMClient:
    """
    Unified client that tries providers in priority order with fallback.
    """

    ORDER = ["azure", "openai", "claude", "gemini", "groq", "ollama"]

    def __init__(self, providers: list):
        self._providers = providers
        self._last_used_provider = None

    @classmethod
    def from_env(cls) -> "LLMClient":
        preference = os.getenv("LLM_PROVIDER", "auto").lower()

        factories = {
            "azure": lambda: AzureOpenAIProvider(
                os.getenv("AZURE_OPENAI_API_KEY", ""),
                os.getenv("AZURE_OPENAI_ENDPOINT", ""),
                os.getenv("AZURE_OPENAI_DEPLOYMENT", ""),
                os.getenv("AZURE_OPENAI_API_VERSION"),
            ),
            "openai": lambda: OpenAIProvider(os.getenv("OPENAI_API_KEY", "")),
            "claude": lambda: ClaudeProvider(os.getenv("ANTHROPIC_API_KEY", "")),
            "gemini": lambda: GeminiProvider(os.getenv("GEMINI_API_KEY", "")),
            "groq":   lambda: GroqProvider(os.getenv("GROQ_API_KEY", "")),
        }

        order = list(cls.ORDER)
        if preference in order:
            order.remove(preference)
            order.insert(0, preference)

        providers = []
        for name in order:
            if name == "ollama":
                # Only probed when asked for; the probe costs a network round trip.
                if preference == "ollama" or os.getenv("OLLAMA_BASE_URL"):
                    p = OllamaProvider()
                    if p.is_available():
                        providers.append(p)
                        logger.info("✅ Ollama offline provider detected")
                continue
            p = factories[name]()
            if p.is_available():
                providers.append(p)

        provider_names = [f"{p.__class__.__name__}({getattr(p, 'model', 'N/A')})" for p in providers]
        logger.info("🚀 LLMClient ready with %d providers: %s", len(providers), provider_names)
        return cls(providers)

    @property
    def is_configured(self) -> bool:
        return bool(self._providers)

    @property
    def supports_vision(self) -> bool:
        return any(getattr(p, "supports_vision", False) for p in self._providers)

    def _run(self, providers: list, call, what: str) -> LLMResponse:
        if not providers:
            raise ConfigurationError(
                f"No LLM provider configured for {what}. "
                "Set AZURE_OPENAI_API_KEY/AZURE_OPENAI_ENDPOINT/AZURE_OPENAI_DEPLOYMENT or OPENAI_API_KEY."
            )
        errors = []
        for provider in providers:
            try:
                logger.info("Trying: %s", provider.__class__.__name__)
                response = call(provider)
                self._last_used_provider = provider
                logger.info("✅ %s/%s responded in %.2fms",
                            response.provider, response.model, response.latency_ms)
                return response
            except Exception as e:
                logger.warning("⚠️ %s failed: %s - trying next", provider.__class__.__name__, str(e)[:120])
                errors.append(f"{provider.__class__.__name__}: {e}")
        raise EvaluationError(f"All LLM providers failed for {what}", {"errors": errors})

    def generate(self, prompt: str, system: Optional[str] = None, max_tokens: int = 2048,
                 json_mode: bool = False, temperature: float = 0.2) -> LLMResponse:
        return self._run(
            self._providers,
            lambda p: p.generate(prompt, system=system, max_tokens=max_tokens,
                                 json_mode=json_mode, temperature=temperature),
            "text generation",
        )

    def read_image(self, image_b64: str, prompt: str, system: Optional[str] = None,
                   mime_type: str = "image/png", max_tokens: int = 4096,
                   temperature: float = 0.1) -> LLMResponse:
        vision = [p for p in self._providers if getattr(p, "supports_vision", False)]
        return self._run(
            vision,
            lambda p: p.read_image(image_b64, prompt, system=system, mime_type=mime_type,
                                   max_tokens=max_tokens, temperature=temperature),
            "image reading",
        )

    def generate_json(self, prompt: str, system: Optional[str] = None,
                      defaults: Optional[Union[dict, list]] = None, max_retries: int = 2,
                      max_tokens: int = 2048, temperature: float = 0.1) -> Union[dict, list]:
        """
        Generate and parse JSON with retries.
        Returns `defaults` (when given) after the last failed parse; otherwise raises.
        """
        last_error = None
        for attempt in range(max_retries + 1):
            response = self.generate(prompt, system=system, max_tokens=max_tokens,
                                     json_mode=True, temperature=temperature)
            try:
                return parse_json_text(response.text)
            except ValueError as e:
                last_error = e
                logger.warning("JSON parse attempt %d failed: %s", attempt + 1, e)

        logger.error("JSON parse failed after %d retries: %s", max_retries, last_error)
        if defaults is not None:
            return defaults
        raise EvaluationError(f"LLM returned invalid JSON: {last_error}")

    @property
    def active_provider(self) -> str:
        p = self._last_used_provider or (self._providers[0] if self._providers else None)
        if p is None:
            return "none"
        return f"{p.__class__.__name__}({getattr(p, 'model', 'N/A')})"


def parse_json_text(text: str) -> Union[dict, list]:
    """Strip markdown fences and parse the outermost JSON object or array."""
    cleaned = re.sub(r"```json|```|`", "", text or "").strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    starts = [i for i in (cleaned.find("{"), cleaned.find("[")) if i != -1]
    if not starts:
        raise ValueError("no JSON object or array found")
    start = min(starts)
    end = cleaned.rfind("}" if cleaned[start] == "{" else "]")
    if end <= start:
        raise ValueError("unterminated JSON")
    try:
        return json.loads(cleaned[start:end + 1])
    except json.JSONDecodeError as e:
        raise ValueError(str(e)) from e


_client_lock = threading.Lock()
_client_singleton: Optional[LLMClient] = None


def get_llm_client() -> LLMClient:
    """One client per process, shared by the grading and OCR threads."""
    global _client_singleton
    if _client_singleton is not None:
        return _client_singleton
    with _client_lock:
        if _client_singleton is None:
            _client_singleton = LLMClient.from_env()
        return _client_singleton
