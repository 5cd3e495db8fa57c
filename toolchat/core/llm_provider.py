"""Универсальный LLM-провайдер для OpenAI-совместимого chat/completions API.

Все бэкенды (OpenAI, Claude, OpenRouter, Ollama, llama.cpp, vLLM) обслуживаются
одним клиентом; различия описаны таблицей ``toolchat/providers.json``
(см. :mod:`toolchat.core.config`): базовый URL, схема авторизации,
поддержка native tool calling и модель по умолчанию.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import asyncio
import logging

import httpx

from . import config as providers_config
from .error_handling import (
    CredentialError,
    LLMError,
    RequestValidationError,
    UnsupportedProviderError,
)
from .tool_calling.capability import ToolCallingMode, classify


logger = logging.getLogger(__name__)

# Параметры генерации из credential.set -> поля тела chat/completions
GENERATION_OPTIONS = (
    "temperature",
    "max_tokens",
    "top_p",
    "frequency_penalty",
    "presence_penalty",
    "stop",
    "seed",
)
# Параметры клиента из credential.set
CLIENT_OPTIONS = ("timeout", "max_retries", "debug")

DEFAULT_TEMPERATURE = 0
RETRY_STATUSES = (429, 500, 502, 503, 504)
RETRY_BACKOFF = 0.5

PROVIDER_LABELS = {
    "openai": "OpenAI",
    "claude": "Claude",
    "openrouter": "OpenRouter",
    "ollama": "Ollama",
    "llama_cpp": "Llama.cpp",
    "vllm": "vLLM",
}


@dataclass(frozen=True)
class ProviderProfile:
    """
    Профиль провайдера для одного запроса (неизменяемый)

    Attributes:
        provider: id провайдера
        mode: native или manual вызов инструментов
        model: имя модели
        base_url: базовый URL OpenAI-совместимого API
        api_key: секрет (для локальных - заглушка)
        auth: схема авторизации (bearer, x-api-key, none)
        extra_headers: дополнительные заголовки провайдера
        options: переопределения генерации (temperature, max_tokens, ...)
        timeout: таймаут вызова модели (секунды)
        max_retries: повторы при сетевых ошибках и 429/5xx
        debug: подробное логирование ответов модели
    """

    provider: str
    mode: ToolCallingMode
    model: str
    base_url: str
    api_key: Optional[str] = None
    auth: str = "bearer"
    extra_headers: Dict[str, str] = field(default_factory=dict)
    options: Dict[str, Any] = field(default_factory=dict)
    timeout: float = 120.0
    max_retries: int = 0
    debug: bool = False

    @property
    def native_tools(self) -> bool:
        return self.mode == ToolCallingMode.NATIVE

    @property
    def label(self) -> str:
        return PROVIDER_LABELS.get(self.provider, self.provider)

    def headers(self) -> Dict[str, str]:
        """HTTP-заголовки запроса с учётом схемы авторизации"""
        headers = {"Content-Type": "application/json"}
        if self.api_key and self.auth == "bearer":
            headers["Authorization"] = f"Bearer {self.api_key}"
        elif self.api_key and self.auth == "x-api-key":
            headers["x-api-key"] = self.api_key
        headers.update(self.extra_headers)
        return headers


def build_profile(credential: Dict[str, Any], default_timeout: Optional[float] = None) -> ProviderProfile:
    """Собрать ProviderProfile из credential запроса.

    Правила:
    1) `provider` обязателен и должен быть в providers.json
    2) публичным провайдерам нужен `api_key` (иначе 401)
    3) локальным провайдерам нужен `url`
    4) `model` - явно или модель по умолчанию провайдера
    5) `set` - переопределения генерации и клиента

    Raises:
        RequestValidationError, CredentialError, UnsupportedProviderError
    """

    provider = (credential.get("provider") or "").strip().lower()
    if not provider:
        raise RequestValidationError("Missing credential provider")

    entry = providers_config.get_provider_entry(provider)
    if entry is None:
        raise UnsupportedProviderError(provider)

    label = PROVIDER_LABELS.get(provider, provider)
    api_key = credential.get("api_key")
    url = credential.get("url")

    if entry["kind"] == providers_config.PUBLIC_KIND:
        if not api_key:
            raise CredentialError(f"{label} API key is required", provider=provider)
        base_url = url or entry["base_url"]
    else:
        if not url:
            raise RequestValidationError(f"{label} URL is required")
        base_url = url
        api_key = api_key or entry.get("placeholder_key")

    settings = dict(credential.get("set") or {})
    unknown = set(settings) - set(GENERATION_OPTIONS) - set(CLIENT_OPTIONS)
    if unknown:
        raise RequestValidationError(f"Unknown credential settings: {sorted(unknown)}")

    options = {key: settings[key] for key in GENERATION_OPTIONS if settings.get(key) is not None}
    options.setdefault("temperature", DEFAULT_TEMPERATURE)

    return ProviderProfile(
        provider=provider,
        mode=classify(provider),
        model=credential.get("model") or providers_config.get_default_model(provider),
        base_url=base_url.rstrip("/"),
        api_key=api_key,
        auth=entry.get("auth", "bearer"),
        extra_headers=dict(entry.get("extra_headers") or {}),
        options=options,
        timeout=float(settings.get("timeout") or default_timeout or 120.0),
        max_retries=int(settings.get("max_retries") or 0),
        debug=bool(settings.get("debug", False)),
    )


class BaseLLMProvider(ABC):
    """Базовый класс для всех LLM провайдеров

    Также отвечает за базовый учёт токенов (usage), чтобы ответ
    мог вернуть статистику по запросу.
    """

    def __init__(self) -> None:
        # Агрегированный usage по всем вызовам chat() за запрос
        self._usage_totals: Dict[str, int] = {
            "prompt_tokens": 0,
            "completion_tokens": 0,
            "total_tokens": 0,
        }

    @abstractmethod
    async def chat(
        self,
        messages: List[Dict[str, Any]],
        tool_params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Один вызов модели; возвращает сырой ответ chat/completions"""
        pass

    async def aclose(self) -> None:
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _record_usage(self, usage: Optional[Dict[str, Any]]) -> None:
        """Учесть usage одного вызова.

        Ожидается словарь формата:
        {"prompt_tokens": int, "completion_tokens": int, "total_tokens": int}
        """
        if not usage:
            return

        for k, v in usage.items():
            if k in self._usage_totals and isinstance(v, (int, float)):
                self._usage_totals[k] += int(v)

    def get_cumulative_usage(self) -> Dict[str, int]:
        """Суммарный usage по всем вызовам."""
        return dict(self._usage_totals)


class OpenAICompatibleProvider(BaseLLMProvider):
    """Клиент OpenAI-совместимого chat/completions для любого бэкенда из таблицы"""

    def __init__(self, profile: ProviderProfile, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__()
        self.profile = profile
        self._client = httpx.AsyncClient(
            base_url=profile.base_url,
            headers=profile.headers(),
            timeout=profile.timeout,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def build_body(
        self,
        messages: List[Dict[str, Any]],
        tool_params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Тело запроса: модель, сообщения, параметры генерации и (native) tools"""
        body: Dict[str, Any] = {
            "model": self.profile.model,
            "messages": messages,
            "stream": False,
        }
        body.update(self.profile.options)
        if tool_params:
            body.update(tool_params)
        return body

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        tool_params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        body = self.build_body(messages, tool_params)
        attempts = self.profile.max_retries + 1

        for attempt in range(attempts):
            last_attempt = attempt == attempts - 1
            try:
                response = await self._client.post("/chat/completions", json=body)
            except httpx.TransportError as e:
                if last_attempt:
                    raise LLMError(
                        f"{self.profile.label} request failed: {e.__class__.__name__}: {e}",
                        provider=self.profile.provider,
                    )
                logger.warning(f"{self.profile.label} transport error ({e}); retry {attempt + 1}/{attempts - 1}")
                await asyncio.sleep(RETRY_BACKOFF * (2 ** attempt))
                continue

            if response.status_code in RETRY_STATUSES and not last_attempt:
                logger.warning(
                    f"{self.profile.label} returned {response.status_code}; retry {attempt + 1}/{attempts - 1}"
                )
                await asyncio.sleep(RETRY_BACKOFF * (2 ** attempt))
                continue

            if not response.is_success:
                raise LLMError(
                    f"{self.profile.label} HTTP error! status: {response.status_code}\n"
                    f"message: {self._error_message(response)}",
                    provider=self.profile.provider,
                    status_code=response.status_code,
                )

            try:
                data = response.json()
            except ValueError:
                raise LLMError(f"{self.profile.label} returned non-JSON response", provider=self.profile.provider)

            self._record_usage(data.get("usage"))
            if self.profile.debug:
                message = (data.get("choices") or [{}])[0].get("message")
                logger.info(f"Response from {self.profile.label}: {message}")
            return data

        # range(attempts) всегда завершается return или raise
        raise LLMError(f"{self.profile.label} request failed", provider=self.profile.provider)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text[:200]
        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict):
            return error.get("message") or str(error)
        return str(error or data)[:200]


def get_llm_provider(profile: ProviderProfile, **kwargs) -> BaseLLMProvider:
    """Фабрика LLM-провайдеров.

    Пример использования::

        profile = build_profile({"provider": "openai", "api_key": "..."})
        async with get_llm_provider(profile) as llm:
            response = await llm.chat([{"role": "user", "content": "Hello"}])
    """

    logger.info("Initialized LLM provider '%s' with model '%s' (tools=%s)",
                profile.provider, profile.model, profile.mode.value)
    return OpenAICompatibleProvider(profile, **kwargs)
