"""
Конфигурация провайдеров LLM и настроек процесса.

Задачи:
- Загрузка `toolchat/providers.json` как единого источника правды по провайдерам
- Учет переменных окружения `LLM_MODEL_<PROVIDER>` для переопределения дефолтной модели
- Настройки цикла агента и реестров инструментов из окружения (`AGENT_MAX_TURNS` и т.д.)
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


CONFIG_PATH = Path(__file__).resolve().parent.parent / "providers.json"

PUBLIC_KIND = "public"
LOCAL_KIND = "local"
AUTH_SCHEMES = ("bearer", "x-api-key", "none")


class ProvidersConfigError(RuntimeError):
  """Ошибка конфигурации провайдеров (providers.json)."""


@lru_cache(maxsize=1)
def load_providers_config() -> Dict[str, Any]:
  """
  Загружаем и кэшируем таблицу провайдеров из providers.json.
  :return: Словарь с ключом `providers`.
  """

  if not CONFIG_PATH.exists():
    raise ProvidersConfigError(f"providers.json not found at {CONFIG_PATH}")

  try:
    with open(CONFIG_PATH, "r", encoding="utf-8") as f:
      config = json.load(f)
  except (OSError, json.JSONDecodeError) as e:
    raise ProvidersConfigError(f"Failed to load providers config: {e}")

  providers = config.get("providers")
  if not isinstance(providers, dict) or not providers:
    raise ProvidersConfigError("Invalid providers.json structure: expected non-empty 'providers' dict")

  for provider_id, entry in providers.items():
    kind = entry.get("kind")
    if kind not in (PUBLIC_KIND, LOCAL_KIND):
      raise ProvidersConfigError(f"Provider '{provider_id}' has invalid kind: {kind!r}")
    if kind == PUBLIC_KIND and not entry.get("base_url"):
      raise ProvidersConfigError(f"Public provider '{provider_id}' needs a base_url")
    if entry.get("auth", "bearer") not in AUTH_SCHEMES:
      raise ProvidersConfigError(f"Provider '{provider_id}' has invalid auth scheme: {entry.get('auth')!r}")
    if not entry.get("default_model"):
      raise ProvidersConfigError(f"Provider '{provider_id}' has no default_model")

  return config


def list_providers() -> List[str]:
  """
  Возвращаем id всех известных провайдеров.
  :return: список id
  """

  return list(load_providers_config()["providers"].keys())


def get_provider_entry(provider: str) -> Optional[Dict[str, Any]]:
  """
  Ищем запись провайдера по id.
  :param provider: id провайдера (openai, llama_cpp, ...)
  :return: словарь провайдера или None
  """

  return load_providers_config()["providers"].get((provider or "").lower())


def get_default_model(provider: str) -> str:
  """
  Получаем дефолтную модель провайдера.

  `LLM_MODEL_<PROVIDER>` из env имеет приоритет над значением из providers.json.

  :param provider: id провайдера
  :return: имя модели
  """

  entry = get_provider_entry(provider)
  if entry is None:
    raise ProvidersConfigError(f"Unknown provider '{provider}'")

  env_model = os.getenv(f"LLM_MODEL_{provider.upper()}")
  if env_model:
    return env_model
  return entry["default_model"]


def _env_int(name: str, default: int) -> int:
  value = os.getenv(name)
  if value is None or value == "":
    return default
  try:
    return int(value)
  except ValueError:
    logger.warning("Invalid integer for %s=%r; using default %s", name, value, default)
    return default


def _env_float(name: str, default: float) -> float:
  value = os.getenv(name)
  if value is None or value == "":
    return default
  try:
    return float(value)
  except ValueError:
    logger.warning("Invalid number for %s=%r; using default %s", name, value, default)
    return default


def _env_bool(name: str, default: bool) -> bool:
  value = os.getenv(name)
  if value is None or value == "":
    return default
  return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
  """Настройки процесса, общие для всех запросов (только чтение)."""

  max_turns: int = 10
  tool_call_timeout: float = 60.0
  registry_timeout: float = 10.0
  registry_health_timeout: float = 3.0
  registry_health_check: bool = True
  llm_timeout: float = 120.0
  log_level: str = "INFO"
  log_dir: Optional[str] = None
  host: str = "0.0.0.0"
  port: int = 6000


def get_settings() -> Settings:
  """
  Собираем настройки из переменных окружения.

  Не кэшируется: тесты и запуск через `.env` могут менять окружение до старта.
  :return: объект Settings
  """

  return Settings(
    max_turns=max(1, _env_int("AGENT_MAX_TURNS", 10)),
    tool_call_timeout=_env_float("TOOL_CALL_TIMEOUT", 60.0),
    registry_timeout=_env_float("REGISTRY_TIMEOUT", 10.0),
    registry_health_timeout=_env_float("REGISTRY_HEALTH_TIMEOUT", 3.0),
    registry_health_check=_env_bool("REGISTRY_HEALTH_CHECK", True),
    llm_timeout=_env_float("LLM_TIMEOUT", 120.0),
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    log_dir=os.getenv("LOG_DIR") or None,
    host=os.getenv("HOST", "0.0.0.0"),
    port=_env_int("PORT", 6000),
  )
