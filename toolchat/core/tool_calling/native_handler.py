"""
Native Tool Handler

Обработка native tool calling через OpenAI-совместимый API провайдеров
(OpenAI, OpenRouter, Claude, Ollama, vLLM).
"""

import logging
from typing import List, Dict, Any, Optional, Tuple

from .base import ToolCall, ToolDescriptor

logger = logging.getLogger(__name__)


def descriptor_to_openai_format(tool: ToolDescriptor) -> Dict[str, Any]:
    """Формат function definition для OpenAI-совместимого API"""
    parameters = dict(tool.parameters)
    parameters.setdefault("type", "object")
    parameters.setdefault("properties", {})
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": parameters,
        }
    }


class NativeToolHandler:
    """
    Обработчик native tool calling

    Отвечает за:
    1. Подготовку tool definitions для API
    2. Парсинг tool_calls из ответа API

    Пример использования:
        handler = NativeToolHandler(catalog)
        body.update(handler.prepare_request_params())
        text, tool_calls, dropped = handler.parse_response(response_json)
    """

    def __init__(self, tools: Optional[List[ToolDescriptor]] = None):
        self.tools: List[ToolDescriptor] = list(tools or [])
        self._tool_choice: str = "auto"  # auto, none, required, или конкретный tool

    def set_tool_choice(self, choice: str) -> None:
        """
        Установить стратегию выбора инструментов

        Args:
            choice: "auto", "none", "required", или имя конкретного tool
        """
        self._tool_choice = choice

    def get_tools_for_request(self) -> List[Dict[str, Any]]:
        """Список tools для API запроса"""
        return [descriptor_to_openai_format(t) for t in self.tools]

    def get_tool_choice_for_request(self) -> Any:
        """Параметр tool_choice для запроса"""
        if self._tool_choice in ["auto", "none", "required"]:
            return self._tool_choice
        # Конкретный инструмент
        return {
            "type": "function",
            "function": {"name": self._tool_choice}
        }

    def prepare_request_params(self) -> Dict[str, Any]:
        """
        Подготовить параметры для API запроса

        Returns:
            Dict с tools и tool_choice (пустой, если инструментов нет -
            некоторые бэкенды отвергают пустой список tools)
        """
        if not self.tools:
            return {}
        return {
            "tools": self.get_tools_for_request(),
            "tool_choice": self.get_tool_choice_for_request()
        }

    @staticmethod
    def parse_response(response: Dict[str, Any]) -> Tuple[str, List[ToolCall], int]:
        """
        Парсинг ответа API с tool_calls

        Args:
            response: Ответ от API (OpenAI-совместимый формат)

        Returns:
            (text, tool_calls, dropped) - текст ответа, разобранные вызовы
            и число вызовов, отброшенных из-за битых аргументов или имени
        """
        choices = response.get("choices") or []
        if not choices:
            return "", [], 0

        message = choices[0].get("message") or {}
        text = message.get("content") or ""
        if not isinstance(text, str):
            # content частями (список блоков) - склеиваем текстовые
            text = "".join(
                part.get("text", "") for part in text if isinstance(part, dict)
            )

        calls: List[ToolCall] = []
        dropped = 0
        for tc in message.get("tool_calls") or []:
            try:
                calls.append(ToolCall.from_openai_format(tc))
            except (ValueError, TypeError) as e:
                logger.warning(f"Failed to parse tool_call: {e}")
                dropped += 1

        return text, calls, dropped
