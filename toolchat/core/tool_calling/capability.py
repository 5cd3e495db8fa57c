"""
Классификатор возможностей провайдера

Определяет, умеет ли бэкенд модели native function calling.
Для остальных провайдеров вызов инструментов имитируется: в первый ход
добавляется инструкция с описанием инструментов и строгим JSON-форматом ответа,
а ответ модели разбирается ToolCallExtractor.
"""

import json
import logging
from enum import Enum
from typing import FrozenSet, List

from .base import ToolDescriptor
from toolchat.core import config as providers_config

logger = logging.getLogger(__name__)


class ToolCallingMode(str, Enum):
    """Способ вызова инструментов для провайдера"""
    NATIVE = "native"   # tools передаются в API, tool_calls приходят в ответе
    MANUAL = "manual"   # инструкция в промпте + парсинг текста


def native_providers() -> FrozenSet[str]:
    """Закрытое множество провайдеров с native tool calling (из providers.json)"""
    providers = providers_config.load_providers_config()["providers"]
    return frozenset(pid for pid, entry in providers.items() if entry.get("native_tools"))


def supports_native_tools(provider: str) -> bool:
    """
    Проверить поддерживает ли провайдер native tool calling

    Любой провайдер вне известного множества считается "manual".
    """
    return (provider or "").lower() in native_providers()


def classify(provider: str) -> ToolCallingMode:
    """Вернуть режим вызова инструментов для провайдера"""
    return ToolCallingMode.NATIVE if supports_native_tools(provider) else ToolCallingMode.MANUAL


def build_manual_tool_prompt(tools: List[ToolDescriptor]) -> str:
    """
    Инструкция для моделей без native tool calling

    Описывает каждый инструмент (имя, описание, параметры) и требует
    однострочный JSON {"tool_name": ..., "tool_args": {...}} при вызове.

    Args:
        tools: Каталог инструментов запроса

    Returns:
        Текст инструкции (пустая строка, если инструментов нет)
    """
    if not tools:
        return ""

    lines = [
        "You have access to the following tools:",
        "",
    ]
    for tool in tools:
        lines.append(f"- {tool.name}: {tool.description}" if tool.description else f"- {tool.name}")
        if tool.properties:
            params = []
            for param_name, schema in tool.properties.items():
                param_type = schema.get("type", "any") if isinstance(schema, dict) else "any"
                marker = " (required)" if param_name in tool.required else ""
                params.append(f"{param_name}: {param_type}{marker}")
            lines.append(f"  parameters: {', '.join(params)}")
        else:
            lines.append("  parameters: none")

    example = json.dumps({"tool_name": "<tool name>", "tool_args": {"<param>": "<value>"}})
    lines += [
        "",
        "When you need to call a tool, respond ONLY with a single line of JSON in this exact format:",
        example,
        "Do not add any other text when calling a tool.",
        "When you have the tool results, or no tool is needed, answer the user in plain text.",
    ]
    return "\n".join(lines)
