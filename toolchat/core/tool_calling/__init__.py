"""
Universal Tool Calling System

Двухуровневая система для работы с инструментами:
1. Native Tool Calling - через API провайдера (OpenAI-совместимый формат)
2. Manual Tool Calling - инструкция в промпте + парсинг текстового ответа LLM

Поддерживает любые бэкенды через:
- OpenAI-совместимый chat/completions (OpenAI, OpenRouter, Claude, Ollama, vLLM)
- Текстовый fallback для llama.cpp и других моделей без tool calling
"""

from .base import (
    ToolCall,
    ToolCallSource,
    ToolDescriptor,
    ToolExecutionResult,
    ToolCallBatch,
    serialize_payload,
)
from .capability import (
    ToolCallingMode,
    build_manual_tool_prompt,
    classify,
    native_providers,
    supports_native_tools,
)
from .text_extractor import ToolCallExtractor, clean_response, extract_tool_calls
from .executor import ToolExecutor
from .native_handler import NativeToolHandler

__all__ = [
    # Базовые типы
    'ToolCall',
    'ToolCallSource',
    'ToolDescriptor',
    'ToolExecutionResult',
    'ToolCallBatch',
    'serialize_payload',
    # Возможности провайдера
    'ToolCallingMode',
    'build_manual_tool_prompt',
    'classify',
    'native_providers',
    'supports_native_tools',
    # Компоненты
    'ToolCallExtractor',
    'clean_response',
    'extract_tool_calls',
    'ToolExecutor',
    'NativeToolHandler',
]
