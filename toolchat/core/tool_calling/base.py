"""
Типы данных вызова инструментов

- ToolDescriptor: инструмент из каталога реестров
- ToolCall: запрос модели на вызов инструмента (native или из текста)
- ToolExecutionResult: ответ удалённого инструмента
- ToolCallBatch: все вызовы одного хода ассистента и их ответы
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid
import json


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


class ToolCallSource(str, Enum):
    """Как получен вызов"""
    NATIVE = "native"            # поле tool_calls ответа API
    TEXT_PARSED = "text_parsed"  # разобран ToolCallExtractor из текста


def serialize_payload(payload: Any) -> str:
    """
    Каноническая текстовая форма результата инструмента.

    Модель ожидает вывод инструмента как текст: строки передаются как есть
    (без JSON-кавычек, "sunny" а не '"sunny"'), всё остальное
    сериализуется в JSON.
    """
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, ensure_ascii=False)


@dataclass(frozen=True)
class ToolDescriptor:
    """
    Описание инструмента из реестра

    Attributes:
        name: Имя инструмента (уникально в каталоге)
        description: Описание для LLM
        parameters: JSON Schema аргументов (значения не типизируются)
        endpoint: Базовый URL сервера, которому принадлежит инструмент
    """

    name: str
    description: str
    parameters: Dict[str, Any]
    endpoint: str

    @property
    def properties(self) -> Dict[str, Any]:
        return self.parameters.get("properties") or {}

    @property
    def required(self) -> List[str]:
        return list(self.parameters.get("required") or [])

    @classmethod
    def from_dict(cls, data: Dict[str, Any], endpoint: str) -> "ToolDescriptor":
        """Создать из элемента ответа GET /tools"""
        name = data.get("name")
        if not name or not isinstance(name, str):
            raise ValueError(f"Tool descriptor without name: {data!r}")

        parameters = data.get("parameters") or {"type": "object", "properties": {}}
        if not isinstance(parameters, dict):
            raise ValueError(f"Tool '{name}' has invalid parameters schema")

        return cls(
            name=name,
            description=data.get("description") or "",
            parameters=parameters,
            endpoint=endpoint,
        )


@dataclass(frozen=True)
class ToolCall:
    """
    Вызов инструмента, запрошенный моделью

    Attributes:
        name: Имя инструмента из каталога
        arguments: Аргументы без типизации (ключ -> значение)
        source: NATIVE или TEXT_PARSED
        id: Идентификатор, уникальный в пределах хода; native-провайдеры
            присылают свой, для текстовых вызовов его синтезирует экстрактор
        raw_text: Фрагмент текста, из которого извлечён вызов
    """

    name: str
    arguments: Dict[str, Any]
    source: ToolCallSource = ToolCallSource.NATIVE
    id: str = field(default_factory=new_call_id)
    raw_text: Optional[str] = field(default=None, compare=False, repr=False)

    def to_openai_format(self) -> Dict[str, Any]:
        """Элемент tool_calls для assistant-сообщения"""
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": json.dumps(self.arguments, ensure_ascii=False),
            },
        }

    @classmethod
    def from_openai_format(cls, data: Dict[str, Any]) -> "ToolCall":
        """
        Разобрать элемент tool_calls ответа API

        Raises:
            ValueError: нет имени функции или аргументы не объект
        """
        function = data.get("function") or {}
        name = function.get("name")
        if not name:
            raise ValueError("Tool call without function name")

        # Обычно JSON-строка, но Ollama и некоторые прокси отдают объект
        raw_arguments = function.get("arguments") or "{}"
        if isinstance(raw_arguments, str):
            arguments = json.loads(raw_arguments) if raw_arguments.strip() else {}
        else:
            arguments = raw_arguments
        if not isinstance(arguments, dict):
            raise ValueError(f"Tool arguments must be an object, got {type(arguments).__name__}")

        return cls(name=name, arguments=arguments, id=data.get("id") or new_call_id())


@dataclass
class ToolExecutionResult:
    """
    Ответ инструмента на один ToolCall

    Attributes:
        tool_call_id: id исходного ToolCall
        tool_name: Имя вызванного инструмента
        data: Сырой ответ POST /invoke (JSON или текст)
        execution_time_ms: Длительность удалённого вызова
    """

    tool_call_id: str
    tool_name: str
    data: Any = None
    execution_time_ms: Optional[float] = None

    @property
    def content(self) -> str:
        """Результат в канонической текстовой форме"""
        return serialize_payload(self.data)


@dataclass
class ToolCallBatch:
    """
    Вызовы одного хода ассистента

    results заполняется только целиком и в порядке calls,
    независимо от порядка завершения.
    """

    calls: List[ToolCall] = field(default_factory=list)
    results: List[ToolExecutionResult] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.calls)
