"""
Сообщения и история диалога одного запроса.

Conversation - неизменяемое значение: каждое добавление возвращает новую
историю, старая остаётся нетронутой. История живёт только в рамках запроса.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .tool_calling.base import ToolCall, ToolExecutionResult

SYSTEM_ROLE = "system"
USER_ROLE = "user"
ASSISTANT_ROLE = "assistant"
TOOL_ROLE = "tool"
ROLES = (SYSTEM_ROLE, USER_ROLE, ASSISTANT_ROLE, TOOL_ROLE)


@dataclass(frozen=True)
class Message:
    """
    Сообщение диалога

    Attributes:
        role: system | user | assistant | tool
        content: Текст сообщения (для tool - сериализованный результат)
        tool_calls: Вызовы инструментов (только assistant)
        tool_call_id: Ссылка на ToolCall (только tool)
        name: Имя инструмента (только tool)
    """

    role: str
    content: str = ""
    tool_calls: Tuple[ToolCall, ...] = ()
    tool_call_id: Optional[str] = None
    name: Optional[str] = None

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"Unknown message role: {self.role}")
        if self.tool_calls and self.role != ASSISTANT_ROLE:
            raise ValueError("Only assistant messages may carry tool calls")
        if self.role == TOOL_ROLE and not self.tool_call_id:
            raise ValueError("Tool messages need a tool_call_id")

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=SYSTEM_ROLE, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=USER_ROLE, content=content)

    @classmethod
    def assistant(cls, content: str = "", tool_calls: List[ToolCall] = None) -> "Message":
        return cls(role=ASSISTANT_ROLE, content=content or "", tool_calls=tuple(tool_calls or ()))

    @classmethod
    def tool(cls, result: ToolExecutionResult) -> "Message":
        return cls(
            role=TOOL_ROLE,
            content=result.content,
            tool_call_id=result.tool_call_id,
            name=result.tool_name,
        )

    @property
    def has_tool_calls(self) -> bool:
        return len(self.tool_calls) > 0

    def to_dict(self) -> Dict[str, Any]:
        """OpenAI-совместимое представление сообщения"""
        data: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            # При tool_calls content обычно None
            data["content"] = self.content or None
            data["tool_calls"] = [call.to_openai_format() for call in self.tool_calls]
        if self.role == TOOL_ROLE:
            data["tool_call_id"] = self.tool_call_id
            data["name"] = self.name
        return data


@dataclass(frozen=True)
class Conversation:
    """Упорядоченная история сообщений, которая только растёт"""

    messages: Tuple[Message, ...] = field(default_factory=tuple)

    def append(self, *messages: Message) -> "Conversation":
        """Вернуть новую историю с добавленными сообщениями"""
        return Conversation(messages=self.messages + tuple(messages))

    def append_tool_results(self, results: List[ToolExecutionResult]) -> "Conversation":
        """
        Добавить ответы инструментов на последний ход ассистента.

        Каждый результат должен ссылаться ровно на один ToolCall последнего
        assistant-сообщения, и все вызовы должны получить ответ.
        """
        last = self.last
        if last is None or last.role != ASSISTANT_ROLE or not last.has_tool_calls:
            raise ValueError("Tool results must follow an assistant message with tool calls")

        expected = [call.id for call in last.tool_calls]
        received = [result.tool_call_id for result in results]
        if sorted(expected) != sorted(received):
            raise ValueError(f"Tool results {received} do not answer tool calls {expected}")

        return self.append(*(Message.tool(result) for result in results))

    @property
    def last(self) -> Optional[Message]:
        return self.messages[-1] if self.messages else None

    def __len__(self) -> int:
        return len(self.messages)

    def __iter__(self):
        return iter(self.messages)

    def to_list(self) -> List[Dict[str, Any]]:
        """Список сообщений в OpenAI-совместимом формате"""
        return [message.to_dict() for message in self.messages]
