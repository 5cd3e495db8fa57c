"""
Агент с вызовом инструментов

Явный цикл из двух состояний вместо декларативного графа:
- AskModel: отправить историю модели и добавить ответ ассистента
- RunTools: выполнить вызовы инструментов из ответа и добавить результаты

После AskModel: есть tool calls -> RunTools, иначе текст ответа - финальный.
RunTools всегда возвращается в AskModel. Число ходов ограничено max_turns.
"""

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from .config import Settings, get_settings
from .conversation import Conversation, Message, ASSISTANT_ROLE
from .error_handling import (
    AgentCancelledError,
    MaxTurnsExceededError,
    NoToolServersError,
    ToolCallParseError,
)
from .llm_provider import BaseLLMProvider, ProviderProfile, build_profile, get_llm_provider
from .registry_client import ToolCatalog, ToolRegistryClient
from .tool_calling import (
    NativeToolHandler,
    ToolCall,
    ToolCallExtractor,
    ToolExecutor,
    build_manual_tool_prompt,
    clean_response,
)
from .tool_calling.base import new_call_id
from .tool_calling.executor import Invoker

logger = logging.getLogger(__name__)


@dataclass
class AgentResult:
    """Итог успешного прогона агента"""
    conversation: Conversation
    message: str
    turns: int
    usage: Dict[str, int] = field(default_factory=dict)

    def to_response(self) -> Dict[str, Any]:
        return {
            "messages": self.conversation.to_list(),
            "message": self.message,
            "turns": self.turns,
            "usage": self.usage,
        }


class ToolCallingAgent:
    """
    Оркестратор: чередует вызовы модели и выполнение инструментов

    Поддерживает:
    - Native tool calling (каталог передаётся в API как tools)
    - Manual tool calling (инструкция в первом сообщении + парсинг текста)
    - Системный промпт (только в первый ход)
    - Ограничение числа ходов и отмену через asyncio.Event
    """

    def __init__(
        self,
        llm_provider: BaseLLMProvider,
        profile: ProviderProfile,
        catalog: ToolCatalog,
        invoker: Invoker,
        system_prompt: Optional[str] = None,
        max_turns: int = 10,
        tool_timeout: float = 60.0,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.llm_provider = llm_provider
        self.profile = profile
        self.catalog = catalog
        self.system_prompt = system_prompt
        self.max_turns = max_turns
        self.cancel_event = cancel_event or asyncio.Event()

        self.native_handler = NativeToolHandler(catalog.list())
        self.extractor = ToolCallExtractor(debug=profile.debug)
        self.executor = ToolExecutor(catalog.tools, invoker, parallel=True, timeout=tool_timeout)

    @property
    def name(self) -> str:
        return f"{self.profile.provider}:{self.profile.model}"

    # ===== Цикл =====

    async def run(self, user_input: str, conversation: Optional[Conversation] = None) -> AgentResult:
        """
        Запустить агента до финального ответа

        Args:
            user_input: Сообщение пользователя
            conversation: Уже существующая история (по умолчанию - пустая)

        Returns:
            AgentResult с полной историей и финальным текстом

        Raises:
            MaxTurnsExceededError: модель не остановилась за max_turns ходов
            AgentCancelledError: запрос отменён
            ToolCallParseError: native tool_calls с битыми аргументами
        """
        logger.info(f"[{self.name}] Starting run ({self.profile.mode.value} tool calling, {len(self.catalog)} tools)")

        conversation = self.seed(conversation or Conversation(), user_input)

        for turn in range(1, self.max_turns + 1):
            self._check_cancelled()
            logger.info(f"[{self.name}] Turn {turn}/{self.max_turns}")

            assistant = await self.ask_model(conversation)
            conversation = conversation.append(assistant)

            if not self.should_run_tools(conversation):
                logger.info(f"[{self.name}] Final answer after {turn} turns")
                return AgentResult(
                    conversation=conversation,
                    message=assistant.content,
                    turns=turn,
                    usage=self.llm_provider.get_cumulative_usage(),
                )

            self._check_cancelled()
            conversation = await self.run_tools(conversation)

        logger.error(f"[{self.name}] Max turns exceeded ({self.max_turns})")
        raise MaxTurnsExceededError(self.max_turns)

    def seed(self, conversation: Conversation, user_input: str) -> Conversation:
        """
        Подготовить историю к первому AskModel

        Системный промпт и инструкция manual-режима добавляются только
        в пустую историю и больше никогда не повторяются.
        """
        if len(conversation) > 0:
            return conversation.append(Message.user(user_input))

        messages = []
        if self.system_prompt:
            messages.append(Message.system(self.system_prompt))

        content = user_input
        if not self.profile.native_tools:
            tool_prompt = build_manual_tool_prompt(self.catalog.list())
            if tool_prompt:
                content = f"{tool_prompt}\n\n{user_input}"
        messages.append(Message.user(content))

        return conversation.append(*messages)

    @staticmethod
    def should_run_tools(conversation: Conversation) -> bool:
        """Правило маршрутизации: последний ответ ассистента содержит tool calls"""
        last = conversation.last
        return last is not None and last.role == ASSISTANT_ROLE and last.has_tool_calls

    # ===== Состояния =====

    async def ask_model(self, conversation: Conversation) -> Message:
        """AskModel: вызвать модель и вернуть сообщение ассистента"""
        if self.profile.native_tools:
            tool_params = self.native_handler.prepare_request_params()
            wire = conversation.to_list()
        else:
            tool_params = None
            wire = [self._plain_message(message) for message in conversation]

        response = await self.llm_provider.chat(wire, tool_params)
        text, calls, dropped = NativeToolHandler.parse_response(response)
        if dropped:
            # Частично выполненный ход нельзя выдать за ответ
            logger.error(f"[{self.name}] {dropped} tool call(s) could not be parsed")
            raise ToolCallParseError(dropped, provider=self.profile.provider)

        if self.profile.debug:
            logger.info(f"[{self.name}] Raw model text: {text!r}")
        else:
            logger.debug(f"[{self.name}] Raw model text: {text!r}")

        if not self.profile.native_tools and not calls:
            calls = self.extractor.extract(text)
            if not calls:
                text = clean_response(text)

        calls = self._ensure_unique_ids(calls)
        if calls:
            logger.info(f"[{self.name}] Model requested tools: {[call.name for call in calls]}")
        return Message.assistant(text, calls)

    async def run_tools(self, conversation: Conversation) -> Conversation:
        """RunTools: выполнить все вызовы последнего хода и добавить результаты"""
        calls = list(conversation.last.tool_calls)
        batch = await self.executor.execute_batch(calls)
        return conversation.append_tool_results(batch.results)

    # ===== Вспомогательные методы =====

    def cancel(self) -> None:
        """Попросить цикл остановиться перед следующим сетевым вызовом"""
        self.cancel_event.set()

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            logger.info(f"[{self.name}] Cancelled")
            raise AgentCancelledError()

    @staticmethod
    def _plain_message(message: Message) -> Dict[str, Any]:
        """Формат сообщений для моделей без tool calling: только роль и текст"""
        return {"role": message.role, "content": message.content}

    @staticmethod
    def _ensure_unique_ids(calls: List[ToolCall]) -> List[ToolCall]:
        seen = set()
        unique = []
        for call in calls:
            if call.id in seen:
                call = dataclasses.replace(call, id=new_call_id())
            seen.add(call.id)
            unique.append(call)
        return unique


async def run_agent(
    credential: Dict[str, Any],
    user_input: str,
    servers: List[str],
    system_prompt: Optional[str] = None,
    settings: Optional[Settings] = None,
    cancel_event: Optional[asyncio.Event] = None,
    llm_transport: Optional[httpx.AsyncBaseTransport] = None,
    registry_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> AgentResult:
    """
    Полный цикл одного запроса: профиль провайдера, каталог, агент

    Raises:
        AgentError и его подклассы (см. error_handling)
    """
    settings = settings or get_settings()
    profile = build_profile(credential, default_timeout=settings.llm_timeout)

    async with ToolRegistryClient(
        timeout=settings.registry_timeout,
        health_timeout=settings.registry_health_timeout,
        health_check=settings.registry_health_check,
        transport=registry_transport,
    ) as registry:
        catalog = await registry.load_catalog(servers)
        if not catalog.available_servers:
            raise NoToolServersError(servers)

        async with get_llm_provider(profile, transport=llm_transport) as llm:
            agent = ToolCallingAgent(
                llm_provider=llm,
                profile=profile,
                catalog=catalog,
                invoker=registry.invoke,
                system_prompt=system_prompt,
                max_turns=settings.max_turns,
                tool_timeout=settings.tool_call_timeout,
                cancel_event=cancel_event,
            )
            return await agent.run(user_input)
