"""
Tool Executor

Исполнитель вызовов инструментов одного хода ассистента.
Разрешает имена по каталогу и выполняет вызовы параллельно.
"""

import time
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from .base import ToolCall, ToolCallBatch, ToolDescriptor, ToolExecutionResult
from toolchat.core.error_handling import AgentError, ToolExecutionError, ToolNotFoundError

logger = logging.getLogger(__name__)

Invoker = Callable[[ToolDescriptor, Dict[str, Any]], Awaitable[Any]]


class ToolExecutor:
    """
    Исполнитель инструментов

    Отвечает за:
    1. Разрешение ToolCall по имени в каталоге (нет инструмента - ход проваливается)
    2. Параллельное выполнение с таймаутом на каждый вызов
    3. Сбор результатов в порядке исходных вызовов
    4. Логирование результатов

    Ошибка одного вызова не отменяет уже запущенные соседние, но ход целиком
    считается проваленным, и частичные результаты наружу не отдаются.

    Пример использования:
        executor = ToolExecutor(catalog.tools, registry.invoke, timeout=60)
        batch = await executor.execute_batch(tool_calls)
    """

    def __init__(
        self,
        tools: Dict[str, ToolDescriptor],
        invoker: Invoker,
        parallel: bool = True,
        timeout: float = 60.0
    ):
        """
        Args:
            tools: Каталог инструментов по имени
            invoker: Корутина удалённого вызова (descriptor, arguments) -> результат
            parallel: Разрешить параллельное выполнение
            timeout: Таймаут на один инструмент (секунды)
        """
        self.tools = tools
        self.invoker = invoker
        self.parallel = parallel
        self.timeout = timeout

    def resolve(self, calls: List[ToolCall]) -> List[Tuple[ToolCall, ToolDescriptor]]:
        """
        Сопоставить вызовы с инструментами каталога (точное совпадение имени)

        Raises:
            ToolNotFoundError: если хотя бы одно имя не найдено
        """
        resolved = []
        for call in calls:
            tool = self.tools.get(call.name)
            if tool is None:
                logger.error(f"Tool not found: {call.name} (available: {list(self.tools)})")
                raise ToolNotFoundError(call.name)
            resolved.append((call, tool))
        return resolved

    async def execute(self, call: ToolCall, tool: ToolDescriptor) -> ToolExecutionResult:
        """
        Выполнить один tool call

        Args:
            call: ToolCall для выполнения
            tool: Описание инструмента из каталога

        Returns:
            ToolExecutionResult с результатом
        """
        start_time = time.time()

        try:
            data = await asyncio.wait_for(self.invoker(tool, call.arguments), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise ToolExecutionError(call.name, f"timed out after {self.timeout}s")

        execution_time = (time.time() - start_time) * 1000
        logger.info(f"Tool {call.name} ({call.id}) finished in {execution_time:.1f}ms")

        return ToolExecutionResult(
            tool_call_id=call.id,
            tool_name=call.name,
            data=data,
            execution_time_ms=execution_time
        )

    async def execute_batch(self, calls: List[ToolCall]) -> ToolCallBatch:
        """
        Выполнить все вызовы одного хода

        Args:
            calls: Список ToolCall для выполнения

        Returns:
            ToolCallBatch с результатами в порядке вызовов

        Raises:
            ToolNotFoundError: неизвестный инструмент (до запуска любых вызовов)
            ToolExecutionError: хотя бы один вызов завершился ошибкой
        """
        batch = ToolCallBatch(calls=list(calls))
        if not calls:
            return batch

        resolved = self.resolve(calls)

        if self.parallel and len(resolved) > 1:
            outcomes = await asyncio.gather(
                *(self.execute(call, tool) for call, tool in resolved),
                return_exceptions=True,
            )
        else:
            outcomes = []
            for call, tool in resolved:
                try:
                    outcomes.append(await self.execute(call, tool))
                except Exception as e:
                    outcomes.append(e)
                    break

        failure = self._first_failure(resolved, outcomes)
        if failure is not None:
            raise failure

        batch.results = list(outcomes)
        return batch

    @staticmethod
    def _first_failure(
        resolved: List[Tuple[ToolCall, ToolDescriptor]],
        outcomes: List[Any],
    ) -> Optional[BaseException]:
        """Первая ошибка в порядке вызовов (не в порядке завершения)"""
        for (call, _), outcome in zip(resolved, outcomes):
            if isinstance(outcome, asyncio.CancelledError):
                return outcome
            if isinstance(outcome, AgentError):
                logger.warning(f"Tool call {call.name} ({call.id}) failed: {outcome.message}")
                return outcome
            if isinstance(outcome, BaseException):
                logger.error(f"Tool call {call.name} ({call.id}) raised {outcome!r}")
                return ToolExecutionError(call.name, str(outcome) or outcome.__class__.__name__)
        return None
