"""
Клиент реестров инструментов.

Собирает каталог инструментов запроса с набора удалённых серверов:
- GET  <server>/health  - лёгкая проверка доступности (опционально)
- GET  <server>/tools   - список описаний инструментов
- POST <server>/invoke  - вызов инструмента {name, arguments}

Недоступный или сломанный сервер пропускается, запрос продолжается с остальными.
"""

import asyncio
import httpx
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .error_handling import ToolExecutionError
from .tool_calling.base import ToolDescriptor

logger = logging.getLogger(__name__)


def normalize_endpoint(url: str) -> str:
    """Убрать завершающий слэш, чтобы пути склеивались одинаково"""
    return url.strip().rstrip("/")


@dataclass
class ToolCatalog:
    """
    Каталог инструментов одного запроса (только чтение после сборки)

    Attributes:
        tools: Инструменты по имени; при совпадении имён побеждает более поздний сервер
        available_servers: Серверы, чьи инструменты попали в каталог
        failed_servers: Пропущенные серверы и причина
    """

    tools: Dict[str, ToolDescriptor] = field(default_factory=dict)
    available_servers: List[str] = field(default_factory=list)
    failed_servers: Dict[str, str] = field(default_factory=dict)

    def get(self, name: str) -> Optional[ToolDescriptor]:
        return self.tools.get(name)

    def list(self) -> List[ToolDescriptor]:
        return list(self.tools.values())

    def __contains__(self, name: str) -> bool:
        return name in self.tools

    def __len__(self) -> int:
        return len(self.tools)


class ToolRegistryClient:
    """
    HTTP-клиент серверов инструментов.

    Использует один httpx.AsyncClient на запрос:
        async with ToolRegistryClient() as registry:
            catalog = await registry.load_catalog(servers)
            result = await registry.invoke(catalog.get("add"), {"a": 2, "b": 3})
    """

    def __init__(
        self,
        timeout: float = 10.0,
        health_timeout: float = 3.0,
        health_check: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Args:
            timeout: Таймаут запросов к /tools и /invoke (секунды)
            health_timeout: Таймаут проверки /health (секунды)
            health_check: Проверять /health перед загрузкой списка
            transport: Альтернативный транспорт httpx (тесты)
        """
        self.timeout = timeout
        self.health_timeout = health_timeout
        self.health_check = health_check
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "ToolRegistryClient":
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("ToolRegistryClient is not open; use 'async with'")
        return self._client

    async def check_server(self, endpoint: str) -> bool:
        """
        Проверить доступность сервера.
        :param endpoint: базовый URL сервера
        :return: True если /health ответил 2xx
        """
        try:
            response = await self.client.get(f"{endpoint}/health", timeout=self.health_timeout)
            return response.is_success
        except httpx.HTTPError as e:
            logger.warning(f"Health check failed for {endpoint}: {e}")
            return False

    async def fetch_tools(self, endpoint: str) -> List[ToolDescriptor]:
        """
        Загрузить список инструментов сервера.

        Принимает как список описаний, так и объект {"tools": [...]}.
        """
        response = await self.client.get(f"{endpoint}/tools")
        response.raise_for_status()
        data = response.json()

        if isinstance(data, dict):
            data = data.get("tools")
        if not isinstance(data, list):
            raise ValueError(f"Unexpected /tools payload from {endpoint}")

        return [ToolDescriptor.from_dict(item, endpoint) for item in data]

    async def _load_server(self, endpoint: str) -> List[ToolDescriptor]:
        if self.health_check and not await self.check_server(endpoint):
            raise ConnectionError("health check failed")
        return await self.fetch_tools(endpoint)

    async def load_catalog(self, servers: List[str]) -> ToolCatalog:
        """
        Собрать каталог со всех серверов.

        Серверы опрашиваются параллельно, но сливаются в заданном порядке,
        чтобы правило "побеждает более поздний" было детерминированным.
        Пустой каталог без доступных серверов - не ошибка здесь: решение
        принимает вызывающий код.

        :param servers: список базовых URL
        :return: ToolCatalog
        """
        endpoints = [normalize_endpoint(s) for s in servers if s and s.strip()]
        outcomes = await asyncio.gather(
            *(self._load_server(endpoint) for endpoint in endpoints),
            return_exceptions=True,
        )

        catalog = ToolCatalog()
        for endpoint, outcome in zip(endpoints, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                reason = str(outcome) or outcome.__class__.__name__
                logger.warning(f"Skipping tool server {endpoint}: {reason}")
                catalog.failed_servers[endpoint] = reason
                continue

            for tool in outcome:
                previous = catalog.tools.get(tool.name)
                if previous is not None and previous.endpoint != endpoint:
                    logger.warning(
                        f"Tool '{tool.name}' from {endpoint} overrides the one from {previous.endpoint}"
                    )
                catalog.tools[tool.name] = tool
            catalog.available_servers.append(endpoint)

        logger.info(
            f"Loaded {len(catalog)} tools from {len(catalog.available_servers)}/{len(endpoints)} servers"
        )
        return catalog

    async def invoke(self, tool: ToolDescriptor, arguments: Dict[str, Any]) -> Any:
        """
        Вызвать инструмент на его сервере.

        :param tool: описание инструмента из каталога
        :param arguments: аргументы вызова
        :return: сырой результат (JSON или текст)
        """
        try:
            response = await self.client.post(
                f"{tool.endpoint}/invoke",
                json={"name": tool.name, "arguments": arguments},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ToolExecutionError(tool.name, f"HTTP {e.response.status_code}: {e.response.text[:200]}")
        except httpx.HTTPError as e:
            raise ToolExecutionError(tool.name, str(e) or e.__class__.__name__)

        try:
            return response.json()
        except ValueError:
            return response.text
