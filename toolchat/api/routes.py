"""REST API endpoints"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError as FastAPIValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict

from toolchat.core import config as providers_config
from toolchat.core.agent import run_agent
from toolchat.core.error_handling import (
    AgentCancelledError,
    RequestValidationError,
    async_error_handler,
)
from toolchat.core.tool_calling import supports_native_tools

logger = logging.getLogger(__name__)

app = FastAPI(title="toolchat")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Как часто проверять, не отключился ли клиент (секунды)
DISCONNECT_POLL_INTERVAL = 0.5


class CredentialSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stop: Optional[Union[str, List[str]]] = None
    seed: Optional[int] = None
    timeout: Optional[float] = None
    max_retries: Optional[int] = None
    debug: bool = False


class ChatCredential(BaseModel):
    provider: Optional[str] = None
    url: Optional[str] = None
    api_key: Optional[str] = None
    model: Optional[str] = None
    set: Optional[CredentialSettings] = None


class ChatRequest(BaseModel):
    credential: Optional[ChatCredential] = None
    input: Optional[str] = None
    servers: List[str] = []
    system_prompt: Optional[str] = None

    def validate_for_chat(self) -> None:
        """Проверки, которые должны пройти до начала оркестрации"""
        if self.credential is None or not self.credential.provider:
            raise RequestValidationError("Missing credential provider")
        if not self.input or not self.input.strip():
            raise RequestValidationError("Missing body request")
        if not [s for s in self.servers if s and s.strip()]:
            raise RequestValidationError("No MCP servers provided")

    def credential_dict(self) -> Dict[str, Any]:
        return self.credential.model_dump(exclude_none=True)


def get_transports() -> Dict[str, Any]:
    """Транспорты httpx для модели и реестров (в тестах подменяются)"""
    return {}


@app.on_event("startup")
def startup():
    """Инициализация при старте"""

    # Загрузить таблицу провайдеров, чтобы ошибка конфигурации была видна сразу
    try:
        providers = providers_config.list_providers()
    except providers_config.ProvidersConfigError as e:  # pragma: no cover - фатальная ошибка конфигурации
        raise RuntimeError(f"Failed to load providers config: {e}")

    settings = providers_config.get_settings()
    logger.info(
        f"Initialized providers: {providers}; max_turns={settings.max_turns}, "
        f"health_check={settings.registry_health_check}"
    )


@app.exception_handler(FastAPIValidationError)
async def validation_exception_handler(request: Request, exc: FastAPIValidationError):
    """Ошибки схемы тела запроса -> 400 в общем формате"""
    details = "; ".join(
        f"{'.'.join(str(p) for p in err.get('loc', ()) if p != 'body')}: {err.get('msg')}"
        for err in exc.errors()
    )
    error = RequestValidationError(details or "Invalid request body")
    return JSONResponse(status_code=error.status_code, content=error.to_response())


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/providers")
async def list_providers():
    """Список провайдеров с режимом вызова инструментов и моделью по умолчанию"""
    return {
        "providers": [
            {
                "provider": provider,
                "native_tools": supports_native_tools(provider),
                "default_model": providers_config.get_default_model(provider),
            }
            for provider in providers_config.list_providers()
        ]
    }


async def _watch_disconnect(request: Request, task: asyncio.Task, cancel_event: asyncio.Event) -> None:
    """Отменить агента, если клиент разорвал соединение"""
    while not task.done():
        if await request.is_disconnected():
            logger.info("Client disconnected; cancelling agent run")
            cancel_event.set()
            task.cancel()
            return
        await asyncio.sleep(DISCONNECT_POLL_INTERVAL)


@app.post("/chat")
@async_error_handler
async def chat(req: ChatRequest, request: Request, transports: Dict[str, Any] = Depends(get_transports)):
    """Отправить сообщение агенту и дождаться финального ответа"""
    req.validate_for_chat()

    cancel_event = asyncio.Event()
    task = asyncio.create_task(run_agent(
        credential=req.credential_dict(),
        user_input=req.input,
        servers=req.servers,
        system_prompt=req.system_prompt,
        cancel_event=cancel_event,
        **transports,
    ))
    watcher = asyncio.create_task(_watch_disconnect(request, task, cancel_event))

    try:
        result = await task
    except asyncio.CancelledError:
        if cancel_event.is_set():
            raise AgentCancelledError()
        raise
    finally:
        watcher.cancel()

    return result.to_response()
