"""
Error handling и настройка логирования для toolchat.
Обеспечивает единую таксономию ошибок и их преобразование в HTTP-ответы.
"""
import logging
from datetime import datetime
from functools import wraps
from pathlib import Path
from typing import Optional, Dict, Any, Callable

from fastapi.responses import JSONResponse

# Корневой логгер пакета; модули пишут в дочерние логгеры через __name__
logger = logging.getLogger("toolchat")

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: str = "INFO", log_dir: Optional[str] = None) -> logging.Logger:
    """
    Настраиваем логгер пакета: console handler и опциональный файловый.
    :param level: уровень логирования (INFO, DEBUG, ...)
    :param log_dir: директория для файловых логов (None - только консоль)
    :return: настроенный логгер
    """
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Повторный вызов не должен дублировать handlers
    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(console_handler)

    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(
            path / f"agent_{datetime.now().strftime('%Y%m%d')}.log",
            encoding='utf-8'
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


class AgentError(Exception):
    """Базовый класс для ошибок агента."""

    status_code = 500

    def __init__(self, message: str, error_code: str = "AGENT_ERROR",
                 user_message: str = None, recoverable: bool = True,
                 status_code: int = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.user_message = user_message or self._default_user_message()
        self.recoverable = recoverable
        if status_code is not None:
            self.status_code = status_code
        self.timestamp = datetime.now().isoformat()

    def _default_user_message(self) -> str:
        return "An error occurred. Please retry the request."

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_code": self.error_code,
            "message": self.message,
            "user_message": self.user_message,
            "recoverable": self.recoverable,
            "timestamp": self.timestamp
        }

    def to_response(self) -> Dict[str, Any]:
        """Тело HTTP-ответа об ошибке."""
        return {"error": self.message, "error_code": self.error_code}


class RequestValidationError(AgentError):
    """Некорректное или неполное тело запроса."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            user_message="The request is malformed.",
            recoverable=False
        )


class CredentialError(AgentError):
    """Для провайдера не передан обязательный секрет (api_key)."""

    status_code = 401

    def __init__(self, message: str, provider: str = None):
        super().__init__(
            message=message,
            error_code="CREDENTIAL_ERROR",
            user_message="Missing credential for the selected provider.",
            recoverable=False
        )
        self.provider = provider


class UnsupportedProviderError(AgentError):
    """Провайдер не известен таблице providers.json."""

    status_code = 404

    def __init__(self, provider: str):
        super().__init__(
            message=f"Unsupported provider: {provider}",
            error_code="UNSUPPORTED_PROVIDER",
            user_message="The selected provider is not supported.",
            recoverable=False
        )
        self.provider = provider


class NoToolServersError(AgentError):
    """Ни один сервер инструментов не ответил."""

    status_code = 503

    def __init__(self, servers):
        super().__init__(
            message=f"No tool servers available out of {len(servers)} configured",
            error_code="NO_TOOL_SERVERS",
            user_message="None of the tool servers are reachable.",
            recoverable=True
        )
        self.servers = list(servers)


class ToolNotFoundError(AgentError):
    """Модель запросила инструмент, которого нет в каталоге."""

    status_code = 404

    def __init__(self, tool_name: str):
        super().__init__(
            message=f"Tool not found: {tool_name}",
            error_code="TOOL_NOT_FOUND",
            user_message=f"The model requested an unknown tool '{tool_name}'.",
            recoverable=False
        )
        self.tool_name = tool_name


class ToolExecutionError(AgentError):
    """Ошибка выполнения инструмента."""

    status_code = 502

    def __init__(self, tool_name: str, message: str):
        super().__init__(
            message=f"Tool '{tool_name}' failed: {message}",
            error_code="TOOL_ERROR",
            user_message=f"Tool '{tool_name}' could not complete the operation.",
            recoverable=True
        )
        self.tool_name = tool_name


class LLMError(AgentError):
    """Ошибка взаимодействия с LLM."""

    status_code = 502

    def __init__(self, message: str, provider: str = None, status_code: int = None):
        if status_code == 429:
            user_msg = "Rate limit exceeded. Wait a bit or switch model."
        elif status_code == 400:
            user_msg = "The model rejected the request."
        elif status_code in [500, 502, 503]:
            user_msg = "The model service is temporarily unavailable."
        else:
            user_msg = "Error while calling the AI model."

        super().__init__(
            message=message,
            error_code=f"LLM_ERROR_{status_code or 'UNKNOWN'}",
            user_message=user_msg,
            recoverable=True
        )
        self.provider = provider
        self.upstream_status = status_code


class ToolCallParseError(AgentError):
    """Native-провайдер вернул tool_calls, которые не удалось разобрать."""

    status_code = 502

    def __init__(self, dropped: int, provider: str = None):
        super().__init__(
            message=f"Model returned {dropped} malformed tool call(s)",
            error_code="TOOL_CALL_PARSE_ERROR",
            user_message="The model produced an invalid tool call.",
            recoverable=True
        )
        self.dropped = dropped
        self.provider = provider


class MaxTurnsExceededError(AgentError):
    """Модель не выдала финальный ответ за отведённое число ходов."""

    status_code = 500

    def __init__(self, max_turns: int):
        super().__init__(
            message=f"Max turns exceeded: no final answer after {max_turns} turns",
            error_code="MAX_TURNS_EXCEEDED",
            user_message="The agent did not reach a final answer.",
            recoverable=True
        )
        self.max_turns = max_turns


class AgentCancelledError(AgentError):
    """Запрос отменён клиентом (разрыв соединения)."""

    status_code = 499

    def __init__(self, message: str = "Request cancelled by client"):
        super().__init__(
            message=message,
            error_code="CANCELLED",
            user_message="The request was cancelled.",
            recoverable=True
        )


def unexpected_error_response(error: Exception) -> Dict[str, Any]:
    """
    Тело ответа для непредвиденной ошибки.
    :param error: исходное исключение
    :return: словарь для JSON-ответа
    """
    return {"error": str(error) or error.__class__.__name__, "error_code": "UNEXPECTED_ERROR"}


def async_error_handler(func: Callable) -> Callable:
    """
    Декоратор endpoint-а: AgentError и непредвиденные ошибки -> JSON-ответ.
    :param func: декорируемая асинхронная функция
    :return: обернутая асинхронная функция
    """

    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except AgentError as e:
            if e.status_code >= 500:
                logger.error(f"{e.error_code}: {e.message}")
            else:
                logger.warning(f"{e.error_code}: {e.message}")
            return JSONResponse(status_code=e.status_code, content=e.to_response())
        except Exception as e:
            logger.exception(f"Unexpected error in {func.__name__}: {str(e)}")
            return JSONResponse(status_code=500, content=unexpected_error_response(e))

    return wrapper


# Экспорт
__all__ = [
    'AgentError',
    'RequestValidationError',
    'CredentialError',
    'UnsupportedProviderError',
    'NoToolServersError',
    'ToolNotFoundError',
    'ToolExecutionError',
    'LLMError',
    'ToolCallParseError',
    'MaxTurnsExceededError',
    'AgentCancelledError',
    'setup_logging',
    'unexpected_error_response',
    'async_error_handler',
    'logger'
]
