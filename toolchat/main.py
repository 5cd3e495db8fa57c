"""Инициализируем точку входа приложения FastAPI."""

import uvicorn
from dotenv import load_dotenv

# Загружаем переменные окружения из файла .env до чтения настроек
load_dotenv()

from toolchat.core.config import get_settings  # noqa: E402
from toolchat.core.error_handling import setup_logging  # noqa: E402
from toolchat.api.routes import app  # noqa: E402,F401

settings = get_settings()

# Настраиваем конфигурацию логирования
setup_logging(settings.log_level, settings.log_dir)


def run():
    uvicorn.run(
        "toolchat.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
