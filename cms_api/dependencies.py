"""
Общие зависимости FastAPI
"""
from fastapi import Request

from shared.context import ServiceContext


def get_context(request: Request) -> ServiceContext:
    """Контекст сервисов приложения (фабрика сессий + обработчик комиссий)"""
    return request.app.state.context
