"""
HTTP Basic авторизация администратора
"""
import logging
import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from shared import config

logger = logging.getLogger(__name__)

security = HTTPBasic()


def require_admin(credentials: HTTPBasicCredentials = Depends(security)) -> str:
    """
    Проверка учётных данных администратора

    Returns:
        имя администратора
    """
    # Пустой пароль в конфигурации отключает админский доступ
    if not config.ADMIN_PASSWORD:
        logger.warning("Admin request rejected: ADMIN_PASSWORD is not configured")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin access is not configured",
            headers={"WWW-Authenticate": "Basic"},
        )

    # compare_digest: сравнение за постоянное время
    is_username_correct = secrets.compare_digest(
        credentials.username.encode(), config.ADMIN_USERNAME.encode()
    )
    is_password_correct = secrets.compare_digest(
        credentials.password.encode(), config.ADMIN_PASSWORD.encode()
    )

    if not (is_username_correct and is_password_correct):
        logger.warning(f"Admin authentication failed for {credentials.username!r}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin authentication failed",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username
