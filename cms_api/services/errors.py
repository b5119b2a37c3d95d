"""
Ошибки сервисного слоя
"""


class ServiceError(Exception):
    """Базовая ошибка сервиса (сообщение показывается клиенту)"""

    status_code = 400
    message = "Operation failed"

    def __init__(self, message: str = None):
        self.message = message or self.message
        super().__init__(self.message)


class CardKeyNotFoundError(ServiceError):
    status_code = 404
    message = "Card key does not exist"


class CardKeyAlreadyRedeemedError(ServiceError):
    status_code = 409
    message = "Card key has already been used"


class CardKeyDisabledError(ServiceError):
    status_code = 409
    message = "Card key has been disabled"


class CardKeyExpiredError(ServiceError):
    status_code = 410
    message = "Card key has expired"


class UserNotFoundError(ServiceError):
    status_code = 404
    message = "User does not exist"


class InsufficientBalanceError(ServiceError):
    """Недостаточно баллов"""
    status_code = 400
    message = "Insufficient points balance"


class VipLevelNotFoundError(ServiceError):
    status_code = 404
    message = "VIP level does not exist"


class OrderNotFoundError(ServiceError):
    status_code = 404
    message = "Order does not exist"


class InvalidStatusTransitionError(ServiceError):
    status_code = 409
    message = "Status transition is not allowed"


class CheckinAlreadyDoneError(ServiceError):
    status_code = 409
    message = "Already checked in on this date"


class CheckinNotConfiguredError(ServiceError):
    """Нет активной конфигурации, доступной пользователю"""
    status_code = 404
    message = "Check-in is not configured"


class CheckinConfigNotFoundError(ServiceError):
    status_code = 404
    message = "Check-in config does not exist"
