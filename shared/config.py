"""
Конфигурация приложения
"""
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

# Базовые пути
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DATA_DIR", str(BASE_DIR / "data")))

# PostgreSQL
DATABASE_URL = os.getenv("DATABASE_URL", "postgresql://localhost/alcms")

# Redis
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

# API Server
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = int(os.getenv("PORT", "3000"))

# Логирование
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Администратор (HTTP Basic Auth)
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "")

# Карты (card keys)
CARD_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"  # без 0/O/1/I
CARD_CODE_LENGTH = 16
CARD_CODE_GROUP = 4
CARD_CODE_MAX_ATTEMPTS = 5  # попыток перегенерации при коллизии
CARD_BATCH_MAX = 1000
CARD_VALUE_BASE_DAYS = 30  # цена уровня VIP указана за 30 дней
POINTS_TO_MONEY_RATE = 0.01  # 1 балл = 0.01

# Rate limiting
RATE_LIMIT_REDEEM_PER_HOUR = int(os.getenv("RATE_LIMIT_REDEEM_PER_HOUR", "20"))
# Прокси, которым доверяем X-Forwarded-For (через запятую); пусто = только адрес соединения
TRUSTED_PROXIES = {ip.strip() for ip in os.getenv("TRUSTED_PROXIES", "").split(",") if ip.strip()}

# Массовое начисление баллов
POINTS_BATCH_GRANT_MAX = 1000

# Ежедневные отметки
CHECKIN_DEFAULT_DAILY_POINTS = int(os.getenv("CHECKIN_DEFAULT_DAILY_POINTS", "10"))

# Реферальные комиссии
REFERRAL_COMMISSION_ENABLED = os.getenv("REFERRAL_COMMISSION_ENABLED", "true").lower() == "true"
REFERRAL_FIRST_RATE = float(os.getenv("REFERRAL_FIRST_RATE", "0.10"))
REFERRAL_RENEWAL_RATE = float(os.getenv("REFERRAL_RENEWAL_RATE", "0"))

# Worker
COMMISSION_OUTBOX_INTERVAL = int(os.getenv("COMMISSION_OUTBOX_INTERVAL", "30"))  # секунды
COMMISSION_OUTBOX_BATCH = 50
COMMISSION_MAX_ATTEMPTS = int(os.getenv("COMMISSION_MAX_ATTEMPTS", "5"))
VIP_SWEEP_INTERVAL = int(os.getenv("VIP_SWEEP_INTERVAL", "3600"))  # секунды

# Создание директорий
DATA_DIR.mkdir(parents=True, exist_ok=True)
(DATA_DIR / "logs").mkdir(exist_ok=True)
