import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

JWT_SECRET = os.getenv("JWT_SECRET", "ishtop-dev-secret-change-me")
JWT_ALG = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24 * 7))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", 12))

# Platform cut withheld from the order price at settlement
COMMISSION_RATE = 0.10
MAX_ORDER_PRICE = 100_000_000

# Days a worker keeps the "already credited" marker of an applied settlement
SETTLEMENT_MARKER_TTL_DAYS = int(os.getenv("SETTLEMENT_MARKER_TTL_DAYS", 7))

CHAT_POLL_INTERVAL = float(os.getenv("CHAT_POLL_INTERVAL", 3))
CHAT_LIST_POLL_INTERVAL = float(os.getenv("CHAT_LIST_POLL_INTERVAL", 5))
NOTIFICATION_POLL_INTERVAL = float(os.getenv("NOTIFICATION_POLL_INTERVAL", 5))
EVENT_TRANSPORT = os.getenv("EVENT_TRANSPORT", "polling")

UPLOAD_DIR = os.getenv("UPLOAD_DIR", "uploads")
MAX_UPLOAD_SIZE = 10 * 1024 * 1024
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000,https://localhost:3000").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8000))
