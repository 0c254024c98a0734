import os
from dotenv import load_dotenv

load_dotenv()

# Server
ADDRESS = os.getenv("ADDRESS", "0.0.0.0")
PORT = int(os.getenv("PORT", "8080"))
SSL_CERTIFICATE = os.getenv("SSL_CERTIFICATE", "")
SSL_PRIVATE_KEY = os.getenv("SSL_PRIVATE_KEY", "")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "info")
LOG_TYPE = os.getenv("LOG_TYPE", "json")  # "json" or "console"

# Security
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")

# CORS - supports multiple origins comma-separated
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")

# Database
STORE_BACKEND = os.getenv("STORE_BACKEND", "supabase")  # "supabase" or "memory"
SUPABASE_URL = os.getenv("SUPABASE_URL", "")
SUPABASE_SERVICE_ROLE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
TENANTS_TABLE = os.getenv("TENANTS_TABLE", "users")

# Evolution API (protocol server)
EVOLUTION_SERVER_URL = os.getenv("EVOLUTION_SERVER_URL", "")
EVOLUTION_API_KEY = os.getenv("EVOLUTION_API_KEY", "")
INSTANCE_PREFIX = os.getenv("INSTANCE_PREFIX", "tenant-")

# Auth token cache
AUTH_CACHE_IDLE_SECONDS = float(os.getenv("AUTH_CACHE_IDLE_SECONDS", "300"))
AUTH_CACHE_MAX_AGE_SECONDS = float(os.getenv("AUTH_CACHE_MAX_AGE_SECONDS", "600"))
AUTH_CACHE_SWEEP_SECONDS = float(os.getenv("AUTH_CACHE_SWEEP_SECONDS", "600"))

# Session lifecycle
CONNECT_TIMEOUT = float(os.getenv("CONNECT_TIMEOUT", "30"))
PAIRING_TIMEOUT = float(os.getenv("PAIRING_TIMEOUT", "180"))  # Time allowed to scan the QR code
STOP_TIMEOUT = float(os.getenv("STOP_TIMEOUT", "10"))
SHUTDOWN_TIMEOUT = float(os.getenv("SHUTDOWN_TIMEOUT", "5"))

# Reconnection after unexpected disconnects
RECONNECT_MAX_ATTEMPTS = int(os.getenv("RECONNECT_MAX_ATTEMPTS", "5"))
RECONNECT_BASE_DELAY = float(os.getenv("RECONNECT_BASE_DELAY", "2"))
RECONNECT_MAX_DELAY = float(os.getenv("RECONNECT_MAX_DELAY", "60"))
SUPERVISOR_SWEEP_SECONDS = float(os.getenv("SUPERVISOR_SWEEP_SECONDS", "0"))  # 0 disables

# Webhook delivery
WEBHOOK_TIMEOUT = float(os.getenv("WEBHOOK_TIMEOUT", "10"))
WEBHOOK_MAX_RETRIES = int(os.getenv("WEBHOOK_MAX_RETRIES", "3"))
WEBHOOK_RETRY_BASE_DELAY = float(os.getenv("WEBHOOK_RETRY_BASE_DELAY", "1"))
WEBHOOK_MAX_CONCURRENCY = int(os.getenv("WEBHOOK_MAX_CONCURRENCY", "32"))
WEBHOOK_QUEUE_SIZE = int(os.getenv("WEBHOOK_QUEUE_SIZE", "1000"))
EVENT_HISTORY_SIZE = int(os.getenv("EVENT_HISTORY_SIZE", "50"))
