import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "search-proxy")
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "3000"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "info").lower()

RATE_LIMIT_WINDOW_MS = int(os.getenv("RATE_LIMIT_WINDOW_MS", "60000"))
RATE_LIMIT_MAX = int(os.getenv("RATE_LIMIT_MAX", "60"))

PROXY_TIMEOUT = float(os.getenv("PROXY_TIMEOUT", "30"))
USER_AGENT = os.getenv("USER_AGENT", "simple-search-proxy/1.0")
SEARCH_ENDPOINT = os.getenv("SEARCH_ENDPOINT", "https://lite.duckduckgo.com/lite/")

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
