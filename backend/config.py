"""Configuration management for the Assistant Turn Pipeline."""
import os
import logging
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# API Keys
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_ASSISTANT_ID = os.getenv("OPENAI_ASSISTANT_ID")
OPENAI_ORGANIZATION = os.getenv("OPENAI_ORGANIZATION")
TAVILY_API_KEY = os.getenv("TAVILY_API_KEY")
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# Upstream endpoints
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
TAVILY_BASE_URL = os.getenv("TAVILY_BASE_URL", "https://api.tavily.com")
SUPABASE_STORAGE_BUCKET = os.getenv("SUPABASE_STORAGE_BUCKET", "assistant-files")

# Server Configuration
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"

# CORS Configuration
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:3001"
).split(",")

# Run polling budgets
POLL_INTERVAL_MS = int(os.getenv("OPENAI_POLL_INTERVAL", "1000"))
MAX_POLL_ATTEMPTS = int(os.getenv("OPENAI_MAX_RETRIES", "300"))
SEARCH_POLL_INTERVAL_MS = int(os.getenv("OPENAI_WEB_SEARCH_POLL_INTERVAL", "2000"))
SEARCH_MAX_POLL_ATTEMPTS = int(os.getenv("OPENAI_WEB_SEARCH_MAX_RETRIES", "900"))

# Backend clocks may lag local time by a few seconds
MESSAGE_TIMESTAMP_TOLERANCE_S = 5

# Transport Configuration
OPENAI_TIMEOUT_S = 60.0
SEARCH_TIMEOUT_S = 20.0
STORAGE_TIMEOUT_S = 120.0
TRANSPORT_MAX_ATTEMPTS = 3
TRANSPORT_INITIAL_DELAY_S = 1.0
TRANSPORT_MAX_DELAY_S = 30.0

# Search Configuration
SEARCH_MAX_RESULTS = 5
SEARCH_CACHE_TTL_S = 300
SEARCH_MAX_QUERY_LENGTH = 500

# Storage Configuration
MAX_STORAGE_BYTES = 500 * 1024 * 1024
CLEANUP_THRESHOLD_BYTES = 400 * 1024 * 1024
RETENTION_DAYS = 7

# Logging Configuration
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
