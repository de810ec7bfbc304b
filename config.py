"""
Configuration module for Local Ollama Chat
Handles environment variables, application settings and logging setup
"""
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

# Load environment variables from .env file if it exists
load_dotenv()

# Ollama Configuration
OLLAMA_HOST = os.environ.get("OLLAMA_HOST") or os.environ.get("OLLAMA_URL", "http://127.0.0.1:11434")
OLLAMA_TIMEOUT = float(os.environ.get("OLLAMA_TIMEOUT", 600))

# Server Configuration
APP_PORT = int(os.environ.get("PORT", 3000))
# Large enough for a base64 encoded 10 MiB image plus the prompt
MAX_CONTENT_LENGTH = 50 * 1024 * 1024

# Directory Configuration
BASE_DIR = Path(__file__).resolve().parent
LOGS_DIR = Path(os.environ.get("LOGS_DIR", BASE_DIR / "logs"))
DATABASE_PATH = Path(os.environ.get("DATABASE_PATH", BASE_DIR / "chat_history.db"))

# Context Window Configuration
# How many prior turns are folded into each new prompt
CONTEXT_WINDOW_SIZE = int(os.environ.get("CONTEXT_WINDOW_SIZE", 5))

# Maximum rows returned by the conversation history endpoint
HISTORY_LIMIT = int(os.environ.get("HISTORY_LIMIT", 100))

# Client session settings
MAX_IMAGE_BYTES = int(os.environ.get("MAX_IMAGE_BYTES", 10 * 1024 * 1024))
RECENT_PROMPTS_LIMIT = 10
REHYDRATE_TURNS = 20

# Prompt used when a request carries an image but no text
DEFAULT_IMAGE_PROMPT = "Please describe this image in detail."

# Vision model registry (comma-separated substrings, or a JSON file of {pattern: bool})
DEFAULT_VISION_MODELS = [
    "llava",
    "bakllava",
    "llama3.2-vision",
    "moondream",
    "minicpm-v",
    "qwen2.5vl",
    "gemma3",
    "granite3.2-vision",
]
VISION_MODELS = [
    m.strip() for m in os.environ.get("VISION_MODELS", "").split(",") if m.strip()
] or DEFAULT_VISION_MODELS
VISION_MODELS_FILE = os.environ.get("VISION_MODELS_FILE", "")

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")


def setup_logging(level: str = LOG_LEVEL, logs_dir: Path = LOGS_DIR) -> None:
    """Configure loguru console and rotating file sinks"""
    logs_dir = Path(logs_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
               "<cyan>{module}</cyan>:<cyan>{function}</cyan> | <level>{message}</level>",
    )
    logger.add(
        str(logs_dir / "chat_server.log"),
        rotation="10 MB",
        retention="30 days",
        level=level,
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
    )
