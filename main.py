#!/usr/bin/env python3
"""
Local Ollama Chat - Main Application

A Flask + Ollama server where named users keep independent, persisted
conversations with a local model. Each request is sent with the user's
recent turns folded in as context.

Quick start:
1) Ensure Ollama is running with a model (e.g. `ollama pull llava`)
2) `pip install -e .`
3) `python main.py`
4) POST to http://127.0.0.1:3000/api/user/login to start

Features:
- Multi-user history in SQLite, keyed by display name
- Bounded context window folded into every prompt
- Image attachments for vision models (image turns skipped in image context)
- Pass-through streaming endpoint
- Health check covering Ollama and the database
"""
from typing import Optional

from flask import Flask
from loguru import logger

from capabilities import ImageCapabilityRegistry
from config import (
    OLLAMA_HOST, APP_PORT, DATABASE_PATH, LOGS_DIR,
    CONTEXT_WINDOW_SIZE, MAX_CONTENT_LENGTH, setup_logging
)
from context import ContextWindowBuilder
from database import ChatStore, ConversationLog, UserDirectory
from llm_client import OllamaClient
from orchestrator import GenerationOrchestrator
from routes import register_routes


def create_app(store: Optional[ChatStore] = None,
               llm: Optional[OllamaClient] = None,
               registry: Optional[ImageCapabilityRegistry] = None) -> Flask:
    """Create and configure the Flask application"""
    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = MAX_CONTENT_LENGTH

    store = (store or ChatStore(DATABASE_PATH)).initialize()
    log = ConversationLog(store)
    orchestrator = GenerationOrchestrator(
        directory=UserDirectory(store),
        log=log,
        context=ContextWindowBuilder(log),
        llm=llm or OllamaClient(),
        window_size=CONTEXT_WINDOW_SIZE,
    )
    registry = registry or ImageCapabilityRegistry.default()

    app.extensions["chat_store"] = store
    app.extensions["chat_orchestrator"] = orchestrator

    register_routes(app, orchestrator, registry)
    return app


def main():
    """Main entry point"""
    setup_logging()
    app = create_app()

    logger.info("=" * 60)
    logger.info("Local Ollama Chat")
    logger.info("=" * 60)
    logger.info(f"Server: http://127.0.0.1:{APP_PORT}")
    logger.info(f"Ollama host: {OLLAMA_HOST}")
    logger.info(f"Database: {DATABASE_PATH}")
    logger.info(f"Logs directory: {LOGS_DIR}")
    logger.info(f"Context window: {CONTEXT_WINDOW_SIZE} turns")
    logger.info("=" * 60)

    app.run(host="127.0.0.1", port=APP_PORT, debug=False, threaded=True)


if __name__ == "__main__":
    main()
