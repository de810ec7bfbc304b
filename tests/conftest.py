from typing import Any, Dict, List, Optional

import pytest

from capabilities import ImageCapabilityRegistry
from context import ContextWindowBuilder
from database import ChatStore, ConversationLog, UserDirectory
from errors import UpstreamError
from main import create_app
from orchestrator import GenerationOrchestrator


class FakeLLM:
    """Stands in for OllamaClient; records every dispatched call"""

    def __init__(self, reply: str = "Hello there"):
        self.reply = reply
        self.calls: List[Dict[str, Any]] = []
        self.error: Optional[Exception] = None
        self.models = {"models": [{"name": "llava:7b", "size": 4700000000},
                                  {"name": "llama3:8b", "size": 4600000000}]}

    def generate(self, model, prompt, images=None, options=None):
        self.calls.append({"model": model, "prompt": prompt, "images": images, "options": options})
        if self.error:
            raise self.error
        return {"model": model, "response": self.reply, "done": True}

    def generate_stream(self, model, prompt, images=None, options=None):
        self.calls.append({"model": model, "prompt": prompt, "images": images, "options": options, "stream": True})
        if self.error:
            raise self.error
        return iter([b'{"response":"Hel"}\n', b'{"response":"lo"}\n'])

    def list_models(self):
        if self.error:
            raise UpstreamError("Failed to fetch models")
        return self.models

    def ping(self):
        if self.error:
            raise UpstreamError("Failed to fetch models")


@pytest.fixture
def store(tmp_path):
    return ChatStore(tmp_path / "chat.db").initialize()


@pytest.fixture
def directory(store):
    return UserDirectory(store)


@pytest.fixture
def log(store):
    return ConversationLog(store)


@pytest.fixture
def builder(log):
    return ContextWindowBuilder(log)


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def registry():
    return ImageCapabilityRegistry.from_names(["llava", "moondream"])


@pytest.fixture
def orchestrator(directory, log, builder, llm):
    return GenerationOrchestrator(directory, log, builder, llm, window_size=5)


@pytest.fixture
def app(store, llm, registry):
    app = create_app(store=store, llm=llm, registry=registry)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()
