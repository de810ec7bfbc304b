"""
Generation orchestrator for Local Ollama Chat
Resolves identity, builds context, calls the model and records the turn
"""
import enum
import uuid
from typing import Any, Dict, Iterator

from loguru import logger

from config import CONTEXT_WINDOW_SIZE, DEFAULT_IMAGE_PROMPT
from context import ContextWindowBuilder
from database import ConversationLog, UserDirectory
from errors import ChatError, PersistenceError, UpstreamError
from llm_client import OllamaClient
from models import GenerationRequest, GenerationResult


class Stage(enum.Enum):
    RECEIVED = "received"
    VALIDATED = "validated"
    IDENTITY_RESOLVED = "identity_resolved"
    CONTEXT_BUILT = "context_built"
    DISPATCHED = "dispatched"
    COMPLETED = "completed"
    FAILED = "failed"


def augment_prompt(digest: str, prompt: str) -> str:
    """Continue the digest conversation with the new user prompt"""
    if not digest:
        return prompt
    return f"{digest}\n\nUser: {prompt}"


class GenerationOrchestrator:
    """Runs one generation request to completion or failure in a single pass.

    Nothing is persisted unless the completion service answered; the stored
    prompt is always the original one, never the augmented one.
    """

    def __init__(self, directory: UserDirectory, log: ConversationLog,
                 context: ContextWindowBuilder, llm: OllamaClient,
                 window_size: int = CONTEXT_WINDOW_SIZE):
        self.directory = directory
        self.log = log
        self.context = context
        self.llm = llm
        self.window_size = window_size

    def _enter(self, stage: Stage, request_id: str) -> Stage:
        logger.debug(f"[{request_id}] {stage.value}")
        return stage

    def generate(self, payload: Any) -> GenerationResult:
        request_id = uuid.uuid4().hex[:8]
        stage = self._enter(Stage.RECEIVED, request_id)
        try:
            req = GenerationRequest.from_payload(payload)
            stage = self._enter(Stage.VALIDATED, request_id)

            user = self.directory.resolve(req.user_name)
            stage = self._enter(Stage.IDENTITY_RESOLVED, request_id)

            try:
                digest = self.context.build(user.id, self.window_size, req.has_images)
            except PersistenceError as e:
                logger.warning(f"Context unavailable for user {user.name}, sending without it: {e}")
                digest = ""
            stage = self._enter(Stage.CONTEXT_BUILT, request_id)

            full_prompt = augment_prompt(digest, req.prompt or DEFAULT_IMAGE_PROMPT)
            if digest:
                logger.info(
                    f"Adding conversation context for user {user.name} "
                    f"({len(digest)} chars, excludeImages: {req.has_images})"
                )
            if len(req.images) > 1:
                logger.warning(f"{len(req.images)} images sent; only the first is kept in history")

            logger.info(f"[{request_id}] Generating response for user: {user.name}, model: {req.model}")
            data = self.llm.generate(req.model, full_prompt, req.images, req.options)
            stage = self._enter(Stage.DISPATCHED, request_id)
            # An empty reply is an error and never becomes a turn
            if not str(data.get("response") or "").strip():
                raise UpstreamError("No response from model")
        except ChatError as e:
            self._enter(Stage.FAILED, request_id)
            logger.warning(f"[{request_id}] Generation failed after stage {stage.value}: {e.message}")
            raise

        result = GenerationResult(response=data["response"], payload=data)
        first_image = req.images[0] if req.images else None
        try:
            result.turn = self.log.append(user.id, req.model, req.prompt, data["response"], first_image)
            logger.info(f"Saved conversation for user: {user.name}")
        except PersistenceError as e:
            logger.error(f"Response returned but history not saved for {user.name}: {e.message}")
            result.warning = "Response generated but conversation history could not be saved"

        self._enter(Stage.COMPLETED, request_id)
        return result

    def stream(self, payload: Any) -> Iterator[bytes]:
        """Pass-through streaming: no context, no persistence"""
        req = GenerationRequest.from_payload(payload, require_user=False)
        logger.info(f"Streaming response, model: {req.model}")
        return self.llm.generate_stream(
            req.model, req.prompt or DEFAULT_IMAGE_PROMPT, req.images, req.options
        )

    def health(self) -> Dict[str, Any]:
        """Check the completion service and the database"""
        report: Dict[str, Any] = {"status": "healthy", "ollama": "connected", "database": "connected"}
        errors = []
        try:
            self.llm.ping()
        except ChatError as e:
            report["ollama"] = "disconnected"
            errors.append(e.message)
        try:
            self.log.store.ping()
        except ChatError as e:
            report["database"] = "disconnected"
            errors.append(e.message)
        if errors:
            report["status"] = "unhealthy"
            report["error"] = "; ".join(errors)
        return report
