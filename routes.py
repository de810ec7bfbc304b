"""
Routes module for Local Ollama Chat
Handles all Flask API endpoints
"""
from flask import Flask, request, jsonify, Response, stream_with_context
from loguru import logger

from capabilities import ImageCapabilityRegistry
from config import HISTORY_LIMIT
from errors import ChatError, PersistenceError, ValidationError
from orchestrator import GenerationOrchestrator


def register_routes(app: Flask, orchestrator: GenerationOrchestrator,
                    registry: ImageCapabilityRegistry):
    """Register all Flask routes against the injected services"""
    directory = orchestrator.directory
    log = orchestrator.log
    llm = orchestrator.llm

    @app.errorhandler(ChatError)
    def handle_chat_error(e: ChatError):
        return jsonify({"error": e.message}), e.status_code

    @app.errorhandler(413)
    def handle_too_large(e):
        return jsonify({"error": "Request body too large"}), 413

    # --------------------------
    # User Endpoints
    # --------------------------

    @app.post("/api/user/login")
    def login():
        """Resolve a display name to a user, creating it on first use"""
        data = request.get_json(silent=True) or {}
        user, created = directory.resolve_status(data.get("name"))
        return jsonify({
            "success": True,
            "user": user.to_dict(),
            "message": "New user created!" if created else "Welcome back!"
        })

    @app.get("/api/user/<name>")
    def get_user(name: str):
        user = directory.lookup(name)
        stats = directory.stats(user.id)
        return jsonify({
            "user": user.to_dict(),
            "stats": stats.to_dict() if stats else None
        })

    # --------------------------
    # Model Endpoints
    # --------------------------

    @app.get("/api/models")
    def list_models():
        """List Ollama models, tagged with image support"""
        data = llm.list_models()
        for model in data.get("models", []) or []:
            if isinstance(model, dict):
                model["supports_images"] = registry.supports_images(model.get("name"))
        return jsonify(data)

    @app.post("/api/generate")
    def generate():
        """Generate a response with the user's recent turns as context"""
        data = request.get_json(silent=True)
        if data is None:
            raise ValidationError("Request body must be JSON")
        result = orchestrator.generate(data)
        return jsonify(result.to_dict())

    @app.post("/api/generate/stream")
    def generate_stream():
        """Stream raw Ollama output; kept for compatibility, no history"""
        data = request.get_json(silent=True)
        if data is None:
            raise ValidationError("Request body must be JSON")
        chunks = orchestrator.stream(data)
        return Response(
            stream_with_context(chunks),
            mimetype="text/plain",
            headers={"Cache-Control": "no-cache"}
        )

    # --------------------------
    # Conversation Endpoints
    # --------------------------

    @app.get("/api/conversations/<user_name>")
    def get_conversations(user_name: str):
        user = directory.lookup(user_name)
        try:
            turns = log.recent(user.id, HISTORY_LIMIT)
        except PersistenceError as e:
            logger.error(f"Error getting conversations for {user_name}: {e.message}")
            turns = []
        return jsonify({"conversations": [t.to_dict() for t in turns]})

    @app.delete("/api/conversations/<user_name>")
    def clear_conversations(user_name: str):
        user = directory.lookup(user_name)
        deleted = log.clear(user.id)
        return jsonify({
            "success": True,
            "message": f"Cleared {deleted} conversations",
            "deletedCount": deleted
        })

    # --------------------------
    # Health
    # --------------------------

    @app.get("/api/health")
    def health():
        report = orchestrator.health()
        status = 200 if report["status"] == "healthy" else 503
        return jsonify(report), status
