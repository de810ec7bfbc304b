"""
Error types for Local Ollama Chat

Every error carries the HTTP status the boundary answers with. None of them
are retried automatically; they are reported once and left to the user.
"""


class ChatError(Exception):
    """Base class for all chat engine errors"""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ChatError):
    """Bad or missing input; fixable by the client"""

    status_code = 400


class NotFound(ChatError):
    """Unknown user"""

    status_code = 404


class UpstreamError(ChatError):
    """Completion service unreachable or returned a failure"""

    status_code = 500


class PersistenceError(ChatError):
    """Storage read or write failure"""

    status_code = 500
