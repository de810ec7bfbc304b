"""
Data models for Local Ollama Chat
Users, turns and the validated shape of a generation request
"""
import re
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List

from errors import ValidationError

BASE64_PATTERN = re.compile(r"[A-Za-z0-9+/]*={0,2}")

# Allowed generation options and their (min, max) ranges
OPTION_RANGES = {
    "temperature": (0.0, 2.0),
    "top_p": (0.0, 1.0),
}
MAX_PREDICT_TOKENS = 32768


@dataclass(frozen=True)
class User:
    id: int
    name: str
    created_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "created_at": self.created_at}


@dataclass(frozen=True)
class Turn:
    """One stored prompt/response exchange"""

    id: int
    user_id: int
    model: str
    prompt: str
    response: str
    image: Optional[str]
    timestamp: str

    @property
    def has_image(self) -> bool:
        return self.image is not None

    def to_dict(self) -> Dict[str, Any]:
        """Convert turn to dictionary for API responses"""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "model": self.model,
            "prompt": self.prompt,
            "response": self.response,
            "image_data": self.image,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class UserStats:
    total_turns: int
    distinct_models_used: int
    first_turn_at: Optional[str]
    last_turn_at: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_conversations": self.total_turns,
            "models_used": self.distinct_models_used,
            "first_conversation": self.first_turn_at,
            "last_conversation": self.last_turn_at,
        }


@dataclass(frozen=True)
class GenerationOptions:
    """Sampling options forwarded to the completion service.

    Only the named fields are accepted; anything else in the request body is
    rejected instead of being forwarded.
    """

    temperature: Optional[float] = None
    top_p: Optional[float] = None
    num_predict: Optional[int] = None

    @classmethod
    def from_payload(cls, data: Optional[Dict[str, Any]]) -> "GenerationOptions":
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValidationError("options must be an object")

        unknown = sorted(set(data) - {"temperature", "top_p", "num_predict"})
        if unknown:
            raise ValidationError(f"Unknown option(s): {', '.join(unknown)}")

        values: Dict[str, Any] = {}
        for name, (low, high) in OPTION_RANGES.items():
            value = data.get(name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(f"{name} must be a number")
            if not low <= value <= high:
                raise ValidationError(f"{name} must be between {low} and {high}")
            values[name] = float(value)

        num_predict = data.get("num_predict")
        if num_predict is not None:
            if isinstance(num_predict, bool) or not isinstance(num_predict, int):
                raise ValidationError("num_predict must be an integer")
            # -1 asks Ollama for an unlimited generation
            if num_predict != -1 and not 1 <= num_predict <= MAX_PREDICT_TOKENS:
                raise ValidationError(f"num_predict must be -1 or between 1 and {MAX_PREDICT_TOKENS}")
            values["num_predict"] = num_predict

        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        """Options in Ollama's wire form, unset fields omitted"""
        out: Dict[str, Any] = {}
        if self.temperature is not None:
            out["temperature"] = self.temperature
        if self.top_p is not None:
            out["top_p"] = self.top_p
        if self.num_predict is not None:
            out["num_predict"] = self.num_predict
        return out


def validate_images(images: Any) -> List[str]:
    """Check every image is a non-empty base64 string; report the first bad index"""
    if images is None:
        return []
    if not isinstance(images, list):
        raise ValidationError("images must be a list of base64 strings")
    for index, img in enumerate(images):
        if not img or not isinstance(img, str):
            raise ValidationError(f"Invalid image data at index {index}")
        if not BASE64_PATTERN.fullmatch(img):
            raise ValidationError(f"Invalid base64 format at index {index}")
    return list(images)


@dataclass(frozen=True)
class GenerationRequest:
    model: str
    prompt: str
    user_name: str
    images: List[str] = field(default_factory=list)
    options: GenerationOptions = field(default_factory=GenerationOptions)

    @property
    def has_images(self) -> bool:
        return len(self.images) > 0

    @classmethod
    def from_payload(cls, data: Any, require_user: bool = True) -> "GenerationRequest":
        """Validate a raw JSON body. Nothing is dispatched for an invalid body."""
        if not isinstance(data, dict):
            raise ValidationError("Request body must be a JSON object")

        model = data.get("model")
        if not isinstance(model, str) or not model.strip():
            raise ValidationError("Model and either prompt or image are required")

        prompt = data.get("prompt") or ""
        if not isinstance(prompt, str):
            raise ValidationError("prompt must be a string")

        images = data.get("images") or []
        if not prompt and not images:
            raise ValidationError("Model and either prompt or image are required")

        user_name = data.get("userName") or ""
        if not isinstance(user_name, str):
            raise ValidationError("userName must be a string")
        user_name = user_name.strip()
        if require_user and not user_name:
            raise ValidationError("User name is required")

        return cls(
            model=model.strip(),
            prompt=prompt,
            user_name=user_name,
            images=validate_images(images),
            options=GenerationOptions.from_payload(data.get("options")),
        )


@dataclass(frozen=True)
class ChatMessage:
    """One rendered message in a client's chat window"""

    role: str  # user | assistant | system
    content: str
    timestamp: str
    model: Optional[str] = None
    image_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp,
            "model": self.model,
            "has_image": self.image_url is not None,
        }


@dataclass
class GenerationResult:
    """What the orchestrator hands back: the upstream body plus history status"""

    response: str
    payload: Dict[str, Any]
    turn: Optional[Turn] = None
    warning: Optional[str] = None

    @property
    def history_saved(self) -> bool:
        return self.turn is not None

    def to_dict(self) -> Dict[str, Any]:
        body = dict(self.payload)
        body["response"] = self.response
        body["history_saved"] = self.history_saved
        if self.warning:
            body["warning"] = self.warning
        return body
