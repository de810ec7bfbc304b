"""
Client session module for Local Ollama Chat

The browser-side request lifecycle as an explicit state machine:

    LOGGED_OUT -> IDLE <-> COMPOSING -> SENDING -> IDLE

Only one generation can be in flight per session. A send whose session has
logged out before the reply arrives is dropped.
"""
import base64
import enum
import json
import mimetypes
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import requests
from loguru import logger

from capabilities import ImageCapabilityRegistry
from config import MAX_IMAGE_BYTES, RECENT_PROMPTS_LIMIT, REHYDRATE_TURNS
from errors import ChatError, NotFound, UpstreamError, ValidationError
from models import ChatMessage, GenerationOptions, User
from storage import export_messages, write_export

# Leading base64 characters of common image formats
IMAGE_SIGNATURES = {
    "iVBOR": "image/png",
    "/9j/": "image/jpeg",
    "R0lGOD": "image/gif",
    "UklGR": "image/webp",
}


def sniff_image_mime(b64: str) -> str:
    for prefix, mime in IMAGE_SIGNATURES.items():
        if b64.startswith(prefix):
            return mime
    return "image/png"


class SessionState(enum.Enum):
    LOGGED_OUT = "logged_out"
    IDLE = "idle"
    COMPOSING = "composing"
    SENDING = "sending"


@dataclass(frozen=True)
class AttachedImage:
    filename: str
    mime_type: str
    data: bytes
    base64: str

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"


class IdentityCache:
    """Remembers the logged-in name between runs, like the browser's localStorage"""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def load(self) -> Optional[str]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        name = data.get("name") if isinstance(data, dict) else None
        return name if isinstance(name, str) and name.strip() else None

    def save(self, name: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps({"name": name}), encoding="utf-8")

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class HttpTransport:
    """Talks to the chat server's JSON API.

    No timeout is set on generate: a hung model blocks until the transport
    itself gives up.
    """

    ERRORS = {400: ValidationError, 404: NotFound}

    def __init__(self, base_url: str, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()

    def _check(self, r: requests.Response) -> Any:
        try:
            data = r.json()
        except ValueError:
            data = None
        if r.ok and data is not None:
            return data
        message = data.get("error") if isinstance(data, dict) else None
        message = message or f"HTTP error! status: {r.status_code}"
        raise self.ERRORS.get(r.status_code, UpstreamError)(message)

    def login(self, name: str) -> Dict[str, Any]:
        r = self.session.post(f"{self.base_url}/api/user/login", json={"name": name}, timeout=30)
        return self._check(r)["user"]

    def conversations(self, name: str) -> List[Dict[str, Any]]:
        r = self.session.get(f"{self.base_url}/api/conversations/{name}", timeout=30)
        return self._check(r).get("conversations", [])

    def clear(self, name: str) -> int:
        r = self.session.delete(f"{self.base_url}/api/conversations/{name}", timeout=30)
        return int(self._check(r).get("deletedCount", 0))

    def models(self) -> List[Dict[str, Any]]:
        r = self.session.get(f"{self.base_url}/api/models", timeout=30)
        return self._check(r).get("models", [])

    def health(self) -> Dict[str, Any]:
        r = self.session.get(f"{self.base_url}/api/health", timeout=10)
        try:
            return r.json()
        except ValueError:
            return {"status": "unhealthy"}

    def generate(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        r = self.session.post(f"{self.base_url}/api/generate", json=payload, timeout=None)
        return self._check(r)


class ClientSession:

    def __init__(self, transport, registry: ImageCapabilityRegistry,
                 identity_cache: Optional[IdentityCache] = None,
                 options: Optional[GenerationOptions] = None,
                 max_image_bytes: int = MAX_IMAGE_BYTES,
                 on_notice: Optional[Callable[[str], None]] = None):
        self.transport = transport
        self.registry = registry
        self.identity_cache = identity_cache
        self.options = options or GenerationOptions()
        self.max_image_bytes = max_image_bytes
        self.on_notice = on_notice

        self._lock = threading.Lock()
        self._epoch = 0
        self._reset()

    def _reset(self) -> None:
        self.identity: Optional[User] = None
        self.selected_model: Optional[str] = None
        self.attached_image: Optional[AttachedImage] = None
        self.is_generating = False
        self.input_text = ""
        self.message_history: List[ChatMessage] = []
        self.recent_prompts: List[str] = []
        self.available_models: List[str] = []
        self.notices: List[str] = []

    # --------------------------
    # State
    # --------------------------

    @property
    def state(self) -> SessionState:
        if self.identity is None:
            return SessionState.LOGGED_OUT
        if self.is_generating:
            return SessionState.SENDING
        if self.input_text.strip() or self.attached_image is not None:
            return SessionState.COMPOSING
        return SessionState.IDLE

    @property
    def can_send(self) -> bool:
        has_content = bool(self.input_text.strip()) or self.attached_image is not None
        return (
            self.identity is not None
            and bool(self.selected_model)
            and not self.is_generating
            and has_content
        )

    @property
    def model_supports_images(self) -> bool:
        return self.registry.supports_images(self.selected_model)

    def notify(self, message: str) -> None:
        self.notices.append(message)
        logger.info(f"Notice: {message}")
        if self.on_notice:
            self.on_notice(message)

    def _render(self, role: str, content: str, model: Optional[str] = None,
                image_url: Optional[str] = None, timestamp: Optional[str] = None) -> ChatMessage:
        message = ChatMessage(
            role=role,
            content=content,
            timestamp=timestamp or datetime.now().isoformat(timespec="seconds"),
            model=model,
            image_url=image_url,
        )
        self.message_history.append(message)
        return message

    # --------------------------
    # Login / logout
    # --------------------------

    def login(self, name: str) -> User:
        if self.identity is not None:
            raise ValidationError("Already logged in; log out first")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Name is required")

        data = self.transport.login(name.strip())
        user = User(id=data["id"], name=data["name"], created_at=data.get("created_at", ""))
        with self._lock:
            self._reset()
            self.identity = user
        if self.identity_cache is not None:
            self.identity_cache.save(user.name)
        logger.info(f"Logged in as {user.name}")

        self._rehydrate()
        self.load_models()
        return user

    def restore(self) -> Optional[User]:
        """Log back in with the cached identity, if any"""
        if self.identity_cache is None or self.identity is not None:
            return None
        name = self.identity_cache.load()
        if not name:
            return None
        try:
            return self.login(name)
        except (ChatError, requests.RequestException) as e:
            self.notify(f"Could not restore session for {name}: {e}")
            return None

    def logout(self) -> None:
        with self._lock:
            self._epoch += 1
            name = self.identity.name if self.identity else None
            self._reset()
        if self.identity_cache is not None:
            self.identity_cache.clear()
        if name:
            logger.info(f"Logged out {name}")

    def _rehydrate(self) -> None:
        """Render the most recent stored turns without sending them again"""
        try:
            rows = self.transport.conversations(self.identity.name)
        except (ChatError, requests.RequestException) as e:
            self.notify(f"Could not load conversation history: {e}")
            return

        for row in reversed(rows[:REHYDRATE_TURNS]):
            image = row.get("image_data")
            image_url = f"data:{sniff_image_mime(image)};base64,{image}" if image else None
            timestamp = row.get("timestamp")
            self._render("user", row.get("prompt", ""), model=row.get("model"),
                         image_url=image_url, timestamp=timestamp)
            self._render("assistant", row.get("response", ""), model=row.get("model"),
                         timestamp=timestamp)

    def load_models(self) -> List[str]:
        try:
            models = self.transport.models()
        except (ChatError, requests.RequestException) as e:
            self.notify(f"Error loading models: {e}")
            return []
        self.available_models = [m["name"] for m in models if isinstance(m, dict) and m.get("name")]
        return self.available_models

    def check_connection(self) -> bool:
        try:
            return self.transport.health().get("status") == "healthy"
        except requests.RequestException:
            return False

    # --------------------------
    # Composing
    # --------------------------

    def set_text(self, text: str) -> None:
        self.input_text = text or ""

    def set_options(self, **options) -> GenerationOptions:
        self.options = GenerationOptions.from_payload(options)
        return self.options

    def select_model(self, name: Optional[str]) -> bool:
        """Select a model; returns whether it accepts images"""
        self.selected_model = (name or "").strip() or None
        capable = self.model_supports_images
        if self.attached_image is not None and not capable:
            self.attached_image = None
            self.notify(f"{self.selected_model or 'No model'} does not support images; attachment removed")
        return capable

    def _reject(self, message: str) -> bool:
        self.notify(message)
        return False

    def attach_image(self, path: Union[str, Path], mime_type: Optional[str] = None) -> bool:
        """Attach an image file for the next send; False (with a notice) if rejected"""
        if not self.selected_model:
            return self._reject("Please select a model before attaching an image")
        if not self.model_supports_images:
            return self._reject(f"{self.selected_model} does not support images")

        path = Path(path)
        mime_type = mime_type or mimetypes.guess_type(path.name)[0]
        if not mime_type or not mime_type.startswith("image/"):
            return self._reject("Please select an image file")

        try:
            size = path.stat().st_size
            if size > self.max_image_bytes:
                return self._reject(f"Image is too large (max {self.max_image_bytes // (1024 * 1024)} MB)")
            data = path.read_bytes()
        except OSError as e:
            return self._reject(f"Failed to read image: {e}")
        if len(data) > self.max_image_bytes:
            return self._reject(f"Image is too large (max {self.max_image_bytes // (1024 * 1024)} MB)")

        self.attached_image = AttachedImage(
            filename=path.name,
            mime_type=mime_type,
            data=data,
            base64=base64.b64encode(data).decode("ascii"),
        )
        logger.debug(f"Attached {path.name} ({len(data)} bytes)")
        return True

    def remove_image(self) -> None:
        self.attached_image = None

    def _remember_prompt(self, prompt: str) -> None:
        if prompt in self.recent_prompts:
            self.recent_prompts.remove(prompt)
        self.recent_prompts.insert(0, prompt)
        del self.recent_prompts[RECENT_PROMPTS_LIMIT:]

    # --------------------------
    # Sending
    # --------------------------

    def send(self) -> Optional[ChatMessage]:
        """Send the composed message; returns the reply or error message rendered.

        Returns None without side effects when sending is not allowed, and
        None when the session logged out while the request was in flight.
        """
        with self._lock:
            if not self.can_send:
                return None
            self.is_generating = True
            epoch = self._epoch
            text = self.input_text.strip()
            image = self.attached_image
            model = self.selected_model
            user_name = self.identity.name

            self._render("user", text, model=model, image_url=image.data_url if image else None)
            self.input_text = ""
            if text:
                self._remember_prompt(text)

        payload = {
            "model": model,
            "prompt": text,
            "userName": user_name,
            "images": [image.base64] if image else [],
            "options": self.options.to_dict(),
        }

        role, content, warning = "system", "Error: No response from model", None
        try:
            data = self.transport.generate(payload)
            reply = data.get("response") if isinstance(data, dict) else None
            if reply:
                role, content = "assistant", reply
                warning = data.get("warning")
        except ChatError as e:
            logger.error(f"Error generating response: {e.message}")
            content = f"Error: {e.message}"
        except requests.RequestException as e:
            logger.error(f"Network error generating response: {e}")
            content = f"Error: {e}"
        finally:
            # Epoch check, settle and render share one critical section
            with self._lock:
                if epoch != self._epoch:
                    message = None
                else:
                    self.attached_image = None
                    self.is_generating = False
                    message = self._render(role, content, model=model if role == "assistant" else None)

        if message is None:
            logger.info("Discarding response for a session that has since logged out")
            return None
        if warning:
            self.notify(warning)
        return message

    # --------------------------
    # History
    # --------------------------

    def clear_chat(self) -> None:
        """Clear the rendered messages; server history is untouched"""
        self.message_history = []

    def clear_server_history(self) -> int:
        if self.identity is None:
            raise ValidationError("Not logged in")
        deleted = self.transport.clear(self.identity.name)
        self.notify(f"Cleared {deleted} conversations")
        return deleted

    def export(self, fmt: str = "md") -> str:
        """Serialize the rendered history; purely local"""
        return export_messages(self.message_history, fmt, self.identity.name if self.identity else None)

    def export_to_file(self, out_dir: Union[str, Path], fmt: str = "md") -> Path:
        return write_export(self.message_history, fmt, Path(out_dir),
                            self.identity.name if self.identity else None)
