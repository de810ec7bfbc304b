"""
Image capability registry for Local Ollama Chat

Ollama has no capability query in its tag listing, so image support is
guessed from the model name. Patterns are matched case-insensitively as
substrings and the longest match wins, which lets an explicit
`"llava-text": false` entry override the broader `"llava"` pattern.
"""
import json
from pathlib import Path
from typing import Dict, Iterable, Optional, Union

from config import VISION_MODELS, VISION_MODELS_FILE


class ImageCapabilityRegistry:

    def __init__(self, entries: Optional[Dict[str, bool]] = None):
        self._entries: Dict[str, bool] = {}
        for pattern, supported in (entries or {}).items():
            self.register(pattern, supported)

    @classmethod
    def from_names(cls, names: Iterable[str]) -> "ImageCapabilityRegistry":
        return cls({name: True for name in names})

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "ImageCapabilityRegistry":
        """Load a JSON object mapping model name patterns to booleans"""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a JSON object of pattern -> bool")
        return cls({str(k): bool(v) for k, v in data.items()})

    @classmethod
    def default(cls) -> "ImageCapabilityRegistry":
        if VISION_MODELS_FILE:
            return cls.from_file(VISION_MODELS_FILE)
        return cls.from_names(VISION_MODELS)

    def register(self, pattern: str, supports_images: bool = True) -> None:
        pattern = pattern.strip().lower()
        if pattern:
            self._entries[pattern] = supports_images

    def supports_images(self, model: Optional[str]) -> bool:
        if not model:
            return False
        name = model.lower()
        matches = [p for p in self._entries if p in name]
        if not matches:
            return False
        return self._entries[max(matches, key=len)]

    def to_dict(self) -> Dict[str, bool]:
        return dict(self._entries)
