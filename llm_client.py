"""
LLM client module for Local Ollama Chat
Handles API calls to the Ollama completion service
"""
from typing import Any, Dict, Iterator, List, Optional

import requests
from loguru import logger

from config import OLLAMA_HOST, OLLAMA_TIMEOUT
from errors import UpstreamError
from models import GenerationOptions


class OllamaClient:
    """Thin client over Ollama's HTTP API.

    Every failure (connection, non-2xx, malformed body) surfaces as an
    UpstreamError. Nothing is retried.
    """

    def __init__(self, base_url: str = OLLAMA_HOST, timeout: float = OLLAMA_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _body(self, model: str, prompt: str, images: Optional[List[str]],
              options: Optional[GenerationOptions], stream: bool) -> Dict[str, Any]:
        body: Dict[str, Any] = {"model": model, "prompt": prompt, "stream": stream}
        if images:
            body["images"] = list(images)
        if options is not None and options.to_dict():
            body["options"] = options.to_dict()
        return body

    def generate(self, model: str, prompt: str, images: Optional[List[str]] = None,
                 options: Optional[GenerationOptions] = None) -> Dict[str, Any]:
        """Call Ollama generate API (non-streaming) and return the response body"""
        url = f"{self.base_url}/api/generate"
        payload = self._body(model, prompt, images, options, stream=False)
        try:
            r = self.session.post(url, json=payload, timeout=self.timeout)
            r.raise_for_status()
            data = r.json()
        except requests.HTTPError as e:
            detail = e.response.text[:200] if e.response is not None else ""
            logger.error(f"Ollama returned an error for model {model}: {e} {detail}")
            raise UpstreamError(f"Completion service error: {e}") from e
        except ValueError as e:
            raise UpstreamError("Completion service returned invalid JSON") from e
        except requests.RequestException as e:
            logger.error(f"Ollama unreachable at {self.base_url}: {e}")
            raise UpstreamError(f"Completion service unreachable: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("response"), str):
            raise UpstreamError("No response from model")
        if not data["response"].strip():
            raise UpstreamError("No response from model")
        if data.get("error"):
            raise UpstreamError(f"Completion service error: {data['error']}")
        return data

    def generate_stream(self, model: str, prompt: str, images: Optional[List[str]] = None,
                        options: Optional[GenerationOptions] = None) -> Iterator[bytes]:
        """Open a streaming generate call and return an iterator of raw chunks.

        The connection is established before returning so that an unreachable
        service is reported as an UpstreamError instead of a broken stream.
        """
        url = f"{self.base_url}/api/generate"
        payload = self._body(model, prompt, images, options, stream=True)
        try:
            r = self.session.post(url, json=payload, timeout=self.timeout, stream=True)
            r.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Error streaming response: {e}")
            raise UpstreamError(f"Failed to stream response: {e}") from e

        def chunks() -> Iterator[bytes]:
            try:
                for chunk in r.iter_content(chunk_size=None):
                    if chunk:
                        yield chunk
            except requests.RequestException as e:
                logger.error(f"Stream error: {e}")
            finally:
                r.close()

        return chunks()

    def list_models(self) -> Dict[str, Any]:
        """Get the model list exactly as Ollama reports it"""
        try:
            r = self.session.get(f"{self.base_url}/api/tags", timeout=10)
            r.raise_for_status()
            return r.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Error fetching models: {e}")
            raise UpstreamError("Failed to fetch models") from e

    def ping(self) -> None:
        self.list_models()
