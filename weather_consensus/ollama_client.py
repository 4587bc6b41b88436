"""Thin client for calling the local Ollama chat API."""

import time
from typing import Optional

import requests

from .config import Settings, settings as default_settings
from utils.logging_utils import get_tagged_logger

logger = get_tagged_logger(__name__, tag="ollama_client")


class OllamaError(RuntimeError):
    """Ollama was unreachable or answered with something unusable."""


class OllamaClient:
    """Minimal client for the Ollama chat API."""
    def __init__(
        self,
        config: Optional[Settings] = None,
        *,
        max_retries: int = 1,
        retry_backoff_sec: float = 0.5,
        timeout: float = 60,
    ):
        config = config or default_settings
        self.url = f"{config.ollama_base_url.rstrip('/')}/api/chat"
        self.model = config.ollama_model
        self.options = dict(config.ollama_options)
        self.max_retries = max_retries
        self.retry_backoff_sec = retry_backoff_sec
        self.timeout = timeout

    def chat(self, messages, *, options: Optional[dict] = None) -> str:
        """Send a chat request and return the assistant content."""
        payload = {
            "model": self.model,
            "messages": messages,
            "stream": False,
            "options": {**self.options, **(options or {})},
        }

        for attempt in range(self.max_retries + 1):
            try:
                logger.debug("Ollama POST", extra={"model": self.model, "attempt": attempt + 1})
                r = requests.post(self.url, json=payload, timeout=self.timeout)
            except requests.exceptions.RequestException as exc:
                logger.warning("Ollama POST failed", extra={"attempt": attempt + 1, "error": str(exc)})
                if attempt < self.max_retries:
                    time.sleep(self.retry_backoff_sec)
                    continue
                raise OllamaError(f"Ollama POST failed after retries: {exc}") from exc

            if r.status_code == 200:
                break

            error_text = (r.text or "")[:200]
            if "EOF" in error_text and attempt < self.max_retries:
                logger.warning("Ollama returned EOF; retrying", extra={"attempt": attempt + 1})
                time.sleep(self.retry_backoff_sec)
                continue
            raise OllamaError(
                f"Ollama POST failed with status {r.status_code}: {error_text} "
                f"(model={self.model}, url={self.url})"
            )

        try:
            data = r.json()
        except ValueError as exc:
            raise OllamaError(f"Ollama returned non-JSON response: {(r.text or '')[:200]}") from exc
        content = (data.get("message") or {}).get("content", "") if isinstance(data, dict) else ""
        if not isinstance(content, str):
            content = str(content)
        return content.strip()


def _installed_model_names(tags_json: dict) -> set[str]:
    """Extract model names (including base names) from tags JSON."""
    names: set[str] = set()
    for m in tags_json.get("models", []) or []:
        name = m.get("name")
        if not name:
            continue
        names.add(name)
        names.add(name.split(":")[0])
    return names


def get_ollama_status(config: Optional[Settings] = None, *, timeout: float = 3) -> dict:
    """Non-fatal check of Ollama: reachability and whether the model is installed."""
    config = config or default_settings
    base_url = config.ollama_base_url.rstrip("/")
    status = {
        "ok": False,
        "reachable": False,
        "base_url": base_url,
        "model": config.ollama_model,
        "model_installed": False,
        "error": None,
    }
    try:
        resp = requests.get(f"{base_url}/api/tags", timeout=timeout)
        resp.raise_for_status()
        tags = resp.json()
    except (requests.exceptions.RequestException, ValueError) as exc:
        status["error"] = str(exc)
        return status

    status["reachable"] = True
    status["model_installed"] = config.ollama_model in _installed_model_names(tags if isinstance(tags, dict) else {})
    status["ok"] = status["model_installed"]
    return status
