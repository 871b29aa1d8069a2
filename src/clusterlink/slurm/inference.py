"""On-demand inference server: the batch job that hosts it and an HTTP client for it."""
from __future__ import annotations

from pathlib import Path
from string import Template
from typing import Any, Dict, Optional

import requests

from clusterlink.slurm.batch import JobSpec

ALLOWED_MODELS = (
    "meta-llama/Meta-Llama-3-8B-Instruct",
    "mistralai/Mistral-7B-Instruct-v0.2",
    "google/gemma-7b-it",
    "google/gemma-3-1b-it",
)
DEFAULT_MODEL = ALLOWED_MODELS[0]

_TEMPLATE_PATH = Path(__file__).parent / "templates" / "inference_server.sh"


class InferenceError(RuntimeError):
    """Raised when the inference server cannot be reached or answers with an error."""


def inference_job(
    model_id: str = DEFAULT_MODEL,
    port: int = 5000,
    partition: str = "kamiak",
    time_limit: str = "04:00:00",
) -> JobSpec:
    """
    Build the batch job that serves model_id on port of the allocated node.

    Raises:
        ValueError: If the model is not one of ALLOWED_MODELS or the port is invalid.
    """
    if model_id not in ALLOWED_MODELS:
        raise ValueError("Invalid model selection")
    if not isinstance(port, int) or port <= 0 or port > 65535:
        raise ValueError("port must be an integer between 1 and 65535")

    body = Template(_TEMPLATE_PATH.read_text(encoding="utf-8")).safe_substitute(model_id=model_id, port=port)
    return JobSpec(
        name="rag_app",
        partition=partition,
        nodes=1,
        ntasks_per_node=1,
        cpus=4,
        memory="32G",
        gres="gpu:1",
        time=time_limit,
        output="rag_app_%j.out",
        error="rag_app_%j.err",
        script=body,
    )


class InferenceClient:
    """Talks to the inference server through the local end of the tunnel."""

    def __init__(self, base_url: str = "http://127.0.0.1:5000", timeout: int = 120) -> None:
        if not base_url or not isinstance(base_url, str):
            raise ValueError("base_url must be a non-empty string")
        if timeout <= 0:
            raise ValueError("timeout must be a positive integer")

        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})

    def health(self) -> Dict[str, Any]:
        return self._request("GET", "/health")

    def query(self, message: str, instructions: Optional[str] = None) -> str:
        """Send one prompt and return the generated text."""
        if not message or not isinstance(message, str):
            raise ValueError("message must be a non-empty string")

        payload: Dict[str, Any] = {"query": message}
        if instructions:
            payload["system"] = instructions
        data = self._request("POST", "/query", json=payload)
        if "error" in data:
            raise InferenceError(data["error"])
        return data.get("response", "")

    def reset(self) -> None:
        self._request("POST", "/reset")

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except requests.HTTPError as exc:
            raise InferenceError(self._format_http_error(exc.response)) from exc
        except requests.RequestException as exc:
            raise InferenceError(f"Request to {url} failed: {exc}") from exc

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise InferenceError("Received malformed JSON from inference server") from exc

    @staticmethod
    def _format_http_error(response: Optional[requests.Response]) -> str:
        if response is None:
            return "Inference request failed and no response object was returned"
        try:
            detail = response.json().get("error") or response.text
        except (ValueError, AttributeError):
            detail = response.text or "Unknown error"
        return f"Inference request failed with status {response.status_code}: {detail}"
