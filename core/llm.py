"""
LLM Client - Text generation for agentic evidence retrieval.

Talks to any OpenAI-compatible chat completions endpoint over requests.
The client is optional: without an endpoint the agentic layer reports
itself unavailable and retrieval falls back to hybrid search.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

log = logging.getLogger(__name__)


@dataclass
class LLMResponse:
    """Response from a generation call."""
    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0

    def parse_json(self) -> Optional[Dict]:
        """Parse content as JSON, tolerating a markdown code fence."""
        text = self.content.strip()
        if text.startswith("```"):
            lines = text.split("\n")[1:]
            if lines and lines[-1].strip() == "```":
                lines = lines[:-1]
            text = "\n".join(lines)
        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            log.warning(f"Failed to parse LLM response as JSON: {e}")
            return None


class LLMClient:
    """
    Minimal chat completions client.

    Usage:
        client = LLMClient("https://api.openai.com/v1/chat/completions", api_key="sk-...")
        response = client.generate("Which datasets matter for this site?")
        data = response.parse_json()
    """

    def __init__(
        self,
        api_url: str,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        timeout: float = 30.0,
        max_tokens: int = 500,
        temperature: float = 0.1,
    ):
        self.api_url = api_url
        self.model = model
        self.timeout = timeout
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if api_key:
            self.session.headers.update({"Authorization": f"Bearer {api_key}"})

    @property
    def is_available(self) -> bool:
        return bool(self.api_url)

    @retry(
        retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        response = self.session.post(self.api_url, json=payload, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def generate(self, prompt: str, system_prompt: Optional[str] = None) -> LLMResponse:
        """
        Send one prompt and return the first choice.

        Raises:
            requests.RequestException on transport or HTTP failure
            ValueError if the response has no choices
        """
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})

        data = self._post({
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        })

        choices = data.get("choices") or []
        if not choices:
            raise ValueError("LLM response contained no choices")

        usage = data.get("usage") or {}
        return LLMResponse(
            content=choices[0].get("message", {}).get("content", ""),
            model=data.get("model", self.model),
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
        )
