"""
Relevance classifier backed by an OpenAI-compatible chat-completions API.
"""

import json
import logging
from typing import Any, Dict, Optional

from ..errors import ClassifierError
from ..infra.http import HttpClient
from ..interfaces import Classifier
from ..models import Classification

logger = logging.getLogger(__name__)

DEFAULT_TOPIC = "medical devices under regulatory oversight"

SYSTEM_PROMPT = """You are a regulatory compliance analyst.
Decide whether the record below is related to: {topic}.

Reply with a single JSON object and nothing else:
{{"isRelated": true or false, "confidence": number between 0 and 1, "category": "short label", "reason": "one sentence"}}
"""


def parse_verdict(content: str) -> Classification:
    """Parse the model's JSON verdict, tolerating markdown code fences."""
    content = (content or "").strip()
    if content.startswith("```json"):
        content = content[7:]
    if content.startswith("```"):
        content = content[3:]
    if content.endswith("```"):
        content = content[:-3]
    content = content.strip()

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ClassifierError(f"Classifier returned invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ClassifierError("Classifier returned a non-object verdict")

    related = data.get("isRelated", data.get("is_related"))
    if not isinstance(related, bool):
        raise ClassifierError("Classifier verdict is missing 'isRelated'")

    try:
        confidence = float(data.get("confidence", 0.0))
    except (TypeError, ValueError):
        confidence = 0.0
    confidence = min(max(confidence, 0.0), 1.0)

    return Classification(
        is_related=related,
        confidence=confidence,
        category=str(data.get("category") or ""),
        reason=str(data.get("reason") or ""),
    )


class LLMClassifier(Classifier):
    """
    Classifies records with a chat-completions model.

    Safe for concurrent use; every call is an independent HTTP request on a
    shared session.
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        model: str,
        topic: str = DEFAULT_TOPIC,
        temperature: float = 0.1,
        max_tokens: int = 256,
        http: Optional[HttpClient] = None,
    ):
        self.api_key = api_key or ""
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.topic = topic
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._http = http or HttpClient(bearer_token=self.api_key or None)

        if not self.api_key or not self.model:
            logger.warning("Classifier API not configured. AI judgments will fail.")

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.model)

    def _payload(self, text: str) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT.format(topic=self.topic)},
                {"role": "user", "content": text},
            ],
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }

    async def classify(self, text: str) -> Classification:
        if not self.configured:
            raise ClassifierError("Classifier API not configured")

        result = await self._http.post_json(f"{self.base_url}/chat/completions", self._payload(text))

        try:
            content = result["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise ClassifierError("Unexpected chat-completions response shape") from None
        if not content:
            raise ClassifierError("Empty response from classifier")

        return parse_verdict(content)

    async def close(self) -> None:
        await self._http.close()
