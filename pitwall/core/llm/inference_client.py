# ============================================================================
# pitwall/core/llm/inference_client.py
# ============================================================================
#
# Inference client for telemetry insights.
#
# The orchestrator only depends on the InferenceClient protocol:
#
#     await client.produce_insights(request) -> dict   (raw, unvalidated)
#
# and treats every InferenceError as "the call failed outright". The
# OpenAI-compatible implementation below talks to any endpoint that speaks
# the chat completions API (OpenAI, Ollama, LM Studio, OpenWebUI, ...).
#
# ============================================================================

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import httpx
from openai import OpenAI

from pitwall.config import settings

logger = logging.getLogger("pitwall.inference")


class InferenceError(Exception):
    """Raised when the inference collaborator fails or returns unusable output."""


@dataclass
class InsightRequest:
    """Everything the model gets to see about one upload."""
    upload: Dict[str, Any]
    file_text: str
    preview: Dict[str, Any] = field(default_factory=dict)


class InferenceClient(Protocol):
    model_name: str

    async def produce_insights(self, request: InsightRequest) -> Dict[str, Any]:
        ...


SYSTEM_PROMPT = (
    "You are a professional racing engineer creating actionable telemetry "
    "insights for a single session. You answer with JSON only."
)

RESPONSE_SCHEMA = """{
  "summary": string,
  "recommendations": [ { "title": string, "detail": string }, ... ],
  "sections": {
    "pace": string,
    "braking": string,
    "throttle": string,
    "corners": string,
    "sessionPlan": string
  },
  "segments": [
    { "name": string, "issue": string, "improvement": string, "metric"?: string },
    ...
  ]
}"""

GUIDANCE = [
    "- If track or car details are missing in metadata, give general high-performance driving advice based on the telemetry patterns (g-forces, inputs).",
    "- Always cite specific evidence: distances from corner, speeds (mph with kph in parentheses), gears, RPM, brake %, throttle %, lateral/longitudinal G. Tie observations to corners, straights or distance markers rather than raw time ranges.",
    '- Each sections value must be multiline: "What\'s working:" on its own line with 1-2 bullets, then "Needs improvement:" on its own line with 2-3 bullets. Bullets start with "- " on separate lines.',
    "- Provide at least six segment entries naming specific corners or sequences; use real corner names when the track is identifiable, otherwise turn numbers.",
    "- Every segment needs a non-empty metric summarising the key signal (speed, RPM, brake %, throttle %, gear, G, distance marker).",
    '- Every segment.improvement holds 3-5 bullets starting with "- " describing concrete corrective actions that reference the numbers you saw.',
    "- Keep praise (sections, recommendations) separate from fixes (segments) and avoid repeating phrasing.",
]


def build_telemetry_excerpt(
    file_text: str,
    max_lines: Optional[int] = None,
    char_limit: Optional[int] = None,
) -> str:
    """
    Trim a telemetry export down to what is worth sending to the model.

    Drops NUL bytes and blank lines, skips any preamble before the first
    header-looking line (contains "time" and "speed" or "distance"), then caps
    the line count and total characters.
    """
    max_lines = max_lines or settings.telemetry_max_lines
    char_limit = char_limit or settings.telemetry_excerpt_limit

    lines = [line.replace("\0", "").strip() for line in (file_text or "").splitlines()]
    lines = [line for line in lines if line]

    start = 0
    for index, line in enumerate(lines):
        lower = line.lower()
        if "time" in lower and ("speed" in lower or "distance" in lower):
            start = index
            break

    return "\n".join(lines[start:start + max_lines])[:char_limit]


def extract_json_payload(text: str) -> Dict[str, Any]:
    """
    Pull the outermost JSON object out of a model response.

    Raises:
        InferenceError: If no object can be located or it does not parse
    """
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise InferenceError("Unable to locate JSON payload in model response")
    try:
        payload = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        raise InferenceError(f"Model response is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise InferenceError("Model response JSON is not an object")
    return payload


def build_prompt(request: InsightRequest, excerpt: str) -> str:
    return "\n".join([
        "Return ONLY valid JSON matching exactly this schema:",
        RESPONSE_SCHEMA,
        "Do not include any extra text before or after the JSON.",
        "Metadata:",
        json.dumps(request.upload, default=str),
        "Preview (first rows of the file):",
        request.preview.get("rawSample") or "No preview rows provided.",
        "Normalized telemetry rows (start after headers):",
        excerpt or "Raw CSV was empty.",
        "Guidance:",
        *GUIDANCE,
    ])


class OpenAIInferenceClient:
    """
    Inference client for OpenAI-compatible chat completion endpoints.

    The sync OpenAI client runs in a worker thread so the event loop stays
    free; the orchestrator bounds the whole call with its own deadline.

    Attributes:
        model_name: Model identifier recorded on every report
        _client: OpenAI client, or None when no API key is configured
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        verify_ssl: Optional[bool] = None,
        max_retries: Optional[int] = None,
    ):
        self.model_name = model or settings.openai_model
        self._client: Optional[OpenAI] = None
        self._initialize_client(
            api_key=api_key if api_key is not None else settings.openai_api_key,
            base_url=base_url or settings.openai_base_url,
            timeout=timeout or settings.openai_timeout,
            verify_ssl=settings.openai_verify_ssl if verify_ssl is None else verify_ssl,
            max_retries=settings.openai_max_retries if max_retries is None else max_retries,
        )

    def _initialize_client(
        self,
        api_key: Optional[str],
        base_url: str,
        timeout: float,
        verify_ssl: bool,
        max_retries: int,
    ) -> None:
        if not api_key:
            logger.warning("No LLM API key configured; analyses will be recorded as failed")
            return

        try:
            http_client = httpx.Client(verify=verify_ssl, timeout=timeout)
            self._client = OpenAI(
                api_key=api_key,
                base_url=base_url,
                http_client=http_client,
                max_retries=max_retries,
            )
            logger.info(f"LLM client initialized (base_url={base_url}, model={self.model_name})")
        except Exception as e:
            logger.error(f"Failed to initialize LLM client: {e}")
            self._client = None

    @property
    def is_available(self) -> bool:
        return self._client is not None

    async def produce_insights(self, request: InsightRequest) -> Dict[str, Any]:
        """
        Ask the model for a structured analysis of one telemetry file.

        Args:
            request: Upload metadata, file text and preview

        Returns:
            Parsed JSON object as returned by the model (not yet validated)

        Raises:
            InferenceError: On transport errors, empty or non-JSON output, or
                a payload that carries no usable field at all
        """
        if not self._client:
            raise InferenceError("LLM client not available")

        prompt = build_prompt(request, build_telemetry_excerpt(request.file_text))
        client = self._client

        def _sync_call() -> str:
            resp = client.chat.completions.create(
                model=self.model_name,
                temperature=0.3,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": prompt},
                ],
            )
            return (resp.choices[0].message.content or "").strip()

        try:
            content = await asyncio.to_thread(_sync_call)
        except Exception as e:
            logger.error(f"LLM request failed for upload {request.upload.get('id')}: {e}")
            raise InferenceError(str(e)) from e

        if not content:
            raise InferenceError("Model response was empty")

        payload = extract_json_payload(content)
        if not any(payload.get(key) for key in ("summary", "recommendations", "sections", "segments")):
            raise InferenceError("Model response contained no usable fields")
        return payload

    async def test_connection(self) -> Dict[str, Any]:
        """Lightweight round trip to the model API, reported by the health endpoint."""
        if not self._client:
            return {"connected": False, "model": self.model_name, "error": "No API key configured"}

        client = self._client

        def _sync_test():
            return client.models.list()

        try:
            await asyncio.to_thread(_sync_test)
            return {"connected": True, "model": self.model_name}
        except Exception as e:
            return {"connected": False, "model": self.model_name, "error": str(e)}


# Global inference client instance
inference_client = OpenAIInferenceClient()
