"""
Language-model assessor.

Talks to any OpenAI-compatible chat-completions endpoint (OpenRouter by
default). Requires the API key in the environment variable named by
`api_key_env_var` (OPENROUTER_API_KEY by default).

Each call is a single request; retries and fallback scoring belong to the
criterion scorer.
"""

import json
import logging
import os
import re
from typing import Optional

import requests

from ..error_handling import (
    AssessorTimeoutError,
    AssessorUnavailableError,
    MalformedResponseError,
)
from .base import Assessor, AssessmentRequest, AssessorResponse

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a strategic business analyst. Assess the work item below against one specific question.
Provide a concise rationale (2-3 sentences) and a score from 0-100 where:
- 0-30: Poor/High Risk
- 31-50: Below Average/Moderate Risk
- 51-70: Average/Acceptable
- 71-85: Good/Favorable
- 86-100: Excellent/Very Favorable

Respond in JSON only: {"score": number, "rationale": "..."}"""

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


class LLMClient:
    """Minimal chat-completions client shared by the assessor and the deliverable generator"""

    DEFAULT_API_URL = "https://openrouter.ai/api/v1/chat/completions"
    DEFAULT_MODEL = "anthropic/claude-sonnet-4"

    def __init__(
        self,
        api_url: Optional[str] = None,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        api_key_env_var: str = "OPENROUTER_API_KEY",
        session: Optional[requests.Session] = None
    ):
        self.api_url = api_url or self.DEFAULT_API_URL
        self.model = model or self.DEFAULT_MODEL
        self._api_key = api_key or os.environ.get(api_key_env_var)
        self._api_key_env_var = api_key_env_var
        self._session = session or requests.Session()

    def is_available(self) -> bool:
        return bool(self._api_key)

    def complete(self, system: str, user: str, timeout: float, json_mode: bool = False) -> str:
        """
        Send one chat completion request and return the message content

        Raises:
            AssessorUnavailableError: Missing key, transport error, or non-200 status
            AssessorTimeoutError: The request exceeded `timeout`
            MalformedResponseError: The response has no message content
        """
        if not self._api_key:
            raise AssessorUnavailableError(f"{self._api_key_env_var} is not set")

        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "X-Title": "Phasegate",
        }
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        try:
            response = self._session.post(self.api_url, headers=headers, json=payload, timeout=timeout)
        except requests.exceptions.Timeout:
            raise AssessorTimeoutError(f"Request timed out after {timeout}s")
        except requests.exceptions.RequestException as e:
            raise AssessorUnavailableError(f"Request error: {type(e).__name__}")

        if response.status_code != 200:
            raise AssessorUnavailableError(self._parse_error_response(response))

        try:
            data = response.json()
            return data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError):
            raise MalformedResponseError("Response has no message content")

    def _parse_error_response(self, response: requests.Response) -> str:
        """Parse error message from API response."""
        error_msg = f"API error {response.status_code}"
        try:
            error_data = response.json()
        except ValueError:
            return f"{error_msg}: {response.text[:200]}"

        if isinstance(error_data, dict) and "error" in error_data:
            detail = error_data["error"]
            if isinstance(detail, dict):
                return detail.get("message", error_msg)
            return str(detail)
        return error_msg


def parse_score_response(content: str) -> AssessorResponse:
    """
    Extract {"score", "rationale"} from model output

    Tolerates prose or code fences around the JSON object.

    Raises:
        MalformedResponseError: No JSON object or no numeric score
    """
    match = _JSON_OBJECT.search(content or "")
    if not match:
        raise MalformedResponseError("No JSON object in assessor response")

    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise MalformedResponseError(f"Invalid JSON in assessor response: {e}")

    score = data.get("score")
    if isinstance(score, bool) or not isinstance(score, (int, float)):
        raise MalformedResponseError(f"Score is not a number: {score!r}")

    rationale = data.get("rationale") or data.get("answer") or ""
    return AssessorResponse(score=float(score), rationale=str(rationale))


class LLMAssessor(Assessor):
    """Scores criteria by asking a language model"""

    def __init__(self, client: Optional[LLMClient] = None, **client_kwargs):
        self.client = client or LLMClient(**client_kwargs)

    def name(self) -> str:
        return "llm"

    def build_prompt(self, request: AssessmentRequest) -> str:
        lines = [
            f"## Phase {request.phase}: {request.phase_name}",
            "",
            "## Work item",
        ]
        for key, value in request.payload.items():
            lines.append(f"- {key}: {value}")
        lines.extend([
            "",
            "## Question",
            request.criterion_prompt,
        ])
        return "\n".join(lines)

    def assess(self, request: AssessmentRequest) -> AssessorResponse:
        content = self.client.complete(
            SYSTEM_PROMPT,
            self.build_prompt(request),
            timeout=request.timeout_seconds,
            json_mode=True,
        )
        response = parse_score_response(content)
        response.metadata["model"] = self.client.model
        logger.debug("LLM scored %s/%s: %.1f",
                     request.work_item_id, request.criterion_id, response.score)
        return response
