import json
import logging
import re
from typing import List, Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from pydantic import ValidationError

from assessment_models import AssessmentOutcome, AssessmentResult, CheckpointBrief

logger = logging.getLogger(__name__)


_FENCE = re.compile(r"^\s*```(?:json)?\s*(.*?)\s*```\s*$", re.DOTALL)


def _strip_code_fences(raw: str) -> str:
    """Models sometimes wrap JSON in ```json ... ``` even when asked not to."""
    match = _FENCE.match(raw)
    return match.group(1) if match else raw.strip()


SYSTEM_PROMPT = """You are an objective, neutral progress assessment assistant.

Given a user's daily progress commit and the list of open checkpoints, estimate each
checkpoint's completion percentage (0-100) after this commit.

Rules:
1. Be objective: base the estimate on the work actually described, neither inflating nor
   belittling it.
2. Progress is cumulative: a checkpoint that already has progress keeps it; estimate the new
   total, never less than the current progress.
3. Always cite concrete evidence from the commit in `reasoning`.
4. When unsure, be conservative.
5. If the commit does not touch a checkpoint, return its current progress unchanged.
6. Only use checkpoint ids from the list you were given.

Output ONLY valid JSON of the form:
{"checkpoints": [{"checkpointId": <int>, "newProgress": <int 0-100>, "reasoning": "<why>", "confidence": <0-1, optional>}]}"""


class ProgressAssessor:
    """
    Client for the external assessment model. Never raises for service
    problems: every call returns an AssessmentOutcome tagged ok, unavailable
    (unreachable, timed out, API error, not configured) or malformed
    (answer is not a valid assessment).
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gemini-2.5-flash",
        timeout_seconds: int = 30,
    ):
        self.api_key = api_key
        self.model = model
        self.timeout_seconds = timeout_seconds
        self._client_instance: Optional[genai.Client] = None

    def _client(self) -> genai.Client:
        if self._client_instance is None:
            self._client_instance = genai.Client(
                api_key=self.api_key,
                http_options=types.HttpOptions(timeout=self.timeout_seconds * 1000),
            )
        return self._client_instance

    def build_prompt(self, commit_content: str, checkpoints: List[CheckpointBrief]) -> str:
        briefs = [cp.model_dump(by_alias=True) for cp in checkpoints]
        return f"""
## Commit
{commit_content}

## Open checkpoints
{json.dumps(briefs, indent=2, ensure_ascii=False)}

Assess every checkpoint above now."""

    def assess(self, commit_content: str, checkpoints: List[CheckpointBrief]) -> AssessmentOutcome:
        try:
            client = self._client()
        except ValueError as e:
            # genai.Client refuses to start without credentials
            logger.error(f"Assessment service not configured: {e}")
            return AssessmentOutcome.unavailable(f"assessment service not configured: {e}", self.model)

        try:
            response = client.models.generate_content(
                model=self.model,
                contents=self.build_prompt(commit_content, checkpoints),
                config=types.GenerateContentConfig(
                    system_instruction=SYSTEM_PROMPT,
                    response_mime_type="application/json",
                    response_schema=AssessmentResult,
                    temperature=0.1,
                ),
            )
        except httpx.TimeoutException as e:
            logger.warning(f"Assessment service timed out after {self.timeout_seconds}s: {e}")
            return AssessmentOutcome.unavailable(f"timed out after {self.timeout_seconds}s", self.model)
        except (httpx.HTTPError, genai_errors.APIError) as e:
            logger.warning(f"Assessment service call failed: {e}")
            return AssessmentOutcome.unavailable(str(e), self.model)

        return self.parse(response.text, self.model)

    @staticmethod
    def parse(raw_text: Optional[str], model_version: Optional[str] = None) -> AssessmentOutcome:
        """Validate raw model text into an AssessmentResult, or tag it malformed."""
        if not raw_text or not raw_text.strip():
            return AssessmentOutcome.malformed("empty response", model_version)

        try:
            result = AssessmentResult.model_validate_json(_strip_code_fences(raw_text))
        except ValidationError as e:
            logger.warning(f"Assessment response rejected: {e.error_count()} validation error(s)")
            logger.debug(f"Raw assessment text (first 500 chars): {raw_text[:500]}")
            return AssessmentOutcome.malformed(
                f"response does not match the assessment schema: {e.errors(include_url=False)[:3]}",
                model_version,
            )

        return AssessmentOutcome.success(result, model_version)
