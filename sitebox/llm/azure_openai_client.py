"""
Azure OpenAI client with robust JSON parsing and retry logic, and the
generative repairer built on it.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from openai import AzureOpenAI
from pydantic import ValidationError

from sitebox.config import Config, get_config
from sitebox.errors import ConfigError
from sitebox.schemas import FixDirective, FixResponse


logger = logging.getLogger(__name__)


REPAIR_SYSTEM_PROMPT = """You fix build errors in a Vite + React + Tailwind CSS project.

You receive the build error and, when known, the path and content of the offending file.
Return JSON of the form:
{"fixes": [{"action": "create" | "modify", "file": "<path relative to the project root>", "content": "<complete file content>"}],
 "explanation": "<one sentence>"}

Rules:
- Every fix replaces the whole file; never return partial content or diffs.
- Use "create" for files that do not exist yet and "modify" for existing ones.
- Only touch files under src/ unless the error is in a config file.
- Do not add new npm dependencies."""

# Cap on file content sent to the model
MAX_CONTEXT_CHARS = 12000


class JSONParseError(Exception):
    """Raised when JSON parsing fails even after repair attempts."""
    pass


class AzureOpenAIClient:
    """Client for Azure OpenAI with JSON output enforcement and retry logic."""

    def __init__(self, config: Optional[Config] = None):
        config = config or get_config()
        if not config.generative_repair_enabled:
            raise ConfigError(
                "Azure OpenAI is not configured. Set AZURE_OPENAI_API_KEY, "
                "AZURE_OPENAI_ENDPOINT and AZURE_OPENAI_DEPLOYMENT_NAME."
            )

        self.client = AzureOpenAI(
            api_key=config.azure_openai_api_key,
            api_version=config.azure_openai_api_version,
            azure_endpoint=config.azure_openai_endpoint,
        )
        self.deployment = config.azure_openai_deployment_name

    def invoke_json(
        self,
        system_prompt: str,
        user_prompt: str,
        max_retries: int = 2,
    ) -> Dict[str, Any]:
        """
        Invoke the model and parse the response as JSON with retry logic.

        Args:
            system_prompt: Instructions for the assistant
            user_prompt: User's request
            max_retries: Number of retries on JSON parse failure

        Returns:
            Parsed JSON as a dictionary

        Raises:
            JSONParseError: If JSON parsing fails after all retry attempts
        """
        last_error = None

        for attempt in range(max_retries + 1):
            if attempt == 0:
                reminder = "IMPORTANT: Respond with valid JSON only. No markdown, no code fences, no additional text."
            else:
                reminder = (
                    "CRITICAL: Your previous response was invalid JSON. You MUST return ONLY valid JSON.\n"
                    "Do NOT include any text before or after the JSON.\n"
                    "Do NOT wrap in markdown code fences."
                )

            response = self.client.chat.completions.create(
                model=self.deployment,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": f"{user_prompt}\n\n{reminder}"},
                ],
                temperature=0.2,
                max_tokens=4096,
            )

            content = response.choices[0].message.content

            if not content:
                last_error = JSONParseError("Model returned empty content")
                continue

            try:
                return parse_json_robust(content)
            except JSONParseError as e:
                logger.warning("Attempt %d returned invalid JSON: %s", attempt + 1, str(e)[:200])
                last_error = e
                continue

        # All retries exhausted
        raise last_error or JSONParseError("Failed to get valid JSON after retries")


# =============================================================================
# JSON REPAIR
# =============================================================================

def parse_json_robust(text: str) -> Dict[str, Any]:
    """
    Parse JSON with multiple repair strategies.

    Raises:
        JSONParseError: If all parsing attempts fail
    """
    # Strategy 1: Direct parse
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    # Strategy 2: Extract JSON from markdown code blocks
    repaired = _extract_json_block(text)
    try:
        return json.loads(repaired)
    except json.JSONDecodeError:
        pass

    # Strategy 3: Find JSON object boundaries
    repaired = _extract_json_boundaries(repaired)
    try:
        return json.loads(repaired)
    except json.JSONDecodeError:
        pass

    # Strategy 4: Repair common issues
    repaired = _repair_json(repaired)
    try:
        return json.loads(repaired)
    except json.JSONDecodeError as e:
        raise JSONParseError(
            f"Failed to parse JSON from model response. Error: {e}\n"
            f"Response preview: {text[:500]}..."
        )


def _extract_json_block(text: str) -> str:
    """Extract JSON from markdown code blocks."""
    matches = re.findall(r"```(?:json)?\s*\n?(.*?)\n?```", text, re.DOTALL)
    if matches:
        return matches[0].strip()
    return text


def _extract_json_boundaries(text: str) -> str:
    """Extract content between first { and last }."""
    first_brace = text.find("{")
    last_brace = text.rfind("}")

    if first_brace != -1 and last_brace > first_brace:
        return text[first_brace:last_brace + 1]

    return text


def _repair_json(text: str) -> str:
    """Apply common JSON repairs."""
    # Smart quotes to plain quotes
    repaired = text.replace("“", '"').replace("”", '"')
    repaired = repaired.replace("‘", "'").replace("’", "'")

    # Remove trailing commas before } or ]
    repaired = re.sub(r",\s*([}\]])", r"\1", repaired)

    # Remove control characters except \n, \r, \t
    repaired = re.sub(r"[\x00-\x08\x0b\x0c\x0e-\x1f]", "", repaired)

    return repaired


# =============================================================================
# GENERATIVE REPAIRER
# =============================================================================

def build_repair_prompt(error_text: str, file_path: Optional[str], content: str) -> str:
    parts = ["## Build Error", error_text.strip()[:4000] or "(no output)", ""]
    if file_path:
        parts.extend([
            "## Offending File",
            f"Path: {file_path}",
            "",
            "```",
            content[:MAX_CONTEXT_CHARS],
            "```",
        ])
    else:
        parts.append("The offending file is unknown; infer it from the error.")
    return "\n".join(parts)


class AzureGenerativeRepairer:
    """Asks the model for whole-file fixes to an error no rule could repair."""

    def __init__(self, client: AzureOpenAIClient):
        self.client = client

    def propose_fixes(self, error_text: str, file_path: Optional[str], content: str) -> List[FixDirective]:
        """
        Raises:
            JSONParseError: The model never returned parseable JSON
            ValueError: The JSON did not match the expected shape
        """
        response = self.client.invoke_json(REPAIR_SYSTEM_PROMPT, build_repair_prompt(error_text, file_path, content))
        try:
            parsed = FixResponse.model_validate(response)
        except ValidationError as e:
            raise ValueError(f"Malformed repair response: {e}") from e

        if parsed.explanation:
            logger.info("Generative repair: %s", parsed.explanation)
        return parsed.fixes


def create_repairer(config: Config) -> Optional[AzureGenerativeRepairer]:
    """Generative repairer when Azure OpenAI is configured, else None."""
    if not config.generative_repair_enabled:
        logger.info("Azure OpenAI not configured; generative repair disabled")
        return None
    return AzureGenerativeRepairer(AzureOpenAIClient(config))
