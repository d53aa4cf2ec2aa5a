"""
Recognition gateway client using direct REST API calls.
Handles API calls with retries and structured output.
"""
import base64
import json
import threading
from typing import Any, Dict, List, Optional

import requests
import urllib3
from tenacity import (
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    stop_when_event_set,
    wait_exponential,
)

from core.config import Settings, get_settings
from core.exceptions import ConfigurationError, ExtractionError
from core.logger import setup_logger

logger = setup_logger(__name__)

RETRYABLE_STATUS_CODES = {408, 429}


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ExtractionError) and exc.retryable


def image_data_url(content: bytes, mime_type: str = "image/png") -> str:
    """Encode image bytes as a data URL for the vision input."""
    b64 = base64.b64encode(content).decode("utf-8")
    return f"data:{mime_type};base64,{b64}"


def strip_code_fences(content: str) -> str:
    """Strip markdown code blocks if present."""
    content_stripped = content.strip()
    if content_stripped.startswith("```"):
        lines = content_stripped.split("\n")
        if lines[0].startswith("```"):
            lines = lines[1:]
        if lines and lines[-1].strip() == "```":
            lines = lines[:-1]
        content_stripped = "\n".join(lines).strip()
    return content_stripped


def extract_message_content(completion_data: Dict[str, Any]) -> Optional[str]:
    """
    Find the assistant text in a completion payload.
    Supports both "choices" and "output" response shapes.
    """
    content = None

    if "choices" in completion_data:
        try:
            content = completion_data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            pass

    if not content and "output" in completion_data:
        for item in completion_data["output"] or []:
            if item.get("type") == "message" and item.get("role") == "assistant":
                for content_item in item.get("content", []):
                    if content_item.get("type") == "output_text":
                        content = content_item.get("text")
                        break
            if content:
                break

    return content


class RecognitionClient:
    """Wrapper for the recognition gateway REST API with retry logic."""

    def __init__(self, settings: Optional[Settings] = None):
        """Initialize REST API client."""
        self.settings = settings or get_settings()

        if not self.settings.openai_api_key:
            raise ConfigurationError(
                "OPENAI_API_KEY environment variable not set",
                details={"required_key": "OPENAI_API_KEY"}
            )

        self.gateway_url = self.settings.openai_gateway_url
        self.api_key = self.settings.openai_api_key
        self.model = self.settings.openai_model
        self.timeout = self.settings.extraction_timeout
        self.verify_ssl = self.settings.verify_ssl
        self.max_attempts = self.settings.extraction_max_attempts

        if not self.verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        logger.info(f"Initialized recognition client with model: {self.model}, gateway: {self.gateway_url}")

    def _retrying(self, abandoned: Optional[threading.Event] = None) -> Retrying:
        stop = stop_after_attempt(self.max_attempts)
        if abandoned is not None:
            stop = stop | stop_when_event_set(abandoned)
        return Retrying(
            stop=stop,
            wait=wait_exponential(
                multiplier=1,
                min=self.settings.extraction_backoff_min,
                max=self.settings.extraction_backoff_max,
            ),
            retry=retry_if_exception(_is_retryable),
            before_sleep=lambda state: logger.warning(
                f"Gateway attempt {state.attempt_number}/{self.max_attempts} failed, retrying: "
                f"{state.outcome.exception()}"
            ),
            reraise=True,
        )

    def call_with_structured_output(
        self,
        system_prompt: str,
        user_content: List[Dict[str, Any]],
        response_schema: Dict[str, Any],
        temperature: float = 0.0,
        abandoned: Optional[threading.Event] = None,
    ) -> Dict[str, Any]:
        """
        Call the gateway chat completions API with structured output.
        Transient failures are retried with exponential backoff.

        Args:
            system_prompt: System instruction
            user_content: User message content parts (text and image_url)
            response_schema: JSON schema for structured output
            temperature: Model temperature (0.0-1.0)
            abandoned: Once set, no further attempts are made

        Returns:
            Parsed JSON response (untyped)

        Raises:
            ExtractionError: If the call fails; retryable is True when the
                failure was transient and all attempts are used up
        """
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_content},
            ],
            "response_format": {
                "type": "json_schema",
                "json_schema": {
                    "name": "cheque_extraction",
                    "strict": False,
                    "schema": response_schema
                }
            },
            "max_tokens": 800,
        }

        # GPT-5 models don't support temperature
        if "gpt-5" not in self.model.lower():
            payload["temperature"] = temperature

        return self._retrying(abandoned)(self._post_once, payload)

    def _post_once(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}"
        }

        try:
            response = requests.post(
                self.gateway_url,
                headers=headers,
                data=json.dumps(payload),
                verify=self.verify_ssl,
                timeout=self.timeout
            )
            response.raise_for_status()

        except requests.exceptions.Timeout as e:
            logger.error(f"Gateway request timeout after {self.timeout}s: {e}")
            raise ExtractionError(
                f"Gateway request timeout after {self.timeout}s",
                details={"gateway_url": self.gateway_url, "timeout": self.timeout},
                retryable=True,
            )

        except requests.exceptions.HTTPError as e:
            status_code = getattr(e.response, "status_code", None)
            retryable = status_code is not None and (status_code >= 500 or status_code in RETRYABLE_STATUS_CODES)
            logger.error(f"Gateway HTTP error ({status_code}): {e}")
            raise ExtractionError(
                f"Gateway returned HTTP error: {status_code}",
                details={"gateway_url": self.gateway_url, "status_code": status_code},
                retryable=retryable,
            )

        except requests.exceptions.RequestException as e:
            logger.error(f"Gateway request failed: {e}")
            raise ExtractionError(
                f"Failed to connect to gateway: {str(e)}",
                details={"gateway_url": self.gateway_url, "error": str(e)},
                retryable=True,
            )

        return self._parse_response(response.text)

    def _parse_response(self, response_text: str) -> Dict[str, Any]:
        """
        Parse a gateway body. NDJSON bodies are accepted: the last line that
        carries a completion is used.

        Raises:
            ExtractionError: Non-retryable, when the body is malformed
        """
        try:
            lines = [line for line in response_text.strip().split("\n") if line.strip()]
            if not lines:
                raise ValueError("Empty response from gateway")

            completion_data = None
            content = None
            for line in reversed(lines):
                completion_data = json.loads(line)
                content = extract_message_content(completion_data)
                if content:
                    break

            if not content:
                logger.error(f"Response keys: {list(completion_data.keys())}")
                raise ValueError(
                    "Unexpected response structure: could not find content in 'choices' or 'output'"
                )

            result = json.loads(strip_code_fences(content))
            if not isinstance(result, dict):
                raise ValueError("Gateway content is not a JSON object")

            if "usage" in completion_data:
                usage = completion_data["usage"]
                logger.debug(
                    f"Token usage - Input: {usage.get('prompt_tokens', 'N/A')}, "
                    f"Output: {usage.get('completion_tokens', 'N/A')}"
                )

            return result

        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse gateway response as JSON: {e}")
            raise ExtractionError(
                f"Gateway returned invalid JSON: {e}",
                details={"error": str(e)},
                retryable=False,
            )

        except (ValueError, AttributeError) as e:
            logger.error(f"Error parsing gateway response: {e}")
            raise ExtractionError(
                f"Gateway response parsing error: {str(e)}",
                details={"error": str(e)},
                retryable=False,
            )


# Singleton client instance
_client: Optional[RecognitionClient] = None


def get_client() -> RecognitionClient:
    """
    Get or create recognition client singleton.

    Returns:
        Recognition client wrapper instance
    """
    global _client
    if _client is None:
        _client = RecognitionClient()
    return _client
