"""
Chat-completions client using direct REST API calls.
Handles transport retries, response extraction and code-fence cleanup.
"""
import json
import re
from typing import Any, Dict, Optional

import requests
import urllib3
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from core.config import Settings, get_settings
from core.exceptions import (
    ClassifierTransportError,
    ConfigurationError,
    EmptyResponseError,
    SchemaParseError,
)
from core.logger import setup_logger

logger = setup_logger(__name__)

# Fixed to keep classifier output deterministic and compact
TEMPERATURE = 0.1
MAX_TOKENS = 1000

# ```json {...} ``` or ``` {...} ```, any language tag
_CODE_FENCE = re.compile(r"^```[\w+-]*[ \t]*\n?(.*?)\n?[ \t]*```$", re.DOTALL)


def strip_code_fences(content: str) -> str:
    """
    Remove an enclosing markdown code fence if present.

    Args:
        content: Raw assistant message content

    Returns:
        Content without the surrounding fence, stripped
    """
    content_stripped = content.strip()
    match = _CODE_FENCE.match(content_stripped)
    if match:
        return match.group(1).strip()
    return content_stripped


def parse_json_content(content: str) -> Any:
    """
    Parse assistant content as JSON after fence cleanup.

    Raises:
        SchemaParseError: If the content is not valid JSON
    """
    cleaned = strip_code_fences(content)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as e:
        logger.error(f"Failed to parse classifier content as JSON: {e}")
        raise SchemaParseError(
            f"Classifier returned invalid JSON: {e}",
            details={"content": cleaned[:500]},
        )


def extract_content(completion_data: Dict[str, Any]) -> Optional[str]:
    """Pull the assistant text out of a chat-completions or responses payload."""
    content = None

    # Standard OpenAI response with choices
    if "choices" in completion_data:
        try:
            content = completion_data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            pass

    # Responses-style payload with an output list
    if not content and "output" in completion_data:
        for item in completion_data.get("output") or []:
            if item.get("type") == "message" and item.get("role") == "assistant":
                for content_item in item.get("content", []):
                    if content_item.get("type") == "output_text":
                        content = content_item.get("text")
                        break
            if content:
                break

    if isinstance(content, str) and content.strip():
        return content
    return None


class LLMClientWrapper:
    """Wrapper for the chat-completions REST API with retry logic."""

    def __init__(self, settings: Settings, wait=None):
        """
        Initialize REST API client.

        Args:
            settings: Application settings with classifier credentials
            wait: tenacity wait strategy between transport retries
        """
        if not settings.llm_api_key:
            raise ConfigurationError(
                "OPENROUTER_API_KEY environment variable not set",
                details={"required_key": "OPENROUTER_API_KEY"}
            )

        self.api_url = settings.llm_api_url
        self.api_key = settings.llm_api_key
        self.model = settings.llm_model
        self.timeout = settings.llm_timeout
        self.max_attempts = settings.llm_max_attempts
        self.verify_ssl = settings.llm_verify_ssl
        self.referer = settings.llm_app_referer
        self.title = settings.llm_app_title
        self.wait = wait or wait_exponential(multiplier=1, min=2, max=10)

        if not self.verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        logger.info(f"Initialized LLM REST client with model: {self.model}, endpoint: {self.api_url}")

    def call_with_json_output(self, system_prompt: str, user_message: str) -> Any:
        """
        Call the completions API and return the parsed JSON content.

        Args:
            system_prompt: System instruction
            user_message: User message with the SMS data

        Returns:
            Parsed JSON value

        Raises:
            ClassifierTransportError: If every transport attempt failed
            EmptyResponseError: If the response carried no content
            SchemaParseError: If the content is not valid JSON
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self.wait,
            retry=retry_if_exception_type(ClassifierTransportError),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(
                        f"Retrying classifier call (attempt {attempt.retry_state.attempt_number}/{self.max_attempts})"
                    )
                content = self._request_content(system_prompt, user_message)
        return parse_json_content(content)

    def _request_content(self, system_prompt: str, user_message: str) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            "response_format": {"type": "json_object"},
            "temperature": TEMPERATURE,
            "max_tokens": MAX_TOKENS,
        }

        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            "HTTP-Referer": self.referer,
            "X-Title": self.title,
        }

        try:
            response = requests.post(
                self.api_url,
                headers=headers,
                data=json.dumps(payload),
                verify=self.verify_ssl,
                timeout=self.timeout
            )

            # Raise for HTTP errors (4xx, 5xx)
            response.raise_for_status()

        except requests.exceptions.Timeout as e:
            logger.error(f"Classifier request timeout after {self.timeout}s: {e}")
            raise ClassifierTransportError(
                f"Classifier request timeout after {self.timeout}s",
                details={"api_url": self.api_url, "timeout": self.timeout}
            )

        except requests.exceptions.HTTPError as e:
            logger.error(f"Classifier HTTP error: {e}")
            raise ClassifierTransportError(
                f"Classifier returned HTTP error: {e}",
                details={
                    "api_url": self.api_url,
                    "status_code": getattr(e.response, "status_code", None),
                    "response_text": getattr(e.response, "text", None),
                }
            )

        except requests.exceptions.RequestException as e:
            logger.error(f"Classifier request failed: {e}")
            raise ClassifierTransportError(
                f"Failed to connect to classifier: {str(e)}",
                details={"api_url": self.api_url, "error": str(e)}
            )

        try:
            completion_data = response.json()
        except ValueError as e:
            logger.error(f"Classifier returned a non-JSON envelope: {e}")
            raise ClassifierTransportError(
                f"Classifier returned a non-JSON envelope: {e}",
                details={"raw_response": response.text[:500]}
            )

        if not isinstance(completion_data, dict):
            raise ClassifierTransportError(
                "Classifier envelope is not a JSON object",
                details={"raw_response": response.text[:500]}
            )

        content = extract_content(completion_data)
        if content is None:
            logger.error(f"Response keys: {list(completion_data.keys())}")
            raise EmptyResponseError(
                "No response content from classifier",
                details={"model": self.model}
            )

        # Log token usage if available
        if "usage" in completion_data:
            usage = completion_data["usage"] or {}
            input_tokens = usage.get("prompt_tokens", "N/A")
            output_tokens = usage.get("completion_tokens", "N/A")
            logger.debug(f"Token usage - Input: {input_tokens}, Output: {output_tokens}")

        return content


# Singleton client instance
_client: Optional[LLMClientWrapper] = None


def get_client(settings: Optional[Settings] = None) -> LLMClientWrapper:
    """
    Get or create the LLM client singleton.

    Returns:
        LLM client wrapper instance
    """
    global _client
    if _client is None:
        _client = LLMClientWrapper(settings or get_settings())
    return _client
