# widgetsmith/services/code_generator.py
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from openai import (
    APIConnectionError,
    APIStatusError,
    APITimeoutError,
    AsyncOpenAI,
    AuthenticationError,
    RateLimitError,
)
from tenacity import AsyncRetrying, after_log, before_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from widgetsmith.core.config import Settings
from widgetsmith.exceptions import CodeValidationError, GenerationFailedError
from widgetsmith.services.render_runtime import ALLOWED_MODULES
from widgetsmith.services.sandbox_executor import clean_code, validate_code

logger = logging.getLogger(__name__)

DEFAULT_GENERATED_NAME = "New Tool"
MAX_REFRESH_INTERVAL_MS = 24 * 60 * 60 * 1000

CODE_GENERATION_PROMPT = f'''
You are an expert at building small, safe, self-contained Python widgets.

YOUR TASK:
Generate Python code from the user's description. The code runs in an isolated
sandbox without network, file system or environment access.

STRICT RULES:
1. You MUST define a top-level function `render(params)`.
2. It MUST return a dict: {{"type": "html" | "svg" | "json", "content": <string>}}.
3. You may only import these standard library modules: {", ".join(sorted(ALLOWED_MODULES))}.
4. Do NOT use eval, exec, compile, open, __import__, globals, locals, getattr, input,
   dunder attributes (like __class__) or any external URL, image or resource.
5. Keep the code under 500 lines.
6. Also return a `parameters` object mapping each adjustable parameter name to its
   default value. The type of the default decides the input widget: bool -> toggle,
   number -> number field, list of strings -> multi-line list, string -> text field.
   render() receives these values in `params` and should fall back to sensible
   defaults when a key is missing.

AVAILABLE HELPER FUNCTIONS (already in scope, do not import them):
- format_date(date=None, fmt="YYYY-MM-DD") - format a datetime or ISO string ("YYYY-MM-DD HH:mm")
- format_number(num, decimals=2, locale="de-DE") - format a number with grouping
- escape_html(value) - escape HTML special characters
- create_element(tag, attrs=None, content="") - build an HTML element string
- create_svg(width, height, content="") - build an SVG root element string
- hex_to_rgb(value) - "#rrggbb" -> {{"r": .., "g": .., "b": ..}}
- rgb_to_hex(r, g, b) - -> "#rrggbb"
- random_between(low, high) - random float
- random_int(low, high) - random integer (inclusive)
- number_range(start, end, step=1) - list of integers
- now() - current datetime

OUTPUT FORMAT (JSON):
{{
  "name": "Short, concise tool name",
  "parameters": {{"paramName": defaultValue}},
  "refreshInterval": 0,
  "code": "def render(params):\\n    ..."
}}
`refreshInterval` is in milliseconds; use it only for widgets that must update
themselves (clocks, countdowns), otherwise 0.

EXAMPLE (a simple counter):
{{
  "name": "Counter",
  "parameters": {{"startValue": 0, "step": 1}},
  "refreshInterval": 0,
  "code": "def render(params):\\n    value = params.get('startValue', 0)\\n    step = params.get('step', 1)\\n    html = (\\n        '<div style=\\"text-align:center;padding:20px;\\">'\\n        f'<div style=\\"font-size:48px;font-weight:bold;\\">{{format_number(value, 0)}}</div>'\\n        f'<div style=\\"color:#666;\\">Step: {{escape_html(step)}}</div>'\\n        '</div>'\\n    )\\n    return {{'type': 'html', 'content': html}}"
}}

IMPORTANT:
- Respond ONLY with valid JSON, no explanations and no markdown.
- The code must be syntactically valid Python 3.
- Escape user-provided values with escape_html().
'''

EXAMPLE_PROMPTS: List[Dict[str, str]] = [
    {"title": "Pomodoro Timer", "description": "A pomodoro timer with 25 minutes of work and 5 minutes of break"},
    {"title": "Currency Converter", "description": "A simple currency converter from euro to US dollar"},
    {"title": "World Clock", "description": "A clock showing the time in Berlin, New York and Tokyo"},
    {"title": "Color Palette", "description": "A palette generator that derives harmonious colors from a base color"},
    {"title": "Random Quote", "description": "Shows a random motivational quote from a predefined list"},
    {"title": "BMI Calculator", "description": "A BMI calculator with inputs for weight and height"},
    {"title": "Countdown", "description": "A countdown timer to a specific date"},
    {"title": "Progress Bar", "description": "A visual progress bar with a percentage label"},
]


@dataclass
class GenerationOutcome:
    success: bool
    code: Optional[str] = None
    name: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    refresh_interval: int = 0
    error: Optional[str] = None

    @classmethod
    def failure(cls, message: str) -> "GenerationOutcome":
        return cls(success=False, error=message)


def _sanitize_parameters(raw: Any) -> Dict[str, Any]:
    """Keeps defaults whose type maps to an input widget; everything else becomes a string."""
    if not isinstance(raw, dict):
        return {}
    cleaned: Dict[str, Any] = {}
    for key, value in raw.items():
        if isinstance(value, (bool, int, float, str)):
            cleaned[str(key)] = value
        elif isinstance(value, list):
            cleaned[str(key)] = [item if isinstance(item, str) else str(item) for item in value]
        elif value is None:
            cleaned[str(key)] = ""
        else:
            cleaned[str(key)] = json.dumps(value, default=str)
    return cleaned


def _sanitize_refresh_interval(raw: Any) -> int:
    try:
        value = int(raw or 0)
    except (TypeError, ValueError):
        return 0
    return max(0, min(value, MAX_REFRESH_INTERVAL_MS))


class CodeGenerationService:
    """
    Turns a natural-language description into a validated render() function
    by asking an OpenAI chat model for a JSON document.

    `generate()` never raises for provider or output problems; they come back
    as a failed GenerationOutcome with a message meant for the user.
    """

    def __init__(self, settings: Settings, openai_client: Optional[AsyncOpenAI] = None):
        self.settings = settings
        self.llm_model = settings.LLM_MODEL
        self.max_code_length = settings.SANDBOX_MAX_CODE_LENGTH
        self.max_attempts = max(1, settings.OPENAI_MAX_RETRIES)
        if openai_client is None and settings.OPENAI_API_KEY:
            # Retries are handled by tenacity below
            openai_client = AsyncOpenAI(api_key=settings.OPENAI_API_KEY, max_retries=0)
        self.openai_client = openai_client

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            wait=wait_exponential(multiplier=1, min=1, max=10),
            stop=stop_after_attempt(self.max_attempts),
            retry=retry_if_exception_type((APIConnectionError, APITimeoutError)),
            before=before_log(logger, logging.INFO),
            after=after_log(logger, logging.INFO),
            reraise=True,
        )

    async def _call_llm_with_retries(self, messages: List[Dict[str, str]]) -> Optional[str]:
        async for attempt in self._retrying():
            with attempt:
                logger.debug(f"Attempting LLM call with model: {self.llm_model}")
                response = await self.openai_client.chat.completions.create(
                    model=self.llm_model,
                    messages=messages,
                    temperature=0.7,
                    max_tokens=4000,
                    response_format={"type": "json_object"},
                )
        logger.debug(f"LLM call successful. Response ID: {response.id}")
        return response.choices[0].message.content if response.choices else None

    async def generate(self, description: str) -> GenerationOutcome:
        if self.openai_client is None:
            return GenerationOutcome.failure(
                "No OpenAI API key configured. Please set OPENAI_API_KEY to generate tools."
            )

        messages = [
            {"role": "system", "content": CODE_GENERATION_PROMPT},
            {"role": "user", "content": f"Create a widget for: {description}"},
        ]
        logger.info(f"Generating widget code for description: '{description[:80]}'")

        try:
            content = await self._call_llm_with_retries(messages)
        except AuthenticationError:
            return GenerationOutcome.failure("Invalid OpenAI API key. Please check your configuration.")
        except RateLimitError:
            return GenerationOutcome.failure("Too many requests. Please wait a moment and try again.")
        except APIStatusError as e:
            if e.status_code in (500, 502, 503):
                return GenerationOutcome.failure(
                    "The AI service is temporarily unavailable. Please try again later."
                )
            logger.error(f"Code generation failed with status {e.status_code}: {e}", exc_info=True)
            return GenerationOutcome.failure(f"Code generation failed: {e.message}")
        except (APIConnectionError, APITimeoutError) as e:
            logger.error(f"LLM API unreachable after retries: {e}")
            return GenerationOutcome.failure("The AI service could not be reached. Please try again later.")

        return self.parse_response(content)

    def parse_response(self, content: Optional[str]) -> GenerationOutcome:
        """Validates the model's JSON answer into a GenerationOutcome."""
        try:
            return self._parse(content)
        except GenerationFailedError as e:
            return GenerationOutcome.failure(str(e))

    def _parse(self, content: Optional[str]) -> GenerationOutcome:
        if not content:
            raise GenerationFailedError("No response received from the AI model.")

        try:
            parsed = json.loads(clean_code(content))
        except json.JSONDecodeError:
            logger.error(f"Failed to parse AI response: {content[:500]}")
            parsed = None
        if not isinstance(parsed, dict):
            raise GenerationFailedError("The AI response could not be processed. Try a different description.")

        code = parsed.get("code")
        if not code or not isinstance(code, str):
            raise GenerationFailedError("The AI did not generate valid code.")
        code = clean_code(code)

        try:
            validate_code(code, self.max_code_length)
        except CodeValidationError as e:
            logger.warning(f"Generated code failed validation: {e}")
            raise GenerationFailedError(f"The generated code contains unsafe patterns: {e}") from e

        name = parsed.get("name")
        return GenerationOutcome(
            success=True,
            code=code,
            name=name.strip() if isinstance(name, str) and name.strip() else DEFAULT_GENERATED_NAME,
            parameters=_sanitize_parameters(parsed.get("parameters")),
            refresh_interval=_sanitize_refresh_interval(parsed.get("refreshInterval")),
        )
