"""Coercing free-form agent output into the agent's output schema."""

import json
import logging
from typing import Optional

from relay.agent.providers import BaseModelClient
from relay.config import settings
from relay.core.schema import (
    AgentDefinition,
    Message,
)
from relay.core.scope import (
    Scope,
    ScopeDoneError,
)

logger = logging.getLogger(__name__)

EXTRACTION_SYSTEM_PROMPT = (
    "You are a data extraction assistant. Extract and format the information from the provided "
    "content into the required JSON structure. Output only valid JSON matching the schema."
)


class StructuredOutputError(RuntimeError):
    """Raised when output cannot be coerced into the schema within the retry budget."""


def build_extraction_prompt(output: str, previous_error: Optional[str] = None) -> str:
    """User prompt for one extraction attempt, carrying the previous failure when retrying."""
    prompt = (
        "Extract and format the following content into the required JSON structure:\n\n" + output
    )
    if previous_error:
        prompt += (
            f"\n\nPrevious attempt failed validation with error: {previous_error}"
            "\n\nPlease fix the output to match the schema requirements."
        )
    return prompt


def cast_to_structured_output(
    scope: Scope,
    model: BaseModelClient,
    agent: AgentDefinition,
    output: str,
    attempts: Optional[int] = None,
) -> str:
    """
    Ask *model* to restate *output* as JSON matching ``agent.output_schema``.

    Returns the validated JSON, pretty-printed.

    Raises
    ------
    StructuredOutputError
        After *attempts* failed attempts, carrying the last error.
    """
    if agent.output_schema is None:
        return output
    attempts = attempts or settings.OUTPUT_CAST_RETRIES

    last_error: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        scope.check()
        messages = [
            Message.system(EXTRACTION_SYSTEM_PROMPT),
            Message.user(
                build_extraction_prompt(output, str(last_error) if last_error else None)
            ),
        ]
        try:
            obj = model.generate_object(scope, messages, agent.output_schema)
            text = json.dumps(obj, indent=2)
            agent.validate_output(text)
            return text
        except ScopeDoneError:
            raise
        except (ValueError, RuntimeError) as exc:
            logger.debug("Structured output attempt %d/%d failed: %s", attempt, attempts, exc)
            last_error = exc

    raise StructuredOutputError(
        f"failed to produce valid structured output after {attempts} attempts: {last_error}"
    ) from last_error
