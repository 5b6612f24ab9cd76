"""Prompt templates and small text helpers shared by the engine."""

from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any

from turnwise.config import ModelConfig

DEFAULT_TOPIC = "New Conversation"

DEFAULT_INPUT_TEMPLATE = "{{input}}"

DEFAULT_SYSTEM_TEMPLATE = """You are a helpful assistant.
Current model: {{model}}
Current time: {{time}}
Reply in the language the user writes in (interface language: {{lang}})."""

TOPIC_PROMPT = (
    "Please generate a four to five word title summarizing our conversation "
    "without any lead-in, punctuation, quotation marks, periods, symbols, or "
    "additional text. Remove enclosing quotation marks."
)

SUMMARIZE_PROMPT = (
    "Summarize the discussion briefly in 200 words or less to use as a "
    "prompt for future context."
)

URL_SUMMARIZE_PROMPT = "Summarize the following text briefly in 200 words or less:\n\n"

_INPUT_VAR = "{{input}}"
_TRAILING_PUNCTUATION = re.compile(r"[，。！？”“\"、,.!?]*$")


def memory_prompt(summary: str) -> str:
    """Wrap the long-term memory summary for the system role."""
    return f"This is a summary of the chat history as a recap: {summary}"


def fill_template(
    text: str,
    model_config: ModelConfig,
    lang: str = "en",
    template: str | None = None,
    now: datetime | None = None,
) -> str:
    """Render ``text`` through a template.

    Uses ``template`` if given, else the model config's template, else the
    default input template. The ``{{input}}`` placeholder is appended when
    the template lacks it.
    """
    output = template or model_config.template or DEFAULT_INPUT_TEMPLATE
    if _INPUT_VAR not in output:
        output += "\n" + _INPUT_VAR

    variables = {
        "model": model_config.model,
        "time": (now or datetime.now()).strftime("%Y-%m-%d %H:%M:%S"),
        "lang": lang,
        "input": text,
    }
    # input last so user text containing {{...}} is left alone
    for name, value in variables.items():
        output = output.replace("{{" + name + "}}", value)
    return output


def trim_topic(topic: str) -> str:
    """Strip whitespace, enclosing quotes and trailing punctuation from a topic."""
    topic = topic.strip().strip('"').strip()
    return _TRAILING_PUNCTUATION.sub("", topic)


def format_error(error: Any) -> str:
    """Format an error payload as a fenced JSON block for display in chat."""
    if isinstance(error, str) and error.startswith("```json"):
        return error
    if isinstance(error, str):
        body = error
    else:
        body = json.dumps(error, indent=2, ensure_ascii=False, default=str)
        if body == "{}":
            return str(error)
    return "\n".join(["```json", body, "```"])


def error_payload(message: str) -> str:
    """The chat-visible payload for a failed turn."""
    return format_error({"error": True, "message": message or "Unknown error"})
