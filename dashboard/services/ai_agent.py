import json
from anthropic import Anthropic
from django.conf import settings
from datetime import datetime
from typing import Any
from .chat_actions import describe_event, get_zone
import os
import re

# Get a logger instance
import logging
logger = logging.getLogger(__name__)


class AssistantUnavailable(Exception):
    pass


class ChatParseError(Exception):
    pass


SYSTEM_PROMPT = """You are a calendar assistant that turns the user's message into calendar actions.

Current date and time: {now}
Today is {weekday}. The user's timezone is {timezone}.

The user's existing events (JSON, times shown in the user's timezone):
{events}

Decide whether the user wants to CREATE new events, UPDATE existing events, or both.

Return ONLY a JSON object with double quotes and no markdown (no ```json fences):
{{
  "action": "create" | "update" | "both" | "none",
  "events": [
    {{"title": "Event title", "start": "ISO-8601 start", "end": "ISO-8601 end", "description": "optional"}}
  ],
  "updates": [
    {{"eventId": "id of the existing event if you can identify it", "eventTitle": "keyword(s) from the existing event's title",
      "title": "new title (optional)", "start": "new ISO-8601 start (optional)", "end": "new ISO-8601 end (optional)",
      "description": "new description (optional)"}}
  ],
  "reply": "short message for the user when there is nothing to create or update",
  "error": "explanation if the request can't be turned into an event"
}}

RULES:
- If no date is mentioned, assume today ({today}).
- If no duration is mentioned, assume 1 hour.
- Resolve relative dates ("tomorrow", "next friday") against the current date above.
- Always include the UTC offset for the user's timezone in start/end, e.g. "{example}".
- If an event crosses midnight, the end must be on the NEXT day.
- Only use "updates" for events that already exist in the list above; always fill "eventTitle",
  and copy the "id" into "eventId" when you are sure which event is meant.
- For updates only include the fields that change. Moving an event only needs the new "start".
- Several events in one message means several entries in "events".
- If the message is not about the calendar, set "action" to "none" and answer briefly in "reply".
"""


def strip_code_fences(blob: str) -> str:
    s = str(blob or "").strip()
    s = re.sub(r"```(?:json)?\s*", "", s)
    return s.replace("```", "").strip()


def extract_last_json(blob: str):
    """
    Parse the model output as a JSON object.

    Some models emit prose around the JSON or several objects back-to-back;
    in that case the last top-level {...} that parses is used.
    """
    if not blob:
        return None
    s = strip_code_fences(blob)
    # Fast path: single JSON
    try:
        obj = json.loads(s)
        return obj if isinstance(obj, dict) else None
    except ValueError:
        pass

    # Fallback: decode every {...} that parses, skipping stray braces in prose
    decoder = json.JSONDecoder()
    objs = []
    idx = s.find('{')
    while idx != -1:
        try:
            obj, end = decoder.raw_decode(s, idx)
        except ValueError:
            idx = s.find('{', idx + 1)
            continue
        if isinstance(obj, dict):
            objs.append(obj)
        idx = s.find('{', end)

    if len(objs) > 1:
        logger.warning(f"AI returned {len(objs)} JSON objects instead of 1, using the last one.")
    return objs[-1] if objs else None


def normalize_history(history, limit: int):
    """
    Keep the last ``limit`` user/assistant turns in a shape the Messages API accepts.

    The conversation must start with a user turn and roles must alternate, so
    leading assistant turns are dropped and consecutive turns are merged.
    """
    turns = []
    for item in history or []:
        if not isinstance(item, dict):
            continue
        role = item.get("role")
        content = str(item.get("content") or "").strip()
        if role in ("user", "assistant") and content:
            turns.append({"role": role, "content": content})
    turns = turns[-limit:] if limit else []

    while turns and turns[0]["role"] != "user":
        turns.pop(0)

    merged = []
    for turn in turns:
        if merged and merged[-1]["role"] == turn["role"]:
            merged[-1]["content"] += "\n" + turn["content"]
        else:
            merged.append(dict(turn))
    return merged


class AIAgent:
    def __init__(self, user: Any):
        self.user = user

        anthropic_key = (
            os.getenv('CLAUDE_API_KEY') or os.getenv('ANTHROPIC_API_KEY')
        )
        self.claude_client = (
            Anthropic(api_key=anthropic_key) if anthropic_key else None
        )
        self.model = getattr(settings, 'ANTHROPIC_MODEL', 'claude-haiku-4-5')
        self.max_tokens = getattr(settings, 'ANTHROPIC_MAX_TOKENS', 1024)
        self.history_limit = getattr(settings, 'CHAT_HISTORY_LIMIT', 10)

    @property
    def is_configured(self) -> bool:
        return self.claude_client is not None

    def _get_claude_response(self, messages, *, system_prompt: str = "", temperature: float = 0):
        """Helper to call Claude API."""
        if not self.claude_client:
            logger.warning("Claude client not initialized. Cannot get response.")
            raise AssistantUnavailable("The assistant is not configured. Set CLAUDE_API_KEY or ANTHROPIC_API_KEY.")

        params = dict(
            model       = self.model,
            messages    = messages,
            temperature = temperature,
            max_tokens  = self.max_tokens,
        )
        if system_prompt:            # only include when non-empty
            params["system"] = system_prompt

        try:
            resp = self.claude_client.messages.create(**params)
        except Exception as e:
            logger.error(f"Error calling Claude API: {e}", exc_info=True)
            raise
        return "".join(getattr(block, "text", "") for block in resp.content).strip()

    def build_system_prompt(self, now: datetime, tz_name: str, events=None) -> str:
        tz = get_zone(tz_name)
        limit = getattr(settings, 'CHAT_MAX_CONTEXT_EVENTS', 100)
        described = [describe_event(e, tz) for e in (events or [])[:limit]]
        example = now.replace(hour=14, minute=0, second=0, microsecond=0).isoformat()
        return SYSTEM_PROMPT.format(
            now=now.isoformat(),
            weekday=now.strftime("%A"),
            today=now.strftime("%A, %B %d, %Y"),
            timezone=tz_name,
            events=json.dumps(described, indent=1) if described else "[] (no events in range)",
            example=example,
        )

    def handle(self, text: str, history=None, events=None, tz_name: str = "UTC", now: datetime = None) -> dict:
        """
        Ask the model what calendar actions the message implies.

        Returns the parsed JSON reply; validating and applying it is left to
        the caller. Raises ChatParseError if the reply holds no JSON object.
        """
        tz = get_zone(tz_name) or get_zone("UTC")
        now = now or datetime.now(tz)

        system = self.build_system_prompt(now, tz_name, events)
        messages = normalize_history(history, self.history_limit)
        if messages and messages[-1]["role"] == "user":
            # the new message must follow an assistant turn
            messages.append({"role": "assistant", "content": "(no reply)"})
        messages.append({"role": "user", "content": text})

        logger.info(f"Sending chat message to Claude with {len(messages) - 1} history turns and {len(events or [])} events.")
        raw = self._get_claude_response(messages, system_prompt=system, temperature=0)
        logger.debug(f"AI RAW RESPONSE: {raw}")

        data = extract_last_json(raw)
        if data is None:
            logger.error(f"Failed to parse JSON from Claude: {raw}")
            raise ChatParseError("Failed to parse event details")
        return data
