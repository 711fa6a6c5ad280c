"""
Message Rendering

Turns a notification intent (kind, tier, routine, tone) into reminder text.

An LLM-backed renderer (llama-server, OpenAI-compatible chat endpoint) is
tried first when enabled; the fixed templates below are the always-available
fallback for every (kind, tier) pair and tone.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Optional

import requests

from rhythm.logger import get_logger
from rhythm.models import AlarmKind
from rhythm.retry import call_with_retry, retry_settings


DEFAULT_TONE = "Companion (Friendly)"
TONES = ("Analyst (Logical)", "Companion (Friendly)", "Coach (Motivational)", "Sage (Wise)")


class RenderError(Exception):
    """The external renderer failed, timed out or produced nothing usable."""


@dataclass(frozen=True)
class MessageIntent:
    kind: AlarmKind
    tier: int
    routine_name: str
    routine_description: str = ""
    tone: str = DEFAULT_TONE


def message_type(kind: AlarmKind, tier: int) -> str:
    """Wording family for a kind/tier pair."""
    if kind in (AlarmKind.START, AlarmKind.SNOOZE):
        if tier >= 2:
            return "deep_motivation"
        if tier == 1:
            return "follow_up"
        return "start"
    if kind == AlarmKind.END:
        return "end"
    if kind == AlarmKind.ESCALATED_NUDGE:
        return "skip_motivation"
    return "generic"


# ----------------------------------------------------------------------
# Fallback templates
# ----------------------------------------------------------------------

FALLBACK_TEMPLATES: Dict[str, Dict[str, str]] = {
    "start": {
        "Analyst (Logical)": "Time to start {name}. Consistent execution yields results.",
        "Companion (Friendly)": "Hey! Ready to start {name}? Let's do this!",
        "Coach (Motivational)": "{name} time! Show up for yourself right now!",
        "Sage (Wise)": "{name} awaits. Small steps create lasting change.",
    },
    "follow_up": {
        "Analyst (Logical)": "{name} is still pending. Starting now keeps the plan on track.",
        "Companion (Friendly)": "Just checking in, {name} is still waiting for you.",
        "Coach (Motivational)": "Break's over! {name} is still on the board.",
        "Sage (Wise)": "The hour for {name} has not passed yet. Return to it.",
    },
    "deep_motivation": {
        "Analyst (Logical)": "{name}: action required now. Delays compound.",
        "Companion (Friendly)": "Hey! {name} is waiting. Let's start together!",
        "Coach (Motivational)": "{name} TIME! No more delays - START NOW!",
        "Sage (Wise)": "The moment for {name} is now. Begin.",
    },
    "deep_motivation_goal": {
        "Analyst (Logical)": "{goal} requires action. {name} is the logical next step.",
        "Companion (Friendly)": "Remember why you started: {goal}. {name} matters!",
        "Coach (Motivational)": "{goal} is YOURS to claim! {name} starts RIGHT NOW!",
        "Sage (Wise)": "{goal} is your north star. {name} is the path forward.",
    },
    "end": {
        "Analyst (Logical)": "{name} period complete. Did you accomplish your objective?",
        "Companion (Friendly)": "Time's up for {name}! How'd it go?",
        "Coach (Motivational)": "{name} done! Did you crush it?!",
        "Sage (Wise)": "{name} time has passed. Reflect on your effort.",
    },
    "skip_motivation": {
        "Analyst (Logical)": "Starting {name} now increases your success probability. Reconsider?",
        "Companion (Friendly)": "I know it's tough, but {name} will be worth it. Give it a try?",
        "Coach (Motivational)": "Don't quit on yourself! {name} is your commitment. Start NOW!",
        "Sage (Wise)": "Every journey begins with a single step. {name} calls to you.",
    },
}


def fallback_message(intent: MessageIntent) -> str:
    """Template text for an intent. Never fails."""
    mtype = message_type(intent.kind, intent.tier)
    if mtype == "deep_motivation" and intent.routine_description:
        mtype = "deep_motivation_goal"
    family = FALLBACK_TEMPLATES.get(mtype)
    if not family:
        return f"Time for {intent.routine_name}!"
    template = family.get(intent.tone) or family[DEFAULT_TONE]
    return template.format(name=intent.routine_name, goal=intent.routine_description)


# ----------------------------------------------------------------------
# LLM renderer
# ----------------------------------------------------------------------

TONE_PROMPTS: Dict[str, Dict[str, str]] = {
    "Analyst (Logical)": {
        "start": "You are a logical assistant. Write a 1-2 line notification reminding the user to start their routine. Be concise, factual, and reason-driven.",
        "end": "You are a logical assistant. Write a 1-2 line notification asking if the user completed their routine. Be analytical and straightforward.",
        "skip_motivation": "You are a logical assistant. The user skipped their routine. Write a 1-2 line message explaining logically why starting now would be beneficial.",
        "deep_motivation": "You are a logical assistant. The user has snoozed multiple times. Write a 1-2 line message connecting their goal to immediate action.",
    },
    "Companion (Friendly)": {
        "start": "You are a friendly companion. Write a warm 1-2 line notification reminding the user to start their routine. Be conversational and supportive.",
        "end": "You are a friendly companion. Write a 1-2 line notification asking if the user completed their routine. Be warm and encouraging.",
        "skip_motivation": "You are a friendly companion. The user skipped their routine. Write a 1-2 line message gently encouraging them to start.",
        "deep_motivation": "You are a friendly companion. The user has snoozed multiple times. Write a 1-2 line message reminding them why their goal matters. Be supportive but firm.",
    },
    "Coach (Motivational)": {
        "start": "You are a motivational coach. Write an energetic 1-2 line notification pushing the user to start their routine.",
        "end": "You are a motivational coach. Write a 1-2 line notification asking if the user completed their routine. Be energetic and celebratory.",
        "skip_motivation": "You are a motivational coach. The user skipped their routine. Write a powerful 1-2 line message to reignite their commitment.",
        "deep_motivation": "You are a motivational coach. The user has snoozed multiple times. Write a commanding 1-2 line message connecting their goal to immediate action.",
    },
    "Sage (Wise)": {
        "start": "You are a wise sage. Write a calm, thoughtful 1-2 line notification reminding the user to start their routine.",
        "end": "You are a wise sage. Write a contemplative 1-2 line notification asking if the user completed their routine.",
        "skip_motivation": "You are a wise sage. The user skipped their routine. Write a gentle 1-2 line message on the value of beginning now.",
        "deep_motivation": "You are a wise sage. The user has snoozed multiple times. Write a grounding 1-2 line message connecting their deeper purpose to this moment.",
    },
}


class LLMMessageRenderer:
    """Client for a llama-server chat completions endpoint."""

    def __init__(self, config=None, base_url: str = None):
        self.logger = get_logger(__name__, config)
        get = config.get if config else (lambda key, default=None: default)
        self.base_url = base_url or get("messages.llm.base_url", "http://127.0.0.1:8080")
        self.endpoint = f"{self.base_url}/v1/chat/completions"
        self.timeout = get("messages.llm.timeout_seconds", 5)
        self.max_chars = get("messages.llm.max_chars", 100)
        self.temperature = get("messages.llm.temperature", 0.8)

    def _system_prompt(self, intent: MessageIntent) -> str:
        prompts = TONE_PROMPTS.get(intent.tone) or TONE_PROMPTS[DEFAULT_TONE]
        mtype = message_type(intent.kind, intent.tier)
        if mtype == "follow_up":
            mtype = "start"
        return prompts.get(mtype, prompts["start"])

    def _user_prompt(self, intent: MessageIntent) -> str:
        lines = ["Context:", f"- Routine: {intent.routine_name}"]
        if intent.routine_description:
            lines.append(f"- Goal: {intent.routine_description}")
        if intent.tier > 0:
            lines.append(f"- User has snoozed {intent.tier} time(s)")
        lines.append("")
        lines.append(f"Generate a notification message (1-2 lines max, under {self.max_chars} "
                     "characters). Be direct and personal.")
        return "\n".join(lines)

    def render(self, intent: MessageIntent) -> str:
        payload = {
            "messages": [
                {"role": "system", "content": self._system_prompt(intent)},
                {"role": "user", "content": self._user_prompt(intent)},
            ],
            "temperature": self.temperature,
            "max_tokens": 60,
        }

        try:
            response = requests.post(self.endpoint, json=payload, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
            text = data["choices"][0]["message"]["content"]
        except requests.RequestException as e:
            raise RenderError(f"LLM server error: {e}") from e
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise RenderError(f"Malformed LLM response: {e}") from e

        text = (text or "").strip().strip("\"'").strip()
        if not text:
            raise RenderError("LLM returned empty text")
        if len(text) > self.max_chars:
            text = text[:self.max_chars - 3] + "..."
        return text


class MessageRenderer:
    """render_message(intent) front end with guaranteed template fallback."""

    def __init__(self, config=None, backend: Optional[Callable[[MessageIntent], str]] = None):
        self.config = config
        self.logger = get_logger(__name__, config)
        self.tone = config.get("messages.tone", DEFAULT_TONE) if config else DEFAULT_TONE
        if self.tone not in TONES:
            self.logger.warning(f"Unknown tone {self.tone!r}, using {DEFAULT_TONE}")
            self.tone = DEFAULT_TONE

        if backend is None and config is not None and config.get("messages.llm.enabled", False):
            backend = LLMMessageRenderer(config).render
        self.backend = backend

    def intent(self, kind: AlarmKind, tier: int, routine_name: str,
               routine_description: str = "") -> MessageIntent:
        return MessageIntent(kind, tier, routine_name, routine_description or "", self.tone)

    def render_message(self, intent: MessageIntent) -> str:
        if self.backend is not None:
            try:
                return call_with_retry(
                    lambda: self.backend(intent),
                    what=f"render {intent.kind.value}/tier{intent.tier}",
                    **retry_settings(self.config),
                )
            except Exception as e:
                self.logger.warning(f"Renderer unavailable, using template: {e}")
        return fallback_message(intent)
