#!/usr/bin/env python3
"""Multi-round reflection over a session transcript.

Each round sends the transcript and the current playbook to the model. From
the second round on, the prompt also carries the insights gathered so far and
asks the model to dig deeper. The loop ends after ``max_rounds`` rounds or
earlier once the model reports that it has converged.
"""
import json
import os
from pathlib import Path
from typing import Optional

try:
    import anthropic
    ANTHROPIC_AVAILABLE = True
except ImportError:
    ANTHROPIC_AVAILABLE = False

from common import (
    fill_template,
    get_project_dir,
    get_prompts_dir,
    is_diagnostic_mode,
    load_template,
    save_diagnostic,
)


API_KEY_VARS = ("AGENTIC_CONTEXT_API_KEY", "ANTHROPIC_AUTH_TOKEN", "ANTHROPIC_API_KEY")
MODEL_VARS = ("AGENTIC_CONTEXT_MODEL", "ANTHROPIC_MODEL", "ANTHROPIC_DEFAULT_SONNET_MODEL")
BASE_URL_VARS = ("AGENTIC_CONTEXT_BASE_URL", "ANTHROPIC_BASE_URL")

DEFAULT_MODEL = "claude-sonnet-4-5-20250929"
DEFAULT_THINKING_BUDGET = 16000
DEFAULT_MAX_ROUNDS = 1
MAX_OUTPUT_TOKENS = 4096

PLAYBOOK_PREAMBLE = """You maintain a playbook of lessons learned while assisting on this project.
The current playbook maps each key point name to its text:

{playbook}"""

CACHED_PLAYBOOK_POINTER = "(the current playbook is provided in the system prompt)"

FOLLOW_UP_INSTRUCTIONS = """# PREVIOUS INSIGHTS

Earlier rounds of this reflection produced these insights:

{insights}

Re-examine the trajectories with these insights in mind. Go deeper than the
previous rounds: look for the underlying cause behind mistakes and
corrections instead of restating symptoms. Return the complete, updated
"new_key_points" and "evaluations" (they replace the previous answer), any
further findings under "insights", and set "found_root_cause",
"no_new_insights" and "insights_depth" ("partial" or "sufficient") so the
reflection can stop once the analysis is complete."""


def empty_result() -> dict:
    return {"new_key_points": [], "evaluations": []}


def _first_env(names):
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return None


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


class ExtractorConfig:
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        base_url: Optional[str] = None,
        thinking_budget: int = DEFAULT_THINKING_BUDGET,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
        enable_cache: bool = True,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.thinking_budget = max(0, thinking_budget)
        self.max_rounds = max(1, max_rounds)
        self.enable_cache = enable_cache

    @classmethod
    def from_env(cls) -> "ExtractorConfig":
        return cls(
            api_key=_first_env(API_KEY_VARS),
            model=_first_env(MODEL_VARS) or DEFAULT_MODEL,
            base_url=_first_env(BASE_URL_VARS),
            thinking_budget=_int_env("AGENTIC_CONTEXT_THINKING_BUDGET", DEFAULT_THINKING_BUDGET),
            max_rounds=_int_env("AGENTIC_CONTEXT_MAX_ROUNDS", DEFAULT_MAX_ROUNDS),
            enable_cache=os.getenv("AGENTIC_CONTEXT_ENABLE_CACHE") != "false",
        )


class Parsed:
    """A model reply that decoded to a JSON object."""

    def __init__(self, value: dict):
        self.value = value

    def __repr__(self):
        return f"Parsed({self.value!r})"


class Malformed:
    """A model reply that could not be decoded."""

    def __init__(self, reason: str):
        self.reason = reason

    def __repr__(self):
        return f"Malformed({self.reason!r})"


def _strip_code_fence(text: str) -> str:
    if "```json" in text:
        start = text.find("```json") + 7
    elif "```" in text:
        start = text.find("```") + 3
    else:
        return text.strip()

    end = text.find("```", start)
    if end == -1:
        return text[start:].strip()
    return text[start:end].strip()


def parse_reflection_response(response_text: str):
    if not response_text or not response_text.strip():
        return Malformed("empty response")

    json_text = _strip_code_fence(response_text)
    try:
        value = json.loads(json_text)
    except json.JSONDecodeError as e:
        return Malformed(f"invalid JSON: {e}")

    if not isinstance(value, dict):
        return Malformed(f"expected a JSON object, got {type(value).__name__}")

    return Parsed(value)


def _structured_result(data: dict) -> dict:
    new_key_points = data.get("new_key_points")
    evaluations = data.get("evaluations")

    if not isinstance(new_key_points, list):
        new_key_points = []
    if not isinstance(evaluations, list):
        evaluations = []

    return {
        "new_key_points": [text for text in new_key_points if isinstance(text, str)],
        "evaluations": [
            {"name": item["name"], "rating": item.get("rating", "neutral")}
            for item in evaluations
            if isinstance(item, dict)
            and isinstance(item.get("name"), str)
            and isinstance(item.get("rating", "neutral"), str)
        ],
    }


def _round_insights(data: dict) -> list[str]:
    insights = data.get("insights")
    if isinstance(insights, str):
        insights = [insights]
    if not isinstance(insights, list):
        return []
    return [item.strip() for item in insights if isinstance(item, str) and item.strip()]


def _flag(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


def has_converged(data: dict) -> bool:
    return (
        _flag(data.get("found_root_cause"))
        or _flag(data.get("no_new_insights"))
        or data.get("insights_depth") == "sufficient"
    )


def render_previous_insights(insights: list[str]) -> str:
    if insights:
        numbered = "\n".join(f"{i}. {text}" for i, text in enumerate(insights, 1))
    else:
        numbered = "(no insights were recorded)"
    return fill_template(FOLLOW_UP_INSTRUCTIONS, insights=numbered)


class ReflectiveExtractor:
    def __init__(self, config: ExtractorConfig, prompts_dir: Optional[Path] = None, project_dir: Optional[Path] = None):
        self.config = config
        self.prompts_dir = prompts_dir or get_prompts_dir()
        self.project_dir = project_dir or get_project_dir()

    def _diagnose(self, content: str, name: str):
        if is_diagnostic_mode(self.project_dir):
            save_diagnostic(content, name, self.project_dir)

    def _system_blocks(self, playbook_json: str):
        if not self.config.enable_cache:
            return None
        return [{
            "type": "text",
            "text": fill_template(PLAYBOOK_PREAMBLE, playbook=playbook_json),
            "cache_control": {"type": "ephemeral"},
        }]

    def build_prompt(self, template: str, messages: list[dict], playbook_json: str,
                     round_idx: int, previous_insights: list[str]) -> str:
        prompt = fill_template(
            template,
            trajectories=json.dumps(messages, indent=2, ensure_ascii=False),
            playbook=CACHED_PLAYBOOK_POINTER if self.config.enable_cache else playbook_json,
        )
        if round_idx > 0:
            prompt += "\n\n" + render_previous_insights(previous_insights)
        return prompt

    async def _request(self, client, prompt: str, system_blocks) -> str:
        request = {
            "model": self.config.model,
            "max_tokens": MAX_OUTPUT_TOKENS,
            "messages": [{"role": "user", "content": prompt}],
        }
        if system_blocks:
            request["system"] = system_blocks
        if self.config.thinking_budget > 0:
            request["thinking"] = {"type": "enabled", "budget_tokens": self.config.thinking_budget}
            # max_tokens has to leave room for the answer on top of the thinking
            request["max_tokens"] = self.config.thinking_budget + MAX_OUTPUT_TOKENS

        response = await client.messages.create(**request)

        return "".join(
            block.text
            for block in response.content
            if getattr(block, "type", None) == "text"
        )

    async def extract(self, messages: list[dict], playbook: dict,
                      diagnostic_name: str = "reflection") -> dict:
        if not ANTHROPIC_AVAILABLE or not self.config.api_key:
            self._diagnose(
                f"Missing API key ({', '.join(API_KEY_VARS)}) or anthropic package. "
                "Extraction skipped.",
                f"{diagnostic_name}_error",
            )
            return empty_result()

        template = load_template("reflection.txt", self.prompts_dir)
        playbook_json = json.dumps(
            {kp["name"]: kp["text"] for kp in playbook.get("key_points", [])},
            indent=2,
            ensure_ascii=False,
        )
        system_blocks = self._system_blocks(playbook_json)

        async with anthropic.AsyncAnthropic(api_key=self.config.api_key, base_url=self.config.base_url) as client:
            return await self._reflect(client, template, messages, playbook_json, system_blocks, diagnostic_name)

    async def _reflect(self, client, template: str, messages: list[dict], playbook_json: str,
                       system_blocks, diagnostic_name: str) -> dict:
        final_result = empty_result()
        previous_insights = []

        for round_idx in range(self.config.max_rounds):
            round_no = round_idx + 1
            prompt = self.build_prompt(template, messages, playbook_json, round_idx, previous_insights)

            try:
                response_text = await self._request(client, prompt, system_blocks)
            except anthropic.APIError as e:
                self._diagnose(
                    f"Round {round_no} failed: {type(e).__name__}: {e}",
                    f"{diagnostic_name}_error",
                )
                if round_idx == 0:
                    return empty_result()
                break

            outcome = parse_reflection_response(response_text)
            data = outcome.value if isinstance(outcome, Parsed) else {}

            if is_diagnostic_mode(self.project_dir):
                preamble = system_blocks[0]["text"] if system_blocks else "(none)"
                save_diagnostic(
                    f"# ROUND {round_no}\n\n# SYSTEM\n{preamble}\n\n{'=' * 80}\n\n"
                    f"# PROMPT\n{prompt}\n\n{'=' * 80}\n\n"
                    f"# RESPONSE\n{response_text}\n\n{'=' * 80}\n\n"
                    f"# PARSED\n{outcome!r}\n",
                    f"{diagnostic_name}_round{round_no}",
                    self.project_dir,
                )

            if "new_key_points" in data or "evaluations" in data:
                final_result = _structured_result(data)

            previous_insights.extend(_round_insights(data))

            if round_idx > 0 and has_converged(data):
                break

        return final_result


async def extract_keypoints(messages: list[dict], playbook: dict, diagnostic_name: str = "reflection") -> dict:
    extractor = ReflectiveExtractor(ExtractorConfig.from_env(), get_prompts_dir(), get_project_dir())
    return await extractor.extract(messages, playbook, diagnostic_name)
