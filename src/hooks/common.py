#!/usr/bin/env python3
import json
import os
import re
import sys
from pathlib import Path
from typing import Optional
from datetime import datetime


DEFAULT_SETTINGS = {"playbook_update_on_exit": False, "playbook_update_on_clear": False}

COMMAND_ECHO_MARKERS = ("<command-name>", "<local-command-stdout>")


def get_project_dir() -> Path:
    project_dir = os.getenv('CLAUDE_PROJECT_DIR')
    if project_dir:
        return Path(project_dir)
    return Path.home()


def get_user_claude_dir() -> Path:
    home = Path.home()
    return home / ".claude"


def get_prompts_dir() -> Path:
    return get_user_claude_dir() / "prompts"


def is_diagnostic_mode(project_dir: Optional[Path] = None) -> bool:
    project_dir = project_dir or get_project_dir()
    flag_file = project_dir / ".claude" / "diagnostic_mode"
    return flag_file.exists()


def save_diagnostic(content: str, name: str, project_dir: Optional[Path] = None):
    project_dir = project_dir or get_project_dir()
    diagnostic_dir = project_dir / ".claude" / "diagnostic"
    diagnostic_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filepath = diagnostic_dir / f"{timestamp}_{name}.txt"

    with open(filepath, 'w', encoding='utf-8') as f:
        f.write(content)


def read_hook_input() -> dict:
    """Read the hook event payload from stdin.

    Empty or malformed input is treated as an empty payload.
    """
    raw = sys.stdin.read()
    if not raw.strip():
        return {}

    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return {}

    return data if isinstance(data, dict) else {}


def load_settings() -> dict:
    settings_path = get_user_claude_dir() / "settings.json"

    if not settings_path.exists():
        return dict(DEFAULT_SETTINGS)

    try:
        with open(settings_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except (OSError, ValueError):
        return dict(DEFAULT_SETTINGS)

    return data if isinstance(data, dict) else dict(DEFAULT_SETTINGS)


def load_template(template_name: str, prompts_dir: Optional[Path] = None) -> str:
    template_path = (prompts_dir or get_prompts_dir()) / template_name
    with open(template_path, 'r', encoding='utf-8') as f:
        return f.read()


def fill_template(template: str, count: int = 0, **values) -> str:
    """Replace literal ``{name}`` placeholders in a single pass.

    Unlike ``str.format`` this leaves every other brace alone, so templates
    may contain JSON examples. Substituted text is never rescanned.
    ``count=0`` replaces every occurrence.
    """
    if not values:
        return template

    pattern = re.compile("|".join(re.escape("{" + key + "}") for key in values))
    return pattern.sub(lambda m: values[m.group(0)[1:-1]], template, count=count)


def _message_text(content):
    if isinstance(content, str):
        if any(marker in content for marker in COMMAND_ECHO_MARKERS):
            return None
        return content

    if isinstance(content, list):
        text_parts = [
            item['text']
            for item in content
            if isinstance(item, dict) and item.get('type') == 'text' and isinstance(item.get('text'), str)
        ]
        if text_parts:
            return '\n'.join(text_parts)

    return None


def load_transcript(transcript_path) -> list[dict]:
    conversations = []

    if not transcript_path:
        return conversations

    try:
        with open(transcript_path, 'rb') as f:
            raw_lines = f.readlines()
    except OSError:
        return conversations

    for raw_line in raw_lines:
        if not raw_line.strip():
            continue

        # Lines are decoded one at a time so a bad byte only costs its own record.
        try:
            entry = json.loads(raw_line.decode('utf-8'))
        except ValueError:
            continue

        if not isinstance(entry, dict):
            continue
        if entry.get('type') not in ['user', 'assistant']:
            continue
        if entry.get('isMeta') or entry.get('isVisibleInTranscriptOnly'):
            continue

        message = entry.get('message') or {}
        if not isinstance(message, dict):
            continue

        role = message.get('role')
        content = message.get('content', '')

        if not role or not content:
            continue

        text = _message_text(content)
        if text is not None:
            conversations.append({'role': role, 'content': text})

    return conversations
