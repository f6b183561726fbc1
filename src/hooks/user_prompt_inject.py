#!/usr/bin/env python3
"""User Prompt Hook - Inject playbook on first message of new session"""
import json
import sys
from common import (
    get_project_dir, is_diagnostic_mode, read_hook_input, save_diagnostic
)
from playbook_store import PlaybookStore
from session_gate import SessionGate


def build_response(context: str) -> dict:
    if not context:
        return {}

    return {
        "hookSpecificOutput": {
            "hookEventName": "UserPromptSubmit",
            "additionalContext": context
        }
    }


def main():
    input_data = read_hook_input()
    session_id = input_data.get('session_id') or 'unknown'

    project_dir = get_project_dir()
    gate = SessionGate(project_dir)

    if not gate.is_first_message(session_id):
        print(json.dumps({}), flush=True)
        sys.exit(0)

    store = PlaybookStore(project_dir)
    context = store.format(store.load())

    if not context:
        if is_diagnostic_mode(project_dir):
            save_diagnostic("No key points to inject (playbook is empty).",
                            "user_prompt_inject_empty", project_dir)
        print(json.dumps({}), flush=True)
        sys.exit(0)

    if is_diagnostic_mode(project_dir):
        save_diagnostic(context, "user_prompt_inject", project_dir)

    sys.stdout.reconfigure(encoding='utf-8')
    print(json.dumps(build_response(context)), flush=True)

    gate.mark_session(session_id)


if __name__ == "__main__":
    try:
        main()
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        import traceback
        traceback.print_exc(file=sys.stderr)
        print(json.dumps({}), flush=True)
        sys.exit(1)
