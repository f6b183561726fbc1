#!/usr/bin/env python3
import sys
import asyncio
from common import get_project_dir, load_transcript, read_hook_input
from playbook_store import PlaybookStore, update_playbook_data
from reflection import extract_keypoints
from session_gate import SessionGate


async def main():
    input_data = read_hook_input()

    transcript_path = input_data.get("transcript_path")
    messages = load_transcript(transcript_path)

    if not messages:
        sys.exit(0)

    project_dir = get_project_dir()
    store = PlaybookStore(project_dir)

    playbook = store.load()
    extraction_result = await extract_keypoints(
        messages, playbook, "precompact_reflection"
    )
    playbook = update_playbook_data(playbook, extraction_result)
    store.save(playbook)

    SessionGate(project_dir).clear_session()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        import traceback

        traceback.print_exc(file=sys.stderr)
        sys.exit(1)
