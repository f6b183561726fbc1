#!/usr/bin/env python3
"""Per-project playbook of scored key points."""
import copy
import json
from datetime import datetime
from pathlib import Path
from typing import Optional

from common import fill_template, get_prompts_dir, load_template


PLAYBOOK_VERSION = "1.0"
KEYPOINT_PREFIX = "kpt_"

RATING_DELTA = {"helpful": 1, "harmful": -3, "neutral": -1}
PRUNE_THRESHOLD = -5


def empty_playbook() -> dict:
    return {"version": PLAYBOOK_VERSION, "last_updated": None, "key_points": []}


def generate_keypoint_name(existing_names: set) -> str:
    max_num = 0
    for name in existing_names:
        if name.startswith(KEYPOINT_PREFIX):
            try:
                num = int(name[len(KEYPOINT_PREFIX):])
            except ValueError:
                continue
            max_num = max(max_num, num)

    return f"{KEYPOINT_PREFIX}{max_num + 1:03d}"


def normalize_key_points(items) -> list[dict]:
    """Upgrade legacy entries into ``{name, text, score}`` key points."""
    if not isinstance(items, list):
        return []

    # Explicit names are reserved up front so generated ones never shadow them.
    existing_names = {
        item["name"]
        for item in items
        if isinstance(item, dict)
        and isinstance(item.get("text"), str)
        and isinstance(item.get("name"), str)
        and item["name"]
    }
    seen = set()
    keypoints = []

    for item in items:
        if isinstance(item, str):
            text, name, score = item, None, 0
        elif isinstance(item, dict) and isinstance(item.get("text"), str):
            text, name, score = item["text"], item.get("name"), item.get("score", 0)
        else:
            continue

        if not isinstance(name, str) or not name or name in seen:
            name = generate_keypoint_name(existing_names)
            existing_names.add(name)
        if not isinstance(score, int) or isinstance(score, bool):
            score = 0

        seen.add(name)
        keypoints.append({"name": name, "text": text, "score": score})

    return keypoints


def update_playbook_data(playbook: dict, extraction_result: dict) -> dict:
    """Apply new key points and ratings, then prune low scorers.

    Returns a new playbook; the one passed in is left untouched.
    """
    playbook = copy.deepcopy(playbook)
    key_points = playbook.setdefault("key_points", [])

    new_key_points = extraction_result.get("new_key_points") or []
    evaluations = extraction_result.get("evaluations") or []

    existing_names = {kp["name"] for kp in key_points}
    existing_texts = {kp["text"] for kp in key_points}

    for text in new_key_points:
        if not isinstance(text, str) or not text or text in existing_texts:
            continue
        name = generate_keypoint_name(existing_names)
        key_points.append({"name": name, "text": text, "score": 0})
        existing_names.add(name)
        existing_texts.add(text)

    name_to_kp = {kp["name"]: kp for kp in key_points}

    for eval_item in evaluations:
        if not isinstance(eval_item, dict):
            continue
        name = eval_item.get("name", "")
        rating = eval_item.get("rating", "neutral")
        if not isinstance(rating, str):
            rating = None

        if name in name_to_kp:
            kp = name_to_kp[name]
            kp["score"] = kp.get("score", 0) + RATING_DELTA.get(rating, 0)

    playbook["key_points"] = [kp for kp in key_points if kp.get("score", 0) > PRUNE_THRESHOLD]

    return playbook


class PlaybookStore:
    """Reads and writes ``<project>/.claude/playbook.json``.

    There is no locking: two hooks updating the same project concurrently
    race, and the later save wins.
    """

    def __init__(self, project_dir: Path, prompts_dir: Optional[Path] = None):
        self.project_dir = Path(project_dir)
        self.prompts_dir = prompts_dir or get_prompts_dir()

    @property
    def path(self) -> Path:
        return self.project_dir / ".claude" / "playbook.json"

    def load(self) -> dict:
        if not self.path.exists():
            return empty_playbook()

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, ValueError):
            return empty_playbook()

        if not isinstance(data, dict):
            return empty_playbook()

        return {
            "version": data.get("version") or PLAYBOOK_VERSION,
            "last_updated": data.get("last_updated"),
            "key_points": normalize_key_points(data.get("key_points", [])),
        }

    def save(self, playbook: dict):
        playbook["last_updated"] = datetime.now().isoformat()
        document = {
            "version": playbook.get("version") or PLAYBOOK_VERSION,
            "last_updated": playbook["last_updated"],
            "key_points": [
                {"name": kp["name"], "text": kp["text"], "score": kp.get("score", 0)}
                for kp in playbook.get("key_points", [])
            ],
        }

        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            json.dump(document, f, indent=2, ensure_ascii=False)

    def format(self, playbook: dict) -> str:
        key_points = playbook.get('key_points', [])
        if not key_points:
            return ""

        key_points_text = "\n".join(f"- {kp['text']}" for kp in key_points)

        template = load_template("playbook.txt", self.prompts_dir)
        return fill_template(template, count=1, key_points=key_points_text)
