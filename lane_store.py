"""Append-only store mapping sub-chat lanes to agent server session ids."""
from __future__ import annotations

import json
import logging
import os
import time
from typing import Dict, Optional

logger = logging.getLogger(__name__)

STORE_DIRNAME = "lanes"
INDEX_BASENAME = "sessions.jsonl"


def _ensure_dir(root: str) -> str:
    path = os.path.join(root, STORE_DIRNAME)
    os.makedirs(path, exist_ok=True)
    return path


def _index_path(root: str) -> str:
    return os.path.join(_ensure_dir(root), INDEX_BASENAME)


def update_session_id(root: str, sub_chat_id: str, session_id: str, meta: Optional[dict] = None) -> None:
    """Record ``session_id`` as the current session of ``sub_chat_id``."""
    record = {
        "sub_chat_id": sub_chat_id,
        "session_id": session_id,
        "ts": int(time.time()),
        "meta": meta or {},
    }
    with open(_index_path(root), "a", encoding="utf-8") as index:
        index.write(json.dumps(record, ensure_ascii=False) + "\n")


def load_session_ids(root: str) -> Dict[str, str]:
    """Latest session id per sub-chat; later records win."""
    path = os.path.join(root, STORE_DIRNAME, INDEX_BASENAME)
    if not os.path.exists(path):
        return {}
    mapping: Dict[str, str] = {}
    with open(path, "r", encoding="utf-8") as handle:
        for line in handle:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.warning("skipping corrupt lane record in %s", path)
                continue
            sub_chat_id = record.get("sub_chat_id")
            session_id = record.get("session_id")
            if sub_chat_id and session_id:
                mapping[str(sub_chat_id)] = str(session_id)
    return mapping


def get_session_id(root: str, sub_chat_id: str) -> Optional[str]:
    return load_session_ids(root).get(sub_chat_id)
