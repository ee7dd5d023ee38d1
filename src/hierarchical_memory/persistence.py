"""
Save and load a conversation's memory as JSON.

The file holds exactly ``ConversationMemory.export_state()``. Output is
canonical (sorted keys, fixed indentation, stable list order) so that
load followed by save reproduces the file byte for byte.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Union

from .engine import ConversationMemory
from .exceptions import StateError

logger = logging.getLogger(__name__)


def dumps_state(state: Dict[str, Any]) -> str:
    return json.dumps(state, sort_keys=True, indent=2, ensure_ascii=False) + "\n"


def loads_state(text: str) -> Dict[str, Any]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise StateError(f"memory state is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise StateError("memory state must be a JSON object")
    return data


def save_state(memory: ConversationMemory, path: Union[str, Path]) -> Path:
    """Write the memory's exported state to ``path``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_state(memory.export_state()), encoding="utf-8")
    logger.info("Saved conversation %s to %s", memory.conversation_id, path)
    return path


def load_state(path: Union[str, Path], **kwargs) -> ConversationMemory:
    """Rebuild a ConversationMemory from a file written by ``save_state``."""
    path = Path(path)
    data = loads_state(path.read_text(encoding="utf-8"))
    return ConversationMemory.from_state(data, **kwargs)
