"""
Message condenser for raw memory items.

Turns LangChain chat messages into the plain text stored as a raw item:
thinking/reasoning blocks are stripped and tool results truncated, so the
character budget is spent on what was actually said.
"""

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)

_ROLES = (
    (HumanMessage, "user"),
    (AIMessage, "assistant"),
    (SystemMessage, "system"),
    (ToolMessage, "tool"),
)


def message_role(msg: BaseMessage) -> str:
    """Map a message class to the role recorded on the memory item."""
    for cls, role in _ROLES:
        if isinstance(msg, cls):
            return role
    return getattr(msg, "type", "user") or "user"


def message_text(msg: BaseMessage, max_tool_chars: int = 200) -> str:
    """
    Condensed text of a message.

    - ToolMessage: content truncated to max_tool_chars
    - AIMessage with block content: thinking/reasoning blocks dropped
    - anything else: text blocks joined
    """
    if isinstance(msg, ToolMessage):
        return _condense_tool_content(msg, max_tool_chars)
    return _content_text(msg.content)


def _content_text(content) -> str:
    if isinstance(content, str):
        return content
    if not isinstance(content, list):
        return str(content) if content else ""

    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict):
            btype = block.get("type", "")
            if btype in ("thinking", "reasoning"):
                continue
            text = block.get("text", "")
            if text:
                parts.append(text)
    return "\n".join(p for p in parts if p)


def _condense_tool_content(msg: ToolMessage, max_chars: int) -> str:
    """Truncate tool message content."""
    content = _content_text(msg.content) if msg.content else ""
    if len(content) <= max_chars:
        return content
    return content[:max_chars] + "\n... (truncated)"
