"""Prompt composition for grounded support replies.

``compose`` is a pure function: identical inputs always produce a
byte-identical prompt. The section order is fixed:

1. Role preamble
2. Retrieved context (or a "no context" sentinel)
3. Conversation history, oldest first (or a "start of conversation" sentinel)
4. Current customer message
5. Closing instructions
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from src.knowledge.models import RetrievedContext

MAX_HISTORY_TURNS = 10

PREAMBLE = (
    "You are a helpful customer service assistant. You should provide accurate, "
    "professional, and empathetic responses to customer inquiries."
)

NO_CONTEXT_SENTINEL = (
    "No relevant context found in knowledge base. Provide a helpful general response."
)

START_OF_CONVERSATION_SENTINEL = "This is the start of the conversation."

INSTRUCTIONS = """INSTRUCTIONS:
- Use the context from previous conversations to inform your response when relevant
- Maintain a professional and empathetic tone
- If you don't have enough information to answer accurately, ask clarifying questions
- Keep responses concise but complete
- If the context provides specific information relevant to the user's query, reference it appropriately

Please provide a helpful response to the user's message:"""

_SPEAKER_TAGS = {
    "client": "Customer",
    "agent": "Agent",
    "llm": "Assistant",
}


def format_history(messages: Iterable[object]) -> list[str]:
    """Render ledger messages as speaker-tagged turns, most recent 10 only.

    Accepts anything with ``sender_kind`` and ``content`` attributes
    (ledger ``Message`` objects); ``sender_kind`` may be an enum or a string.
    """
    turns: list[str] = []
    for message in messages:
        kind = getattr(message, "sender_kind")
        kind_value = getattr(kind, "value", kind)
        speaker = _SPEAKER_TAGS.get(str(kind_value), "Assistant")
        turns.append(f"{speaker}: {getattr(message, 'content')}")
    return turns[-MAX_HISTORY_TURNS:]


def _context_block(context: Sequence[RetrievedContext]) -> str:
    if not context:
        return f"\n{NO_CONTEXT_SENTINEL}\n"
    parts = []
    for index, item in enumerate(context, start=1):
        parts.append(
            f"\n[Context {index}] (Source: {item.source}, Similarity: {item.similarity:.2f})\n"
            f"{item.content}\n"
        )
    return "".join(parts)


def _history_block(history: Sequence[str]) -> str:
    recent = list(history)[-MAX_HISTORY_TURNS:]
    if not recent:
        return f"{START_OF_CONVERSATION_SENTINEL}\n"
    return "".join(f"{index}. {turn}\n" for index, turn in enumerate(recent, start=1))


def compose(
    user_message: str,
    history: Sequence[str],
    context: Sequence[RetrievedContext],
) -> str:
    """Assemble the generation prompt.

    Args:
        user_message: The customer message being answered.
        history: Prior turns, oldest first, already speaker-tagged.
            Only the most recent 10 are kept.
        context: Retrieved knowledge entries in ranking order.

    Returns:
        The complete prompt string.
    """
    return (
        f"{PREAMBLE}\n\n"
        "CONTEXT FROM PREVIOUS CONVERSATIONS:\n"
        f"{_context_block(context)}"
        "\nCONVERSATION HISTORY:\n"
        f"{_history_block(history)}"
        "\nCURRENT USER MESSAGE:\n"
        f"{user_message}\n\n"
        f"{INSTRUCTIONS}"
    )
