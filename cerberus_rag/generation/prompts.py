"""
Prompt templates for the ticket answer generator.

Keeping templates in a separate module makes them easy to iterate on
without touching generation logic.
"""

# ---------------------------------------------------------------------------
# System prompt (first message of every conversation)
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """\
You are a helpful support assistant with access to historical support ticket data.
Your role is to answer questions based on the provided ticket context.
Be precise, professional, and cite relevant ticket information when possible.
If you don't have enough information, say so clearly."""

# ---------------------------------------------------------------------------
# Per-question prompt
# ---------------------------------------------------------------------------

ANSWER_PROMPT = """\
Based on the following support ticket information, answer the user's question.

Context from tickets:
{context}

User question: {question}

Answer:"""

# ---------------------------------------------------------------------------
# Context block for one passage
# ---------------------------------------------------------------------------

SOURCE_TEMPLATE = "[Source {index} - Ticket {mask}]\n{text}"

# ---------------------------------------------------------------------------
# Fallback when nothing cleared the relevance threshold
# ---------------------------------------------------------------------------

NO_CONTEXT_RESPONSE = (
    "I couldn't find any relevant information in the ticket database "
    "to answer your question."
)
