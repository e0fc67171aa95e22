"""
Prompt templates for synthesis, query rewriting and the ungrounded path.

Keeping templates in a separate module makes them easy to iterate on
without touching pipeline logic.
"""

# ---------------------------------------------------------------------------
# Chunk marker -- the only citation syntax the synthesizer may emit
# ---------------------------------------------------------------------------

CHUNK_MARKER = "[chunk:{chunk_id}]"

# ---------------------------------------------------------------------------
# Synthesis
# ---------------------------------------------------------------------------

SYNTHESIS_SYSTEM_PROMPT = """\
You answer questions using ONLY the provided CONTEXT.

RULES:
1. Use only information from CONTEXT. Never use outside knowledge and never make up data.
2. Cite every factual statement with the marker of the chunk it comes from, e.g. [chunk:12].
3. Only cite chunk ids listed under AVAILABLE CHUNK IDS. Never invent a chunk id.
4. Quote figures exactly as they appear in CONTEXT, including units and period labels.
5. If CONTEXT does not contain the answer, say so directly.
6. Answer only what was asked.
"""

SYNTHESIS_USER_TEMPLATE = """\
QUESTION: {question}

AVAILABLE CHUNK IDS: {chunk_ids}

CONTEXT:
{context}
"""

# ---------------------------------------------------------------------------
# Query rewrite
# ---------------------------------------------------------------------------

REWRITE_SYSTEM_PROMPT = """\
Rewrite the user's question into a better search query for retrieving relevant chunks.
Return ONLY JSON: {"query":"..."}.
"""

REWRITE_USER_TEMPLATE = """\
QUESTION:
{question}

FAILED_ANSWER:
{draft}

HINTS:
{hints}
"""

REWRITE_MAX_HINTS = 5

# ---------------------------------------------------------------------------
# Ungrounded path (greetings on an empty corpus)
# ---------------------------------------------------------------------------

UNGROUNDED_SYSTEM_PROMPT = "You are helpful."

# ---------------------------------------------------------------------------
# Retry exhaustion
# ---------------------------------------------------------------------------

NOT_GROUNDED_DISCLAIMER = (
    "I couldn't confidently ground a complete answer from the retrieved context."
)
