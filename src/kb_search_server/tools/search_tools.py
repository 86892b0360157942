"""
Knowledge Base Context Tool

Turns retrieved chunks into the context block handed to the LLM, together
with the citations shown to the user.

Responsibilities
----------------
- Run the retrieval façade for the user's question
- Number each chunk and label it with its source and level
- Cap the context size so a long result set cannot overflow the prompt
"""

from __future__ import annotations

from typing import List, Optional, Tuple

from ..api.models import Citation
from ..embeddings.models import ResultChunk
from ..prompts import NO_CONTEXT_NOTE
from ..retrieval.service import KnowledgeBaseSearch, SearchOptions

MAX_CONTEXT_CHARS = 12000


# ---------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------

def format_context(
    chunks: List[ResultChunk],
    max_chars: int = MAX_CONTEXT_CHARS,
) -> Tuple[str, List[ResultChunk]]:
    """
    Render chunks as numbered excerpts, best first.

    Excerpts that would push the block past ``max_chars`` are left out;
    the first excerpt is always kept (truncated if necessary).

    Returns
    -------
    (str, List[ResultChunk])
        The context block and the chunks that made it into the block.
    """
    if not chunks:
        return NO_CONTEXT_NOTE, []

    parts: List[str] = []
    included: List[ResultChunk] = []
    used = 0
    for number, chunk in enumerate(chunks, start=1):
        label = f"[{number}] {chunk.source_name} ({chunk.level}"
        if chunk.page_number is not None:
            label += f", page {chunk.page_number}"
        label += ")"
        block = f"{label}\n{chunk.text.strip()}"

        if parts and used + len(block) > max_chars:
            break
        if not parts and len(block) > max_chars:
            block = block[:max_chars]

        parts.append(block)
        included.append(chunk)
        used += len(block) + 2

    return "\n\n".join(parts), included


def to_citations(chunks: List[ResultChunk]) -> List[Citation]:
    return [
        Citation(
            source_id=c.source_id,
            source_name=c.source_name,
            level=c.level,
            chunk_number=c.chunk_number,
            download_url=c.download_url,
            distance=c.distance,
        )
        for c in chunks
    ]


# ---------------------------------------------------------------------
# Main Tool
# ---------------------------------------------------------------------

async def tool_knowledge_search(
    query: str,
    service: KnowledgeBaseSearch,
    limit: int = 5,
    topic: Optional[str] = None,
) -> Tuple[str, List[Citation]]:
    """
    Retrieve context for ``query``.

    Returns
    -------
    (str, List[Citation])
        Prompt-ready context block and citations for the excerpts it contains.

    Raises
    ------
    RetrievalError
        Propagated from the façade; the caller decides how to degrade.
    """
    chunks = await service.search(query, SearchOptions(limit=limit, topic=topic))
    context, included = format_context(chunks)
    return context, to_citations(included)
