"""
Chat Routes: Knowledge-Grounded Conversational Interface

This module implements the conversational endpoint. Every turn is grounded
in the knowledge base:

1. Take the latest user message as the retrieval query.
2. Retrieve relevant chunks through the retrieval façade.
3. Call the LLM with the system prompt, the numbered context and the
   conversation so far.
4. Return the assistant message plus the citations used as context.

Failure Model
-------------
- No relevant chunks: the LLM is still called, with an explicit
  "no content found" note, so it can say it does not know.
- Retrieval failure (provider outage, timeout, misconfiguration): the LLM
  is NOT called and a generic apology is returned with
  ``retrieval_failed=True``. Details go to the log only.
"""

import logging
from fastapi import APIRouter, Depends, HTTPException, status
from typing import Annotated, List, Dict

from .models import ChatRequest, ChatResponse, ChatMessage
from .dependencies import get_llm_client, get_search_service
from ..core.errors import RetrievalError
from ..llm.client import LLMClient
from ..prompts import CHAT_SYSTEM_PROMPT, RETRIEVAL_FAILED_REPLY
from ..retrieval.service import KnowledgeBaseSearch
from ..tools.search_tools import tool_knowledge_search

logger = logging.getLogger("kb.chat")

router = APIRouter(prefix="/chat", tags=["chat"])


# ---------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------

def _convert_history_to_llm_format(history: List[ChatMessage]) -> List[Dict[str, str]]:
    """Convert ChatMessage objects into plain dicts for LLM input."""
    return [{"role": m.role, "content": m.content} for m in history if m.role != "system"]


def _latest_user_message(messages: List[ChatMessage]) -> str:
    for message in reversed(messages):
        if message.role == "user":
            return message.content
    return ""


# ---------------------------------------------------------------------
# Chat Route
# ---------------------------------------------------------------------

@router.post(
    "/",
    response_model=ChatResponse,
    summary="Answer a question from the knowledge base",
    status_code=status.HTTP_200_OK,
)
async def chat(
    req: ChatRequest,
    llm: Annotated[LLMClient, Depends(get_llm_client)],
    service: Annotated[KnowledgeBaseSearch, Depends(get_search_service)],
) -> ChatResponse:
    """
    Knowledge-grounded chat turn.

    Parameters
    ----------
    req : ChatRequest
        Contains:
        - messages: Conversation so far, ending with the user's question
        - topic / limit: Optional retrieval controls

    Returns
    -------
    ChatResponse
        Conversation with the assistant reply appended, plus citations.
    """

    # -------------------------------------------------------------
    # 1. Retrieve Context
    # -------------------------------------------------------------
    query = _latest_user_message(req.messages)

    try:
        context, citations = await tool_knowledge_search(
            query, service, limit=req.limit, topic=req.topic
        )
    except RetrievalError as exc:
        logger.error("Retrieval failed for chat turn: %s (%s)", type(exc).__name__, exc)
        return ChatResponse(
            messages=req.messages + [ChatMessage(role="assistant", content=RETRIEVAL_FAILED_REPLY)],
            retrieval_failed=True,
        )

    # -------------------------------------------------------------
    # 2. LLM Call
    # -------------------------------------------------------------
    system_prompt = (
        CHAT_SYSTEM_PROMPT
        + "\n<knowledge_base>\n"
        + context
        + "\n</knowledge_base>\n"
    )

    try:
        response_msg = await llm.chat(
            system_prompt,
            _convert_history_to_llm_format(req.messages),
        )
    except Exception as exc:
        logger.exception("LLM call failed")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"LLM call failed: {type(exc).__name__}",
        ) from exc

    # -------------------------------------------------------------
    # 3. Return Response
    # -------------------------------------------------------------
    final_answer = response_msg.get("content") or ""

    return ChatResponse(
        messages=req.messages + [ChatMessage(role="assistant", content=final_answer)],
        citations=citations,
    )
