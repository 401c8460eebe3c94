"""
Cerberus Ticket RAG - Web API Server
-------------------------------------
FastAPI server that wraps the RetrievalPipeline.

Endpoints:
  GET  /api/health      -> pipeline status, collection size, available models
  POST /api/candidates  -> ranked answer candidates for a query (no generation)
  POST /api/chat        -> retrieval + grounded answer with a user-selected LLM

Run from the project root:
    uvicorn app.server:app --reload --port 8000

Chat is stateless: clients that want multi-turn behaviour send the previous
turns in `history`.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from functools import partial
from typing import Literal, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, Field, field_validator

from cerberus_rag.exceptions import CollaboratorError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Allowed model identifiers and their providers
_OPENAI_MODELS    = {"gpt-4o-mini", "gpt-4o", "gpt-4"}
_ANTHROPIC_MODELS = {"claude-haiku-4-5-20251001", "claude-sonnet-4-6"}
_ALL_MODELS       = _OPENAI_MODELS | _ANTHROPIC_MODELS

# ---------------------------------------------------------------------------
# Pipeline singleton
# ---------------------------------------------------------------------------

_pipeline = None
_settings = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Load the retrieval pipeline once at startup; clean up on shutdown."""
    global _pipeline, _settings
    from cerberus_rag.config import load_settings
    from cerberus_rag.serving.pipeline import build_pipeline
    from cerberus_rag.utils.logger import setup_logger

    _settings = load_settings()
    setup_logger(log_level=_settings.logging.level, log_file=_settings.logging.file)
    logger.info("[Server] Loading retrieval pipeline...")
    _pipeline = build_pipeline(_settings)
    yield
    _pipeline = None
    logger.info("[Server] Pipeline unloaded.")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Cerberus Ticket RAG API",
    description="Hybrid retrieval and grounded chat over Cerb support tickets",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Request / Response models
# ---------------------------------------------------------------------------

class CandidatesRequest(BaseModel):
    query: str


class CandidateModel(BaseModel):
    text: str
    score: float
    source_id: str
    display_metadata: dict


class CandidatesResponse(BaseModel):
    candidates: list[CandidateModel]
    tokens_used: int


class HistoryMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    message: str
    model: str = "gpt-4o-mini"
    provider: Literal["openai", "anthropic"] = "openai"
    history: list[HistoryMessage] = Field(default_factory=list)

    @field_validator("model")
    @classmethod
    def validate_model(cls, v: str) -> str:
        if v not in _ALL_MODELS:
            raise ValueError(
                f"Unknown model '{v}'. "
                f"Allowed: {sorted(_ALL_MODELS)}"
            )
        return v

    @field_validator("provider")
    @classmethod
    def validate_provider_model_match(cls, v: str, info) -> str:
        # info.data contains already-validated fields
        model = info.data.get("model", "gpt-4o-mini")
        if v == "openai" and model in _ANTHROPIC_MODELS:
            raise ValueError(f"Model '{model}' is not an OpenAI model.")
        if v == "anthropic" and model in _OPENAI_MODELS:
            raise ValueError(f"Model '{model}' is not an Anthropic model.")
        return v


class ChatResponseModel(BaseModel):
    answer: str
    sources: list[CandidateModel]
    tokens_used: int
    model: str
    provider: str


# ---------------------------------------------------------------------------
# Generator factory
# ---------------------------------------------------------------------------

def _make_generator(provider: str, model: str):
    """Instantiate the correct generator class for the given provider/model."""
    max_tokens = _settings.openai.max_tokens if _settings else 2000
    temperature = _settings.openai.temperature if _settings else 0.7
    if provider == "anthropic":
        from cerberus_rag.generation.generator import AnthropicGenerator
        return AnthropicGenerator(model=model, max_tokens=max_tokens, temperature=temperature)
    from cerberus_rag.generation.generator import RAGGenerator
    return RAGGenerator(model=model, max_tokens=max_tokens, temperature=temperature)


def _require_pipeline():
    if _pipeline is None:
        raise HTTPException(status_code=503, detail="Pipeline not ready")
    return _pipeline


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health():
    """Return pipeline status, collection size, and available models."""
    pipeline = _require_pipeline()
    return {
        "status": "ok",
        "passages": pipeline.index.count(),
        "rerank_mode": pipeline.rerank_mode,
        "min_similarity_score": pipeline.min_similarity_score,
        "available_models": {
            "openai": sorted(_OPENAI_MODELS),
            "anthropic": sorted(_ANTHROPIC_MODELS),
        },
    }


@app.post("/api/candidates", response_model=CandidatesResponse)
async def candidates(request: CandidatesRequest):
    """Ranked answer candidates only; an empty list is a normal response."""
    from cerberus_rag.cost_tracker import CostTracker

    pipeline = _require_pipeline()
    query = request.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="Query cannot be empty")

    cost = CostTracker()
    loop = asyncio.get_running_loop()
    try:
        results = await loop.run_in_executor(
            None, partial(pipeline.answer_candidates, query, cost)
        )
    except CollaboratorError as exc:
        logger.error(f"[API] Candidates failed: {exc}")
        raise HTTPException(status_code=502, detail=str(exc))

    return CandidatesResponse(
        candidates=[CandidateModel(**c.to_dict()) for c in results],
        tokens_used=cost.token_count,
    )


@app.post("/api/chat", response_model=ChatResponseModel)
async def chat(request: ChatRequest):
    """
    Retrieve, rerank and answer one message.

    Retrieval and reranking always use the configured models; only the
    final generation step uses the model chosen in the request. The
    blocking work runs in a thread-pool executor to keep the event loop free.
    """
    from cerberus_rag.generation.memory import ConversationMemory
    from cerberus_rag.serving.pipeline import ChatSession

    pipeline = _require_pipeline()
    message = request.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="Message cannot be empty")

    logger.info(
        f"[API] Chat | provider={request.provider} model={request.model} | "
        f"query={message[:80]!r}"
    )

    generator = _make_generator(request.provider, request.model)
    memory = ConversationMemory()
    turns = request.history
    for user, assistant in zip(turns[0::2], turns[1::2]):
        memory.add_exchange(user.content, assistant.content)
    session = ChatSession(pipeline, generator, memory=memory)

    loop = asyncio.get_running_loop()
    try:
        result = await loop.run_in_executor(None, partial(session.ask, message))
    except CollaboratorError as exc:
        logger.error(f"[API] Chat failed: {exc}")
        raise HTTPException(status_code=502, detail=str(exc))

    return ChatResponseModel(
        answer=result.answer,
        sources=[CandidateModel(**s.to_dict()) for s in result.sources],
        tokens_used=result.tokens_used,
        model=request.model,
        provider=request.provider,
    )
