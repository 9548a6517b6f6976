"""FastAPI entrypoint for document, query, retrieval and trace endpoints."""

from __future__ import annotations

import os
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from docqa.config import Settings
from docqa.ingest.embedder import HashingEmbedder
from docqa.llm import LangChainLanguageModel, LanguageModel, ResilientLanguageModel
from docqa.retrieval.vector_store import InMemoryVectorIndex
from docqa.service import Capabilities, DocQAService


def _create_llm(settings: Settings) -> LanguageModel | None:
    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        return None

    from langchain_openai import ChatOpenAI

    chat_model = ChatOpenAI(model=settings.openai_model, temperature=0)
    return ResilientLanguageModel(
        LangChainLanguageModel(chat_model),
        timeout_seconds=settings.agent.reasoning_timeout_seconds,
        retry=settings.retry,
    )


def build_default_service(settings: Settings | None = None) -> DocQAService:
    settings = settings or Settings.from_env()
    llm = _create_llm(settings)
    capabilities = Capabilities(
        summarizer=llm,
        reasoner=llm,
        vector_search=InMemoryVectorIndex(HashingEmbedder()),
    )
    return DocQAService(capabilities, settings)


class DocumentRequest(BaseModel):
    chunks: list[str] = Field(min_length=1)


class QueryRequest(BaseModel):
    question: str = Field(min_length=1)
    conversation: list[dict[str, str]] = Field(default_factory=list)


class RetrieveRequest(BaseModel):
    question: str = Field(min_length=1)


class KeywordSearchRequest(BaseModel):
    keywords: list[str] = Field(min_length=1)
    top_k: int = Field(default=8, ge=1, le=30)


def create_app(service: DocQAService | None = None) -> FastAPI:
    app = FastAPI(title="Document QA", version="0.1.0")
    svc = service or build_default_service()
    app.state.service = svc

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "llm_configured": svc.capabilities.reasoner is not None,
            "answer_mode": "reasoning" if svc.engine is not None else "fallback",
            "capabilities": svc.capability_flags(),
            "trace_count": len(svc.trace_store),
        }

    @app.post("/documents")
    async def load_document(request: DocumentRequest) -> dict[str, Any]:
        return await svc.load_chunks(request.chunks)

    @app.post("/query")
    async def query(request: QueryRequest) -> dict[str, Any]:
        if not svc.has_chunks:
            raise HTTPException(status_code=409, detail="No document loaded")
        result = await svc.answer(request.question, conversation=request.conversation)
        if result.error:
            raise HTTPException(status_code=502, detail=result.error)
        return asdict(result)

    @app.post("/retrieve")
    async def retrieve(request: RetrieveRequest) -> dict[str, Any]:
        if not svc.has_chunks:
            raise HTTPException(status_code=409, detail="No document loaded")
        result, trace_id = await svc.retrieve(request.question)
        return {
            "trace_id": trace_id,
            "session_id": result.session_id,
            "source": result.source,
            "rounds": result.rounds,
            "context": result.context,
            "provenance": [asdict(item) for item in result.provenance],
            "events": [event.as_dict() for event in result.events],
        }

    @app.post("/search/keywords")
    def search_keywords(request: KeywordSearchRequest) -> dict[str, Any]:
        return {"items": svc.search_keywords(request.keywords, request.top_k)}

    @app.get("/traces")
    def traces(limit: int = 20) -> dict[str, Any]:
        records = [asdict(record) for record in svc.trace_store.list_recent(limit=limit)]
        return {"items": records}

    @app.get("/traces/{trace_id}")
    def trace_detail(trace_id: str) -> dict[str, Any]:
        try:
            record = svc.trace_store.get(trace_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return asdict(record)

    @app.get("/metrics")
    def metrics() -> dict[str, Any]:
        return svc.trace_store.summary()

    return app


app = create_app()
