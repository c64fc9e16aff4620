from __future__ import annotations

from fastapi import FastAPI

from api.engine import Engine, build_engine
from api.middleware.logging import RequestLoggingMiddleware
from api.middleware.rate_limiting import RateLimitMiddleware
from api.routers import cases, knowledge, webhooks


def create_app(engine: Engine | None = None) -> FastAPI:
    app = FastAPI(title="Legal Funnel Engine", version="0.1.0")
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RateLimitMiddleware)
    app.state.engine = engine or build_engine()

    api_prefix = "/api/v1"
    app.include_router(webhooks.router, prefix=api_prefix)
    app.include_router(knowledge.router, prefix=api_prefix)
    app.include_router(cases.router, prefix=api_prefix)

    @app.get("/health")
    async def health():
        engine: Engine = app.state.engine
        return {
            "ok": True,
            "service": "legal-funnel-engine",
            "llm_available": engine.llm.available(),
            "embeddings_available": engine.llm.embeddings_available(),
            "record_store": type(engine.store).__name__,
            "background_tasks": engine.runner.pending,
        }

    return app


app = create_app()
