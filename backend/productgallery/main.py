"""
Product Gallery API - FastAPI Main Entry

✅ LOCAL:
    pip install -e ".[test]"
    python -m uvicorn productgallery.main:app --reload --host 0.0.0.0 --port 8000

✅ TEST:
    curl -i http://127.0.0.1:8000/health
    curl -i http://127.0.0.1:8000/v1/lookup/5901234123457
    curl -i -X POST http://127.0.0.1:8000/v1/gallery \
         -H 'Content-Type: application/json' \
         -d '{"title": "Acme Kettle 1.7L"}'

✅ PRODUCTION:
    Start Command:
        python -m uvicorn productgallery.main:app --host 0.0.0.0 --port $PORT

    Env:
        GEMINI_API_KEY, SERPAPI_API_KEY (optional), CACHE_PATH (optional)
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from productgallery.core.config import settings
from productgallery.core.log_setup import setup_logging

# ✅ Routers
from productgallery.api.routes_gallery import router as gallery_router
from productgallery.api.routes_lookup import router as lookup_router
from productgallery.api.routes_meta import router as meta_router


def create_app() -> FastAPI:
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title="Product Gallery API",
        version=settings.APP_VERSION,
        description="Barcode lookup + verified product photo gallery",
    )

    # ✅ CORS
    # NOTE:
    # - Browser front-ends and Swagger docs need it
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # You can lock this down later for production security
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ✅ Root (GET /)
    @app.get("/")
    def root():
        return {
            "name": "Product Gallery API",
            "status": "ok",
            "docs": "/docs",
            "health": "/health",
            "version": "/version",
        }

    # ✅ Health Check (GET /health)
    @app.get("/health")
    def health():
        return {"ok": True}

    # ✅ Mount routers
    app.include_router(meta_router)
    app.include_router(lookup_router)
    app.include_router(gallery_router)

    return app


app = create_app()
