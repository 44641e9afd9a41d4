from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from voice_relay.api.audio import router as audio_router
from voice_relay.api.ws import router as ws_router
from voice_relay.core.config import settings
from voice_relay.core.logging import configure_logging


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Realtime Voice Relay", version="0.1.0")

    # CORS: adjust allowed origins for RN + web as needed
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOW_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        return {"ok": True}

    app.include_router(ws_router)
    app.include_router(audio_router)
    return app


app = create_app()
