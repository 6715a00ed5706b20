"""
Application FastAPI — Point d'entrée
====================================

Rôle
----
- Fabrique l'app FastAPI (`create_app`), configure le CORS pour l'UI croupier,
- Monte les routeurs REST sous `/api`, plus `/health` et le WebSocket `/ws`,
- Traduit les erreurs métier en réponses JSON `{"error": message}`.

Notes
-----
- Une app = un moteur = une session (app.state.engine). Les tests injectent leur moteur.
- Sans moteur injecté, le lifespan le construit depuis l'environnement : un WORKBOOK_PATH absent
  ou inexistant fait échouer le démarrage (ConfigurationFailure).
- Le middleware CORS doit être ajouté AVANT les include_router.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from chicken_vault.config.settings import settings
from chicken_vault.routes.game import router as game_router
from chicken_vault.routes.health import router as health_router
from chicken_vault.routes.investigation import router as investigation_router
from chicken_vault.routes.lobby import router as lobby_router
from chicken_vault.routes.players import router as players_router
from chicken_vault.routes.websocket import router as ws_router
from chicken_vault.services.errors import ConfigurationFailure, VaultError
from chicken_vault.services.game_engine import GameEngine, build_engine
from chicken_vault.services.ws_manager import WS

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if getattr(app.state, "engine", None) is None:
        app.state.engine = build_engine(settings)
    engine: GameEngine = app.state.engine
    WS.attach(engine.bus)
    logger.info(
        "Chicken Vault ready",
        extra={"workbook_path": engine.config.workbook_path, "routes": len(app.routes)},
    )
    try:
        yield
    finally:
        engine.close()
        WS.detach()
        await WS.close_all()


def _error_message(exc: Exception) -> str:
    if isinstance(exc, (RequestValidationError, ValidationError)):
        errors = exc.errors()
        if errors:
            first = errors[0]
            where = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
            return f"{where}: {first.get('msg')}" if where else str(first.get("msg"))
    return str(exc) or "Unexpected server error"


def create_app(engine: Optional[GameEngine] = None) -> FastAPI:
    app = FastAPI(title=settings.APP_NAME, lifespan=lifespan)
    app.state.engine = engine

    # ===========================
    # CORS
    # ===========================
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ===========================
    # Erreurs métier -> JSON
    # ===========================
    @app.exception_handler(VaultError)
    async def vault_error_handler(request: Request, exc: VaultError):
        status = 500 if isinstance(exc, ConfigurationFailure) else 400
        logger.info("Command rejected", extra={"path": request.url.path, "error": str(exc)})
        return JSONResponse(status_code=status, content={"error": _error_message(exc)})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": _error_message(exc)})

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"error": _error_message(exc)})

    # ===========================
    # Montage des routers
    # ===========================
    app.include_router(lobby_router, prefix="/api")
    app.include_router(players_router, prefix="/api")
    app.include_router(game_router, prefix="/api")
    app.include_router(investigation_router, prefix="/api")
    app.include_router(health_router)
    app.include_router(ws_router)
    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("chicken_vault.main:app", host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    run()
