from fastapi import FastAPI

from orchestration_engine.api.routes.certificates import router as certificates_router
from orchestration_engine.api.routes.status import router as status_router


def create_app(orchestrator) -> FastAPI:
    app = FastAPI(title="Orchestrator Admin API")
    app.state.orchestrator = orchestrator

    @app.get("/health")
    def health():
        return {"status": "ok"}

    app.include_router(status_router)
    app.include_router(certificates_router)
    return app
