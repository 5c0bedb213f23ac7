"""Application factory and demo routes showing the session manager in use."""

from fastapi import FastAPI, Request, Response
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .manager import SessionManager, create_default_manager


def create_app(manager: SessionManager) -> FastAPI:
    """Return an app whose routes keep their state in `manager`'s sessions."""
    app = FastAPI(title="Cache Session - Dev Skeleton")
    app.state.session_manager = manager

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/", response_class=PlainTextResponse)
    def form(request: Request, response: Response, v: str = ""):
        """Store `v` in the session when given, otherwise echo the stored value."""
        with manager.session(request, response) as ssn:
            if v:
                ssn.values["v"] = v
            else:
                v = ssn.values.get_str("v")
        return v

    @app.post("/flash")
    def add_flash(request: Request, response: Response, msg: str):
        with manager.session(request, response) as ssn:
            ssn.add_flash(msg)
        return {"status": "queued"}

    @app.get("/flashes")
    def flashes(request: Request, response: Response):
        """Drain pending flash messages."""
        with manager.session(request, response) as ssn:
            messages = ssn.flashes()
        return {"flashes": messages}

    @app.get("/metrics")
    async def metrics():
        """Expose Prometheus metrics."""
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app(create_default_manager())
