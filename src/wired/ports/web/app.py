from __future__ import annotations

from typing import Any, Dict, Protocol

from fastapi import FastAPI, HTTPException, Request
from pydantic import ValidationError

from ... import __version__
from ...contracts.v1 import InjectArgs


class InstanceControl(Protocol):
    """What the HTTP port needs from the supervisor."""

    def inject(self, source: str, content: str) -> bool: ...

    def status(self) -> Dict[str, Any]: ...


def create_app(control: InstanceControl) -> FastAPI:
    app = FastAPI(title="wired instance", version=__version__)

    @app.post("/inject")
    async def inject(request: Request) -> Dict[str, Any]:
        try:
            body = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail={"code": "invalid_json", "message": "invalid JSON body"})
        if not isinstance(body, dict) or not str(body.get("content") or "").strip():
            raise HTTPException(status_code=400, detail={"code": "missing_content", "message": "missing content"})
        try:
            args = InjectArgs.model_validate(body)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail={"code": "invalid_request", "message": str(e)})

        success = bool(control.inject(args.source, args.content))
        return {"success": success, "source": args.source, "instance": control.status().get("instance")}

    @app.get("/status")
    async def status() -> Dict[str, Any]:
        st = control.status()
        return {
            "instance": st.get("instance"),
            "child_pids": st.get("child_pids") or {},
            "uptime": st.get("uptime"),
        }

    return app
