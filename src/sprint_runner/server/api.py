"""FastAPI application for Sprint Runner."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ..runtime import SprintRuntime, build_runtime
from .sprint_api import create_sprint_router


def create_app(
    project_dir: Optional[Path] = None,
    enable_cors: bool = True,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        project_dir: Default project directory.
        enable_cors: Whether to enable CORS.

    Returns:
        Configured FastAPI app.
    """
    app = FastAPI(
        title="Sprint Runner",
        description="Inspect and drive sprint task lifecycles",
        version="0.1.0",
    )

    if enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.state.default_project_dir = project_dir

    def _get_runtime(project_dir_param: Optional[str] = None) -> SprintRuntime:
        if project_dir_param:
            return build_runtime(Path(project_dir_param))
        return build_runtime(app.state.default_project_dir or Path.cwd())

    @app.get("/")
    async def root():
        return {"name": "Sprint Runner", "version": "0.1.0", "status": "running"}

    app.include_router(create_sprint_router(_get_runtime))
    return app
