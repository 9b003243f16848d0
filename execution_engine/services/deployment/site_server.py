#!/usr/bin/env python3
"""
Static file server for deployed sites.

Started by the served-directory strategies as a separate process:

    python -m execution_engine.services.deployment.site_server --config server.json
"""
import argparse
import logging
import os
from typing import Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

HEALTH_PATH = "/__health"

DEFAULT_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "Referrer-Policy": "strict-origin-when-cross-origin",
}

CACHE_POLICIES = {
    # strategy: (documents, assets)
    "aggressive": ("no-cache", "public, max-age=31536000, immutable"),
    "moderate": ("no-cache", "public, max-age=3600"),
    "none": ("no-store", "no-store"),
}


class SiteConfig(BaseModel):
    """Everything the server needs; written to server.json by the strategy."""
    program_id: str
    root: str
    host: str = "127.0.0.1"
    port: int = Field(..., ge=1, le=65535)
    entry_point: str = "index.html"
    base_href: str = "/"
    spa_routing: bool = False
    cache_strategy: str = "moderate"
    cdn_enabled: bool = False
    security_headers: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_SECURITY_HEADERS))
    headers: Dict[str, str] = Field(default_factory=dict)
    log_file: Optional[str] = None


def cache_control_for(strategy: str, path: str) -> str:
    documents, assets = CACHE_POLICIES.get(strategy, CACHE_POLICIES["moderate"])
    return documents if path.endswith(".html") or path.endswith("/") else assets


def resolve_file(root: str, relative: str) -> Optional[str]:
    """Map a request path to a file under root; None if missing or outside root."""
    root = os.path.realpath(root)
    candidate = os.path.realpath(os.path.join(root, relative.lstrip("/")))
    if candidate != root and not candidate.startswith(root + os.sep):
        return None
    if os.path.isdir(candidate):
        candidate = os.path.join(candidate, "index.html")
    return candidate if os.path.isfile(candidate) else None


def create_app(config: SiteConfig) -> FastAPI:
    app = FastAPI(
        title=f"Site {config.program_id}",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    base = "/" + config.base_href.strip("/")
    base = base.rstrip("/")

    @app.middleware("http")
    async def add_headers(request: Request, call_next):
        response = await call_next(request)
        for key, value in {**config.security_headers, **config.headers}.items():
            response.headers[key] = value
        if request.url.path != HEALTH_PATH and "cache-control" not in response.headers:
            cache_control = cache_control_for(config.cache_strategy, request.url.path)
            response.headers["Cache-Control"] = cache_control
            if config.cdn_enabled:
                response.headers["CDN-Cache-Control"] = cache_control
        if config.cdn_enabled:
            response.headers.setdefault("Access-Control-Allow-Origin", "*")
            response.headers.setdefault("Timing-Allow-Origin", "*")
        return response

    @app.get(HEALTH_PATH)
    async def health():
        return {"status": "healthy", "program_id": config.program_id}

    @app.api_route("/{path:path}", methods=["GET", "HEAD"])
    async def serve(path: str):
        request_path = "/" + path
        if base and not (request_path == base or request_path.startswith(base + "/")):
            raise HTTPException(status_code=404, detail="Not found")
        relative = request_path[len(base):] if base else request_path

        file_path = resolve_file(config.root, relative)
        if file_path is None and config.spa_routing and not os.path.splitext(relative)[1]:
            file_path = resolve_file(config.root, config.entry_point)
        if file_path is None:
            raise HTTPException(status_code=404, detail="Not found")
        return FileResponse(file_path)

    return app


def load_config(path: str) -> SiteConfig:
    with open(path, "r", encoding="utf-8") as f:
        return SiteConfig.model_validate_json(f.read())


def main(argv=None):
    parser = argparse.ArgumentParser(description="Serve a deployed site")
    parser.add_argument("--config", required=True, help="Path to server.json")
    args = parser.parse_args(argv)

    config = load_config(args.config)
    logging.basicConfig(
        filename=config.log_file,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        level=logging.INFO,
    )
    logger.info(f"Serving {config.root} on {config.host}:{config.port}")
    uvicorn.run(create_app(config), host=config.host, port=config.port, log_config=None)


if __name__ == "__main__":
    main()
