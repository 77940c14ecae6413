import os
from typing import Callable, Optional

from fastapi import FastAPI


def add_standard_health(app: FastAPI, env_key: str = "ENV", extra: Optional[Callable[[], dict]] = None):
    @app.get("/health")
    def _health():
        out = {
            "status": "ok",
            "env": os.getenv(env_key, "dev"),
            "service": app.title,
            "version": getattr(app, "version", None),
        }
        if extra is not None:
            out.update(extra())
        return out
