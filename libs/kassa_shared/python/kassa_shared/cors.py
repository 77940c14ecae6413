from __future__ import annotations

from fastapi.middleware.cors import CORSMiddleware


def configure_cors(app, allowed: str | None):
    origins = [o.strip() for o in (allowed or "").split(",") if o.strip()]
    if not origins:
        # POS terminals talk to the API from the local Vite dev server by default.
        origins = ["http://localhost:5173", "http://127.0.0.1:5173"]

    # Browsers reject credentialed requests against a wildcard origin.
    allow_credentials = "*" not in origins
    if not allow_credentials:
        origins = ["*"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=allow_credentials,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
