from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import FileResponse


def _resolve(static_dir: Path, rel: str) -> Optional[Path]:
    candidate = (static_dir / rel).resolve()
    if not candidate.is_relative_to(static_dir) or not candidate.is_file():
        return None
    return candidate


def mount_frontend(app: FastAPI, static_dir: Path):
    """
    Serve a prebuilt single-page app from `static_dir`.

    Lookup order: exact file, then `<path>.html`, then index.html so
    client-side routes (/login, /setup, /settings) load the app shell.
    Registered last so it only catches what the API did not.
    """
    static_dir = Path(static_dir).resolve()

    @app.get("/{path:path}", include_in_schema=False)
    async def frontend(path: str):
        path = path.strip("/")
        hit = None
        if path:
            hit = _resolve(static_dir, path) or _resolve(static_dir, f"{path}.html")
        hit = hit or _resolve(static_dir, "index.html")
        if hit is None:
            raise HTTPException(404, "not found")
        return FileResponse(hit)
