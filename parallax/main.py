from fastapi import FastAPI
from fastapi.responses import RedirectResponse

from parallax.routes import api

app = FastAPI(title="Parallax Parallel BDD Runner")
app.include_router(api.router)


@app.get("/")
async def root() -> RedirectResponse:
    """Redirect visitors to the run list as the primary entry point."""
    return RedirectResponse(url="/api/runs", status_code=303)
