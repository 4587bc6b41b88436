"""FastAPI application setup for the weather consensus service."""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import router as api_router, shutdown


@asynccontextmanager
async def lifespan(_app: FastAPI):
    yield
    shutdown()


app = FastAPI(title="Weather Consensus", lifespan=lifespan)


@app.get("/health")
def health():
    return {"status": "ok"}


# API routes
app.include_router(api_router, prefix="/v1")
