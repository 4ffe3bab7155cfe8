from contextlib import asynccontextmanager
import logging
import os

from fastapi import FastAPI

from .database import create_db_and_tables
from .routers import sso


# Lifespan event to create tables on startup
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Ensure data dir exists
    if not os.path.exists("data"):
        os.makedirs("data")
    create_db_and_tables()
    # fail fast on a broken authsources file
    sso.get_registry()
    yield

app = FastAPI(title="CAS Authentication Source", version="1.0", lifespan=lifespan)

app.include_router(sso.router)


@app.get("/")
async def root():
    return {"message": "CAS Authentication Source"}

if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO)
    uvicorn.run("cas_auth.main:app", host="0.0.0.0", port=8000, reload=True)
