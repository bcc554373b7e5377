import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from flowdesk.core.database import engine, Base
from flowdesk.core import models  # noqa: F401  registers the history table
from flowdesk.api.router import api_router

logging.basicConfig(level=logging.INFO)


# Close the engine once everything is done and close all the sessions
@asynccontextmanager
async def lifespan(app: FastAPI):
    # Create the history table on first start
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    print("History table ready")

    yield
    await engine.dispose()


app = FastAPI(title="FlowDesk Query API", lifespan=lifespan)

# Include the master router containing all our endpoints
app.include_router(api_router)


@app.get("/")
async def root():
    return {"message": "Welcome to the FlowDesk Query API"}
