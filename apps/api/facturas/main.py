from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from facturas.core import config
from facturas.infrastructure.db import batch_repository, invoice_repository
from facturas.infrastructure.db import connection as db
from facturas.interfaces.api.routers import batches, webhooks


@asynccontextmanager
async def lifespan(_: FastAPI):
    db.init_pool()
    batch_repository.ensure_table()
    invoice_repository.ensure_table()
    try:
        yield
    finally:
        db.close_pool()


app = FastAPI(title="Facturas API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[config.FRONTEND_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


app.include_router(batches.router)
app.include_router(webhooks.router)
