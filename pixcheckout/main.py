import logging
import uvicorn
from fastapi import FastAPI
from .routers import checkout
from .db import init_db
from .config import settings
from fastapi.middleware.cors import CORSMiddleware

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

app = FastAPI(title="PIX Checkout Service")

# CORS - allow the storefront domain(s)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # restrict to the storefront domains in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(checkout.router)

@app.on_event("startup")
async def on_startup():
    await init_db()

@app.on_event("shutdown")
async def on_shutdown():
    # no timers or sockets may outlive the process
    await checkout.registry.close_all()

if __name__ == "__main__":
    uvicorn.run("pixcheckout.main:app", host=settings.app_host, port=settings.app_port, reload=(settings.env != "production"))
