# server.py (uvicorn server:app)

from datetime import datetime

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from herbionyx.fastapi.consumer_api import router as consumer_router

app = FastAPI(title="HERBIONYX Consumer API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# --- include routers ---
app.include_router(consumer_router)


# --- diagnostics ---
@app.get("/_health")
def _health():
    return {"ok": True, "service": "fastapi-consumer", "ts": int(datetime.now().timestamp())}
