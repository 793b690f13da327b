import logging
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from .config import LOG_LEVEL
from .db import init_db
from .errors import SigningError
from .routers import documents, requests, signing, verify

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Signflow API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(SigningError)
def signing_error_handler(request: Request, exc: SigningError):
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})

@app.on_event("startup")
def on_startup():
    init_db()

app.include_router(documents.router, prefix="/api/documents", tags=["documents"])
app.include_router(requests.router, prefix="/api/requests", tags=["requests"])
app.include_router(signing.router, prefix="/api/sign", tags=["signing"])
app.include_router(verify.router, prefix="/api/verify", tags=["verify"])

@app.get("/")
def root():
    return {"ok": True, "service": "signflow"}
