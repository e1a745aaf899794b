from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import logging
import os

from . import config
from .db import init_db, dispose_engine
from .store import ObjectNotFound
from .auth_api import router as auth_router
from .lists_api import router as lists_router
from .tasks_api import router as tasks_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # The application should not start with the well-known fallback secret;
    # anyone could mint session tokens for it.
    if config.SECRET_KEY == config.INSECURE_SECRET_KEY and not config.DEV_MODE:
        raise RuntimeError("SECRET_KEY not set or insecure fallback in use; set the SECRET_KEY environment variable before starting the server")
    await init_db()
    logger.info('starting server using DATABASE_URL=%s', config.DATABASE_URL)
    try:
        yield
    finally:
        await dispose_engine()


app = FastAPI(lifespan=lifespan)


@app.exception_handler(ObjectNotFound)
async def _object_not_found(request: Request, exc: ObjectNotFound):
    return JSONResponse(status_code=404, content={'detail': exc.detail})


@app.exception_handler(Exception)
async def _unhandled(request: Request, exc: Exception):
    logger.exception('unhandled error on %s %s', request.method, request.url.path)
    return JSONResponse(status_code=500, content={'detail': 'internal server error'})


app.include_router(auth_router)
app.include_router(lists_router)
app.include_router(tasks_router)


@app.get('/api/health')
async def health():
    return {'ok': True}


def run():
    import uvicorn
    uvicorn.run(app, host=os.getenv('HOST', '127.0.0.1'), port=int(os.getenv('PORT', '8000')))
