from fastapi import FastAPI
from fastapi import Request
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from anchor_withdraw.api.routes import router
from anchor_withdraw.core.errors import (
    AnchorResponseError,
    AttemptBusyError,
    IllegalTransitionError,
    InvalidStateError,
)
from anchor_withdraw.observability.logging import log
from anchor_withdraw.settings import settings

app = FastAPI(title="Anchor Withdrawal API")

origins = [x.strip() for x in settings.CORS_ORIGINS.split(",") if x.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.get("/health")
def health():
    return {"status": "ok"}


# Illegal transitions are caller bugs: surface them, never coerce the state.
@app.exception_handler(IllegalTransitionError)
async def illegal_transition_handler(request: Request, exc: IllegalTransitionError):
    log(event="illegal_transition", path=request.url.path, action=exc.action_type, step=exc.step)
    return JSONResponse(
        status_code=409,
        content={"error": "illegal_transition", "action": exc.action_type, "step": exc.step, "message": str(exc)},
    )


@app.exception_handler(InvalidStateError)
async def invalid_state_handler(request: Request, exc: InvalidStateError):
    return JSONResponse(status_code=422, content={"error": "invalid_state", "message": str(exc)})


@app.exception_handler(AnchorResponseError)
async def anchor_error_handler(request: Request, exc: AnchorResponseError):
    log(event="anchor_error", path=request.url.path, statusCode=exc.status_code, message=exc.message or "")
    return JSONResponse(
        status_code=502,
        content={"error": "anchor_error", "anchorStatus": exc.status_code, "message": str(exc)},
    )


@app.exception_handler(AttemptBusyError)
async def attempt_busy_handler(request: Request, exc: AttemptBusyError):
    return JSONResponse(status_code=423, content={"error": "attempt_busy", "message": str(exc)})
