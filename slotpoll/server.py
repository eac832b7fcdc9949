# server.py
import asyncio
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, Header, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
import uvicorn

from .config import Settings, configure_logging
from .errors import (
    Forbidden, InvalidState, NoAvailability, NotFound, SchedulingError,
    StoreUnavailable, Unauthorized, ValidationError,
)
from .models import (
    AvailabilityRecord, CommandResult, CreateMeetingIn, FinalizeOut, HeatmapView,
    Identity, JoinMeetingIn, Meeting, MeetingCommandIn, Notification, Participant,
    SubmitAvailabilityIn,
)
from .viewmodel import SchedulingViewModel

STATUS_CODES = [
    (ValidationError, 400),
    (Unauthorized, 401),
    (Forbidden, 403),
    (NotFound, 404),
    (InvalidState, 409),
    (NoAvailability, 422),
    (StoreUnavailable, 503),
]


def status_for(exc: SchedulingError) -> int:
    for klass, status in STATUS_CODES:
        if isinstance(exc, klass):
            return status
    return 500


def identity(x_user_id: Optional[str]) -> Identity:
    # X-User-Id comes from the auth proxy in front of us; absent means guest
    return Identity(user_id=x_user_id or None)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings()
    avm = SchedulingViewModel(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        yield
        await avm.close()

    app = FastAPI(title="slotpoll – Availability Heatmap Scheduler", lifespan=lifespan)
    app.state.avm = avm

    @app.exception_handler(SchedulingError)
    async def scheduling_error(_: Request, exc: SchedulingError):
        body = CommandResult(ok=False, error=exc.code, detail=exc.message)
        return JSONResponse(status_code=status_for(exc), content=body.model_dump())

    @app.exception_handler(RequestValidationError)
    async def request_error(_: Request, exc: RequestValidationError):
        body = CommandResult(ok=False, error=ValidationError.code, detail=str(exc.errors()))
        return JSONResponse(status_code=400, content=body.model_dump())

    @app.post("/intents/meeting.create", response_model=Meeting)
    async def meeting_create(args: CreateMeetingIn, x_user_id: Optional[str] = Header(default=None)):
        return await avm.meeting_create(identity(x_user_id), args)

    @app.get("/meetings", response_model=List[Meeting])
    async def meetings_list(x_user_id: Optional[str] = Header(default=None)):
        return await avm.meetings_list(identity(x_user_id))

    @app.get("/meetings/{meeting_id}", response_model=Meeting)
    async def meeting_get(meeting_id: str):
        return await avm.meeting_get(meeting_id)

    @app.get("/meetings/{meeting_id}/heatmap", response_model=HeatmapView)
    async def heatmap(meeting_id: str):
        return await avm.heatmap(meeting_id)

    @app.post("/intents/participant.join", response_model=Participant)
    async def participant_join(args: JoinMeetingIn, x_user_id: Optional[str] = Header(default=None)):
        return await avm.participant_join(identity(x_user_id), args)

    @app.post("/intents/availability.submit", response_model=AvailabilityRecord)
    async def availability_submit(args: SubmitAvailabilityIn, x_user_id: Optional[str] = Header(default=None)):
        return await avm.availability_submit(identity(x_user_id), args)

    @app.get("/availability/{participant_id}", response_model=Optional[AvailabilityRecord])
    async def availability_get(participant_id: str):
        return await avm.availability_get(participant_id)

    @app.post("/intents/meeting.finalize", response_model=FinalizeOut)
    async def meeting_finalize(args: MeetingCommandIn, x_user_id: Optional[str] = Header(default=None)):
        return await avm.meeting_finalize(identity(x_user_id), args)

    @app.post("/intents/meeting.cancel", response_model=Meeting)
    async def meeting_cancel(args: MeetingCommandIn, x_user_id: Optional[str] = Header(default=None)):
        return await avm.meeting_cancel(identity(x_user_id), args)

    @app.get("/notifications", response_model=List[Notification])
    async def notifications(x_user_id: Optional[str] = Header(default=None)):
        return await avm.notifications(identity(x_user_id))

    @app.websocket("/subscriptions/{projection_id}")
    async def subscribe(ws: WebSocket, projection_id: str):
        kind, _, meeting_id = projection_id.partition(":")
        if kind != "meeting" or not meeting_id:
            await ws.close(code=4400)
            return
        try:
            q = await avm.subscribe(meeting_id)
        except NotFound:
            await ws.close(code=4404)
            return
        await ws.accept()

        async def forward():
            while True:
                ev = await q.get()
                await ws.send_json(ev.model_dump())

        sender = asyncio.create_task(forward())
        try:
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            return
        finally:
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
            await avm.unsubscribe(meeting_id, q)

    return app


app = create_app()


def main():
    uvicorn.run("slotpoll.server:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
