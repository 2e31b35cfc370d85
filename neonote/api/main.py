from __future__ import annotations

import logging
import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from neonote.capture import parse_capture
from neonote.config import Config
from neonote.data.database import NotesDatabase
from neonote.data.errors import CorruptRecord, InvalidCursor, NotFound, StorageUnavailable
from neonote.data.models import CodeLocation, Note, NoteKind
from neonote.data.store import NoteStore

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"
_PUBLIC_PATHS = frozenset({"/health"})


class CodeLocationModel(BaseModel):
    file_path: str
    line_number: int


class ItemOut(BaseModel):
    id: int
    type: NoteKind
    title: str
    body: str
    tags: List[str]
    created_at: datetime
    updated_at: datetime
    completed: Optional[bool] = None
    due_date: Optional[datetime] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    code_location: Optional[CodeLocationModel] = None


class ItemCreate(BaseModel):
    type: NoteKind = Field(default=NoteKind.NOTE)
    title: str = Field(default="")
    body: str = Field(default="")
    tags: List[str] = Field(default_factory=list)
    completed: Optional[bool] = None
    due_date: Optional[datetime] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    code_location: Optional[CodeLocationModel] = None


class ItemUpdate(BaseModel):
    type: Optional[NoteKind] = None
    title: Optional[str] = None
    body: Optional[str] = None
    tags: Optional[List[str]] = None
    completed: Optional[bool] = None
    due_date: Optional[datetime] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    code_location: Optional[CodeLocationModel] = None


class CapturePayload(BaseModel):
    text: str


class ItemPage(BaseModel):
    items: List[ItemOut]
    next_cursor: Optional[str]
    corrupt_ids: List[int]


def create_app(config: Config | None = None) -> FastAPI:
    config = config or Config()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        db = NotesDatabase(config.data_dir, busy_timeout=config.busy_timeout)
        db.open()
        app.state.store = NoteStore(db)
        try:
            yield
        finally:
            db.close()

    app = FastAPI(title="neonote", lifespan=lifespan)

    @app.middleware("http")
    async def require_api_key(request: Request, call_next):
        if request.url.path in _PUBLIC_PATHS:
            return await call_next(request)
        supplied = request.headers.get(API_KEY_HEADER, "")
        if not secrets.compare_digest(supplied.encode(), config.api_key.encode()):
            return PlainTextResponse(
                "Missing or invalid API key", status_code=status.HTTP_401_UNAUTHORIZED
            )
        return await call_next(request)

    @app.exception_handler(NotFound)
    async def _not_found(request: Request, exc: NotFound) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": "Item not found"})

    @app.exception_handler(InvalidCursor)
    async def _invalid_cursor(request: Request, exc: InvalidCursor) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(CorruptRecord)
    async def _corrupt(request: Request, exc: CorruptRecord) -> JSONResponse:
        logger.error(f"{request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=500, content={"detail": "Record is corrupt"})

    @app.exception_handler(StorageUnavailable)
    async def _unavailable(request: Request, exc: StorageUnavailable) -> JSONResponse:
        logger.error(f"{request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=503, content={"detail": "Storage unavailable"}
        )

    @app.get("/health")
    def health(store: NoteStore = Depends(_store)) -> dict:
        return {"status": "ok", "notes": store.count()}

    @app.get("/items", response_model=ItemPage)
    def list_items(
        kind: Optional[NoteKind] = Query(default=None, alias="type"),
        tags: Optional[str] = Query(default=None),
        cursor: Optional[str] = Query(default=None),
        limit: Optional[int] = Query(default=None, ge=1, le=500),
        store: NoteStore = Depends(_store),
    ) -> ItemPage:
        page = store.list_notes(
            cursor,
            limit or config.page_size,
            kind=kind,
            tags=_parse_tags(tags),
        )
        return ItemPage(
            items=[to_item_out(note) for note in page.notes],
            next_cursor=page.next_cursor,
            corrupt_ids=[err.note_id for err in page.corrupt if err.note_id is not None],
        )

    @app.post("/items", response_model=ItemOut, status_code=201)
    def create_item(payload: ItemCreate, store: NoteStore = Depends(_store)) -> ItemOut:
        note_id = store.create_note(
            payload.title,
            payload.body,
            kind=payload.type,
            tags=payload.tags,
            completed=payload.completed,
            due_date=payload.due_date,
            start_time=payload.start_time,
            end_time=payload.end_time,
            code_location=_location(payload.code_location),
        )
        return to_item_out(store.get_note(note_id))

    @app.post("/items/capture", response_model=ItemOut, status_code=201)
    def capture_item(
        payload: CapturePayload, store: NoteStore = Depends(_store)
    ) -> ItemOut:
        captured = parse_capture(payload.text)
        note_id = store.create_note(
            captured.title, captured.body, kind=captured.kind, tags=captured.tags
        )
        return to_item_out(store.get_note(note_id))

    @app.get("/items/{item_id}", response_model=ItemOut)
    def get_item(item_id: int, store: NoteStore = Depends(_store)) -> ItemOut:
        return to_item_out(store.get_note(item_id))

    @app.put("/items/{item_id}", response_model=ItemOut)
    def update_item(
        item_id: int, payload: ItemUpdate, store: NoteStore = Depends(_store)
    ) -> ItemOut:
        note = store.update_note(
            item_id,
            payload.title,
            payload.body,
            kind=payload.type,
            tags=payload.tags,
            completed=payload.completed,
            due_date=payload.due_date,
            start_time=payload.start_time,
            end_time=payload.end_time,
            code_location=_location(payload.code_location),
        )
        return to_item_out(note)

    @app.delete("/items/{item_id}", status_code=204)
    def delete_item(item_id: int, store: NoteStore = Depends(_store)) -> Response:
        store.delete_note(item_id)
        return Response(status_code=204)

    return app


def _store(request: Request) -> NoteStore:
    return request.app.state.store


def to_item_out(note: Note) -> ItemOut:
    return ItemOut(
        id=note.id,
        type=note.kind,
        title=note.title,
        body=note.body,
        tags=list(note.tags),
        created_at=note.created_at,
        updated_at=note.updated_at,
        completed=note.completed,
        due_date=note.due_date,
        start_time=note.start_time,
        end_time=note.end_time,
        code_location=None
        if note.code_location is None
        else CodeLocationModel(
            file_path=note.code_location.file_path,
            line_number=note.code_location.line_number,
        ),
    )


def _location(model: Optional[CodeLocationModel]) -> Optional[CodeLocation]:
    if model is None:
        return None
    return CodeLocation(file_path=model.file_path, line_number=model.line_number)


def _parse_tags(tags: Optional[str]) -> list[str]:
    if not tags:
        return []
    return [tag.strip() for tag in tags.split(",") if tag.strip()]


app = create_app()
