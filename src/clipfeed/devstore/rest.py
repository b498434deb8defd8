"""PostgREST-style table endpoints: `/rest/v1/{collection}`.

Supported query syntax: `field=eq.value`, `field=ilike.*term*`, `order=field.desc`,
`limit=n`, `on_conflict=field`. Prefer headers: `return=representation`,
`count=exact`, `resolution=merge-duplicates`. Writes are restricted to rows the
caller owns, and every committed change is published to the realtime hub.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from sqlalchemy import func
from sqlmodel import SQLModel, select

from clipfeed.devstore.auth import require_user
from clipfeed.devstore.db import session_scope
from clipfeed.devstore.models import COLLECTIONS, row_to_dict
from clipfeed.integrations.realtime import PushEvent, PushType, RealtimeHub
from clipfeed.models import parse_timestamp


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rest/v1")

_RESERVED_PARAMS = frozenset({"select", "order", "limit", "on_conflict"})


def _collection(name: str) -> tuple[type[SQLModel], str]:
    entry = COLLECTIONS.get(name)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"relation {name} does not exist")
    return entry


def _column(model: type[SQLModel], field: str) -> Any:
    if field not in model.model_fields:
        raise HTTPException(status_code=400, detail=f"column {field} does not exist")
    return getattr(model, field)


def _where(model: type[SQLModel], request: Request) -> list[Any]:
    clauses: list[Any] = []
    for key, raw in request.query_params.multi_items():
        if key in _RESERVED_PARAMS:
            continue
        col = _column(model, key)
        op, sep, value = raw.partition(".")
        if not sep:
            raise HTTPException(status_code=400, detail=f"malformed filter {key}={raw}")
        if op == "eq":
            clauses.append(col == value)
        elif op == "ilike":
            clauses.append(col.ilike(value.replace("*", "%")))
        else:
            raise HTTPException(status_code=400, detail=f"unsupported operator {op}")
    return clauses


def _order_by(model: type[SQLModel], raw: str | None) -> list[Any]:
    if not raw:
        return []
    out: list[Any] = []
    for part in raw.split(","):
        field, _, direction = part.strip().partition(".")
        col = _column(model, field)
        out.append(col.desc() if direction == "desc" else col.asc())
    return out


def _limit(raw: str | None) -> int | None:
    if raw is None or raw == "":
        return None
    try:
        value = int(raw)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"invalid limit {raw!r}") from e
    if value < 0:
        raise HTTPException(status_code=400, detail=f"invalid limit {raw!r}")
    return value


def _prefer(request: Request) -> set[str]:
    raw = request.headers.get("prefer") or ""
    return {p.strip() for p in raw.split(",") if p.strip()}


def _content_range(returned: int, total: int) -> str:
    if returned <= 0:
        return f"*/{total}"
    return f"0-{returned - 1}/{total}"


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as e:
        raise HTTPException(status_code=400, detail="invalid json body") from e


def _coerce(model: type[SQLModel], data: Any) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise HTTPException(status_code=400, detail="row must be a json object")
    unknown = sorted(set(data) - set(model.model_fields))
    if unknown:
        raise HTTPException(status_code=400, detail=f"unknown columns: {', '.join(unknown)}")
    out = dict(data)
    for name, field in model.model_fields.items():
        if field.annotation is datetime and isinstance(out.get(name), str):
            try:
                out[name] = parse_timestamp(out[name])
            except ValueError as e:
                raise HTTPException(status_code=400, detail=f"invalid timestamp for {name}") from e
    return out


def _build(model: type[SQLModel], data: dict[str, Any]) -> SQLModel:
    missing = [
        name
        for name, field in model.model_fields.items()
        if field.is_required() and data.get(name) in (None, "")
    ]
    if missing:
        raise HTTPException(status_code=400, detail=f"missing required columns: {', '.join(missing)}")
    return model(**data)


def _publish(
    request: Request,
    collection: str,
    type_: PushType,
    record: dict[str, Any],
    old_record: dict[str, Any] | None = None,
) -> None:
    hub: RealtimeHub | None = getattr(request.app.state, "hub", None)
    if hub is None:
        return
    hub.publish(
        PushEvent(collection=collection, type=type_, record=record, old_record=old_record or {})
    )


async def _count(session: Any, model: type[SQLModel], clauses: list[Any]) -> int:
    stmt = select(func.count()).select_from(model)
    for clause in clauses:
        stmt = stmt.where(clause)
    return int((await session.exec(stmt)).one())


@router.head("/{collection}")
async def count_rows(collection: str, request: Request) -> Response:
    model, _owner = _collection(collection)
    clauses = _where(model, request)
    async with session_scope() as session:
        total = await _count(session, model, clauses)
    return Response(status_code=200, headers={"Content-Range": _content_range(0, total)})


@router.get("/{collection}")
async def read_rows(collection: str, request: Request) -> Response:
    model, _owner = _collection(collection)
    clauses = _where(model, request)
    stmt = select(model)
    for clause in clauses:
        stmt = stmt.where(clause)
    order = _order_by(model, request.query_params.get("order"))
    if order:
        stmt = stmt.order_by(*order)
    limit = _limit(request.query_params.get("limit"))
    if limit is not None:
        stmt = stmt.limit(limit)

    async with session_scope() as session:
        rows = list((await session.exec(stmt)).all())
        total = await _count(session, model, clauses) if "count=exact" in _prefer(request) else None

    body = [row_to_dict(r) for r in rows]
    headers: dict[str, str] = {}
    if total is not None:
        headers["Content-Range"] = _content_range(len(body), total)
    return JSONResponse(body, headers=headers)


@router.post("/{collection}")
async def insert_rows(collection: str, request: Request) -> Response:
    model, owner_field = _collection(collection)
    user = await require_user(request)
    payload = await _json_body(request)
    items = payload if isinstance(payload, list) else [payload]
    prefer = _prefer(request)
    merge = "resolution=merge-duplicates" in prefer
    on_conflict = request.query_params.get("on_conflict") or "id"
    conflict_col = _column(model, on_conflict)

    written: list[tuple[PushType, SQLModel, dict[str, Any]]] = []
    async with session_scope() as session:
        for raw in items:
            data = _coerce(model, raw)
            if str(data.get(owner_field) or "") != user.id:
                raise HTTPException(
                    status_code=403, detail="new row violates row-level security policy"
                )
            existing = None
            if merge and data.get(on_conflict) is not None:
                existing = (
                    await session.exec(select(model).where(conflict_col == data[on_conflict]))
                ).first()
            if existing is not None:
                if str(getattr(existing, owner_field)) != user.id:
                    raise HTTPException(
                        status_code=403, detail="row belongs to another user"
                    )
                old = row_to_dict(existing)
                for key, value in data.items():
                    setattr(existing, key, value)
                session.add(existing)
                written.append(("UPDATE", existing, old))
            else:
                row = _build(model, data)
                session.add(row)
                written.append(("INSERT", row, {}))
        await session.commit()

    results: list[dict[str, Any]] = []
    for type_, row, old in written:
        record = row_to_dict(row)
        results.append(record)
        _publish(request, collection, type_, record, old)
    logger.info(
        "devstore write collection=%s rows=%s user_id=%s request_id=%s",
        collection,
        len(results),
        user.id,
        getattr(request.state, "request_id", None),
    )
    if "return=representation" in prefer:
        return JSONResponse(results, status_code=201)
    return Response(status_code=201)


@router.patch("/{collection}")
async def update_rows(collection: str, request: Request) -> Response:
    model, owner_field = _collection(collection)
    user = await require_user(request)
    clauses = _where(model, request)
    if not clauses:
        raise HTTPException(status_code=400, detail="update requires a filter")
    fields = _coerce(model, await _json_body(request))
    fields.pop("id", None)
    fields.pop(owner_field, None)

    stmt = select(model).where(*clauses).where(_column(model, owner_field) == user.id)
    changed: list[tuple[SQLModel, dict[str, Any]]] = []
    async with session_scope() as session:
        for row in (await session.exec(stmt)).all():
            old = row_to_dict(row)
            for key, value in fields.items():
                setattr(row, key, value)
            session.add(row)
            changed.append((row, old))
        await session.commit()

    results: list[dict[str, Any]] = []
    for row, old in changed:
        record = row_to_dict(row)
        results.append(record)
        _publish(request, collection, "UPDATE", record, old)
    if "return=representation" in _prefer(request):
        return JSONResponse(results)
    return Response(status_code=204)


@router.delete("/{collection}")
async def delete_rows(collection: str, request: Request) -> Response:
    model, owner_field = _collection(collection)
    user = await require_user(request)
    clauses = _where(model, request)
    if not clauses:
        raise HTTPException(status_code=400, detail="delete requires a filter")

    stmt = select(model).where(*clauses).where(_column(model, owner_field) == user.id)
    removed: list[dict[str, Any]] = []
    async with session_scope() as session:
        for row in (await session.exec(stmt)).all():
            removed.append(row_to_dict(row))
            await session.delete(row)
        await session.commit()

    for old in removed:
        _publish(request, collection, "DELETE", {}, old)
    if "return=representation" in _prefer(request):
        return JSONResponse(removed)
    return Response(status_code=204)
