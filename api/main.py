#!/usr/bin/env python3
import argparse
import logging
import os
from datetime import datetime, timezone
from typing import Optional

import anyio
from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from config.settings import WEBHOOK_TIMEOUT_SECONDS
from db.kv_store import KeyValueStore
from engine.core import load_config, telegram_notify, validate_config
from engine.curation import build_engine
from engine.errors import (
    ChatNotConfigured,
    ConcurrencyConflict,
    InvalidConfiguration,
    RecordNotFound,
    UpstreamUnavailable,
)
from engine.models import (
    AddStatus,
    HistoryEvent,
    Member,
    RemoveStatus,
    ShareStatus,
    VoteType,
)
from engine.paths import resolve_config_path, resolve_db_path
from scheduler.jobs.history_sync import HistorySyncJobRunner, SyncAlreadyRunning
from spotify.oauth_store import SpotifyOAuthToken

APP_NAME = "Playlist Vote API"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


class MemberPayload(BaseModel):
    user_id: str
    display_name: str = ""
    avatar_url: Optional[str] = None


class ChatConfigRequest(BaseModel):
    administrator_id: Optional[str] = None
    playlist_id: Optional[str] = None
    playlist_name: Optional[str] = None
    downvote_threshold: Optional[int] = None


class ShareRequest(BaseModel):
    text: str
    sharer: MemberPayload
    message_ref: Optional[str] = None
    timestamp: Optional[str] = None


class VoteRequest(BaseModel):
    voter: MemberPayload
    vote_type: str


class HistoryEventPayload(BaseModel):
    sharer: MemberPayload
    timestamp: str
    message_ref: Optional[str] = None
    track_id: Optional[str] = None
    text: Optional[str] = None


class HistorySyncRequest(BaseModel):
    events: list[HistoryEventPayload]
    restart: bool = False


class SpotifyTokenRequest(BaseModel):
    access_token: str
    refresh_token: str
    expires_in: int
    scope: str = ""


app = FastAPI(
    title=APP_NAME,
    description="Collaborative playlist curation for group chats: shares, votes and history sync.",
)


def _read_config(path):
    if not path or not os.path.exists(path):
        logging.warning("Config file not found at %s; using defaults", path)
        return {}
    return load_config(path)


def init_app_state(config, db_path, *, engine=None, scheduler=None):
    """Build the engine, token store and history sync runner for ``app``."""
    errors = validate_config(config)
    if errors:
        for error in errors:
            logging.error("Config error: %s", error)
        raise InvalidConfiguration("; ".join(errors))
    app.state.config = config
    app.state.db_path = db_path
    app.state.store = KeyValueStore(db_path)
    app.state.engine = engine or build_engine(config, db_path)
    app.state.token_store = app.state.engine.mutator.credential_provider
    app.state.scheduler = scheduler
    app.state.sync_runner = HistorySyncJobRunner(app.state.engine, app.state.store, scheduler=scheduler)


@app.on_event("startup")
async def startup():
    if getattr(app.state, "engine", None) is not None:
        return
    config_path = resolve_config_path(None)
    config = _read_config(config_path)
    db_path = resolve_db_path(os.environ.get("PLAYLIST_VOTE_DB_PATH"))
    scheduler = BackgroundScheduler(timezone="UTC")
    init_app_state(config, db_path, scheduler=scheduler)
    scheduler.start()
    logging.info("Playlist vote API ready (db=%s)", db_path)


@app.on_event("shutdown")
async def shutdown():
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler:
        scheduler.shutdown(wait=False)


def _member(payload: MemberPayload) -> Member:
    return Member(
        user_id=str(payload.user_id),
        display_name=payload.display_name or "",
        avatar_url=payload.avatar_url,
    )


def _parse_vote_type(value):
    normalized = str(value or "").strip().lower()
    for vote_type in VoteType:
        if vote_type.value.lower() == normalized:
            return vote_type
    raise HTTPException(status_code=422, detail="vote_type must be 'Upvote' or 'Downvote'")


def _record_payload(record):
    if record is None:
        return None
    return {
        "chat_id": record.chat_id,
        "record_id": record.record_id,
        "track_id": record.track_id,
        "track_name": record.track_name,
        "artist_name": record.artist_name,
        "album_name": record.album_name,
        "album_image_url": record.album_image_url,
        "sharer_id": record.sharer_id,
        "sharer_name": record.sharer_name,
        "message_ref": record.message_ref,
        "shared_at": record.shared_at.isoformat(),
        "is_deleted": record.is_deleted,
        "is_duplicate": record.is_duplicate,
        "upvote_count": record.upvote_count,
        "downvote_count": record.downvote_count,
        "playlist_status": record.playlist_status.value,
    }


def _settings_payload(settings):
    return {
        "chat_id": settings.chat_id,
        "administrator_id": settings.administrator_id,
        "playlist_id": settings.playlist_id,
        "playlist_name": settings.playlist_name,
        "downvote_threshold": settings.downvote_threshold,
    }


def _vote_payload(result):
    removal = result.removal
    return {
        "status": result.status.value,
        "reason": result.reason,
        "upvote_count": result.upvote_count,
        "downvote_count": result.downvote_count,
        "removal_triggered": result.removal_triggered,
        "removal": None
        if removal is None
        else {
            "track_id": removal.track_id,
            "status": removal.status.value,
            "deleted": removal.deleted,
            "error": removal.error,
        },
        "record": _record_payload(result.record),
    }


def _share_payload(outcome):
    share = outcome.share
    return {
        "track_id": outcome.track_id,
        "status": share.status.value if share else None,
        "active_record_id": share.active_record_id if share else None,
        "add_status": outcome.add_status.value if outcome.add_status else None,
        "error": outcome.error,
        "record": _record_payload(share.record if share else None),
    }


def _translate_errors(exc):
    if isinstance(exc, RecordNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ChatNotConfigured):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, SyncAlreadyRunning):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, InvalidConfiguration):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, (ConcurrencyConflict, UpstreamUnavailable)):
        return HTTPException(status_code=503, detail=str(exc))
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail=str(exc))
    return None


async def _run(fn, *args):
    try:
        return await anyio.to_thread.run_sync(fn, *args)
    except HTTPException:
        raise
    except Exception as exc:
        http_exc = _translate_errors(exc)
        if http_exc is None:
            raise
        raise http_exc from exc


def _notify(chat_id, message):
    telegram_notify(app.state.config, chat_id, message)


def _notify_admin_auth_expired(chat_id):
    settings = app.state.engine.chat_settings.get(chat_id)
    if settings is None:
        return
    _notify(
        settings.administrator_id,
        "Spotify access for the group playlist has expired. Please reconnect your Spotify account.",
    )


def _require_sync_idle(chat_id):
    if app.state.sync_runner.is_running(chat_id):
        raise HTTPException(status_code=409, detail=f"history sync running for chat {chat_id}")


@app.get("/api/chats/{chat_id}/config")
async def api_get_chat_config(chat_id: str):
    settings = app.state.engine.chat_settings.get(chat_id)
    if settings is None:
        raise HTTPException(status_code=404, detail="Chat not configured")
    return _settings_payload(settings)


@app.put("/api/chats/{chat_id}/config")
async def api_put_chat_config(chat_id: str, payload: ChatConfigRequest):
    changes = payload.dict(exclude_unset=True)
    settings = await _run(lambda: app.state.engine.configure_chat(chat_id, **changes))
    return _settings_payload(settings)


@app.post("/api/chats/{chat_id}/shares")
async def api_share_detected(chat_id: str, payload: ShareRequest):
    _require_sync_idle(chat_id)
    timestamp = payload.timestamp or datetime.now(timezone.utc).isoformat()

    def work():
        outcomes = app.state.engine.share_detected(
            chat_id,
            payload.text,
            _member(payload.sharer),
            payload.message_ref,
            timestamp,
            timeout_sec=WEBHOOK_TIMEOUT_SECONDS,
        )
        for outcome in outcomes:
            if outcome.share and outcome.share.status is ShareStatus.WAS_PREVIOUSLY_REMOVED:
                _notify(
                    chat_id,
                    f"Track {outcome.track_id} was voted out of this playlist before and will not be re-added.",
                )
            if outcome.add_status is AddStatus.AUTH_EXPIRED:
                _notify_admin_auth_expired(chat_id)
        return outcomes

    outcomes = await _run(work)
    return {"outcomes": [_share_payload(outcome) for outcome in outcomes]}


@app.post("/api/chats/{chat_id}/records/{record_id}/votes")
async def api_vote_received(chat_id: str, record_id: str, payload: VoteRequest):
    vote_type = _parse_vote_type(payload.vote_type)

    def work():
        result = app.state.engine.vote_received(
            chat_id,
            record_id,
            _member(payload.voter),
            vote_type,
            timeout_sec=WEBHOOK_TIMEOUT_SECONDS,
        )
        _notify_removal(chat_id, result)
        return result

    return _vote_payload(await _run(work))


@app.delete("/api/chats/{chat_id}/records/{record_id}/votes/{voter_id}")
async def api_vote_retracted(chat_id: str, record_id: str, voter_id: str):
    def work():
        result = app.state.engine.vote_retracted(chat_id, record_id, voter_id, timeout_sec=WEBHOOK_TIMEOUT_SECONDS)
        _notify_removal(chat_id, result)
        return result

    return _vote_payload(await _run(work))


def _notify_removal(chat_id, result):
    removal = result.removal
    if removal is None:
        return
    record = result.record
    title = (record.track_name or removal.track_id) if record else removal.track_id
    if removal.deleted:
        _notify(chat_id, f"'{title}' reached the downvote threshold and was removed from the playlist.")
    elif removal.status is RemoveStatus.AUTH_EXPIRED:
        _notify_admin_auth_expired(chat_id)


@app.get("/api/chats/{chat_id}/records")
async def api_list_records(
    chat_id: str,
    skip: int = Query(0, ge=0),
    take: int = Query(50, ge=1, le=500),
):
    records = await _run(lambda: app.state.engine.list_records(chat_id, skip=skip, take=take))
    return {"records": [_record_payload(record) for record in records], "skip": skip, "take": take}


@app.post("/api/chats/{chat_id}/history-sync", status_code=202)
async def api_trigger_history_sync(chat_id: str, payload: HistorySyncRequest):
    events = [
        HistoryEvent(
            sharer=_member(event.sharer),
            timestamp=event.timestamp,
            message_ref=event.message_ref,
            track_id=event.track_id,
            text=event.text,
        )
        for event in payload.events
    ]
    status = await _run(lambda: app.state.sync_runner.submit(chat_id, events, restart=payload.restart))
    return {"status": status}


@app.get("/api/chats/{chat_id}/history-sync")
async def api_history_sync_status(chat_id: str):
    status = app.state.sync_runner.get_status(chat_id)
    if status is None:
        raise HTTPException(status_code=404, detail="No history sync for chat")
    return {"status": status}


@app.post("/api/chats/{chat_id}/history-sync/stop")
async def api_history_sync_stop(chat_id: str):
    return {"stopping": app.state.sync_runner.stop(chat_id)}


@app.post("/api/chats/{chat_id}/reconcile")
async def api_reconcile(chat_id: str):
    _require_sync_idle(chat_id)
    report = await _run(lambda: app.state.engine.reconcile(chat_id))
    return report.as_dict()


@app.put("/api/administrators/{administrator_id}/spotify-token")
async def api_save_spotify_token(administrator_id: str, payload: SpotifyTokenRequest):
    if payload.expires_in <= 0:
        raise HTTPException(status_code=422, detail="expires_in must be > 0")
    token = SpotifyOAuthToken(
        access_token=payload.access_token,
        refresh_token=payload.refresh_token,
        expires_at=int(datetime.now(timezone.utc).timestamp()) + int(payload.expires_in),
        scope=payload.scope,
    )
    await _run(app.state.token_store.save, administrator_id, token)
    logging.info("Spotify token stored for administrator %s", administrator_id)
    return {"status": "ok"}


def main(argv=None):
    parser = argparse.ArgumentParser(description=APP_NAME)
    parser.add_argument("--config", help="Path to config.json")
    parser.add_argument("--db", help="Path to the SQLite database")
    parser.add_argument("--host", default=os.environ.get("PLAYLIST_VOTE_HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("PLAYLIST_VOTE_PORT", "8000")))
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
    if args.config:
        os.environ["PLAYLIST_VOTE_CONFIG"] = os.path.abspath(args.config)
    if args.db:
        os.environ["PLAYLIST_VOTE_DB_PATH"] = os.path.abspath(args.db)

    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=False)


if __name__ == "__main__":
    main()
