from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from dataclasses import asdict
from pathlib import Path
from typing import Any

import httpx
from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from health_store import CorrectionOutcome, MetricService, MetricStorageError, SQLiteHealthDB
from health_store.time_utils import normalize_metric_date, to_iso, utc_now
from log_config import setup_logging
from metric_pipeline import describe_changes

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    candidates = [
        repo_root / ".env",
        repo_root / "backend/.env",
    ]
    for candidate in candidates:
        if candidate.exists():
            _load_local_env_file(candidate)


_bootstrap_local_env()
setup_logging()
logger = logging.getLogger(__name__)


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes"}


class IngestRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)
    metric_date: str | None = None
    session_key: str | None = None
    source: str = "ocr"


class ChatRequest(BaseModel):
    message: str
    session_key: str | None = None
    metric_date: str | None = None
    history: list[dict[str, Any]] = Field(default_factory=list)


class VitalogApp:
    def __init__(self) -> None:
        db_path = os.getenv(
            "VITALOG_DB_PATH",
            str((Path(__file__).resolve().parent / "vitalog.sqlite")),
        )
        self.db = SQLiteHealthDB(db_path)
        self.metrics = MetricService(self.db)
        logger.info("Metric store ready at %s with %d metrics", self.db.path, len(self.metrics.vocabulary))


container = VitalogApp()
app = FastAPI(title="Vitalog Backend")

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in allowed_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_TRUSTED_USER_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._:@-]{1,63}$")


def _validated_trusted_user_id(x_user_id: str) -> str:
    candidate = x_user_id.strip()
    if not candidate:
        raise HTTPException(status_code=400, detail="Invalid X-User-Id")
    if not _TRUSTED_USER_ID_RE.fullmatch(candidate):
        raise HTTPException(status_code=400, detail="Invalid X-User-Id")
    return candidate


def get_user_id(auth_header: str | None) -> str:
    if not auth_header:
        if _env_flag("ALLOW_ANON"):
            return "demo-user"
        raise HTTPException(status_code=401, detail="Missing Authorization")
    raw = auth_header.replace("Bearer", "", 1).strip()
    if not raw:
        if _env_flag("ALLOW_ANON"):
            return "demo-user"
        raise HTTPException(status_code=401, detail="Missing Authorization")
    # Bearer tokens are opaque identifiers here; long tokens are hashed to a bounded id.
    if len(raw) > 96:
        return f"token_{hashlib.sha256(raw.encode('utf-8')).hexdigest()[:24]}"
    return raw


def resolve_user_id(authorization: str | None, x_user_id: str | None) -> str:
    if x_user_id is not None:
        return _validated_trusted_user_id(x_user_id)
    return get_user_id(authorization)


def _session_key(user_id: str, session_key: str | None) -> str:
    if session_key and session_key.strip():
        return session_key.strip()[:128]
    return f"session-{hashlib.sha1(user_id.encode('utf-8')).hexdigest()[:24]}"


def _emit_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


_OPENAI_API_BASE = os.getenv("OPENAI_API_BASE_URL", "https://api.openai.com/v1").rstrip("/")
_OPENROUTER_API_BASE = os.getenv("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1").rstrip("/")


def _provider_error_message(response: httpx.Response) -> str:
    message = response.text.strip()
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str) and msg.strip():
                return msg.strip()
        msg = payload.get("message")
        if isinstance(msg, str) and msg.strip():
            return msg.strip()
    return message or f"HTTP {response.status_code}"


def _coerce_completion_text(response_json: dict[str, Any]) -> str:
    choices = response_json.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    message = choices[0].get("message", {})
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text_value = item.get("text")
                if isinstance(text_value, str):
                    parts.append(text_value)
        return "\n".join(parts)
    return ""


def _chat_provider_candidates() -> list[dict[str, Any]]:
    if _env_flag("VITALOG_DISABLE_LLM"):
        return []
    candidates: list[dict[str, Any]] = []

    openai_api_key = (os.getenv("OPENAI_API_KEY") or "").strip()
    if openai_api_key:
        candidates.append(
            {
                "provider": "openai",
                "base_url": _OPENAI_API_BASE,
                "api_key": openai_api_key,
                "model": (os.getenv("VITALOG_CHAT_MODEL") or "gpt-4o-mini").strip(),
            }
        )

    openrouter_api_key = (os.getenv("OPENROUTER_API_KEY") or "").strip()
    if openrouter_api_key:
        candidates.append(
            {
                "provider": "openrouter",
                "base_url": _OPENROUTER_API_BASE,
                "api_key": openrouter_api_key,
                "model": (os.getenv("OPENROUTER_MODEL") or "openai/gpt-4o-mini").strip(),
            }
        )
    return candidates


def _openai_compatible_chat(
    *,
    provider: dict[str, Any],
    messages: list[dict[str, str]],
    timeout_seconds: float,
) -> str | None:
    payload = {
        "model": provider["model"],
        "temperature": 0.3,
        "messages": messages,
    }
    headers: dict[str, str] = {
        "Authorization": f"Bearer {provider['api_key']}",
        "Content-Type": "application/json",
    }
    with httpx.Client(timeout=httpx.Timeout(timeout_seconds, connect=8.0)) as client:
        response = client.post(f"{provider['base_url']}/chat/completions", headers=headers, json=payload)
    if response.status_code >= 400:
        raise RuntimeError(_provider_error_message(response))
    text = _coerce_completion_text(response.json()).strip()
    return text or None


def _change_summary(outcome: CorrectionOutcome) -> list[str]:
    if outcome.event is None or outcome.merge is None:
        return []
    return describe_changes(
        container.metrics.vocabulary,
        outcome.event.original_map,
        outcome.event.corrected_map,
        outcome.merge.changed_keys,
    )


def _fallback_reply(outcome: CorrectionOutcome) -> str:
    if not outcome.is_correction:
        if not outcome.storage_ok:
            return "I couldn't load your latest health data just now, so I can't check that against it yet."
        return (
            "I'm keeping track of your health metrics. "
            "Share a screenshot or tell me if any reading I captured looks off."
        )
    if not outcome.storage_ok:
        return "I understood the correction but couldn't save it right now. Please try again in a moment."
    lines = _change_summary(outcome)
    if lines:
        return "Thanks, I've updated your metrics: " + "; ".join(lines) + "."
    event = outcome.event
    if event is not None and event.ambiguous_keys:
        labels = ", ".join(container.metrics.vocabulary.entry(key).label for key in event.ambiguous_keys)
        return f"I saw conflicting values for {labels}. Which number should I keep?"
    return "I couldn't tell which value to change. Which metric should I update, and to what?"


def _llm_chat_reply(
    *,
    message: str,
    outcome: CorrectionOutcome,
    history: list[dict[str, Any]],
    fallback_reply: str,
) -> str:
    providers = _chat_provider_candidates()
    if not providers:
        logger.debug("Chat reply uses fallback: no provider configured")
        return fallback_reply

    # Stored data is already final here; the model only phrases the reply.
    system_prompt = (
        "You are Vitalog, a concise and friendly assistant that keeps a user's daily health metrics. "
        "Metrics are read from app screenshots and corrected through conversation. "
        "Confirm exactly the changes listed in the summary and nothing else. "
        "Never invent values or claim a change that is not listed."
    )
    summary = {
        "is_correction": outcome.is_correction,
        "saved": outcome.storage_ok,
        "changes": _change_summary(outcome),
        "ambiguous_metrics": list(outcome.event.ambiguous_keys) if outcome.event else [],
        "suggested_reply": fallback_reply,
    }
    recent_history = [turn for turn in history[-10:] if isinstance(turn, dict)]
    messages: list[dict[str, str]] = [
        {"role": "system", "content": system_prompt},
        {"role": "system", "content": "Update summary JSON:\n" + json.dumps(summary, ensure_ascii=True)},
        *[
            {
                "role": str(turn.get("role") or "").strip().lower(),
                "content": str(turn.get("content") or "").strip()[:1200],
            }
            for turn in recent_history
            if str(turn.get("role") or "").strip().lower() in {"user", "assistant"}
            and str(turn.get("content") or "").strip()
        ],
        {"role": "user", "content": message.strip()[:2000]},
    ]
    timeout_seconds = float(os.getenv("VITALOG_CHAT_TIMEOUT_SECONDS", "20"))
    for provider in providers:
        provider_name = str(provider.get("provider") or "unknown")
        try:
            text = _openai_compatible_chat(provider=provider, messages=messages, timeout_seconds=timeout_seconds)
        except (httpx.HTTPError, RuntimeError, ValueError) as exc:
            logger.warning("Chat provider %s failed: %s", provider_name, exc)
            continue
        if text:
            return text
        logger.warning("Chat provider %s returned an empty reply", provider_name)
    return fallback_reply


def _correction_payload(outcome: CorrectionOutcome) -> dict[str, Any]:
    event = outcome.event
    if event is None:
        return {"saved": outcome.storage_ok, "changed_keys": []}
    changed = outcome.changed_keys
    return {
        "event_id": event.event_id,
        "metric_date": outcome.metric_date,
        "saved": outcome.storage_ok,
        "changed_keys": changed,
        "changes": {key: event.corrected_map.get(key) for key in changed},
        "ambiguous_keys": list(event.ambiguous_keys),
        "summary": _change_summary(outcome),
    }


@app.get("/health")
def health():
    return {"status": "ok", "time": to_iso(utc_now())}


@app.post("/metrics/ingest")
def metrics_ingest(
    payload: IngestRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    try:
        outcome = container.metrics.ingest_payload(
            user_id=user_id,
            payload=payload.payload,
            metric_date=payload.metric_date,
            session_key=_session_key(user_id, payload.session_key),
            source=payload.source,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except MetricStorageError as exc:
        raise HTTPException(status_code=503, detail="Metric storage unavailable. Retry the upload.") from exc
    return {
        "metric_date": outcome.metric_date,
        "payload_kind": outcome.payload_kind,
        "metrics": outcome.metrics,
        "changed_keys": outcome.merge.changed_keys,
        "app_type": outcome.app_type,
        "screenshot_type": outcome.screenshot_type,
    }


@app.get("/metrics/catalog")
def metrics_catalog(
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    resolve_user_id(authorization, x_user_id)
    return {"items": container.metrics.catalog.list_metrics()}


@app.get("/metrics/latest")
def metrics_latest(
    session_key: str | None = None,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    latest = container.metrics.latest_extraction(user_id=user_id, session_key=_session_key(user_id, session_key))
    return latest or {}


@app.get("/metrics/daily")
def metrics_daily(
    metric_date: str | None = None,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    try:
        record = container.metrics.daily_record(user_id=user_id, metric_date=metric_date)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid metric_date") from exc
    except MetricStorageError as exc:
        raise HTTPException(status_code=503, detail="Metric storage unavailable.") from exc
    return record.as_dict()


@app.get("/training/samples")
def training_samples(
    limit: int = 50,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    samples = container.metrics.training_samples(min(max(limit, 1), 500), user_id=user_id)
    return {"items": [asdict(sample) for sample in samples]}


@app.get("/training/stats")
def training_stats(
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    return container.metrics.training_stats(user_id=user_id)


@app.post("/chat/stream")
def chat_stream(
    payload: ChatRequest,
    authorization: str | None = Header(default=None),
    x_user_id: str | None = Header(default=None),
):
    user_id = resolve_user_id(authorization, x_user_id)
    session_key = _session_key(user_id, payload.session_key)
    if payload.metric_date:
        try:
            normalize_metric_date(payload.metric_date)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid metric_date") from exc

    def event_stream():
        try:
            outcome = container.metrics.handle_message(
                user_id=user_id,
                message=payload.message,
                session_key=session_key,
                metric_date=payload.metric_date,
                history=payload.history,
            )
            if outcome.is_correction:
                yield _emit_sse("correction", _correction_payload(outcome))
            reply = _llm_chat_reply(
                message=payload.message,
                outcome=outcome,
                history=payload.history,
                fallback_reply=_fallback_reply(outcome),
            )
            for chunk in reply:
                yield _emit_sse("token", {"delta": chunk})
            yield _emit_sse("message", {"text": reply})
        except Exception:
            logger.exception("Chat pipeline failed for %s", user_id)
            yield _emit_sse("error", {"message": "Chat pipeline error."})

    return StreamingResponse(event_stream(), media_type="text/event-stream")
