# app.py

import logging
import os
import traceback
from collections import deque
from datetime import datetime, UTC
from enum import Enum
from threading import Lock
from typing import Optional, Dict, List, Any, cast
from uuid import uuid4

from fastapi import FastAPI, Body, BackgroundTasks, HTTPException
from pydantic import BaseModel

from sync_oslo_index import run_sync, setup
from utils import COLLECTIONS, Term, check_health, connect, load_config

app = FastAPI(title="OSLO Search Sync")

OPENAPI_EXAMPLES = {
    "dev": {
        "summary": "Sync one term in DEV",
        "value": {
            "env_mode": "DEV",
            "terms": [{
                "URI": "http://www.w3.org/ns/adms#Identifier",
                "prefLabel": "Identifier",
                "definition": "Gestructureerde identificator.",
                "context": "OSLO Generiek",
            }],
        },
    },
    "prd": {"summary": "Run in PRD", "value": {"env_mode": "PRD", "terms": []}},
}


class EnvMode(str, Enum):
    DEV = "DEV"
    PRD = "PRD"


class SyncMode(str, Enum):
    sync = "sync"
    push = "push"


# -------- Job tracking --------
class JobStatus(str, Enum):
    queued = "queued"
    running = "running"
    success = "success"
    error = "error"


class Job(BaseModel):
    id: str
    status: JobStatus
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    collection: str
    mode: SyncMode
    records: int = 0
    summary: Optional[dict] = None
    error: Optional[str] = None


JOBS: Dict[str, Job] = {}
JOB_LOGS: Dict[str, deque[str]] = {}
JOB_LOCK = Lock()


def _now() -> datetime:
    return datetime.now(UTC)


class PerJobLogHandler(logging.Handler):
    """Push all log lines into an in-memory ring buffer and (optionally) a file."""
    def __init__(self, job_id: str, max_lines: int = 4000, persist_dir: Optional[str] = None):
        super().__init__()
        self.job_id = job_id
        self.buf = JOB_LOGS.setdefault(job_id, deque(maxlen=max_lines))
        self.persist_fp = None
        self.log_path = None
        if persist_dir:
            os.makedirs(persist_dir, exist_ok=True)
            self.log_path = os.path.join(persist_dir, f"{job_id}.log")
            try:
                self.persist_fp = open(self.log_path, "a", encoding="utf-8")
            except OSError:
                self.persist_fp = None

    def emit(self, record: logging.LogRecord):
        line = f"{_now().strftime('%Y-%m-%dT%H:%M:%S')}Z {record.levelname} {self.format(record)}"
        self.buf.append(line)
        if self.persist_fp:
            try:
                self.persist_fp.write(line + "\n")
                self.persist_fp.flush()
            except OSError:
                self.handleError(record)

    def close(self):
        try:
            if self.persist_fp:
                self.persist_fp.close()
        finally:
            super().close()


# -------- Request schema --------
class SyncRequest(BaseModel):
    env_mode: Optional[EnvMode] = None
    terms: List[Term] = []
    model_config = {"extra": "ignore"}


class SetupRequest(BaseModel):
    env_mode: Optional[EnvMode] = None
    model_config = {"extra": "ignore"}


def _env_mode(value: Optional[EnvMode]) -> str:
    env_mode_val = (value.value if value else (os.getenv("ENV_MODE") or "DEV")).upper()
    if env_mode_val not in {"DEV", "PRD"}:
        raise HTTPException(status_code=400, detail=f"Invalid ENV_MODE {env_mode_val!r}. Use DEV or PRD")
    return env_mode_val


def _job_log_dir(env_mode_val: str) -> Optional[str]:
    base = os.getenv("JOB_LOG_DIR", "job-logs")
    if not base:
        return None
    now = _now()
    return os.path.join(base, env_mode_val, now.strftime("%Y"), now.strftime("%m"))


# -------- Routes --------
@app.get("/healthz")
def healthz():
    status = check_health(connect(load_config()))
    if not status.ok:
        raise HTTPException(status_code=503, detail=status.detail)
    return {"ok": True, "detail": status.detail}


@app.post("/setup")
def setup_endpoint(params: Optional[SetupRequest] = Body(None)):
    env_mode_val = _env_mode(params.env_mode if params else None)
    results = setup(connect(load_config(env_mode_val)))
    return {name: r.model_dump() for name, r in results.items()}


def _run_job(job_id: str, env_mode_val: str, terms: List[Term]):
    handler = PerJobLogHandler(job_id, persist_dir=_job_log_dir(env_mode_val))
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)

    try:
        with JOB_LOCK:
            job = JOBS[job_id]
            job.status = JobStatus.running
            job.started_at = _now()

        logging.info(
            "Starting %s job (env=%s, collection=%s, records=%d)",
            job.mode.value, env_mode_val, job.collection, len(terms),
        )
        config = load_config(env_mode_val)
        result = run_sync(
            connect(config),
            terms,
            COLLECTIONS[job.collection],
            mode=job.mode.value,
            max_workers=config.lookup_concurrency,
            refresh=config.refresh,
            size=config.lookup_size,
        )

        with JOB_LOCK:
            job.summary = result.model_dump()
            # Partial bulk failures still count as a finished run; details are in the summary
            job.status = JobStatus.success if result.error is None else JobStatus.error
            job.error = result.error
            job.finished_at = _now()
        logging.info("%s job finished.", job.mode.value.capitalize())
    except Exception as e:
        err = f"{e.__class__.__name__}: {e}"
        tb = traceback.format_exc()
        with JOB_LOCK:
            job = JOBS[job_id]
            job.status = JobStatus.error
            job.error = err + "\n" + tb
            job.finished_at = _now()
        logging.exception("Sync job failed: %s", err)
    finally:
        root_logger.removeHandler(handler)
        handler.close()


def _schedule(collection: str, mode: SyncMode, params: Optional[SyncRequest], bg: BackgroundTasks) -> dict:
    if collection not in COLLECTIONS:
        raise HTTPException(status_code=404, detail=f"Unknown collection {collection!r}")
    if params is None:
        params = SyncRequest()

    env_mode_val = _env_mode(params.env_mode)

    job_id = uuid4().hex
    job = Job(
        id=job_id,
        status=JobStatus.queued,
        created_at=_now(),
        collection=collection,
        mode=mode,
        records=len(params.terms),
    )
    # prevent concurrent runs; a queued job counts, it will write to the same index
    with JOB_LOCK:
        if any(j.status in (JobStatus.queued, JobStatus.running) for j in JOBS.values()):
            raise HTTPException(status_code=409, detail="Another sync job is queued or running")
        JOBS[job_id] = job

    bg.add_task(_run_job, job_id, env_mode_val, params.terms)
    return {"status": "scheduled", "job_id": job_id}


@app.post("/sync/{collection}")
def sync_endpoint(
    collection: str,
    bg: BackgroundTasks,
    params: Optional[SyncRequest] = Body(None, openapi_examples=cast(Dict[str, Any], OPENAPI_EXAMPLES)),
):
    return _schedule(collection, SyncMode.sync, params, bg)


@app.post("/push/{collection}")
def push_endpoint(
    collection: str,
    bg: BackgroundTasks,
    params: Optional[SyncRequest] = Body(None, openapi_examples=cast(Dict[str, Any], OPENAPI_EXAMPLES)),
):
    return _schedule(collection, SyncMode.push, params, bg)


@app.get("/jobs")
def list_jobs():
    with JOB_LOCK:
        return [j.model_dump() for j in JOBS.values()]


@app.get("/jobs/{job_id}")
def get_job(job_id: str):
    with JOB_LOCK:
        job = JOBS.get(job_id)
        if not job:
            raise HTTPException(status_code=404, detail="job not found")
        return job.model_dump()


@app.get("/jobs/{job_id}/logs")
def get_job_logs(job_id: str, tail: int = 200):
    buf = JOB_LOGS.get(job_id)
    if buf is None:
        raise HTTPException(status_code=404, detail="job not found")
    tail = max(1, min(tail, len(buf)))
    return {"job_id": job_id, "lines": list(buf)[-tail:]}

# Optional: basic logging setup for local runs
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
