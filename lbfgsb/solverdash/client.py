from __future__ import annotations

import contextlib
import dataclasses
import datetime as dt
import json
import logging
import os
import sqlite3
import threading
import uuid
from typing import Any, Dict, Iterable, List, Optional, Tuple

_DB_DEFAULT = os.environ.get("SOLVERDASH_DB", os.path.abspath("solverdash.db"))

_SCHEMA = """
PRAGMA journal_mode=WAL;
PRAGMA synchronous=NORMAL;

CREATE TABLE IF NOT EXISTS runs(
  run_id TEXT PRIMARY KEY,
  project TEXT,
  name TEXT,
  created_at TEXT,
  finished_at TEXT,
  status TEXT,
  notes TEXT,
  config_json TEXT
);

CREATE TABLE IF NOT EXISTS metrics(
  run_id TEXT,
  step INTEGER,
  ts TEXT,
  key TEXT,
  value REAL,
  PRIMARY KEY (run_id, step, key)
);

CREATE TABLE IF NOT EXISTS events(
  run_id TEXT,
  ts TEXT,
  level TEXT,
  message TEXT
);

CREATE INDEX IF NOT EXISTS idx_metrics_run_step ON metrics(run_id, step);
CREATE INDEX IF NOT EXISTS idx_events_run_ts ON events(run_id, ts);
"""


def _now() -> str:
    return dt.datetime.now(dt.timezone.utc).isoformat()


def _connect(db_path: str) -> sqlite3.Connection:
    parent = os.path.dirname(os.path.abspath(db_path))
    os.makedirs(parent, exist_ok=True)
    return sqlite3.connect(db_path, timeout=30.0, isolation_level=None, check_same_thread=False)


def _ensure_schema(con: sqlite3.Connection) -> None:
    for stmt in filter(None, _SCHEMA.split(";")):
        s = stmt.strip()
        if s:
            con.execute(s + ";")


@dataclasses.dataclass
class RunInfo:
    run_id: str
    project: str
    name: str
    created_at: str
    status: str
    notes: str
    config: Dict[str, Any]


class RunRecorder:
    """
    Local, threadsafe run recorder writing to SQLite. Doubles as a progress
    sink for the solver: every `on_iteration(k, f, proj_grad_norm)` call
    becomes one row per metric.

    Typical usage:
        rec = start_run(project="lbfgsb", name="rosen-10", config={"maxcor": 5})
        res = minimize(fg, x0, bounds=bnds, progress_sink=rec)
        rec.log_event(res.message)
        rec.finish(status=res.status.value)
    """

    def __init__(
        self,
        project: str,
        name: Optional[str] = None,
        db_path: str = _DB_DEFAULT,
        config: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
    ) -> None:
        self.db_path = db_path
        self.con = _connect(db_path)
        _ensure_schema(self.con)
        self._lock = threading.Lock()
        self.closed = False

        self.run_id = uuid.uuid4().hex
        self.project = project
        self.name = name or f"run-{self.run_id[:8]}"
        cfg_json = json.dumps(config or {}, ensure_ascii=False, default=str)
        self._insert(
            "INSERT INTO runs(run_id,project,name,created_at,finished_at,status,notes,config_json) "
            "VALUES (?,?,?,?,?,?,?,?)",
            (
                self.run_id, project, self.name, _now(), None, "running", notes or "", cfg_json,
            ),
        )

    # ------------------------ low-level helpers ------------------------ #
    def _insert(self, sql: str, params: Tuple[Any, ...]) -> None:
        with self._lock:
            self.con.execute(sql, params)

    # ------------------------ progress sink ---------------------------- #
    def on_iteration(self, k: int, f: float, proj_grad_norm: float) -> None:
        self.log_metrics(k, f=f, proj_grad_norm=proj_grad_norm)

    # ------------------------ public API ------------------------------- #
    def log_metrics(self, step: int, **kv: float) -> None:
        ts = _now()
        rows = [(self.run_id, int(step), ts, k, float(v)) for k, v in kv.items()]
        with self._lock:
            self.con.executemany(
                "INSERT OR REPLACE INTO metrics(run_id,step,ts,key,value) VALUES (?,?,?,?,?)", rows
            )

    def log_event(self, message: str, level: str = "INFO") -> None:
        self._insert(
            "INSERT INTO events(run_id,ts,level,message) VALUES (?,?,?,?)",
            (self.run_id, _now(), level.upper(), message),
        )

    def finish(self, status: str = "completed") -> None:
        if self.closed:
            return
        self._insert(
            "UPDATE runs SET finished_at=?, status=? WHERE run_id=?", (_now(), status, self.run_id)
        )
        with self._lock:
            self.con.close()
            self.closed = True


def start_run(
    project: str,
    name: Optional[str] = None,
    *,
    db_path: str = _DB_DEFAULT,
    config: Optional[Dict[str, Any]] = None,
    notes: Optional[str] = None,
) -> RunRecorder:
    return RunRecorder(project, name, db_path, config, notes)


@contextlib.contextmanager
def with_run(*args, **kwargs):
    rec = start_run(*args, **kwargs)
    try:
        yield rec
    except BaseException:
        rec.finish("failed")
        raise
    else:
        # the body may already have finished it with the solver's status
        rec.finish("completed")


def find_runs(db_path: str = _DB_DEFAULT, project: Optional[str] = None) -> List[RunInfo]:
    con = _connect(db_path)
    try:
        _ensure_schema(con)
        cur = con.execute(
            "SELECT run_id, project, name, created_at, status, notes, config_json FROM runs "
            "WHERE (? IS NULL OR project = ?) ORDER BY created_at DESC",
            (project, project),
        )
        return [
            RunInfo(rid, proj, name, created, status, notes or "", json.loads(cfg or "{}"))
            for rid, proj, name, created, status, notes, cfg in cur.fetchall()
        ]
    finally:
        con.close()


def load_metrics(run_id: str, db_path: str = _DB_DEFAULT) -> Dict[str, List[Tuple[int, float]]]:
    """Per-metric (step, value) series of one run, ordered by step."""
    con = _connect(db_path)
    try:
        _ensure_schema(con)
        cur = con.execute(
            "SELECT key, step, value FROM metrics WHERE run_id=? ORDER BY key, step", (run_id,)
        )
        out: Dict[str, List[Tuple[int, float]]] = {}
        for key, step, value in cur.fetchall():
            out.setdefault(key, []).append((int(step), float(value)))
        logging.debug(f"[solverdash] loaded {sum(map(len, out.values()))} metric rows for {run_id}")
        return out
    finally:
        con.close()


def iter_events(run_id: str, db_path: str = _DB_DEFAULT) -> Iterable[Tuple[str, str, str]]:
    con = _connect(db_path)
    try:
        _ensure_schema(con)
        cur = con.execute(
            "SELECT ts, level, message FROM events WHERE run_id=? ORDER BY ts", (run_id,)
        )
        yield from cur.fetchall()
    finally:
        con.close()
