# escalate/data/repositories.py
from typing import Optional, Any, Dict, List, Tuple
from datetime import datetime
import asyncpg
import json
import uuid
from escalate.errors import InvalidTransition, PersistenceFailure
from escalate.models import (
    ANALYSIS_TRANSITIONS,
    Analysis,
    DailyCount,
    Incident,
    IncidentStats,
    Pattern,
    PatternCandidate,
    ServiceCount,
    signature_key,
    utcnow,
)

SCHEMA = """
CREATE TABLE IF NOT EXISTS incidents (
    id                TEXT PRIMARY KEY,
    title             TEXT NOT NULL,
    description       TEXT,
    severity          TEXT NOT NULL DEFAULT 'Unknown',
    status            TEXT NOT NULL DEFAULT 'open',
    source            TEXT NOT NULL DEFAULT 'jira',
    affected_services TEXT[] NOT NULL DEFAULT '{}',
    metrics           JSONB NOT NULL DEFAULT '{}',
    similar_incidents TEXT[] NOT NULL DEFAULT '{}',
    started_at        TIMESTAMPTZ,
    analysis_count    INTEGER NOT NULL DEFAULT 0,
    last_analyzed_at  TIMESTAMPTZ,
    created_at        TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at        TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS incidents_severity_idx ON incidents (severity);
CREATE INDEX IF NOT EXISTS incidents_status_idx ON incidents (status);
CREATE INDEX IF NOT EXISTS incidents_created_at_idx ON incidents (created_at);

CREATE TABLE IF NOT EXISTS analyses (
    id            UUID PRIMARY KEY,
    incident_id   TEXT NOT NULL REFERENCES incidents (id),
    status        TEXT NOT NULL DEFAULT 'pending',
    summary       TEXT,
    duration_ms   INTEGER,
    errors        JSONB,
    data_sources  JSONB NOT NULL DEFAULT '{}',
    model         TEXT,
    triggered_by  TEXT NOT NULL DEFAULT 'webhook',
    created_at    TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at    TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS analyses_incident_idx ON analyses (incident_id);
CREATE INDEX IF NOT EXISTS analyses_status_idx ON analyses (status);

CREATE TABLE IF NOT EXISTS patterns (
    id            UUID PRIMARY KEY,
    type          TEXT NOT NULL,
    signature     JSONB NOT NULL,
    name          TEXT NOT NULL,
    description   TEXT,
    incidents     TEXT[] NOT NULL DEFAULT '{}',
    occurrences   INTEGER NOT NULL DEFAULT 0,
    confidence    NUMERIC(3, 2) NOT NULL DEFAULT 0,
    last_occurred TIMESTAMPTZ,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at    TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (type, signature)
);
"""


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA)


class BaseRepository:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    async def _execute(self, query: str, *args):
        try:
            async with self.pool.acquire() as conn:
                return await conn.execute(query, *args)
        except (asyncpg.PostgresError, OSError) as e:
            raise PersistenceFailure(str(e)) from e

    async def _fetch(self, query: str, *args):
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetch(query, *args)
        except (asyncpg.PostgresError, OSError) as e:
            raise PersistenceFailure(str(e)) from e

    async def _fetchrow(self, query: str, *args):
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchrow(query, *args)
        except (asyncpg.PostgresError, OSError) as e:
            raise PersistenceFailure(str(e)) from e

    async def _fetchval(self, query: str, *args):
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchval(query, *args)
        except (asyncpg.PostgresError, OSError) as e:
            raise PersistenceFailure(str(e)) from e


def _loads(value: Any) -> Any:
    if value is None or isinstance(value, (dict, list)):
        return value
    return json.loads(value)


INCIDENT_COLUMNS = (
    "id, title, description, severity, status, source, affected_services, metrics, similar_incidents, "
    "started_at, analysis_count, last_analyzed_at, created_at, updated_at"
)

# $1 status, $2 severity, $3 created on or after, $4 created before; NULL skips the filter
INCIDENT_FILTER = """
    ($1::text IS NULL OR status = $1)
    AND ($2::text IS NULL OR severity = $2)
    AND ($3::timestamptz IS NULL OR created_at >= $3)
    AND ($4::timestamptz IS NULL OR created_at < $4)
"""


def _incident(row) -> Incident:
    data = dict(row)
    data["metrics"] = _loads(data.get("metrics")) or {}
    data["affected_services"] = list(data.get("affected_services") or [])
    data["similar_incidents"] = list(data.get("similar_incidents") or [])
    return Incident(**data)


class IncidentRepository(BaseRepository):
    async def upsert(self, incident: Incident) -> Incident:
        """Create on first sight; afterwards bump analysis_count and refresh gathered fields."""
        now = utcnow()
        row = await self._fetchrow(
            f"""
            INSERT INTO incidents (id, title, description, severity, status, source, affected_services,
                                   metrics, similar_incidents, started_at, analysis_count, last_analyzed_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, 1, $11)
            ON CONFLICT (id) DO UPDATE SET
              analysis_count = incidents.analysis_count + 1,
              metrics = EXCLUDED.metrics,
              similar_incidents = EXCLUDED.similar_incidents,
              affected_services = EXCLUDED.affected_services,
              severity = CASE WHEN EXCLUDED.severity = 'Unknown' THEN incidents.severity ELSE EXCLUDED.severity END,
              status = EXCLUDED.status,
              last_analyzed_at = EXCLUDED.last_analyzed_at,
              updated_at = NOW()
            RETURNING {INCIDENT_COLUMNS}
            """,
            incident.id,
            incident.title,
            incident.description,
            incident.severity,
            incident.status,
            incident.source,
            incident.affected_services,
            json.dumps(incident.metrics, default=str),
            incident.similar_incidents,
            incident.started_at,
            now,
        )
        return _incident(row)

    async def get(self, incident_id: str) -> Optional[Incident]:
        row = await self._fetchrow(f"SELECT {INCIDENT_COLUMNS} FROM incidents WHERE id = $1", incident_id)
        return _incident(row) if row else None

    async def search_by_title(self, keywords: str, limit: int, exclude_id: Optional[str] = None) -> List[Incident]:
        rows = await self._fetch(
            f"""
            SELECT {INCIDENT_COLUMNS} FROM incidents
            WHERE title ILIKE $1 AND ($2::text IS NULL OR id <> $2)
            ORDER BY created_at DESC
            LIMIT $3
            """,
            f"%{keywords}%",
            exclude_id,
            limit,
        )
        return [_incident(r) for r in rows]

    async def created_since(self, since: datetime) -> List[Incident]:
        rows = await self._fetch(
            f"SELECT {INCIDENT_COLUMNS} FROM incidents WHERE created_at >= $1 ORDER BY created_at ASC",
            since,
        )
        return [_incident(r) for r in rows]

    async def query(
        self,
        status: Optional[str] = None,
        severity: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Tuple[int, List[Incident]]:
        """Newest first. Returns the total match count with one page of rows."""
        filters = (status, severity, since, until)
        total = await self._fetchval(f"SELECT COUNT(*) FROM incidents WHERE {INCIDENT_FILTER}", *filters)
        rows = await self._fetch(
            f"""
            SELECT {INCIDENT_COLUMNS} FROM incidents
            WHERE {INCIDENT_FILTER}
            ORDER BY created_at DESC
            LIMIT $5 OFFSET $6
            """,
            *filters,
            limit,
            offset,
        )
        return total, [_incident(r) for r in rows]

    async def stats(self, today: datetime, week_start: datetime, top: int = 5) -> IncidentStats:
        row = await self._fetchrow(
            """
            SELECT COUNT(*) AS total,
                   COUNT(*) FILTER (WHERE status = 'open') AS open,
                   COUNT(*) FILTER (WHERE created_at >= $1) AS today
            FROM incidents
            """,
            today,
        )
        trend = await self._fetch(
            """
            SELECT date_trunc('day', created_at) AS day, COUNT(*) AS incidents
            FROM incidents WHERE created_at >= $1
            GROUP BY day ORDER BY day
            """,
            week_start,
        )
        services = await self._fetch(
            """
            SELECT service, COUNT(*) AS incidents
            FROM incidents, unnest(affected_services) AS service
            GROUP BY service ORDER BY incidents DESC, service
            LIMIT $1
            """,
            top,
        )
        return IncidentStats(
            total_incidents=row["total"],
            open_incidents=row["open"],
            today_incidents=row["today"],
            weekly_trend=[DailyCount(**dict(r)) for r in trend],
            top_services=[ServiceCount(**dict(r)) for r in services],
        )


ANALYSIS_COLUMNS = (
    "id::text AS id, incident_id, status, summary, duration_ms, errors, data_sources, model, "
    "triggered_by, created_at, updated_at"
)


def _analysis(row) -> Analysis:
    data = dict(row)
    data["errors"] = _loads(data.get("errors"))
    data["data_sources"] = _loads(data.get("data_sources")) or {}
    return Analysis(**data)


class AnalysisRepository(BaseRepository):
    async def create(
        self,
        incident_id: str,
        status: str = "pending",
        data_sources: Optional[Dict[str, bool]] = None,
        model: Optional[str] = None,
        triggered_by: str = "webhook",
    ) -> Analysis:
        row = await self._fetchrow(
            f"""
            INSERT INTO analyses (id, incident_id, status, data_sources, model, triggered_by)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING {ANALYSIS_COLUMNS}
            """,
            uuid.uuid4(),
            incident_id,
            status,
            json.dumps(data_sources or {}),
            model,
            triggered_by,
        )
        return _analysis(row)

    async def get(self, analysis_id: str) -> Optional[Analysis]:
        row = await self._fetchrow(f"SELECT {ANALYSIS_COLUMNS} FROM analyses WHERE id = $1", uuid.UUID(analysis_id))
        return _analysis(row) if row else None

    async def _transition(self, analysis_id: str, target: str, sets: str, *args) -> Analysis:
        allowed_from = [s for s, targets in ANALYSIS_TRANSITIONS.items() if target in targets]
        row = await self._fetchrow(
            f"""
            UPDATE analyses SET status = $2, {sets}, updated_at = NOW()
            WHERE id = $1 AND status = ANY($3::text[])
            RETURNING {ANALYSIS_COLUMNS}
            """,
            uuid.UUID(analysis_id),
            target,
            allowed_from,
            *args,
        )
        if not row:
            current = await self.get(analysis_id)
            raise InvalidTransition(
                f"Analysis {analysis_id}: {current.status if current else 'missing'} -> {target}"
            )
        return _analysis(row)

    async def mark_completed(self, analysis_id: str, summary: str, duration_ms: int) -> Analysis:
        return await self._transition(analysis_id, "completed", "summary = $4, duration_ms = $5", summary, duration_ms)

    async def mark_failed(self, analysis_id: str, errors: Dict[str, Any], duration_ms: Optional[int] = None) -> Analysis:
        return await self._transition(
            analysis_id, "failed", "errors = $4, duration_ms = $5", json.dumps(errors, default=str), duration_ms
        )

    async def list_by_incident(self, incident_id: str) -> List[Analysis]:
        rows = await self._fetch(
            f"SELECT {ANALYSIS_COLUMNS} FROM analyses WHERE incident_id = $1 ORDER BY created_at ASC",
            incident_id,
        )
        return [_analysis(r) for r in rows]


PATTERN_COLUMNS = (
    "id::text AS id, type, signature, name, description, incidents, occurrences, confidence::float AS confidence, "
    "last_occurred, created_at, updated_at"
)


def _pattern(row) -> Pattern:
    data = dict(row)
    data["signature"] = {"type": data["type"], **(_loads(data["signature"]) or {})}
    data["incidents"] = list(data.get("incidents") or [])
    return Pattern(**data)


class PatternRepository(BaseRepository):
    async def find(self, type_: str, signature: Dict[str, Any]) -> Optional[Pattern]:
        row = await self._fetchrow(
            f"SELECT {PATTERN_COLUMNS} FROM patterns WHERE type = $1 AND signature = $2::jsonb",
            type_,
            json.dumps(signature),
        )
        return _pattern(row) if row else None

    async def create(self, candidate: PatternCandidate, last_occurred: datetime) -> Pattern:
        row = await self._fetchrow(
            f"""
            INSERT INTO patterns (id, type, signature, name, description, incidents, occurrences, confidence, last_occurred)
            VALUES ($1, $2, $3::jsonb, $4, $5, $6, $7, $8, $9)
            RETURNING {PATTERN_COLUMNS}
            """,
            uuid.uuid4(),
            candidate.type,
            json.dumps(signature_key(candidate.signature)),
            candidate.name,
            candidate.description,
            sorted(set(candidate.incidents)),
            candidate.occurrences,
            candidate.confidence,
            last_occurred,
        )
        return _pattern(row)

    async def update(self, pattern: Pattern) -> Pattern:
        row = await self._fetchrow(
            f"""
            UPDATE patterns SET incidents = $2, occurrences = $3, confidence = $4, last_occurred = $5, updated_at = NOW()
            WHERE id = $1
            RETURNING {PATTERN_COLUMNS}
            """,
            uuid.UUID(pattern.id),
            pattern.incidents,
            pattern.occurrences,
            pattern.confidence,
            pattern.last_occurred,
        )
        return _pattern(row)

    async def list(self, type_: Optional[str] = None, limit: int = 100) -> List[Pattern]:
        rows = await self._fetch(
            f"""
            SELECT {PATTERN_COLUMNS} FROM patterns
            WHERE ($1::text IS NULL OR type = $1)
            ORDER BY occurrences DESC
            LIMIT $2
            """,
            type_,
            limit,
        )
        return [_pattern(r) for r in rows]
