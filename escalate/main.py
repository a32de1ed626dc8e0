# escalate/main.py
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import asyncpg
from fastapi import FastAPI
from celery import Celery
from redis.asyncio import Redis

from escalate.agents.summarizer import OllamaSummarizer
from escalate.clients.awx_client import AWXClient
from escalate.clients.servicenow_client import ServiceNowClient
from escalate.clients.slack_webhook import SlackWebhookNotifier
from escalate.collaborators import SummarizationCollaborator
from escalate.config import Settings, configure_logging
from escalate.data.cache import CacheService
from escalate.data.repositories import (
    AnalysisRepository,
    IncidentRepository,
    PatternRepository,
    init_schema,
)
from escalate.errors import ConfigurationError
from escalate.orchestrator import IncidentOrchestrator
from escalate.routes import health, incidents, queues, reports
from escalate.services.events import EventBus
from escalate.services.incident_poller import IncidentPoller
from escalate.services.notifications import NotificationDispatcher
from escalate.services.patterns import PatternDetector, PatternService
from escalate.services.queue import (
    ANALYSIS_QUEUE,
    NOTIFICATIONS_QUEUE,
    PATTERNS_QUEUE,
    JobQueueManager,
)
from escalate.startup import check_ollama_health, log_enabled_integrations
from escalate.worker import make_celery

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    cache: CacheService
    events: EventBus
    queues: JobQueueManager
    orchestrator: IncidentOrchestrator
    patterns: PatternService
    notifications: NotificationDispatcher
    poller: Optional[IncidentPoller] = None
    redis: Optional[Redis] = None
    pg_pool: Optional[asyncpg.Pool] = None

    def register_handlers(self) -> None:
        self.queues.register(ANALYSIS_QUEUE, self.orchestrator.handle_analysis_job)
        self.queues.register(PATTERNS_QUEUE, self.patterns.handle_pattern_job)
        self.queues.register(NOTIFICATIONS_QUEUE, self.notifications.handle_notification_job)
        self.queues.on("failed", self.notifications.on_analysis_failed, queue_name=ANALYSIS_QUEUE)


def build_services(
    settings: Settings,
    redis: Redis,
    incidents: IncidentRepository,
    analyses: AnalysisRepository,
    patterns: PatternRepository,
    summarizer: Optional[SummarizationCollaborator] = None,
    pg_pool: Optional[asyncpg.Pool] = None,
    celery_app: Optional[Celery] = None,
) -> Services:
    cache = CacheService(
        redis,
        staleness_seconds=settings.analysis_cache_ttl_seconds,
        metrics_ttl=settings.metrics_cache_ttl_seconds,
    )
    events = EventBus(redis)
    queue_manager = JobQueueManager(
        redis,
        celery_app or make_celery(settings),
        settings.queue_settings(),
        stalled_interval_ms=settings.stalled_interval_ms,
        stalled_check_interval_ms=settings.stalled_check_interval_ms,
    )

    snow = None
    if settings.snow_url and settings.snow_user and settings.snow_pass:
        snow = ServiceNowClient(base_url=settings.snow_url, username=settings.snow_user, password=settings.snow_pass)
    collaborators = []
    if settings.awx_url and settings.awx_token:
        collaborators.append(AWXClient(base_url=settings.awx_url, token=settings.awx_token))
    notifiers = []
    if snow:
        notifiers.append(snow)
    if settings.slack_webhook_url:
        template = f"{settings.snow_url.rstrip('/')}/nav_to.do?uri=incident.do?sysparm_query=number={{incident_id}}" if snow else None
        notifiers.append(SlackWebhookNotifier(settings.slack_webhook_url, incident_url_template=template))

    pattern_service = PatternService(
        PatternDetector(settings.min_pattern_occurrences, settings.pattern_lookback_days),
        incidents,
        patterns,
        events,
    )
    orchestrator = IncidentOrchestrator(
        cache=cache,
        incidents=incidents,
        analyses=analyses,
        summarizer=summarizer or OllamaSummarizer(
            base_url=settings.ollama_base_url or "http://localhost:11434", model=settings.ai_model
        ),
        settings=settings,
        sources={snow.name: snow} if snow else {},
        collaborators=collaborators,
        issue_lookup=snow,
        notifiers=notifiers,
        events=events,
        queues=queue_manager,
        patterns=pattern_service,
    )
    poller = None
    if snow:
        poller = IncidentPoller(
            snow,
            orchestrator,
            poll_interval=settings.incident_poll_interval_seconds,
            incidents_per_poll=settings.incident_batch_size,
        )
    return Services(
        settings=settings,
        cache=cache,
        events=events,
        queues=queue_manager,
        orchestrator=orchestrator,
        patterns=pattern_service,
        notifications=NotificationDispatcher(notifiers, queue_manager),
        poller=poller,
        redis=redis,
        pg_pool=pg_pool,
    )


async def connect(settings: Settings) -> Services:
    if not settings.pg_dsn:
        raise ConfigurationError("POSTGRES_HOST/POSTGRES_DB must be set")
    pool = await asyncpg.create_pool(dsn=settings.pg_dsn, min_size=1, max_size=10)
    await init_schema(pool)
    redis = Redis.from_url(settings.redis_url, decode_responses=True)
    return build_services(
        settings,
        redis,
        IncidentRepository(pool),
        AnalysisRepository(pool),
        PatternRepository(pool),
        pg_pool=pool,
    )


def create_app(services: Optional[Services] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        svc = services
        if svc is None:
            settings = Settings.from_env()
            configure_logging(settings.log_level)
            log_enabled_integrations(settings)
            svc = await connect(settings)
            await check_ollama_health(settings)
        app.state.services = svc

        if svc.poller:
            await svc.poller.start()
        logger.info("Producing to queues: %s", ", ".join(svc.queues.queues))

        yield

        # Shutdown: stop intake, then close connections. Workers drain on their own.
        if svc.poller:
            await svc.poller.stop()
        await svc.queues.close()
        if services is None:
            if svc.pg_pool:
                await svc.pg_pool.close()
            if svc.redis:
                await svc.redis.aclose()

    app = FastAPI(title="escalate", lifespan=lifespan)
    app.include_router(health.router)
    app.include_router(incidents.router)
    app.include_router(queues.router)
    app.include_router(reports.router)
    return app


app = create_app()
