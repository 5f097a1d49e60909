"""FastAPI application entry point for the AI coder service.

Wires the policy engine, sandbox registry, state machine, plan tracker,
pipeline executor, webhook reconciler, and chat loop together and exposes
them over HTTP. All services are built once in the application lifespan
and reached through ``app.state``.
"""

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, List, Optional, Union

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, Field

from src.aicoder.chat.session import (
    ChatMessage,
    ChatReply,
    ChatRequestError,
    ChatSession,
    build_chat_model,
)
from src.aicoder.chat.tools import ChatToolbox
from src.aicoder.config import AICoderSettings, get_settings
from src.aicoder.events.emitter import create_event_emitter
from src.aicoder.events.metrics import PipelineMetrics
from src.aicoder.github.client import GitHubClient
from src.aicoder.github.pr import PullRequestService
from src.aicoder.pipeline.executor import PipelineExecutor
from src.aicoder.plans.tracker import PlanTracker
from src.aicoder.policy.loader import load_config
from src.aicoder.policy.models import AICoderConfig, ConfigOverrides, ScreenContext
from src.aicoder.policy.store import ConfigStore
from src.aicoder.runner.agent import AgentRunner
from src.aicoder.sandbox.provider import LocalSandboxProvider
from src.aicoder.sandbox.registry import SandboxRegistry
from src.aicoder.state.machine import ChangeRequestStateMachine
from src.aicoder.state.repository import DocumentChangeRequestRepository
from src.aicoder.store import CONFIG, UNIQUE_FIELDS
from src.aicoder.store.base import DocumentStore
from src.aicoder.store.memory import InMemoryDocumentStore
from src.aicoder.store.postgres import PostgresDocumentStore
from src.aicoder.webhook.reconciler import WebhookOutcome, WebhookReconciler

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

_WEBHOOK_STATUS_CODES = {
    WebhookOutcome.ACCEPTED: 200,
    WebhookOutcome.IGNORED: 200,
    WebhookOutcome.REJECTED_PAYLOAD: 400,
    WebhookOutcome.REJECTED_SIGNATURE: 401,
}


@dataclass
class AppServices:
    """Everything the HTTP layer talks to, built once per process."""

    settings: AICoderSettings
    config: AICoderConfig
    store: DocumentStore
    registry: SandboxRegistry
    state_machine: ChangeRequestStateMachine
    repository: DocumentChangeRequestRepository
    plan_tracker: PlanTracker
    config_store: ConfigStore
    metrics: PipelineMetrics
    github_client: GitHubClient
    pr_service: PullRequestService
    executor: PipelineExecutor
    reconciler: WebhookReconciler
    chat_session: ChatSession


class ChatRequest(BaseModel):
    messages: List[ChatMessage] = Field(..., min_length=1)
    skill_id: Optional[str] = None
    screen_context: Optional[ScreenContext] = None
    session_id: Optional[str] = None


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret value, showing only the first few characters.

    Args:
        value: The secret value to redact.
        visible_chars: Number of characters to show at the start.

    Returns:
        Redacted string with asterisks replacing hidden characters.
    """
    if not value:
        return "(not set)"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: AICoderSettings, config: AICoderConfig) -> None:
    """Log configuration values with secrets redacted."""
    logger.info("AI coder configuration:")
    logger.info(f"  GitHub Base URL: {settings.github_base_url}")
    logger.info(f"  GitHub Token: {_redact_secret(settings.github_token)}")
    logger.info(
        f"  GitHub Webhook Secret: {_redact_secret(settings.github_webhook_secret)}"
    )
    logger.info(f"  Require Webhook Secret: {settings.require_webhook_secret}")
    logger.info(f"  Policy Config Path: {settings.policy_config_path or '(built-in)'}")
    logger.info(f"  Project: {config.project.name} ({config.project.repo})")
    logger.info(f"  Skills: {', '.join(skill.id for skill in config.skills)}")
    logger.info(f"  Sandbox Base Path: {settings.sandbox_base_path}")
    logger.info(f"  Sandbox Template: {config.sandbox.template_id}")
    logger.info(f"  Agent Command: {settings.agent_command}")
    logger.info(f"  Agent API Key: {_redact_secret(settings.agent_api_key)}")
    logger.info(f"  LLM URL: {settings.llm_url}")
    logger.info(f"  LLM Model: {settings.llm_model}")
    logger.info(f"  LLM API Key: {_redact_secret(settings.llm_api_key)}")
    logger.info(f"  Chat Max Tool Steps: {settings.chat_max_tool_steps}")
    logger.info(f"  Database URL: {_redact_secret(settings.database_url)}")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")


def _check_webhook_secret(settings: AICoderSettings) -> None:
    if settings.github_webhook_secret:
        return
    if settings.require_webhook_secret:
        raise RuntimeError(
            "AICODER_GITHUB_WEBHOOK_SECRET is empty but "
            "AICODER_REQUIRE_WEBHOOK_SECRET is set; refusing to start"
        )
    logger.warning(
        "Webhook secret not configured: webhook signatures will NOT be verified"
    )


def _warn_orphaned_sandboxes(base_path: Path) -> None:
    # Sessions live only in memory, so workspaces left by a previous
    # process cannot be reattached or killed through /kill.
    if not base_path.is_dir():
        return
    leftovers = [p for p in base_path.iterdir() if p.is_dir()]
    if leftovers:
        logger.warning(
            "Found sandbox workspaces from a previous run; they are not tracked",
            extra={"count": len(leftovers), "base_path": str(base_path)},
        )


async def _create_store(
    settings: AICoderSettings,
) -> Union[InMemoryDocumentStore, PostgresDocumentStore]:
    if not settings.database_url:
        logger.info("No database configured, using in-memory document store")
        return InMemoryDocumentStore(unique_fields=UNIQUE_FIELDS)
    store = PostgresDocumentStore(settings.database_url, unique_fields=UNIQUE_FIELDS)
    await store.connect()
    await store.ensure_schema()
    return store


def build_services(
    settings: AICoderSettings,
    config: AICoderConfig,
    store: DocumentStore,
    metrics: Optional[PipelineMetrics] = None,
    llm=None,
) -> AppServices:
    """Wire every service from settings, the static policy, and a store.

    Args:
        settings: Validated service settings.
        config: Static policy loaded from YAML (or the built-in default).
        store: Document store backing requests, plans, and overrides.
        metrics: Prometheus metrics; a fresh registry is used when omitted.
        llm: Chat model; built from the LLM settings when omitted.
    """
    metrics = metrics or PipelineMetrics()
    registry = SandboxRegistry(on_count_change=metrics.set_active_sandboxes)

    repository = DocumentChangeRequestRepository(store)
    state_machine = ChangeRequestStateMachine(repository)
    plan_tracker = PlanTracker(store)
    config_store = ConfigStore(config, store)

    event_emitter = create_event_emitter(metrics=metrics)

    github_client = GitHubClient(
        token=settings.github_token,
        base_url=settings.github_base_url,
    )
    pr_service = PullRequestService(github_client, config)

    allowed_tools = [t.strip() for t in settings.agent_allowed_tools.split(",") if t.strip()]
    sandbox_env = (
        {"ANTHROPIC_API_KEY": settings.agent_api_key} if settings.agent_api_key else None
    )
    executor = PipelineExecutor(
        state_machine=state_machine,
        registry=registry,
        sandbox_provider=LocalSandboxProvider(Path(settings.sandbox_base_path)),
        agent_runner=AgentRunner(command=settings.agent_command, allowed_tools=allowed_tools),
        pr_service=pr_service,
        config_store=config_store,
        github_token=settings.github_token,
        git_host=settings.github_git_host,
        plan_tracker=plan_tracker,
        event_emitter=event_emitter,
        sandbox_env=sandbox_env,
    )

    reconciler = WebhookReconciler(
        state_machine=state_machine,
        repository=repository,
        secret=settings.github_webhook_secret or None,
        plan_tracker=plan_tracker,
        event_emitter=event_emitter,
    )

    if llm is None:
        llm = build_chat_model(
            llm_url=settings.llm_url,
            model_name=settings.llm_model,
            api_key=settings.llm_api_key,
        )
    chat_session = ChatSession(
        llm=llm,
        toolbox=ChatToolbox(executor, plan_tracker, pr_service),
        config_store=config_store,
        max_tool_steps=settings.chat_max_tool_steps,
    )

    return AppServices(
        settings=settings,
        config=config,
        store=store,
        registry=registry,
        state_machine=state_machine,
        repository=repository,
        plan_tracker=plan_tracker,
        config_store=config_store,
        metrics=metrics,
        github_client=github_client,
        pr_service=pr_service,
        executor=executor,
        reconciler=reconciler,
        chat_session=chat_session,
    )


async def _shutdown(services: AppServices) -> None:
    killed = await services.registry.kill_all()
    if killed:
        logger.info("Killed sandboxes on shutdown", extra={"killed": killed})
    await services.github_client.close()
    if isinstance(services.store, PostgresDocumentStore):
        await services.store.disconnect()


def get_services(request: Request) -> AppServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return services


def create_app(services: Optional[AppServices] = None) -> FastAPI:
    """Build the FastAPI application.

    Args:
        services: Pre-built services (tests). When omitted, the lifespan
            loads settings and the policy and builds everything itself.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("AI coder starting up...")

        owned = services is None
        if owned:
            settings = get_settings()
            _check_webhook_secret(settings)
            config = load_config(settings.policy_config_path)
            _log_configuration(settings, config)
            store = await _create_store(settings)
            app.state.services = build_services(settings, config, store)
        else:
            _check_webhook_secret(services.settings)
            app.state.services = services

        _warn_orphaned_sandboxes(Path(app.state.services.settings.sandbox_base_path))
        logger.info("AI coder started successfully")

        yield

        logger.info("AI coder shutting down...")
        if owned:
            await _shutdown(app.state.services)
        else:
            await app.state.services.registry.kill_all()
        logger.info("AI coder shutdown complete")

    app = FastAPI(
        title="AI Coder",
        description="Chat-driven code changes through sandboxed coding agents and pull requests",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health():
        """Liveness check endpoint."""
        return {"status": "healthy"}

    @app.get("/ready")
    async def ready(services: AppServices = Depends(get_services)):
        """Readiness check endpoint.

        Checks the document store with a cheap read.
        """
        try:
            await services.store.get(CONFIG, "readiness-check")
            database_status = "healthy"
        except Exception as e:
            logger.warning("Readiness check failed", extra={"error": str(e)})
            database_status = "unhealthy"

        status = "ready" if database_status == "healthy" else "not_ready"
        body = {
            "status": status,
            "dependencies": {"database": database_status},
            "activeSandboxes": services.registry.active_count(),
        }
        return JSONResponse(body, status_code=200 if status == "ready" else 503)

    @app.get("/metrics")
    async def metrics(services: AppServices = Depends(get_services)):
        """Prometheus metrics endpoint."""
        return Response(services.metrics.generate_latest(), media_type=CONTENT_TYPE_LATEST)

    @app.post("/webhook")
    async def github_webhook(
        request: Request,
        services: AppServices = Depends(get_services),
        x_github_event: Optional[str] = Header(default=None),
        x_hub_signature_256: Optional[str] = Header(default=None),
    ):
        """GitHub webhook receiver.

        Verifies the signature over the raw body, then reconciles the
        delivery into the matching change request.
        """
        body = await request.body()
        try:
            result = await services.reconciler.handle(x_github_event, body, x_hub_signature_256)
        except Exception:
            logger.exception(
                "Webhook handling failed",
                extra={"event_type": x_github_event},
            )
            return JSONResponse(
                {"status": "error", "detail": "Internal error"}, status_code=500
            )
        return JSONResponse(result.to_dict(), status_code=_WEBHOOK_STATUS_CODES[result.outcome])

    @app.post("/kill")
    async def kill_sandboxes(services: AppServices = Depends(get_services)):
        """Tear down every running sandbox immediately."""
        was_active = services.registry.active_count()
        killed = await services.registry.kill_all()
        logger.warning(
            "Kill switch used",
            extra={"killed": killed, "was_active": was_active},
        )
        return {"killed": killed, "wasActive": was_active}

    @app.post("/chat", response_model=ChatReply)
    async def chat(
        body: ChatRequest,
        services: AppServices = Depends(get_services),
        x_operator_name: Optional[str] = Header(default=None),
    ):
        try:
            return await services.chat_session.run(
                body.messages,
                skill_id=body.skill_id,
                screen_context=body.screen_context,
                operator=x_operator_name or "unknown",
                session_id=body.session_id,
            )
        except ChatRequestError as e:
            raise HTTPException(status_code=400, detail=e.message)

    @app.get("/change-requests/{request_id}")
    async def get_change_request(request_id: str, services: AppServices = Depends(get_services)):
        record = await services.state_machine.get(request_id)
        if record is None:
            raise HTTPException(status_code=404, detail=f"Change request not found: {request_id}")
        return record.model_dump(mode="json")

    @app.get("/plans/{plan_id}")
    async def get_plan(plan_id: str, services: AppServices = Depends(get_services)):
        plan = await services.plan_tracker.get(plan_id)
        if plan is None:
            raise HTTPException(status_code=404, detail=f"Plan not found: {plan_id}")
        return plan.model_dump(mode="json")

    @app.get("/plans/{plan_id}/events")
    async def stream_plan(plan_id: str, services: AppServices = Depends(get_services)):
        """Server-sent events: the plan now, then after every write.

        The stream ends once the plan is locked.
        """
        if await services.plan_tracker.get(plan_id) is None:
            raise HTTPException(status_code=404, detail=f"Plan not found: {plan_id}")

        async def events() -> AsyncIterator[str]:
            async for plan in services.plan_tracker.subscribe(plan_id):
                yield f"data: {json.dumps(plan.model_dump(mode='json'))}\n\n"
                if plan.locked:
                    break

        return StreamingResponse(
            events(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache"},
        )

    @app.get("/config")
    async def get_config(services: AppServices = Depends(get_services)):
        """Effective policy: static config merged with saved overrides."""
        config = await services.config_store.get_merged_config()
        return config.model_dump(mode="json")

    @app.put("/config/overrides")
    async def put_config_overrides(
        overrides: ConfigOverrides,
        services: AppServices = Depends(get_services),
        x_operator_name: Optional[str] = Header(default=None),
    ):
        saved = await services.config_store.save_overrides(
            overrides, updated_by=x_operator_name or "unknown"
        )
        return saved.model_dump(mode="json")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "src.aicoder.main:app",
        host=dev_settings.host,
        port=dev_settings.port,
        reload=True,
    )
