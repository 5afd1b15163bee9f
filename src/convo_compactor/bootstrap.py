from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from convo_compactor.app_config import AppConfig, RuntimeEnv
from convo_compactor.artifact_builders import builder_for
from convo_compactor.engine import CompactionEngine, EngineSettings
from convo_compactor.logging_config import setup_logging
from convo_compactor.models import ArtifactKind
from convo_compactor.orchestrator import SessionOrchestrator, build_budget_ladder
from convo_compactor.progress import ProgressBus
from convo_compactor.provider import LLMProvider, create_provider
from convo_compactor.storage import ArtifactCache, CompactionStore, SessionRepository, prune_history, recover_interrupted
from convo_compactor.transcripts import JsonTranscriptSource


@dataclass
class AppRuntime:
    store: CompactionStore
    bus: ProgressBus
    provider: LLMProvider
    orchestrators: dict[ArtifactKind, SessionOrchestrator]
    log_descriptions: list[str]

    def orchestrator(self, kind: ArtifactKind | str) -> SessionOrchestrator:
        return self.orchestrators[ArtifactKind(kind)]

    async def close(self) -> None:
        for orchestrator in self.orchestrators.values():
            await orchestrator.close()
        self.store.close()


def engine_settings(app: AppConfig) -> EngineSettings:
    return EngineSettings(
        model=app.model,
        max_tokens_per_chunk=app.max_tokens_per_chunk,
        max_turn_chars=app.max_turn_chars,
        anchor_head=app.anchor_head,
        anchor_tail=app.anchor_tail,
        map_max_tokens=app.map_max_tokens,
        reduce_max_tokens=app.reduce_max_tokens,
        temperature=app.temperature,
    )


def bootstrap_runtime(
    app: AppConfig,
    env: RuntimeEnv,
    *,
    provider: LLMProvider | None = None,
    configure_logging: bool = True,
) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers) if configure_logging else []

    store_path = app.store_path
    if store_path != ":memory:" and not Path(store_path).is_absolute():
        store_path = str(Path.cwd() / store_path)
    store = CompactionStore(store_path)

    recover_interrupted(store)
    pruned = prune_history(
        store,
        max_sessions_per_key=app.history_max_sessions_per_key,
        retention_days=app.history_retention_days,
    )
    if pruned:
        logger.info(f"Pruned {pruned} old session(s) from history")

    provider = provider or create_provider(app.provider_name, env.provider_api_key)
    bus = ProgressBus()
    sessions = SessionRepository(store)
    source = JsonTranscriptSource(app.transcript_root) if app.transcript_root else None
    ladder = tuple(app.budget_ladder) if app.budget_ladder else build_budget_ladder(app.token_budget)
    settings = engine_settings(app)

    orchestrators: dict[ArtifactKind, SessionOrchestrator] = {}
    for kind in ArtifactKind:
        engine = CompactionEngine(provider, builder_for(kind), settings)
        orchestrators[kind] = SessionOrchestrator(
            engine,
            ArtifactCache(store, kind),
            bus,
            sessions,
            source=source,
            ladder=ladder,
        )

    logger.debug(f"Runtime ready: provider={app.provider_name}, model={app.model}, ladder={list(ladder)}")
    return AppRuntime(
        store=store,
        bus=bus,
        provider=provider,
        orchestrators=orchestrators,
        log_descriptions=log_descriptions,
    )
