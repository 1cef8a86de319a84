"""Shared CLI utilities."""

import json
import sys
from pathlib import Path

import structlog
from rich.console import Console

console = Console()
logger = structlog.get_logger()


def get_components(with_embeddings: bool = True, with_extractor: bool = False):
    """Initialize stores and engine components from config.

    Args:
        with_embeddings: Build the embedding client when embeddings.enabled is set
        with_extractor: Build the LLM insight extractor (needs an API key)
    """
    from cli.config import load_config_model
    from knowledge.store import KnowledgeBaseStore
    from learning import (
        AuditTrail,
        BestEffort,
        ConflictResolver,
        EmbeddingCache,
        EmbeddingClient,
        EventStore,
        FieldMapper,
        InsightExtractor,
        LearningEngine,
        LearningEventRecorder,
        MetricsRecorder,
    )
    from llm import LLMError, create_embedding_provider, create_llm_provider

    try:
        config_model = load_config_model()
    except ValueError as e:
        console.print(f"[red]Config error:[/] {e}")
        sys.exit(1)

    db_path = config_model.paths.db
    lease = config_model.lease
    kb_store = KnowledgeBaseStore(
        db_path,
        lease_ttl_seconds=lease.ttl_seconds,
        lease_attempts=lease.attempts,
        lease_wait=lease.wait_seconds,
    )
    event_store = EventStore(db_path)

    audit_cfg = config_model.audit
    audit = AuditTrail(
        kb_store,
        event_store=event_store,
        max_entries=audit_cfg.max_entries,
        max_snapshots=audit_cfg.max_snapshots,
    )
    metrics = MetricsRecorder(kb_store, max_entries=audit_cfg.max_metric_entries)
    side_channel = BestEffort(inline=not audit_cfg.background)

    retry_cfg = config_model.retry
    embeddings = None
    emb_cfg = config_model.embeddings
    if with_embeddings and emb_cfg.enabled:
        try:
            provider = create_embedding_provider(
                provider=emb_cfg.provider, api_key=emb_cfg.api_key, model=emb_cfg.model
            )
        except LLMError as e:
            console.print(f"[red]Config error:[/] {e}")
            sys.exit(1)
        embeddings = EmbeddingClient(
            provider,
            cache=EmbeddingCache(emb_cfg.cache_size),
            batch_size=emb_cfg.batch_size,
            threshold=emb_cfg.similarity_threshold,
            max_attempts=retry_cfg.max_attempts,
            min_wait=retry_cfg.min_wait,
            max_wait=retry_cfg.max_wait,
        )

    extractor = None
    if with_extractor:
        llm_cfg = config_model.llm
        try:
            llm = create_llm_provider(
                provider=llm_cfg.provider, api_key=llm_cfg.api_key, model=llm_cfg.model
            )
        except LLMError as e:
            console.print(f"[red]Config error:[/] {e}")
            sys.exit(1)
        extractor = InsightExtractor(
            llm,
            max_insights=llm_cfg.max_insights,
            max_attempts=retry_cfg.max_attempts,
            min_wait=retry_cfg.min_wait,
            max_wait=retry_cfg.llm_max_wait,
        )

    learning_cfg = config_model.learning
    recorder = LearningEventRecorder(
        event_store,
        kb_store,
        audit=audit,
        metrics=metrics,
        embeddings=embeddings,
        side_channel=side_channel,
        duplicate_window_days=learning_cfg.duplicate_window_days,
        similarity_threshold=learning_cfg.similarity_threshold,
    )
    mapper = FieldMapper(resolver=ConflictResolver(learning_cfg.high_confidence_override))
    engine = LearningEngine(
        event_store,
        kb_store,
        mapper=mapper,
        audit=audit,
        metrics=metrics,
        side_channel=side_channel,
        decay_config=config_model.decay,
    )

    return {
        "config_model": config_model,
        "kb_store": kb_store,
        "event_store": event_store,
        "audit": audit,
        "metrics": metrics,
        "side_channel": side_channel,
        "embeddings": embeddings,
        "extractor": extractor,
        "recorder": recorder,
        "engine": engine,
    }


def finish(components: dict) -> None:
    """Drain background side channels before the process exits."""
    side_channel = components["side_channel"]
    side_channel.wait()
    side_channel.shutdown()


def require_kb(components: dict, kb_id: str):
    """Return the knowledge base or exit with an error."""
    kb = components["kb_store"].get(kb_id)
    if kb is None:
        console.print(f"[red]Knowledge base not found:[/] {kb_id}")
        sys.exit(1)
    return kb


def read_json_file(path: Path):
    """Load a JSON document, exiting with a readable error on failure."""
    try:
        return json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Cannot read {path}:[/] {e}")
        sys.exit(1)


def print_errors(errors: list[str] | None, limit: int = 20) -> None:
    if not errors:
        return
    for error in errors[:limit]:
        console.print(f"  [yellow]•[/] {error}")
    if len(errors) > limit:
        console.print(f"  [dim]... and {len(errors) - limit} more[/]")
